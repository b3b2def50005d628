from quart import Blueprint, current_app, jsonify

from .service import PaymentRecorder

bp = Blueprint("payments", __name__, url_prefix="/payments")


def _recorder() -> PaymentRecorder:
    return current_app.extensions["payment_recorder"]


@bp.get("/<int:payment_id>")
async def payment_detail(payment_id: int):
    return jsonify(await _recorder().get_payment(payment_id))


@bp.get("/order/<int:order_id>")
async def payments_by_order(order_id: int):
    return jsonify(await _recorder().payments_for_order(order_id))


@bp.get("/user/<int:user_id>")
async def payments_by_user(user_id: int):
    return jsonify(await _recorder().payments_for_user(user_id))
