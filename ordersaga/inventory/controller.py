from quart import Blueprint, current_app, jsonify, request

from ..common.errors import ValidationError
from ..common.validation import int_field
from .service import StockReservationEngine

bp = Blueprint("inventory", __name__, url_prefix="/inventory")


def _engine() -> StockReservationEngine:
    return current_app.extensions["stock_engine"]


@bp.post("")
async def inventory_upsert():
    data = await request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    errors = {}
    product_id = int_field(data, "productId", errors)
    quantity = int_field(data, "quantity", errors, minimum=0)
    if errors:
        raise ValidationError("Invalid request data", errors)
    view = await _engine().upsert(product_id, quantity)
    return jsonify(view), 201


@bp.get("")
async def inventory_list():
    return jsonify(await _engine().list_all())


@bp.get("/product/<int:product_id>")
async def inventory_detail(product_id: int):
    return jsonify(await _engine().get(product_id))


@bp.get("/check")
async def inventory_check():
    errors = {}
    product_id = int_field(request.args, "productId", errors)
    quantity = int_field(request.args, "quantity", errors, minimum=1)
    if errors:
        raise ValidationError("Invalid request data", errors)
    return jsonify(await _engine().check(product_id, quantity))


@bp.get("/reservations/order/<int:order_id>")
async def inventory_reservations(order_id: int):
    return jsonify(await _engine().reservations_for_order(order_id))
