from typing import Any, Dict, List, Tuple

from quart import Blueprint, current_app, jsonify, request

from ..common.errors import ValidationError
from ..common.validation import int_field
from .service import OrderPlacement

bp = Blueprint("orders", __name__, url_prefix="/orders")


def _placement() -> OrderPlacement:
    return current_app.extensions["order_placement"]


def parse_order_request(data: Any) -> Tuple[int, List[Dict[str, int]]]:
    """Validate ``{userId, items: [{productId, quantity}]}``, collecting every field error."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    errors: Dict[str, str] = {}
    user_id = int_field(data, "userId", errors)
    raw_items = data.get("items")
    items: List[Dict[str, int]] = []
    if raw_items is None:
        errors["items"] = "is required"
    elif not isinstance(raw_items, list):
        errors["items"] = "must be a list"
    elif not raw_items:
        errors["items"] = "must not be empty"
    else:
        for idx, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                errors[f"items[{idx}]"] = "must be an object"
                continue
            product_id = int_field(raw, "productId", errors, path=f"items[{idx}].productId")
            quantity = int_field(raw, "quantity", errors, path=f"items[{idx}].quantity", minimum=1)
            items.append({"productId": product_id, "quantity": quantity})
    if errors:
        raise ValidationError("Invalid request data", errors)
    return user_id, items


@bp.post("")
async def order_create():
    data = await request.get_json(force=True, silent=True)
    user_id, items = parse_order_request(data)
    order = await _placement().place_order(user_id, items)
    return jsonify(order), 201


@bp.get("/<int:order_id>")
async def order_detail(order_id: int):
    return jsonify(await _placement().get_order(order_id))


@bp.get("/user/<int:user_id>")
async def orders_by_user(user_id: int):
    return jsonify(await _placement().orders_for_user(user_id))
