"""Wire contract for the ``OrderPlaced`` event.

The payload is UTF-8 JSON with stable camelCase field names::

    {"orderId": 1, "userId": 7,
     "items": [{"productId": 10, "quantity": 2, "price": 9.99}],
     "totalAmount": 19.98}

Evolution is additive only: unknown fields are ignored on decode. Money goes
out as JSON numbers and comes back through ``parse_float=Decimal`` so the
decoded value matches the number text exactly.
"""
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List

from .errors import InternalError


class MalformedEventError(InternalError):
    pass


@dataclass(frozen=True)
class OrderPlacedItem:
    product_id: int
    quantity: int
    price: Decimal


@dataclass(frozen=True)
class OrderPlacedEvent:
    order_id: int
    user_id: int
    items: List[OrderPlacedItem] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "userId": self.user_id,
            "items": [
                {"productId": i.product_id, "quantity": i.quantity, "price": float(i.price)}
                for i in self.items
            ],
            "totalAmount": float(self.total_amount),
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "OrderPlacedEvent":
        try:
            data = json.loads(raw.decode("utf-8"), parse_float=Decimal)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedEventError(f"OrderPlaced payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedEventError("OrderPlaced payload must be a JSON object")
        try:
            items = [
                OrderPlacedItem(
                    product_id=_as_int(i["productId"]),
                    quantity=_as_int(i["quantity"]),
                    price=Decimal(i["price"]),
                )
                for i in data["items"]
            ]
            return cls(
                order_id=_as_int(data["orderId"]),
                user_id=_as_int(data["userId"]),
                items=items,
                total_amount=Decimal(data["totalAmount"]),
            )
        except (KeyError, TypeError, ArithmeticError, ValueError) as e:
            raise MalformedEventError(f"OrderPlaced payload is missing or has invalid fields: {e!r}") from e


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {value!r}")
    return value
