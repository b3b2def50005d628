import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from ..common import database
from ..common.config import settings
from ..common.errors import NotFoundError, ServiceUnavailableError, ValidationError
from ..common.events import OrderPlacedEvent, OrderPlacedItem
from ..common.kafka_client import publish as kafka_publish
from ..common.metrics import EVENT_PUBLISH_FAILURES, ORDERS_PLACED, ORDERS_REJECTED
from .clients import ProductInfo

_logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

Publisher = Callable[[str, bytes, Optional[bytes]], Awaitable[Any]]


class UserLookup(Protocol):
    async def user_exists(self, user_id: int) -> bool: ...


class ProductLookup(Protocol):
    async def get_product(self, product_id: int) -> Optional[ProductInfo]: ...


class StockCheck(Protocol):
    async def check_stock(self, product_id: int, quantity: int) -> bool: ...


def order_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "status": row["status"],
        "totalAmount": str(row["total_amount"]),
        "items": [
            {
                "productId": i["product_id"],
                "quantity": i["quantity"],
                "unitPrice": str(i["unit_price"]),
                "subtotal": str(i["subtotal"]),
            }
            for i in row["items"]
        ],
        "createdAt": row["created_at"].isoformat(),
    }


class OrderPlacement:
    """Validates, persists and announces orders.

    Validation happens before any write. Once the order is stored its
    ``OrderPlaced`` event is published exactly once; if that fails the order
    stays persisted and no downstream reservation or payment will ever exist
    for it.
    """

    def __init__(
        self,
        users: UserLookup,
        products: ProductLookup,
        stock: StockCheck,
        publisher: Optional[Publisher] = None,
        remote_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        publish_timeout: Optional[float] = None,
        topic: Optional[str] = None,
    ) -> None:
        self.users = users
        self.products = products
        self.stock = stock
        self.publisher = publisher or kafka_publish
        self.remote_timeout = settings.REMOTE_TIMEOUT if remote_timeout is None else remote_timeout
        self.write_timeout = settings.WRITE_TIMEOUT if write_timeout is None else write_timeout
        self.publish_timeout = settings.PUBLISH_TIMEOUT if publish_timeout is None else publish_timeout
        self.topic = topic or settings.ORDER_PLACED_TOPIC

    async def _remote(self, what: str, coro: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.remote_timeout)
        except asyncio.TimeoutError:
            ORDERS_REJECTED.labels(reason="timeout").inc()
            raise ValidationError(f"Timed out resolving {what}")

    async def place_order(self, user_id: int, items: Sequence[Dict[str, int]]) -> Dict[str, Any]:
        if not items:
            raise ValidationError("Order must contain at least one item", {"items": "must not be empty"})
        for idx, item in enumerate(items):
            if item["quantity"] <= 0:
                raise ValidationError(
                    "Quantity must be positive", {f"items[{idx}].quantity": "must be greater than 0"}
                )

        if not await self._remote(f"user {user_id}", self.users.user_exists(user_id)):
            ORDERS_REJECTED.labels(reason="user_not_found").inc()
            raise NotFoundError(f"User not found with id: {user_id}")

        resolved: List[ProductInfo] = []
        for item in items:
            product = await self._remote(
                f"product {item['productId']}", self.products.get_product(item["productId"])
            )
            if product is None or not product.active:
                ORDERS_REJECTED.labels(reason="product_invalid").inc()
                raise ValidationError(f"Product not found or inactive: {item['productId']}")
            resolved.append(product)

        for item in items:
            in_stock = await self._remote(
                f"stock for product {item['productId']}",
                self.stock.check_stock(item["productId"], item["quantity"]),
            )
            if not in_stock:
                ORDERS_REJECTED.labels(reason="insufficient_stock").inc()
                raise ValidationError(f"Insufficient stock for product: {item['productId']}")

        lines = []
        total = Decimal("0.00")
        for item, product in zip(items, resolved):
            unit_price = product.price.quantize(CENTS)
            subtotal = (unit_price * item["quantity"]).quantize(CENTS)
            total += subtotal
            lines.append(
                {
                    "product_id": item["productId"],
                    "quantity": item["quantity"],
                    "unit_price": unit_price,
                    "subtotal": subtotal,
                }
            )

        try:
            order = await asyncio.wait_for(database.create_order(user_id, lines, total), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            _logger.error("Order write timed out | user_id=%s", user_id)
            raise ServiceUnavailableError("Timed out persisting order")
        ORDERS_PLACED.inc()
        _logger.info("Order placed | order_id=%s user_id=%s total=%s", order["id"], user_id, total)

        await self._publish_order_placed(order)
        return order_view(order)

    async def _publish_order_placed(self, order: Dict[str, Any]) -> None:
        try:
            event = OrderPlacedEvent(
                order_id=order["id"],
                user_id=order["user_id"],
                items=[
                    OrderPlacedItem(product_id=i["product_id"], quantity=i["quantity"], price=i["unit_price"])
                    for i in order["items"]
                ],
                total_amount=order["total_amount"],
            )
            await asyncio.wait_for(
                self.publisher(self.topic, event.to_bytes(), str(order["id"]).encode("utf-8")),
                timeout=self.publish_timeout,
            )
            _logger.info("Published OrderPlacedEvent | order_id=%s topic=%s", order["id"], self.topic)
        except Exception as e:
            # No retry and no rollback: the order stays PENDING without an event
            EVENT_PUBLISH_FAILURES.inc()
            _logger.error("Failed to publish OrderPlacedEvent | order_id=%s err=%r", order["id"], e)

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        row = await database.fetch_order(order_id)
        if row is None:
            raise NotFoundError(f"Order not found with id: {order_id}")
        return order_view(row)

    async def orders_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        return [order_view(r) for r in await database.fetch_orders_by_user(user_id)]
