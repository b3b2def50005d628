import logging
import uuid
from typing import Any, Dict, List, Optional

from ..common import database
from ..common.config import settings
from ..common.errors import NotFoundError
from ..common.events import MalformedEventError, OrderPlacedEvent
from ..common.metrics import CONSUMER_FAILURES, PAYMENTS_RECORDED

_logger = logging.getLogger(__name__)


def new_transaction_id() -> str:
    return f"TXN-{uuid.uuid4()}"


def payment_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "orderId": row["order_id"],
        "userId": row["user_id"],
        "amount": str(row["amount"]),
        "status": row["status"],
        "transactionId": row["transaction_id"],
        "createdAt": row["created_at"].isoformat(),
    }


class PaymentRecorder:
    """Books a completed payment for every ``OrderPlaced`` event.

    No gateway is involved. By default a redelivered event books a second
    payment; with ``deduplicate`` an order that already has one is skipped.
    """

    def __init__(self, deduplicate: Optional[bool] = None) -> None:
        self.deduplicate = settings.PAYMENT_DEDUPLICATE if deduplicate is None else deduplicate

    async def handle(self, raw: Optional[bytes]) -> None:
        try:
            event = OrderPlacedEvent.from_bytes(raw or b"")
        except MalformedEventError as e:
            CONSUMER_FAILURES.labels(consumer="payment", reason="malformed").inc()
            _logger.error("Failed to parse OrderPlacedEvent: %s", e.message)
            return
        _logger.info("Received OrderPlacedEvent | order_id=%s", event.order_id)
        try:
            await self.record(event)
        except Exception as e:
            CONSUMER_FAILURES.labels(consumer="payment", reason=type(e).__name__).inc()
            _logger.error("Error processing OrderPlacedEvent | order_id=%s err=%s", event.order_id, e)

    async def record(self, event: OrderPlacedEvent) -> Optional[Dict[str, Any]]:
        if self.deduplicate and await database.payment_exists_for_order(event.order_id):
            _logger.info("Duplicate OrderPlacedEvent skipped | order_id=%s", event.order_id)
            return None
        row = await database.create_payment(
            event.order_id, event.user_id, event.total_amount, new_transaction_id()
        )
        PAYMENTS_RECORDED.inc()
        _logger.info(
            "Payment recorded | order_id=%s amount=%s txn=%s", event.order_id, row["amount"], row["transaction_id"]
        )
        return payment_view(row)

    async def get_payment(self, payment_id: int) -> Dict[str, Any]:
        row = await database.fetch_payment(payment_id)
        if row is None:
            raise NotFoundError(f"Payment not found with id: {payment_id}")
        return payment_view(row)

    async def payments_for_order(self, order_id: int) -> List[Dict[str, Any]]:
        return [payment_view(r) for r in await database.fetch_payments_by_order(order_id)]

    async def payments_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        return [payment_view(r) for r in await database.fetch_payments_by_user(user_id)]
