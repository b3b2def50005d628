import asyncio
import logging
from typing import Optional

from ..common import database
from ..common.config import settings
from ..common.errors import InsufficientStockError
from ..common.events import MalformedEventError, OrderPlacedEvent
from ..common.kafka_client import run_consumer
from ..common.metrics import CONSUMER_FAILURES
from .model import ReservationStatus
from .service import StockReservationEngine

_logger = logging.getLogger(__name__)


class InventoryEventHandler:
    """Reserves stock for every line of an ``OrderPlaced`` event.

    Lines are reserved one at a time. The first failure stops the order:
    earlier lines stay reserved, later lines are never attempted. Duplicate
    deliveries are not detected, so a redelivered event reserves again.
    """

    def __init__(self, engine: StockReservationEngine) -> None:
        self.engine = engine

    async def handle(self, raw: Optional[bytes]) -> None:
        try:
            event = OrderPlacedEvent.from_bytes(raw or b"")
        except MalformedEventError as e:
            CONSUMER_FAILURES.labels(consumer="inventory", reason="malformed").inc()
            _logger.error("Failed to parse OrderPlacedEvent: %s", e.message)
            return
        _logger.info("Received OrderPlacedEvent | order_id=%s lines=%s", event.order_id, len(event.items))
        try:
            await self.reserve_order(event)
        except Exception as e:
            CONSUMER_FAILURES.labels(consumer="inventory", reason=type(e).__name__).inc()
            _logger.error("Error processing OrderPlacedEvent | order_id=%s err=%s", event.order_id, e)

    async def reserve_order(self, event: OrderPlacedEvent) -> None:
        for item in event.items:
            await self._reserve_line(event.order_id, item.product_id, item.quantity)

    async def _reserve_line(self, order_id: int, product_id: int, quantity: int) -> None:
        reservation_id = await database.create_reservation(
            order_id, product_id, quantity, ReservationStatus.RESERVE_PENDING
        )
        try:
            await self.engine.reserve(product_id, quantity)
        except Exception as e:
            # Every attempt ends RESERVED or REJECTED, including store failures
            reason = "insufficient_stock" if isinstance(e, InsufficientStockError) else type(e).__name__
            await database.update_reservation_status(reservation_id, ReservationStatus.REJECTED, reason)
            _logger.warning(
                "Reservation rejected | order_id=%s product_id=%s qty=%s reason=%s",
                order_id,
                product_id,
                quantity,
                reason,
            )
            raise
        await database.update_reservation_status(reservation_id, ReservationStatus.RESERVED)


async def inventory_worker(engine: StockReservationEngine, stop_event: Optional[asyncio.Event] = None) -> None:
    handler = InventoryEventHandler(engine)
    await run_consumer(settings.ORDER_PLACED_TOPIC, settings.INVENTORY_GROUP_ID, handler.handle, stop_event)
