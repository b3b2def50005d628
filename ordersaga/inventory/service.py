import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from weakref import WeakValueDictionary

from ..common import database
from ..common.config import settings
from ..common.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from ..common.metrics import RESERVATIONS
from ..common.redis_client import publish_json

_logger = logging.getLogger(__name__)

StockNotifier = Callable[[Dict[str, Any]], Awaitable[Any]]


def stock_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "productId": row["product_id"],
        "quantity": row["quantity"],
        "reserved": row["reserved"],
        "available": row["available"],
    }


async def publish_stock_update(view: Dict[str, Any]) -> None:
    await publish_json(settings.REDIS_STOCK_CHANNEL, view)


class StockReservationEngine:
    """Owns the per-product quantity/reserved counters.

    Every mutation of a product runs under that product's lock and is a single
    conditional UPDATE, so ``reserved <= quantity`` holds in-process and across
    processes sharing the database.
    """

    def __init__(
        self,
        notifier: Optional[StockNotifier] = None,
        write_timeout: Optional[float] = None,
    ) -> None:
        self.notifier = notifier
        self.write_timeout = settings.WRITE_TIMEOUT if write_timeout is None else write_timeout
        # An entry lives only while some caller holds or waits on it
        self._locks: "WeakValueDictionary[int, asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, product_id: int) -> asyncio.Lock:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_id] = lock
        return lock

    async def _write(self, product_id: int, op: str, coro: Awaitable[Any]) -> Any:
        lock = self._lock_for(product_id)
        try:
            async with lock:
                return await asyncio.wait_for(coro, timeout=self.write_timeout)
        except asyncio.TimeoutError:
            _logger.error("Inventory write timed out | op=%s product_id=%s", op, product_id)
            raise ServiceUnavailableError(f"Inventory {op} timed out for product: {product_id}")

    async def _notify(self, row: Optional[Dict[str, Any]]) -> None:
        if row is None or self.notifier is None:
            return
        try:
            await self.notifier(stock_view(row))
        except Exception as e:
            _logger.warning("Stock update notification failed | product_id=%s err=%s", row["product_id"], e)

    async def upsert(self, product_id: int, quantity: int) -> Dict[str, Any]:
        if quantity < 0:
            raise ValidationError("Quantity must not be negative", {"quantity": "must be greater than or equal to 0"})
        ok = await self._write(product_id, "upsert", database.upsert_inventory(product_id, quantity))
        row = await database.fetch_inventory(product_id)
        if not ok:
            raise ConflictError(
                f"Quantity {quantity} is below reserved stock ({row['reserved'] if row else '?'}) "
                f"for product: {product_id}"
            )
        _logger.info("Inventory set | product_id=%s quantity=%s", product_id, quantity)
        await self._notify(row)
        return stock_view(row)

    async def get(self, product_id: int) -> Dict[str, Any]:
        row = await database.fetch_inventory(product_id)
        if row is None:
            raise NotFoundError(f"Inventory not found for product: {product_id}")
        return stock_view(row)

    async def list_all(self) -> List[Dict[str, Any]]:
        return [stock_view(r) for r in await database.fetch_all_inventory()]

    async def check(self, product_id: int, quantity: int) -> bool:
        """Advisory, read-only; a later reserve may still fail."""
        row = await database.fetch_inventory(product_id)
        if row is None:
            return False
        return row["available"] >= quantity

    async def reserve(self, product_id: int, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": "must be greater than 0"})
        reserved = await self._write(product_id, "reserve", database.try_reserve_stock(product_id, quantity))
        row = await database.fetch_inventory(product_id)
        if row is None:
            RESERVATIONS.labels(outcome="not_found").inc()
            raise NotFoundError(f"Inventory not found for product: {product_id}")
        if not reserved:
            RESERVATIONS.labels(outcome="insufficient_stock").inc()
            _logger.warning(
                "Reservation rejected | product_id=%s requested=%s available=%s",
                product_id,
                quantity,
                row["available"],
            )
            raise InsufficientStockError(f"Insufficient stock for product {product_id}")
        RESERVATIONS.labels(outcome="reserved").inc()
        _logger.info(
            "Stock reserved | product_id=%s qty=%s reserved=%s available=%s",
            product_id,
            quantity,
            row["reserved"],
            row["available"],
        )
        await self._notify(row)
        return stock_view(row)

    async def release(self, product_id: int, quantity: int) -> Optional[Dict[str, Any]]:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": "must be greater than 0"})
        released = await self._write(product_id, "release", database.release_stock(product_id, quantity))
        if not released:
            _logger.debug("Release skipped, no inventory | product_id=%s", product_id)
            return None
        row = await database.fetch_inventory(product_id)
        _logger.info("Stock released | product_id=%s qty=%s reserved=%s", product_id, quantity, row["reserved"])
        await self._notify(row)
        return stock_view(row)

    async def reservations_for_order(self, order_id: int) -> List[Dict[str, Any]]:
        return [
            {
                "id": r["id"],
                "orderId": r["order_id"],
                "productId": r["product_id"],
                "quantity": r["quantity"],
                "status": r["status"],
                "reason": r["reason"],
                "createdAt": r["created_at"].isoformat(),
                "updatedAt": r["updated_at"].isoformat(),
            }
            for r in await database.fetch_reservations_by_order(order_id)
        ]
