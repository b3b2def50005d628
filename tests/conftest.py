"""Pytest fixtures: a throwaway SQLite database per test, fake remote
collaborators and a recording publisher in place of the Kafka channel."""
import asyncio
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from ordersaga.common import database
from ordersaga.inventory.consumer import InventoryEventHandler
from ordersaga.inventory.service import StockReservationEngine
from ordersaga.orders.clients import LocalStockChecker, ProductInfo
from ordersaga.orders.service import OrderPlacement
from ordersaga.payments.service import PaymentRecorder

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


class FakeUsers:
    def __init__(self, user_ids: Iterable[int], delay: float = 0.0) -> None:
        self.user_ids = set(user_ids)
        self.delay = delay

    async def user_exists(self, user_id: int) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        return user_id in self.user_ids


class FakeProducts:
    def __init__(self, catalog: Dict[int, ProductInfo]) -> None:
        self.catalog = catalog

    async def get_product(self, product_id: int) -> Optional[ProductInfo]:
        return self.catalog.get(product_id)


class RecordingPublisher:
    """Collects what would have gone to Kafka; can be told to fail."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, bytes, Optional[bytes]]] = []
        self.fail = False

    async def __call__(self, topic: str, payload: bytes, key: Optional[bytes] = None) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.messages.append((topic, payload, key))

    @property
    def payloads(self) -> List[bytes]:
        return [payload for _, payload, _ in self.messages]


CATALOG = {
    10: ProductInfo(id=10, price=Decimal("9.99"), active=True),
    20: ProductInfo(id=20, price=Decimal("5.00"), active=True),
    30: ProductInfo(id=30, price=Decimal("12.50"), active=True),
    40: ProductInfo(id=40, price=Decimal("3.00"), active=False),
}


@pytest.fixture
async def db(tmp_path):
    database.configure(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_db()
    yield
    await database.dispose_db()


@pytest.fixture
def engine(db) -> StockReservationEngine:
    return StockReservationEngine(write_timeout=5.0)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def placement(engine, publisher) -> OrderPlacement:
    return OrderPlacement(
        users=FakeUsers({1, 2}),
        products=FakeProducts(CATALOG),
        stock=LocalStockChecker(engine),
        publisher=publisher,
        remote_timeout=1.0,
        write_timeout=5.0,
        publish_timeout=1.0,
        topic="order-placed",
    )


@pytest.fixture
def inventory_handler(engine) -> InventoryEventHandler:
    return InventoryEventHandler(engine)


@pytest.fixture
def payment_recorder(db) -> PaymentRecorder:
    return PaymentRecorder(deduplicate=False)
