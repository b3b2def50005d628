"""Tests for order validation, persistence and OrderPlaced publication."""
import asyncio
import json
from decimal import Decimal

import pytest

from ordersaga.common import database
from ordersaga.common.errors import NotFoundError, ValidationError
from ordersaga.common.events import OrderPlacedEvent
from ordersaga.orders.clients import LocalStockChecker
from ordersaga.orders.service import OrderPlacement

from .conftest import CATALOG, FakeProducts, FakeUsers


async def test_order_is_persisted_published_reserved_and_paid(
    engine, placement, publisher, inventory_handler, payment_recorder
):
    await engine.upsert(10, 5)

    order = await placement.place_order(1, [{"productId": 10, "quantity": 2}])

    assert order["status"] == "PENDING"
    assert order["userId"] == 1
    assert order["totalAmount"] == "19.98"
    assert order["items"] == [{"productId": 10, "quantity": 2, "unitPrice": "9.99", "subtotal": "19.98"}]

    assert len(publisher.messages) == 1
    topic, payload, key = publisher.messages[0]
    assert topic == "order-placed"
    assert key == str(order["id"]).encode()
    event = OrderPlacedEvent.from_bytes(payload)
    assert event.order_id == order["id"]
    assert event.total_amount == Decimal("19.98")

    await inventory_handler.handle(payload)
    await payment_recorder.handle(payload)

    assert (await engine.get(10))["reserved"] == 2
    payments = await payment_recorder.payments_for_order(order["id"])
    assert len(payments) == 1
    assert payments[0]["amount"] == "19.98"
    assert payments[0]["status"] == "COMPLETED"
    assert payments[0]["transactionId"].startswith("TXN-")


async def test_insufficient_stock_fails_before_anything_is_written(engine, placement, publisher):
    await engine.upsert(10, 5)
    await engine.reserve(10, 5)

    with pytest.raises(ValidationError, match="Insufficient stock for product: 10"):
        await placement.place_order(1, [{"productId": 10, "quantity": 1}])

    assert await database.fetch_orders_by_user(1) == []
    assert publisher.messages == []


async def test_two_orders_for_the_last_unit_both_pass_the_check_but_only_one_reserves(
    engine, placement, publisher, inventory_handler
):
    await engine.upsert(20, 3)
    await engine.reserve(20, 2)

    first, second = await asyncio.gather(
        placement.place_order(1, [{"productId": 20, "quantity": 1}]),
        placement.place_order(2, [{"productId": 20, "quantity": 1}]),
    )

    assert first["status"] == second["status"] == "PENDING"
    assert len(publisher.payloads) == 2

    await asyncio.gather(*(inventory_handler.handle(p) for p in publisher.payloads))

    view = await engine.get(20)
    assert view["reserved"] == 3
    assert view["available"] == 0

    outcomes = []
    for order in (first, second):
        reservations = await engine.reservations_for_order(order["id"])
        assert len(reservations) == 1
        outcomes.append(reservations[0]["status"])
        # the losing order is never told; it stays PENDING
        assert (await placement.get_order(order["id"]))["status"] == "PENDING"
    assert sorted(outcomes) == ["REJECTED", "RESERVED"]


async def test_unknown_product_fails_validation_before_any_write(engine, placement, publisher):
    with pytest.raises(ValidationError, match="Product not found or inactive: 99"):
        await placement.place_order(1, [{"productId": 99, "quantity": 1}])

    assert await database.fetch_orders_by_user(1) == []
    assert publisher.messages == []


async def test_inactive_product_fails_validation(engine, placement):
    await engine.upsert(40, 10)

    with pytest.raises(ValidationError, match="Product not found or inactive: 40"):
        await placement.place_order(1, [{"productId": 40, "quantity": 1}])


async def test_unknown_user_is_not_found(engine, placement, publisher):
    await engine.upsert(10, 5)

    with pytest.raises(NotFoundError):
        await placement.place_order(77, [{"productId": 10, "quantity": 1}])

    assert publisher.messages == []


async def test_non_positive_quantity_is_rejected(engine, placement):
    with pytest.raises(ValidationError):
        await placement.place_order(1, [{"productId": 10, "quantity": 0}])


async def test_empty_order_is_rejected(engine, placement):
    with pytest.raises(ValidationError):
        await placement.place_order(1, [])


async def test_total_is_the_sum_of_line_subtotals(engine, placement, publisher):
    await engine.upsert(10, 5)
    await engine.upsert(30, 5)

    order = await placement.place_order(1, [{"productId": 10, "quantity": 3}, {"productId": 30, "quantity": 2}])

    assert [i["subtotal"] for i in order["items"]] == ["29.97", "25.00"]
    assert order["totalAmount"] == "54.97"
    payload = json.loads(publisher.payloads[0])
    assert [i["productId"] for i in payload["items"]] == [10, 30]
    assert payload["totalAmount"] == 54.97


async def test_publish_failure_keeps_the_order_without_an_event(engine, placement, publisher):
    await engine.upsert(10, 5)
    publisher.fail = True

    order = await placement.place_order(1, [{"productId": 10, "quantity": 1}])

    assert publisher.messages == []
    stored = await placement.get_order(order["id"])
    assert stored["status"] == "PENDING"
    assert (await engine.get(10))["reserved"] == 0


async def test_remote_timeout_is_a_validation_failure(engine, publisher):
    await engine.upsert(10, 5)
    slow = OrderPlacement(
        users=FakeUsers({1}, delay=1.0),
        products=FakeProducts(CATALOG),
        stock=LocalStockChecker(engine),
        publisher=publisher,
        remote_timeout=0.05,
    )

    with pytest.raises(ValidationError, match="Timed out"):
        await slow.place_order(1, [{"productId": 10, "quantity": 1}])

    assert await database.fetch_orders_by_user(1) == []


async def test_orders_are_listed_per_user(engine, placement):
    await engine.upsert(10, 10)
    a = await placement.place_order(1, [{"productId": 10, "quantity": 1}])
    b = await placement.place_order(1, [{"productId": 10, "quantity": 2}])
    await placement.place_order(2, [{"productId": 10, "quantity": 1}])

    orders = await placement.orders_for_user(1)

    assert [o["id"] for o in orders] == [a["id"], b["id"]]


async def test_missing_order_is_not_found(db, placement):
    with pytest.raises(NotFoundError):
        await placement.get_order(12345)
