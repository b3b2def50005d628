"""Tests for the inventory and payment consumers of OrderPlaced."""
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from ordersaga.common import database
from ordersaga.common.events import OrderPlacedEvent, OrderPlacedItem
from ordersaga.inventory.model import ReservationStatus, can_transition
from ordersaga.payments.service import PaymentRecorder


def _payload(order_id, lines, user_id=1):
    items = [OrderPlacedItem(product_id=p, quantity=q, price=Decimal(price)) for p, q, price in lines]
    total = sum((i.price * i.quantity for i in items), Decimal("0.00"))
    return OrderPlacedEvent(order_id=order_id, user_id=user_id, items=items, total_amount=total).to_bytes()


async def test_duplicate_delivery_reserves_twice(engine, inventory_handler):
    await engine.upsert(10, 10)
    payload = _payload(1, [(10, 2, "9.99")])

    await inventory_handler.handle(payload)
    await inventory_handler.handle(payload)

    assert (await engine.get(10))["reserved"] == 4
    statuses = [r["status"] for r in await engine.reservations_for_order(1)]
    assert statuses == ["RESERVED", "RESERVED"]


async def test_duplicate_delivery_can_lose_against_its_own_first_reservation(engine, inventory_handler):
    await engine.upsert(10, 3)
    payload = _payload(1, [(10, 2, "9.99")])

    await inventory_handler.handle(payload)
    await inventory_handler.handle(payload)

    assert (await engine.get(10))["reserved"] == 2
    reservations = await engine.reservations_for_order(1)
    assert [r["status"] for r in reservations] == ["RESERVED", "REJECTED"]
    assert reservations[1]["reason"] == "insufficient_stock"


async def test_failed_line_stops_the_order_without_rolling_back_earlier_lines(engine, inventory_handler):
    await engine.upsert(10, 5)
    await engine.upsert(20, 1)
    await engine.upsert(30, 5)

    await inventory_handler.handle(_payload(1, [(10, 2, "9.99"), (20, 5, "5.00"), (30, 1, "12.50")]))

    assert (await engine.get(10))["reserved"] == 2
    assert (await engine.get(20))["reserved"] == 0
    assert (await engine.get(30))["reserved"] == 0
    reservations = await engine.reservations_for_order(1)
    assert [(r["productId"], r["status"]) for r in reservations] == [(10, "RESERVED"), (20, "REJECTED")]


async def test_missing_inventory_record_is_absorbed(engine, inventory_handler):
    await inventory_handler.handle(_payload(1, [(99, 1, "1.00")]))

    reservations = await engine.reservations_for_order(1)
    assert [(r["status"], r["reason"]) for r in reservations] == [("REJECTED", "NotFoundError")]


@pytest.mark.parametrize("raw", [b"{broken", b"", None, b'{"orderId": 1}'])
async def test_malformed_payloads_are_logged_and_dropped(engine, inventory_handler, payment_recorder, raw):
    await inventory_handler.handle(raw)
    await payment_recorder.handle(raw)

    assert await engine.reservations_for_order(1) == []
    assert await payment_recorder.payments_for_order(1) == []


async def test_duplicate_delivery_books_duplicate_payments(payment_recorder):
    payload = _payload(5, [(10, 2, "9.99")], user_id=3)

    await payment_recorder.handle(payload)
    await payment_recorder.handle(payload)

    payments = await payment_recorder.payments_for_order(5)
    assert len(payments) == 2
    assert payments[0]["transactionId"] != payments[1]["transactionId"]
    assert [p["amount"] for p in payments] == ["19.98", "19.98"]
    assert len(await payment_recorder.payments_for_user(3)) == 2


async def test_deduplicating_recorder_books_one_payment_per_order(db):
    recorder = PaymentRecorder(deduplicate=True)
    payload = _payload(5, [(10, 1, "9.99")])

    await recorder.handle(payload)
    await recorder.handle(payload)

    assert len(await recorder.payments_for_order(5)) == 1


async def test_payment_lookup(payment_recorder):
    await payment_recorder.handle(_payload(8, [(10, 1, "9.99")]))
    booked = (await payment_recorder.payments_for_order(8))[0]

    assert await payment_recorder.get_payment(booked["id"]) == booked


def test_reservation_state_machine():
    assert can_transition(ReservationStatus.CHECKED, ReservationStatus.RESERVE_PENDING)
    assert can_transition(ReservationStatus.RESERVE_PENDING, ReservationStatus.RESERVED)
    assert can_transition(ReservationStatus.RESERVE_PENDING, ReservationStatus.REJECTED)
    assert not can_transition(ReservationStatus.CHECKED, ReservationStatus.RESERVED)
    assert not can_transition(ReservationStatus.RESERVED, ReservationStatus.REJECTED)
    assert not can_transition(ReservationStatus.REJECTED, ReservationStatus.RESERVED)


async def test_final_reservation_states_cannot_change(db):
    reservation_id = await database.create_reservation(1, 10, 1, ReservationStatus.RESERVE_PENDING)
    await database.update_reservation_status(reservation_id, ReservationStatus.RESERVED)

    with pytest.raises(ValueError):
        await database.update_reservation_status(reservation_id, ReservationStatus.REJECTED)
    with pytest.raises(ValueError):
        await database.create_reservation(1, 10, 1, ReservationStatus.RESERVED)


async def test_store_failure_during_reserve_rejects_the_attempt(engine, inventory_handler, monkeypatch):
    await engine.upsert(10, 5)
    await engine.upsert(20, 5)

    async def locked(product_id, quantity):
        raise OperationalError("UPDATE inventory", {}, Exception("database is locked"))

    monkeypatch.setattr(database, "try_reserve_stock", locked)

    await inventory_handler.handle(_payload(1, [(10, 1, "9.99"), (20, 1, "5.00")]))

    reservations = await engine.reservations_for_order(1)
    assert [(r["productId"], r["status"], r["reason"]) for r in reservations] == [
        (10, "REJECTED", "OperationalError")
    ]
    assert (await engine.get(10))["reserved"] == 0
