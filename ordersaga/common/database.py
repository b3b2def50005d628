from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .db import Base
from ..inventory.model import InventoryRecord, Reservation, ReservationStatus, can_transition
from ..orders.model import Order, OrderLine, OrderStatus
from ..payments.model import PaymentRecord, PaymentStatus


# Async SQLAlchemy engine and session factory, created lazily so tests and
# workers can point at their own database
engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


def configure(db_url: Optional[str] = None) -> None:
    global engine, AsyncSessionLocal
    engine = create_async_engine(db_url or settings.DB_URL, future=True, echo=False)
    AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_sessionmaker() -> async_sessionmaker:
    if AsyncSessionLocal is None:
        configure()
    return AsyncSessionLocal


async def init_db() -> None:
    get_sessionmaker()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


# Orders

def _order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "created_at": order.created_at,
        "items": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "subtotal": line.subtotal,
            }
            for line in order.items
        ],
    }


async def create_order(user_id: int, lines: Sequence[Dict[str, Any]], total_amount: Decimal) -> Dict[str, Any]:
    """Persist an order and its lines as one transaction, status PENDING."""
    async with get_sessionmaker()() as session:
        async with session.begin():
            order = Order(
                user_id=user_id,
                status=OrderStatus.PENDING,
                total_amount=total_amount,
                items=[
                    OrderLine(
                        product_id=line["product_id"],
                        quantity=line["quantity"],
                        unit_price=line["unit_price"],
                        subtotal=line["subtotal"],
                    )
                    for line in lines
                ],
            )
            session.add(order)
            await session.flush()  # assign PKs
        return _order_to_dict(order)


async def fetch_order(order_id: int) -> Optional[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        order = await session.get(Order, order_id)
        return _order_to_dict(order) if order else None


async def fetch_orders_by_user(user_id: int) -> List[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(sa.select(Order).where(Order.user_id == user_id).order_by(Order.id))
        return [_order_to_dict(o) for o in res.scalars().all()]


# Inventory

def _inventory_to_dict(inv: InventoryRecord) -> Dict[str, Any]:
    return {
        "product_id": inv.product_id,
        "quantity": inv.quantity,
        "reserved": inv.reserved,
        "available": inv.available,
    }


async def fetch_inventory(product_id: int) -> Optional[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(sa.select(InventoryRecord).where(InventoryRecord.product_id == product_id))
        inv = res.scalar_one_or_none()
        return _inventory_to_dict(inv) if inv else None


async def fetch_all_inventory() -> List[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(sa.select(InventoryRecord).order_by(InventoryRecord.product_id))
        return [_inventory_to_dict(inv) for inv in res.scalars().all()]


async def upsert_inventory(product_id: int, quantity: int) -> bool:
    """Create the record or overwrite its quantity; reserved is untouched.

    Returns False when the record exists and the new quantity is below its
    reserved count.
    """
    for _ in range(2):
        try:
            async with get_sessionmaker()() as session:
                async with session.begin():
                    stmt = (
                        sa.update(InventoryRecord)
                        .where(InventoryRecord.product_id == product_id, InventoryRecord.reserved <= quantity)
                        .values(quantity=quantity)
                        .execution_options(synchronize_session=False)
                    )
                    res = await session.execute(stmt)
                    if (res.rowcount or 0) > 0:
                        return True
                    existing = await session.execute(
                        sa.select(InventoryRecord.id).where(InventoryRecord.product_id == product_id)
                    )
                    if existing.first() is not None:
                        return False
                    session.add(InventoryRecord(product_id=product_id, quantity=quantity, reserved=0))
            return True
        except IntegrityError:
            # Another writer created the record first; retry as an overwrite
            continue
    return False


async def try_reserve_stock(product_id: int, quantity: int) -> bool:
    """Atomically add to reserved if available stock covers it. Returns True on success."""
    async with get_sessionmaker()() as session:
        async with session.begin():
            stmt = (
                sa.update(InventoryRecord)
                .where(
                    InventoryRecord.product_id == product_id,
                    InventoryRecord.quantity - InventoryRecord.reserved >= quantity,
                )
                .values(reserved=InventoryRecord.reserved + quantity)
                .execution_options(synchronize_session=False)
            )
            res = await session.execute(stmt)
            updated = res.rowcount or 0
        return updated > 0


async def release_stock(product_id: int, quantity: int) -> bool:
    """Subtract from reserved, floored at zero. Returns False when there is no record."""
    async with get_sessionmaker()() as session:
        async with session.begin():
            stmt = (
                sa.update(InventoryRecord)
                .where(InventoryRecord.product_id == product_id)
                .values(
                    reserved=sa.case(
                        (InventoryRecord.reserved > quantity, InventoryRecord.reserved - quantity),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            res = await session.execute(stmt)
            updated = res.rowcount or 0
        return updated > 0


# Reservations

def _reservation_to_dict(r: Reservation) -> Dict[str, Any]:
    return {
        "id": r.id,
        "order_id": r.order_id,
        "product_id": r.product_id,
        "quantity": r.quantity,
        "status": r.status.value,
        "reason": r.reason,
        "created_at": r.created_at,
        "updated_at": r.updated_at,
    }


async def create_reservation(order_id: int, product_id: int, quantity: int, status: ReservationStatus) -> int:
    """Record a reservation attempt for a line that passed the advisory check."""
    if status is not ReservationStatus.CHECKED and not can_transition(ReservationStatus.CHECKED, status):
        raise ValueError(f"Reservation cannot start in state {status.value}")
    async with get_sessionmaker()() as session:
        async with session.begin():
            r = Reservation(order_id=order_id, product_id=product_id, quantity=quantity, status=status)
            session.add(r)
            await session.flush()
            return int(r.id)


async def update_reservation_status(
    reservation_id: int, status: ReservationStatus, reason: Optional[str] = None
) -> None:
    async with get_sessionmaker()() as session:
        async with session.begin():
            r = await session.get(Reservation, reservation_id)
            if r is None:
                return
            if not can_transition(r.status, status):
                raise ValueError(f"Illegal reservation transition {r.status.value} -> {status.value}")
            r.status = status
            r.reason = reason


async def fetch_reservations_by_order(order_id: int) -> List[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(
            sa.select(Reservation).where(Reservation.order_id == order_id).order_by(Reservation.id)
        )
        return [_reservation_to_dict(r) for r in res.scalars().all()]


# Payments

def _payment_to_dict(p: PaymentRecord) -> Dict[str, Any]:
    return {
        "id": p.id,
        "order_id": p.order_id,
        "user_id": p.user_id,
        "amount": p.amount,
        "status": p.status.value,
        "transaction_id": p.transaction_id,
        "created_at": p.created_at,
    }


async def create_payment(order_id: int, user_id: int, amount: Decimal, transaction_id: str) -> Dict[str, Any]:
    async with get_sessionmaker()() as session:
        async with session.begin():
            p = PaymentRecord(
                order_id=order_id,
                user_id=user_id,
                amount=amount,
                status=PaymentStatus.COMPLETED,
                transaction_id=transaction_id,
            )
            session.add(p)
            await session.flush()
        return _payment_to_dict(p)


async def fetch_payment(payment_id: int) -> Optional[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        p = await session.get(PaymentRecord, payment_id)
        return _payment_to_dict(p) if p else None


async def fetch_payments_by_order(order_id: int) -> List[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(
            sa.select(PaymentRecord).where(PaymentRecord.order_id == order_id).order_by(PaymentRecord.id)
        )
        return [_payment_to_dict(p) for p in res.scalars().all()]


async def fetch_payments_by_user(user_id: int) -> List[Dict[str, Any]]:
    async with get_sessionmaker()() as session:
        res = await session.execute(
            sa.select(PaymentRecord).where(PaymentRecord.user_id == user_id).order_by(PaymentRecord.id)
        )
        return [_payment_to_dict(p) for p in res.scalars().all()]


async def payment_exists_for_order(order_id: int) -> bool:
    async with get_sessionmaker()() as session:
        res = await session.execute(sa.select(PaymentRecord.id).where(PaymentRecord.order_id == order_id).limit(1))
        return res.first() is not None
