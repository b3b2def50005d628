import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ..common.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InventoryRecord(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= quantity", name="ck_inventory_reserved_within_quantity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def available(self) -> int:
        return self.quantity - self.reserved


class ReservationStatus(str, enum.Enum):
    CHECKED = "CHECKED"
    RESERVE_PENDING = "RESERVE_PENDING"
    RESERVED = "RESERVED"
    REJECTED = "REJECTED"


# A line arrives CHECKED (it passed the advisory check before the order was
# persisted); the consumer moves it to RESERVE_PENDING and then to a final state.
TRANSITIONS = {
    ReservationStatus.CHECKED: {ReservationStatus.RESERVE_PENDING},
    ReservationStatus.RESERVE_PENDING: {ReservationStatus.RESERVED, ReservationStatus.REJECTED},
    ReservationStatus.RESERVED: set(),
    ReservationStatus.REJECTED: set(),
}


def can_transition(current: ReservationStatus, new: ReservationStatus) -> bool:
    return new in TRANSITIONS[current]


class Reservation(Base):
    """One reservation attempt for one order line."""

    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, native_enum=False, length=32), nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
