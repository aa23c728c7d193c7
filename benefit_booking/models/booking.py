# benefit_booking/models/booking.py
"""
Benefit booking model.

A booking holds one seat in one slot for one member. Bookings are never
deleted: a terminal transition stamps the row and leaves it as audit trail.

The lifecycle is stored as a tagged state, ``status`` plus the single
timestamp of the active variant (``status_changed_at``). Check constraints
make combinations such as "checked in and no-show" unrepresentable, and
``Booking.state`` exposes the variant as a value object.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Optional, Union

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses. Everything but BOOKED is terminal."""

    BOOKED = "booked"
    CANCELLED = "cancelled"
    CHECKED_IN = "checked_in"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = (BookingStatus.BOOKED.value, BookingStatus.CHECKED_IN.value)


@dataclass(frozen=True)
class Booked:
    status = BookingStatus.BOOKED


@dataclass(frozen=True)
class Cancelled:
    at: datetime
    reason: Optional[str] = None
    status = BookingStatus.CANCELLED


@dataclass(frozen=True)
class CheckedIn:
    at: datetime
    status = BookingStatus.CHECKED_IN


@dataclass(frozen=True)
class NoShow:
    at: datetime
    status = BookingStatus.NO_SHOW


BookingState = Union[Booked, Cancelled, CheckedIn, NoShow]


class Booking(Base):
    __tablename__ = "benefit_bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    slot_id = Column(String(26), ForeignKey("benefit_slots.id"), nullable=False, index=True)
    member_id = Column(String(64), nullable=False, index=True)
    membership_id = Column(String(64), nullable=True)
    branch_id = Column(String(64), nullable=False)
    benefit_type = Column(String(32), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.BOOKED.value, index=True)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Client-supplied key so a retried book request cannot create a second booking
    idempotency_key = Column(String(128), nullable=True, unique=True)
    version = Column(Integer, nullable=False, default=1, server_default="1")

    booked_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    slot = relationship("BenefitSlot", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN ('booked', 'cancelled', 'checked_in', 'no_show')",
            name="ck_benefit_bookings_status",
        ),
        CheckConstraint(
            "(status = 'booked' AND status_changed_at IS NULL) "
            "OR (status <> 'booked' AND status_changed_at IS NOT NULL)",
            name="ck_benefit_bookings_state_timestamp",
        ),
        CheckConstraint(
            "cancellation_reason IS NULL OR status = 'cancelled'",
            name="ck_benefit_bookings_reason_only_when_cancelled",
        ),
        Index(
            "uq_benefit_bookings_active_member_slot",
            "slot_id",
            "member_id",
            unique=True,
            postgresql_where=text("status = 'booked'"),
            sqlite_where=text("status = 'booked'"),
        ),
        Index("ix_benefit_bookings_member_status", "member_id", "status"),
    )

    @property
    def state(self) -> BookingState:
        status = BookingStatus(self.status)
        if status is BookingStatus.BOOKED:
            return Booked()
        at = ensure_utc(self.status_changed_at)
        if status is BookingStatus.CANCELLED:
            return Cancelled(at=at, reason=self.cancellation_reason)
        if status is BookingStatus.CHECKED_IN:
            return CheckedIn(at=at)
        return NoShow(at=at)

    @property
    def is_terminal(self) -> bool:
        return self.status != BookingStatus.BOOKED.value

    def _stamp_for(self, status: BookingStatus) -> Optional[datetime]:
        if self.status == status.value and self.status_changed_at is not None:
            return ensure_utc(self.status_changed_at)
        return None

    @property
    def cancelled_at(self) -> Optional[datetime]:
        return self._stamp_for(BookingStatus.CANCELLED)

    @property
    def check_in_at(self) -> Optional[datetime]:
        return self._stamp_for(BookingStatus.CHECKED_IN)

    @property
    def no_show_marked_at(self) -> Optional[datetime]:
        return self._stamp_for(BookingStatus.NO_SHOW)

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: member={self.member_id}, slot={self.slot_id}, "
            f"status={self.status}>"
        )
