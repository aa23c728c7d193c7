"""Booking, cancellation and no-show rules.

Everything here is a pure function of slot times, the decision instant and an
immutable settings snapshot. Nothing reads the clock or touches storage, so
the engine can evaluate a decision inside its transaction and tests can pin
every boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from ..core.enums import NoShowPolicy, PenaltyReason
from ..core.exceptions import BookingWindowClosed, BufferConflict, DailyLimitExceeded
from ..core.timezone_utils import ensure_utc

if TYPE_CHECKING:
    from ..models.benefit_settings import BenefitSettings
    from ..models.booking import Booking
    from ..models.slot import BenefitSlot


DEFAULT_OPERATING_HOURS_START = time(6, 0)
DEFAULT_OPERATING_HOURS_END = time(22, 0)


@dataclass(frozen=True)
class SettingsSnapshot:
    """Benefit settings for one branch and benefit type, as read at decision time."""

    branch_id: str
    benefit_type: str
    benefit_type_id: Optional[str] = None
    is_slot_booking_enabled: bool = True
    slot_duration_minutes: int = 30
    booking_opens_hours_before: int = 24
    cancellation_deadline_minutes: int = 60
    no_show_policy: NoShowPolicy = NoShowPolicy.MONETARY_PENALTY
    no_show_penalty_amount: Decimal = Decimal("0")
    max_bookings_per_day: int = 1
    buffer_between_sessions_minutes: int = 0
    operating_hours_start: time = DEFAULT_OPERATING_HOURS_START
    operating_hours_end: time = DEFAULT_OPERATING_HOURS_END
    capacity_per_slot: int = 1

    @classmethod
    def from_model(cls, row: "BenefitSettings") -> "SettingsSnapshot":
        return cls(
            branch_id=row.branch_id,
            benefit_type=row.benefit_type,
            benefit_type_id=row.benefit_type_id,
            is_slot_booking_enabled=bool(row.is_slot_booking_enabled),
            slot_duration_minutes=int(row.slot_duration_minutes),
            booking_opens_hours_before=int(row.booking_opens_hours_before),
            cancellation_deadline_minutes=int(row.cancellation_deadline_minutes),
            no_show_policy=NoShowPolicy(row.no_show_policy),
            no_show_penalty_amount=Decimal(str(row.no_show_penalty_amount or 0)),
            max_bookings_per_day=int(row.max_bookings_per_day),
            buffer_between_sessions_minutes=int(row.buffer_between_sessions_minutes),
            operating_hours_start=row.operating_hours_start,
            operating_hours_end=row.operating_hours_end,
            capacity_per_slot=int(row.capacity_per_slot),
        )


@dataclass(frozen=True)
class CancellationOutcome:
    is_free: bool
    refund_credit: bool
    forfeit_credit: bool
    penalty_amount: Decimal = Decimal("0")
    policy_basis: str = ""

    @property
    def has_penalty(self) -> bool:
        return self.penalty_amount > 0


def _late_outcome(settings: SettingsSnapshot, basis: str) -> CancellationOutcome:
    policy = settings.no_show_policy
    amount = settings.no_show_penalty_amount
    if policy is NoShowPolicy.NONE:
        return CancellationOutcome(
            is_free=True,
            refund_credit=True,
            forfeit_credit=False,
            policy_basis=f"{basis}: no penalty policy, credit refunded",
        )
    if policy is NoShowPolicy.FORFEIT_CREDIT:
        return CancellationOutcome(
            is_free=False,
            refund_credit=False,
            forfeit_credit=True,
            policy_basis=f"{basis}: credit forfeited",
        )
    if policy is NoShowPolicy.MONETARY_PENALTY:
        return CancellationOutcome(
            is_free=False,
            refund_credit=True,
            forfeit_credit=False,
            penalty_amount=amount,
            policy_basis=f"{basis}: credit refunded, penalty of {amount} charged",
        )
    return CancellationOutcome(
        is_free=False,
        refund_credit=False,
        forfeit_credit=True,
        penalty_amount=amount,
        policy_basis=f"{basis}: credit forfeited and penalty of {amount} charged",
    )


def evaluate_cancellation(
    slot_start: datetime, decision_time: datetime, settings: SettingsSnapshot
) -> CancellationOutcome:
    """
    Decide what a cancellation at ``decision_time`` costs the member.

    Cancelling at or before ``slot_start - cancellation_deadline_minutes`` is
    always free. Later cancellations follow the branch's no-show policy.
    """
    deadline = ensure_utc(slot_start) - timedelta(minutes=settings.cancellation_deadline_minutes)
    if ensure_utc(decision_time) <= deadline:
        return CancellationOutcome(
            is_free=True,
            refund_credit=True,
            forfeit_credit=False,
            policy_basis=(
                f">= {settings.cancellation_deadline_minutes} minutes before start: "
                "free cancellation"
            ),
        )
    return _late_outcome(
        settings,
        f"< {settings.cancellation_deadline_minutes} minutes before start",
    )


def evaluate_no_show(settings: SettingsSnapshot) -> CancellationOutcome:
    """A no-show is always judged as a late cancellation, never free by deadline."""
    return _late_outcome(settings, "no-show")


def penalty_reason_for(event: str) -> PenaltyReason:
    return PenaltyReason.NO_SHOW if event == "no_show" else PenaltyReason.LATE_CANCELLATION


def _overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def can_book(
    member_id: str,
    slot: "BenefitSlot",
    now: datetime,
    settings: SettingsSnapshot,
    active_bookings: Iterable["Booking"],
) -> None:
    """
    Raise if ``member_id`` may not book ``slot`` at ``now``.

    ``active_bookings`` are the member's booked/checked-in bookings of the same
    benefit type around the slot date (the day before through the day after,
    so buffers crossing midnight are caught).

    Raises:
        BookingWindowClosed: booking disabled, not yet open, or slot started
        DailyLimitExceeded: member already at the per-day limit
        BufferConflict: another booking is within the buffer of this slot
    """
    now = ensure_utc(now)
    slot_start = slot.start_at
    slot_end = slot.end_at

    if not settings.is_slot_booking_enabled:
        raise BookingWindowClosed(
            "Slot booking is disabled for this benefit",
            details={"slot_id": slot.id, "benefit_type": settings.benefit_type},
        )

    opens_at = slot_start - timedelta(hours=settings.booking_opens_hours_before)
    if now < opens_at:
        raise BookingWindowClosed(
            f"Booking opens {settings.booking_opens_hours_before} hours before the slot",
            details={"slot_id": slot.id, "opens_at": opens_at.isoformat()},
        )
    if now >= slot_start:
        raise BookingWindowClosed(
            "This slot has already started",
            details={"slot_id": slot.id, "starts_at": slot_start.isoformat()},
        )

    bookings = [b for b in active_bookings if b.member_id == member_id and b.slot is not None]

    limit = settings.max_bookings_per_day
    if limit > 0:
        same_day = sum(1 for b in bookings if b.slot.slot_date == slot.slot_date)
        if same_day >= limit:
            raise DailyLimitExceeded(limit, slot.slot_date.isoformat())

    buffer = timedelta(minutes=settings.buffer_between_sessions_minutes)
    for booking in bookings:
        other_start = booking.slot.start_at - buffer
        other_end = booking.slot.end_at + buffer
        if _overlaps(slot_start, slot_end, other_start, other_end):
            raise BufferConflict(booking.id, settings.buffer_between_sessions_minutes)
