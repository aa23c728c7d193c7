# benefit_booking/services/booking_engine.py
"""
Booking Engine

Executes book, cancel, check-in and no-show as single atomic transactions
and owns the booking state machine:

    booked -> cancelled | checked_in | no_show

Only ``booked`` is non-terminal. Every transition out of it is a
compare-and-set on the booking row issued before any side effect, so when
two transitions race exactly one applies its effects and the other gets
InvalidTransition with nothing changed.

The engine never retries. Each operation is all-or-nothing, so callers wrap
it in ``with_db_retry`` and re-run it whole on transient failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings as app_settings
from ..core.credit_lock import credit_lock
from ..core.exceptions import (
    AlreadyBooked,
    BookingNotFound,
    ConcurrentUpdateError,
    ConflictException,
    DomainException,
    ForbiddenException,
    InternalConsistencyFault,
    InvalidTransition,
    RepositoryException,
    SlotInactive,
)
from ..core.timezone_utils import ensure_utc, facility_today, utc_now
from ..core.ulid_helper import generate_ulid
from ..models.booking import Booking, BookingStatus
from ..models.penalty import NoShowPenalty
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import CallerContext
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .benefit_settings_service import BenefitSettingsService
from .booking_policy import (
    CancellationOutcome,
    can_book,
    evaluate_cancellation,
    evaluate_no_show,
    penalty_reason_for,
)
from .credit_ledger import CreditLedger, GrantTrace
from .slot_directory import SlotDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """A cancelled or no-show booking together with the policy outcome applied to it."""

    booking: Booking
    outcome: CancellationOutcome


@dataclass(frozen=True)
class NoShowSweepResult:
    marked: int = 0
    skipped: int = 0
    failed: int = 0


class BookingEngine(BaseService):
    """Book, cancel, check in and mark no-shows against slots and credits."""

    def __init__(
        self,
        db: Session,
        slot_directory: Optional[SlotDirectory] = None,
        credit_ledger: Optional[CreditLedger] = None,
        settings_service: Optional[BenefitSettingsService] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.penalty_repository = RepositoryFactory.create_base_repository(db, NoShowPenalty)
        self.slot_directory = slot_directory or SlotDirectory(db)
        self.credit_ledger = credit_ledger or CreditLedger(db)
        self.settings_service = settings_service or BenefitSettingsService(db)

    # Book

    @BaseService.measure_operation("book")
    def book(
        self,
        member_id: str,
        slot_id: str,
        *,
        now: Optional[datetime] = None,
        branch_id: Optional[str] = None,
        membership_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Reserve a seat, debit one credit and create the booking, all or nothing.

        A repeated ``idempotency_key`` returns the booking the first request
        created instead of applying effects again.

        Raises:
            SlotNotFound, SlotInactive, SlotFull: slot cannot take the booking
            AlreadyBooked: member already holds a booked seat in the slot
            BookingWindowClosed, DailyLimitExceeded, BufferConflict: policy refused
            InsufficientCredits: not enough usable credits
            ConcurrentUpdateError: lost a race on credits; retry whole
        """
        now = ensure_utc(now or utc_now())

        if idempotency_key:
            existing = self.booking_repository.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replayed(existing, member_id, slot_id, idempotency_key)

        slot = self.slot_directory.get_slot(slot_id, branch_id)
        if not slot.is_active:
            raise SlotInactive(slot_id)

        duplicate = self.booking_repository.find_booked_for_member_slot(
            member_id=member_id, slot_id=slot_id
        )
        if duplicate is not None:
            raise AlreadyBooked(member_id, slot_id, duplicate.id)

        settings = self.settings_service.get_snapshot(
            slot.branch_id, slot.benefit_type, slot.benefit_type_id
        )

        with credit_lock(member_id, slot.benefit_type) as acquired:
            if not acquired:
                raise ConcurrentUpdateError(
                    "Another booking for this member is in progress",
                    details={"member_id": member_id, "benefit_type": slot.benefit_type},
                )
            booking_id = generate_ulid()
            try:
                with self.transaction():
                    # Daily limit and buffer are checked with the member's grants locked
                    self.credit_ledger.lock_member_grants(member_id, slot.benefit_type, now=now)
                    active = self.booking_repository.get_member_active_bookings(
                        member_id=member_id,
                        benefit_type=slot.benefit_type,
                        date_from=slot.slot_date - timedelta(days=1),
                        date_to=slot.slot_date + timedelta(days=1),
                    )
                    can_book(member_id, slot, now, settings, active)
                    self.slot_directory.reserve_seat(slot_id)
                    self.credit_ledger.consume(
                        member_id,
                        slot.benefit_type,
                        1,
                        now=now,
                        booking_id=booking_id,
                        use_transaction=False,
                    )
                    booking = self.booking_repository.create(
                        id=booking_id,
                        slot_id=slot_id,
                        member_id=member_id,
                        membership_id=membership_id,
                        branch_id=slot.branch_id,
                        benefit_type=slot.benefit_type,
                        status=BookingStatus.BOOKED.value,
                        idempotency_key=idempotency_key,
                        notes=notes,
                        booked_at=now,
                    )
            except IntegrityError as exc:
                return self._resolve_insert_conflict(exc, member_id, slot_id, idempotency_key)

        prometheus_metrics.inc_booking_transition("book")
        self.logger.info(
            "Booking created",
            extra={"booking_id": booking.id, "member_id": member_id, "slot_id": slot_id},
        )
        return booking

    def _replayed(
        self, existing: Booking, member_id: str, slot_id: str, idempotency_key: str
    ) -> Booking:
        if existing.member_id != member_id or existing.slot_id != slot_id:
            raise ConflictException(
                "Idempotency key was already used for a different booking",
                code="IDEMPOTENCY_KEY_REUSED",
                details={"idempotency_key": idempotency_key, "booking_id": existing.id},
            )
        self.logger.info(
            "Replayed booking request", extra={"booking_id": existing.id, "member_id": member_id}
        )
        return existing

    def _resolve_insert_conflict(
        self,
        exc: IntegrityError,
        member_id: str,
        slot_id: str,
        idempotency_key: Optional[str],
    ) -> Booking:
        # The transaction was rolled back: no seat and no debit remain
        if idempotency_key:
            existing = self.booking_repository.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replayed(existing, member_id, slot_id, idempotency_key)
        duplicate = self.booking_repository.find_booked_for_member_slot(
            member_id=member_id, slot_id=slot_id
        )
        raise AlreadyBooked(member_id, slot_id, duplicate.id if duplicate else None) from exc

    # Transitions

    def get_booking(self, booking_id: str, caller: Optional[CallerContext] = None) -> Booking:
        booking = self.booking_repository.get_with_slot(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if caller is not None and not caller.can_act_for(booking.member_id, booking.branch_id):
            # Callers must not learn whether bookings outside their reach exist
            raise BookingNotFound(booking_id)
        return booking

    def _require_booked(self, booking: Booking, event: str) -> None:
        if booking.status != BookingStatus.BOOKED.value:
            raise InvalidTransition(booking.id, booking.status, event)

    def _compare_and_set(
        self,
        booking: Booking,
        new_status: BookingStatus,
        event: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> None:
        if self.booking_repository.transition_from_booked(
            booking_id=booking.id, new_status=new_status, at=now, cancellation_reason=reason
        ):
            prometheus_metrics.inc_booking_transition(event)
            return
        prometheus_metrics.inc_booking_transition(event, "lost_race")
        current = self.booking_repository.get_with_slot(booking.id)
        raise InvalidTransition(
            booking.id,
            current.status if current is not None else booking.status,
            event,
            reason="the booking was changed by another request",
        )

    def _origin_trace(self, booking: Booking) -> GrantTrace:
        trace = self.credit_ledger.get_origin_trace(booking.id)
        if not trace.total:
            self.logger.error(
                "Booking has no debit trace", extra={"booking_id": booking.id, "slot_id": booking.slot_id}
            )
            raise InternalConsistencyFault(
                "Booking has no recorded credit debit",
                details={"booking_id": booking.id},
            )
        return trace

    def _settle(
        self,
        booking: Booking,
        outcome: CancellationOutcome,
        trace: GrantTrace,
        event: str,
        now: datetime,
    ) -> None:
        if outcome.refund_credit:
            self.credit_ledger.refund(
                booking.member_id,
                booking.benefit_type,
                trace.total,
                trace,
                now=now,
                booking_id=booking.id,
                use_transaction=False,
            )
        elif outcome.forfeit_credit:
            self.credit_ledger.forfeit(
                booking.member_id,
                booking.benefit_type,
                trace,
                now=now,
                booking_id=booking.id,
                use_transaction=False,
            )
        if outcome.has_penalty:
            self.penalty_repository.create(
                booking_id=booking.id,
                member_id=booking.member_id,
                branch_id=booking.branch_id,
                amount=outcome.penalty_amount,
                reason=penalty_reason_for(event).value,
                created_at=now,
            )

    @BaseService.measure_operation("cancel")
    def cancel(
        self,
        booking_id: str,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        caller: Optional[CallerContext] = None,
    ) -> TransitionResult:
        """
        Cancel a booked booking before its slot ends.

        Releases the seat; refunds or forfeits the credit and records a
        penalty according to the outcome at ``now``.
        """
        now = ensure_utc(now or utc_now())
        booking = self.get_booking(booking_id, caller)
        self._require_booked(booking, "cancel")
        slot = booking.slot
        if now >= slot.end_at:
            raise InvalidTransition(
                booking.id, booking.status, "cancel", reason="the slot has already ended"
            )

        settings = self.settings_service.get_snapshot(
            slot.branch_id, slot.benefit_type, slot.benefit_type_id
        )
        outcome = evaluate_cancellation(slot.start_at, now, settings)
        trace = self._origin_trace(booking)

        with self.transaction():
            self._compare_and_set(booking, BookingStatus.CANCELLED, "cancel", now, reason)
            self.slot_directory.release_seat(slot.id)
            self._settle(booking, outcome, trace, "cancel", now)

        self.logger.info(
            "Booking cancelled",
            extra={
                "booking_id": booking_id,
                "member_id": booking.member_id,
                "is_free": outcome.is_free,
                "policy_basis": outcome.policy_basis,
            },
        )
        return TransitionResult(booking=self._reload(booking_id), outcome=outcome)

    @BaseService.measure_operation("check_in")
    def check_in(
        self,
        booking_id: str,
        *,
        now: Optional[datetime] = None,
        caller: Optional[CallerContext] = None,
    ) -> Booking:
        """Stamp attendance. No seat or credit change: the seat stays consumed."""
        now = ensure_utc(now or utc_now())
        booking = self.get_booking(booking_id, caller)
        self._require_booked(booking, "check in")
        slot = booking.slot
        opens_at = slot.start_at - timedelta(minutes=app_settings.check_in_grace_minutes)
        if now < opens_at:
            raise InvalidTransition(
                booking.id,
                booking.status,
                "check in",
                reason=f"check-in opens {app_settings.check_in_grace_minutes} minutes before start",
            )
        if now > slot.end_at:
            raise InvalidTransition(
                booking.id, booking.status, "check in", reason="the slot has already ended"
            )

        with self.transaction():
            self._compare_and_set(booking, BookingStatus.CHECKED_IN, "check_in", now)

        self.log_operation("check_in", booking_id=booking_id, member_id=booking.member_id)
        return self._reload(booking_id)

    @BaseService.measure_operation("mark_no_show")
    def mark_no_show(
        self,
        booking_id: str,
        *,
        now: Optional[datetime] = None,
        caller: Optional[CallerContext] = None,
    ) -> TransitionResult:
        """
        Mark a booked booking whose grace period has passed as a no-show.

        Staff only when a caller is given (the scheduler passes none). A
        second call finds the booking terminal and raises InvalidTransition,
        so the seat is released and the penalty recorded exactly once.
        """
        now = ensure_utc(now or utc_now())
        if caller is not None and not caller.is_staff:
            raise ForbiddenException(
                "Only staff can mark a no-show", code="STAFF_ONLY", details={"booking_id": booking_id}
            )
        booking = self.get_booking(booking_id, caller)
        self._require_booked(booking, "mark no-show for")
        slot = booking.slot
        grace_ends = slot.start_at + timedelta(minutes=app_settings.no_show_grace_minutes)
        if now <= grace_ends:
            raise InvalidTransition(
                booking.id,
                booking.status,
                "mark no-show for",
                reason=f"the {app_settings.no_show_grace_minutes} minute grace period has not passed",
            )

        settings = self.settings_service.get_snapshot(
            slot.branch_id, slot.benefit_type, slot.benefit_type_id
        )
        outcome = evaluate_no_show(settings)
        trace = self._origin_trace(booking)

        with self.transaction():
            self._compare_and_set(booking, BookingStatus.NO_SHOW, "no_show", now)
            self.slot_directory.release_seat(slot.id)
            self._settle(booking, outcome, trace, "no_show", now)

        self.logger.info(
            "Booking marked as no-show",
            extra={"booking_id": booking_id, "member_id": booking.member_id},
        )
        return TransitionResult(booking=self._reload(booking_id), outcome=outcome)

    def _reload(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_with_slot(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    @BaseService.measure_operation("sweep_no_shows")
    def sweep_no_shows(self, now: Optional[datetime] = None, *, limit: int = 500) -> NoShowSweepResult:
        """
        Mark every overdue booked booking as a no-show.

        A booking that was checked in or cancelled meanwhile is skipped; any
        other per-booking failure is logged and counted, and the sweep moves on.
        """
        now = ensure_utc(now or utc_now())
        grace = timedelta(minutes=app_settings.no_show_grace_minutes)
        marked = skipped = failed = 0

        for booking_id in self.booking_repository.get_booked_ids_up_to(
            facility_today(now), limit=limit
        ):
            booking = self.booking_repository.get_with_slot(booking_id)
            if booking is None or booking.slot is None or now <= booking.slot.start_at + grace:
                continue
            try:
                self.mark_no_show(booking_id, now=now)
                marked += 1
            except InvalidTransition:
                skipped += 1
            except (DomainException, RepositoryException) as exc:
                failed += 1
                self.logger.error(
                    "No-show sweep failed for booking",
                    extra={"booking_id": booking_id, "error": str(exc), "error_type": type(exc).__name__},
                )

        if marked or failed:
            self.logger.info(
                "No-show sweep finished: %d marked, %d skipped, %d failed", marked, skipped, failed
            )
        return NoShowSweepResult(marked=marked, skipped=skipped, failed=failed)

    def get_member_bookings(
        self, member_id: str, statuses: Optional[Sequence[BookingStatus]] = None
    ) -> List[Booking]:
        return self.booking_repository.get_member_bookings(member_id=member_id, statuses=statuses)
