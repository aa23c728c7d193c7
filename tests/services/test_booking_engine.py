"""
Tests for BookingEngine: the booking lifecycle end to end against SQLite.
"""

from datetime import time, timedelta
from decimal import Decimal

import pytest
from tests.helpers.booking_factories import (
    BRANCH_ID,
    MEMBER_ID,
    OTHER_MEMBER_ID,
    SAUNA,
    SLOT_END,
    SLOT_START,
    STAFF_ID,
    minutes_before_start,
)

from benefit_booking.core.enums import NoShowPolicy, RoleName
from benefit_booking.core.exceptions import (
    AlreadyBooked,
    BookingNotFound,
    BookingWindowClosed,
    ConflictException,
    DailyLimitExceeded,
    ForbiddenException,
    InsufficientCredits,
    InternalConsistencyFault,
    InvalidTransition,
    SlotFull,
    SlotInactive,
    SlotNotFound,
)
from benefit_booking.models.booking import Booking, BookingStatus, Cancelled, CheckedIn, NoShow
from benefit_booking.models.credit import CreditLedgerEntry, MemberBenefitCredit
from benefit_booking.models.penalty import NoShowPenalty
from benefit_booking.models.slot import BenefitSlot
from benefit_booking.principal import CallerContext
from benefit_booking.services.booking_engine import BookingEngine

BOOK_AT = minutes_before_start(120)
MEMBER = CallerContext(member_id=MEMBER_ID)
STAFF = CallerContext(member_id=STAFF_ID, role=RoleName.STAFF, branch_id=BRANCH_ID)


@pytest.fixture
def engine(db) -> BookingEngine:
    return BookingEngine(db)


def _remaining(db, grant_id: str) -> int:
    db.expire_all()
    return db.get(MemberBenefitCredit, grant_id).credits_remaining


def _booked_count(db, slot_id: str) -> int:
    db.expire_all()
    return db.get(BenefitSlot, slot_id).booked_count


class TestBook:
    def test_book_then_free_cancel_restores_everything(self, db, engine, make_slot, make_grant, make_settings):
        make_settings(cancellation_deadline_minutes=60)
        slot = make_slot(capacity=1)
        grant = make_grant(remaining=1)

        booking = engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        assert booking.status == BookingStatus.BOOKED.value
        assert booking.booked_at == BOOK_AT
        assert _remaining(db, grant.id) == 0
        assert _booked_count(db, slot.id) == 1

        result = engine.cancel(booking.id, now=minutes_before_start(90), caller=MEMBER)

        assert result.outcome.is_free is True
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert isinstance(result.booking.state, Cancelled)
        assert _remaining(db, grant.id) == 1
        assert _booked_count(db, slot.id) == 0

    def test_late_cancel_with_forfeit_policy_keeps_credit_consumed(
        self, db, engine, make_slot, make_grant, make_settings
    ):
        make_settings(
            cancellation_deadline_minutes=60, no_show_policy=NoShowPolicy.FORFEIT_CREDIT.value
        )
        slot = make_slot(capacity=1)
        grant = make_grant(remaining=1)
        booking = engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        result = engine.cancel(booking.id, now=minutes_before_start(10), caller=MEMBER)

        assert result.outcome.is_free is False
        assert result.outcome.forfeit_credit is True
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert _remaining(db, grant.id) == 0
        assert _booked_count(db, slot.id) == 0
        assert db.query(CreditLedgerEntry).filter_by(booking_id=booking.id, entry_type="forfeit").count() == 1

    def test_late_cancel_with_monetary_penalty_records_penalty(
        self, db, engine, make_slot, make_grant, make_settings
    ):
        make_settings(
            no_show_policy=NoShowPolicy.MONETARY_PENALTY.value,
            no_show_penalty_amount=Decimal("12.50"),
        )
        slot = make_slot()
        grant = make_grant(remaining=1)
        booking = engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        result = engine.cancel(booking.id, reason="Running late", now=minutes_before_start(5), caller=MEMBER)

        assert result.outcome.penalty_amount == Decimal("12.50")
        assert result.booking.cancellation_reason == "Running late"
        assert _remaining(db, grant.id) == 1
        penalty = db.query(NoShowPenalty).filter_by(booking_id=booking.id).one()
        assert penalty.reason == "late_cancellation"
        assert Decimal(str(penalty.amount)) == Decimal("12.50")

    def test_book_without_credits_leaves_no_trace(self, db, engine, make_slot):
        slot = make_slot()

        with pytest.raises(InsufficientCredits):
            engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        assert _booked_count(db, slot.id) == 0
        assert db.query(Booking).count() == 0

    def test_full_slot(self, engine, make_slot, make_grant):
        slot = make_slot(capacity=1, booked_count=1)
        make_grant(remaining=1)

        with pytest.raises(SlotFull):
            engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

    def test_inactive_and_missing_slot(self, engine, make_slot, make_grant):
        make_grant(remaining=2)
        inactive = make_slot(is_active=False)

        with pytest.raises(SlotInactive):
            engine.book(MEMBER_ID, inactive.id, now=BOOK_AT)
        with pytest.raises(SlotNotFound):
            engine.book(MEMBER_ID, "01HZZZZZZZZZZZZZZZZZZZZZZZ", now=BOOK_AT)

    def test_slot_from_another_branch_is_not_found(self, engine, make_slot, make_grant):
        slot = make_slot()
        make_grant(remaining=1)

        with pytest.raises(SlotNotFound):
            engine.book(MEMBER_ID, slot.id, now=BOOK_AT, branch_id="branch-elsewhere")

    def test_already_booked(self, db, engine, make_slot, make_grant, make_settings):
        make_settings(max_bookings_per_day=0)
        slot = make_slot(capacity=3)
        grant = make_grant(remaining=3)
        engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        with pytest.raises(AlreadyBooked):
            engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        assert _remaining(db, grant.id) == 2
        assert _booked_count(db, slot.id) == 1

    def test_rebook_after_cancel(self, engine, make_slot, make_grant):
        slot = make_slot()
        make_grant(remaining=1)
        first = engine.book(MEMBER_ID, slot.id, now=BOOK_AT)
        engine.cancel(first.id, now=minutes_before_start(100))

        second = engine.book(MEMBER_ID, slot.id, now=minutes_before_start(95))

        assert second.id != first.id
        assert second.status == BookingStatus.BOOKED.value

    def test_policy_refusals(self, engine, make_slot, make_grant, make_settings):
        make_settings(booking_opens_hours_before=1, max_bookings_per_day=1)
        morning = make_slot(start_time=time(8, 0), end_time=time(9, 0))
        slot = make_slot()
        make_grant(remaining=2)

        with pytest.raises(BookingWindowClosed):
            engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

        engine.book(MEMBER_ID, morning.id, now=morning.start_at - timedelta(minutes=30))
        with pytest.raises(DailyLimitExceeded):
            engine.book(MEMBER_ID, slot.id, now=minutes_before_start(30))

    def test_idempotent_replay_returns_same_booking(self, db, engine, make_slot, make_grant):
        slot = make_slot(capacity=2)
        grant = make_grant(remaining=2)

        first = engine.book(MEMBER_ID, slot.id, now=BOOK_AT, idempotency_key="req-000001")
        replay = engine.book(MEMBER_ID, slot.id, now=BOOK_AT, idempotency_key="req-000001")

        assert replay.id == first.id
        assert _remaining(db, grant.id) == 1
        assert _booked_count(db, slot.id) == 1

    def test_idempotency_key_reused_for_other_slot(self, engine, make_slot, make_grant, make_settings):
        make_settings(max_bookings_per_day=0)
        slot = make_slot()
        other = make_slot(start_time=time(14, 0), end_time=time(15, 0))
        make_grant(remaining=2)
        engine.book(MEMBER_ID, slot.id, now=BOOK_AT, idempotency_key="req-000001")

        with pytest.raises(ConflictException) as exc_info:
            engine.book(MEMBER_ID, other.id, now=BOOK_AT, idempotency_key="req-000001")

        assert exc_info.value.code == "IDEMPOTENCY_KEY_REUSED"


class TestTransitions:
    @pytest.fixture
    def booking(self, engine, make_slot, make_grant, make_settings) -> Booking:
        make_settings(no_show_policy=NoShowPolicy.FORFEIT_CREDIT.value)
        slot = make_slot(capacity=2)
        make_grant(remaining=1)
        return engine.book(MEMBER_ID, slot.id, now=BOOK_AT)

    def test_check_in_window(self, db, engine, booking):
        with pytest.raises(InvalidTransition):
            engine.check_in(booking.id, now=minutes_before_start(16), caller=MEMBER)

        checked_in = engine.check_in(booking.id, now=minutes_before_start(15), caller=MEMBER)

        assert checked_in.status == BookingStatus.CHECKED_IN.value
        assert isinstance(checked_in.state, CheckedIn)
        assert checked_in.check_in_at == minutes_before_start(15)
        # Attendance keeps the seat
        assert _booked_count(db, booking.slot_id) == 1

    def test_check_in_after_slot_end_rejected(self, engine, booking):
        with pytest.raises(InvalidTransition):
            engine.check_in(booking.id, now=SLOT_END + timedelta(seconds=1))

    def test_cancel_after_slot_end_rejected(self, engine, booking):
        with pytest.raises(InvalidTransition):
            engine.cancel(booking.id, now=SLOT_END)

    def test_terminal_states_reject_further_transitions(self, engine, booking):
        engine.cancel(booking.id, now=minutes_before_start(90))

        with pytest.raises(InvalidTransition):
            engine.cancel(booking.id, now=minutes_before_start(80))
        with pytest.raises(InvalidTransition):
            engine.check_in(booking.id, now=SLOT_START)

    def test_no_show_after_grace(self, db, engine, booking):
        with pytest.raises(InvalidTransition):
            engine.mark_no_show(booking.id, now=SLOT_START + timedelta(minutes=15), caller=STAFF)

        result = engine.mark_no_show(booking.id, now=SLOT_START + timedelta(minutes=16), caller=STAFF)

        assert result.booking.status == BookingStatus.NO_SHOW.value
        assert isinstance(result.booking.state, NoShow)
        assert result.outcome.forfeit_credit is True
        assert _booked_count(db, booking.slot_id) == 0

    def test_no_show_is_applied_once(self, db, engine, booking):
        later = SLOT_START + timedelta(minutes=30)
        engine.mark_no_show(booking.id, now=later, caller=STAFF)

        with pytest.raises(InvalidTransition):
            engine.mark_no_show(booking.id, now=later, caller=STAFF)

        assert _booked_count(db, booking.slot_id) == 0
        assert db.query(CreditLedgerEntry).filter_by(booking_id=booking.id, entry_type="forfeit").count() == 1

    def test_no_show_after_check_in_loses(self, db, engine, booking):
        engine.check_in(booking.id, now=SLOT_START)

        with pytest.raises(InvalidTransition):
            engine.mark_no_show(booking.id, now=SLOT_START + timedelta(minutes=30))

        assert engine.get_booking(booking.id).status == BookingStatus.CHECKED_IN.value
        assert _booked_count(db, booking.slot_id) == 1

    def test_member_cannot_mark_no_show(self, engine, booking):
        with pytest.raises(ForbiddenException):
            engine.mark_no_show(booking.id, now=SLOT_START + timedelta(minutes=30), caller=MEMBER)

    def test_other_member_cannot_see_booking(self, engine, booking):
        stranger = CallerContext(member_id=OTHER_MEMBER_ID)

        with pytest.raises(BookingNotFound):
            engine.cancel(booking.id, now=minutes_before_start(90), caller=stranger)
        with pytest.raises(BookingNotFound):
            engine.get_booking(booking.id, stranger)

        assert engine.get_booking(booking.id, STAFF).id == booking.id

    def test_staff_of_another_branch_cannot_reach_booking(self, db, engine, booking):
        elsewhere = CallerContext(member_id="staff-9", role=RoleName.STAFF, branch_id="branch-9")
        overdue = SLOT_START + timedelta(minutes=30)

        with pytest.raises(BookingNotFound):
            engine.cancel(booking.id, now=minutes_before_start(90), caller=elsewhere)
        with pytest.raises(BookingNotFound):
            engine.check_in(booking.id, now=SLOT_START, caller=elsewhere)
        with pytest.raises(BookingNotFound):
            engine.mark_no_show(booking.id, now=overdue, caller=elsewhere)

        assert engine.get_booking(booking.id).status == BookingStatus.BOOKED.value
        assert _booked_count(db, booking.slot_id) == 1

    def test_staff_without_branch_is_refused_but_admin_is_not(self, engine, booking):
        unscoped = CallerContext(member_id="staff-9", role=RoleName.STAFF)
        admin = CallerContext(member_id="admin-1", role=RoleName.ADMIN)

        with pytest.raises(BookingNotFound):
            engine.get_booking(booking.id, unscoped)
        result = engine.mark_no_show(
            booking.id, now=SLOT_START + timedelta(minutes=30), caller=admin
        )
        assert result.booking.status == BookingStatus.NO_SHOW.value

    def test_missing_debit_trace_is_a_fault(self, db, engine, make_slot):
        slot = make_slot(capacity=1, booked_count=1)
        orphan = Booking(
            slot_id=slot.id,
            member_id=MEMBER_ID,
            branch_id=BRANCH_ID,
            benefit_type=SAUNA,
            status=BookingStatus.BOOKED.value,
            booked_at=BOOK_AT,
        )
        db.add(orphan)
        db.commit()

        with pytest.raises(InternalConsistencyFault):
            engine.cancel(orphan.id, now=minutes_before_start(90))

        assert engine.get_booking(orphan.id).status == BookingStatus.BOOKED.value
        assert _booked_count(db, slot.id) == 1


class TestNoShowSweep:
    def test_sweep_marks_overdue_bookings_once(self, db, engine, make_slot, make_grant, make_settings):
        make_settings(max_bookings_per_day=0)
        overdue = make_slot(capacity=2)
        attended = make_slot(capacity=2, start_time=time(8, 0), end_time=time(9, 0))
        upcoming = make_slot(capacity=2, start_time=time(15, 0), end_time=time(16, 0))
        make_grant(remaining=3)
        early = minutes_before_start(180)
        missed = engine.book(MEMBER_ID, overdue.id, now=early)
        came = engine.book(MEMBER_ID, attended.id, now=early)
        pending = engine.book(MEMBER_ID, upcoming.id, now=early)
        engine.check_in(came.id, now=attended.start_at)

        sweep_at = SLOT_START + timedelta(minutes=30)
        result = engine.sweep_no_shows(sweep_at)

        assert (result.marked, result.failed) == (1, 0)
        assert engine.get_booking(missed.id).status == BookingStatus.NO_SHOW.value
        assert engine.get_booking(came.id).status == BookingStatus.CHECKED_IN.value
        assert engine.get_booking(pending.id).status == BookingStatus.BOOKED.value

        again = engine.sweep_no_shows(sweep_at)
        assert again.marked == 0

    def test_member_bookings_listing(self, engine, make_slot, make_grant, make_settings):
        make_settings(max_bookings_per_day=0)
        first = make_slot(capacity=2)
        second = make_slot(capacity=2, start_time=time(15, 0), end_time=time(16, 0))
        make_grant(remaining=2)
        a = engine.book(MEMBER_ID, first.id, now=minutes_before_start(200))
        b = engine.book(MEMBER_ID, second.id, now=minutes_before_start(100))
        engine.cancel(a.id, now=minutes_before_start(90))

        everything = engine.get_member_bookings(MEMBER_ID)
        active = engine.get_member_bookings(MEMBER_ID, [BookingStatus.BOOKED])

        assert [x.id for x in everything] == [b.id, a.id]
        assert [x.id for x in active] == [b.id]
