"""
Tests for CreditLedger: consumption order, refunds, forfeits, expiry and
grant origination.
"""

from datetime import timedelta
import logging

import pytest
from tests.helpers.booking_factories import MEMBER_ID, SAUNA, SLOT_START

from benefit_booking.core.enums import GrantSource, LedgerEntryType
from benefit_booking.core.exceptions import (
    InsufficientCredits,
    InternalConsistencyFault,
    NotFoundException,
    ValidationException,
)
from benefit_booking.models.credit import CreditLedgerEntry, MemberBenefitCredit
from benefit_booking.principal import PlanEntitlement
from benefit_booking.services.credit_ledger import CreditLedger, GrantDebit, GrantTrace

NOW = SLOT_START - timedelta(hours=2)


@pytest.fixture
def ledger(db) -> CreditLedger:
    return CreditLedger(db)


def _remaining(db, grant_id: str) -> int:
    db.expire_all()
    return db.get(MemberBenefitCredit, grant_id).credits_remaining


class TestConsume:
    def test_soonest_expiring_grant_is_debited_first(self, db, ledger, make_grant):
        soon = make_grant(remaining=1, expires_at=SLOT_START + timedelta(days=1))
        later = make_grant(remaining=5, expires_at=SLOT_START + timedelta(days=30))

        trace = ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW, booking_id="bk-1")

        assert trace.entries == (GrantDebit(soon.id, 1),)
        assert _remaining(db, soon.id) == 0
        assert _remaining(db, later.id) == 5

    def test_split_across_grants_in_expiry_order(self, db, ledger, make_grant):
        soon = make_grant(remaining=1, expires_at=SLOT_START + timedelta(days=1))
        later = make_grant(remaining=5, expires_at=SLOT_START + timedelta(days=30))
        never = make_grant(remaining=3, expires_at=None, source=GrantSource.ADJUSTMENT.value)

        trace = ledger.consume(MEMBER_ID, SAUNA, 3, now=NOW, booking_id="bk-1")

        assert trace.entries == (GrantDebit(soon.id, 1), GrantDebit(later.id, 2))
        assert trace.total == 3
        assert _remaining(db, never.id) == 3

        rows = (
            db.query(CreditLedgerEntry)
            .filter_by(booking_id="bk-1")
            .order_by(CreditLedgerEntry.sequence)
            .all()
        )
        assert [(r.grant_id, r.amount, r.entry_type) for r in rows] == [
            (soon.id, 1, "debit"),
            (later.id, 2, "debit"),
        ]

    def test_insufficient_credits_debits_nothing(self, db, ledger, make_grant):
        grant = make_grant(remaining=1)

        with pytest.raises(InsufficientCredits) as exc_info:
            ledger.consume(MEMBER_ID, SAUNA, 2, now=NOW)

        assert exc_info.value.details["available"] == 1
        assert _remaining(db, grant.id) == 1
        assert db.query(CreditLedgerEntry).count() == 0

    def test_expired_and_exhausted_grants_are_skipped(self, ledger, make_grant):
        make_grant(remaining=2, expires_at=NOW - timedelta(minutes=1))
        exhausted = make_grant(remaining=2)
        exhausted.exhausted_at = NOW - timedelta(days=1)
        ledger.db.commit()

        with pytest.raises(InsufficientCredits):
            ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW)

    def test_other_benefit_types_are_not_consumed(self, ledger, make_grant):
        make_grant(benefit_type="pool_access", remaining=5)

        with pytest.raises(InsufficientCredits):
            ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW)

    def test_non_positive_amount_rejected(self, ledger):
        with pytest.raises(ValidationException):
            ledger.consume(MEMBER_ID, SAUNA, 0, now=NOW)


class TestRefund:
    def test_refund_goes_back_to_origin_grants(self, db, ledger, make_grant):
        soon = make_grant(remaining=1, expires_at=SLOT_START + timedelta(days=1))
        later = make_grant(remaining=5, expires_at=SLOT_START + timedelta(days=30))
        trace = ledger.consume(MEMBER_ID, SAUNA, 3, now=NOW, booking_id="bk-1")

        credited = ledger.refund(MEMBER_ID, SAUNA, 3, trace, now=NOW, booking_id="bk-1")

        assert credited.total == 3
        assert _remaining(db, soon.id) == 1
        assert _remaining(db, later.id) == 5

    def test_partial_refund_credits_newest_debit_first(self, db, ledger, make_grant):
        soon = make_grant(remaining=1, expires_at=SLOT_START + timedelta(days=1))
        later = make_grant(remaining=5, expires_at=SLOT_START + timedelta(days=30))
        trace = ledger.consume(MEMBER_ID, SAUNA, 3, now=NOW, booking_id="bk-1")

        credited = ledger.refund(MEMBER_ID, SAUNA, 2, trace, now=NOW, booking_id="bk-1")

        assert credited.entries == (GrantDebit(later.id, 2),)
        assert _remaining(db, soon.id) == 0
        assert _remaining(db, later.id) == 5

    def test_refund_into_expired_grant_issues_adjustment(self, db, ledger, make_grant):
        grant = make_grant(remaining=1, expires_at=NOW + timedelta(hours=1))
        trace = ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW, booking_id="bk-1")
        after_expiry = NOW + timedelta(hours=2)

        credited = ledger.refund(MEMBER_ID, SAUNA, 1, trace, now=after_expiry, booking_id="bk-1")

        assert _remaining(db, grant.id) == 0
        assert len(credited) == 1
        replacement = db.get(MemberBenefitCredit, credited.entries[0].grant_id)
        assert replacement.source == GrantSource.ADJUSTMENT.value
        assert replacement.expires_at is None
        assert replacement.credits_remaining == 1
        assert ledger.get_balance(MEMBER_ID, SAUNA, after_expiry).adjustment_credits == 1
        adjustment_rows = (
            db.query(CreditLedgerEntry)
            .filter_by(booking_id="bk-1", entry_type=LedgerEntryType.ADJUSTMENT.value)
            .all()
        )
        assert len(adjustment_rows) == 1

    def test_refund_above_consumed_is_a_fault(self, ledger, make_grant):
        make_grant(remaining=2)
        trace = ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW, booking_id="bk-1")

        with pytest.raises(InternalConsistencyFault):
            ledger.refund(MEMBER_ID, SAUNA, 2, trace, now=NOW, booking_id="bk-1")

    def test_refund_above_grant_total_is_a_fault(self, db, ledger, make_grant):
        grant = make_grant(remaining=1)
        forged = GrantTrace((GrantDebit(grant.id, 1),))

        with pytest.raises(InternalConsistencyFault):
            ledger.refund(MEMBER_ID, SAUNA, 1, forged, now=NOW, booking_id="bk-x")
        assert _remaining(db, grant.id) == 1

    def test_refund_to_missing_grant_is_logged_fault(self, ledger, caplog):
        trace = GrantTrace((GrantDebit("01HZZZZZZZZZZZZZZZZZZZZZZZ", 1),))

        with caplog.at_level(logging.ERROR):
            with pytest.raises(InternalConsistencyFault):
                ledger.refund(MEMBER_ID, SAUNA, 1, trace, now=NOW, booking_id="bk-gone")

        missing = [r for r in caplog.records if r.getMessage() == "Traced grant missing on refund"]
        assert len(missing) == 1
        assert missing[0].grant_id == "01HZZZZZZZZZZZZZZZZZZZZZZZ"
        assert missing[0].booking_id == "bk-gone"


class TestForfeitAndTrace:
    def test_forfeit_keeps_balance_and_records_entries(self, db, ledger, make_grant):
        grant = make_grant(remaining=2)
        trace = ledger.consume(MEMBER_ID, SAUNA, 1, now=NOW, booking_id="bk-1")

        ledger.forfeit(MEMBER_ID, SAUNA, trace, now=NOW, booking_id="bk-1")

        assert _remaining(db, grant.id) == 1
        forfeits = (
            db.query(CreditLedgerEntry)
            .filter_by(booking_id="bk-1", entry_type=LedgerEntryType.FORFEIT.value)
            .all()
        )
        assert [(f.grant_id, f.amount) for f in forfeits] == [(grant.id, 1)]

    def test_origin_trace_is_rebuilt_from_debits(self, ledger, make_grant):
        make_grant(remaining=1, expires_at=SLOT_START + timedelta(days=1))
        make_grant(remaining=5)
        trace = ledger.consume(MEMBER_ID, SAUNA, 2, now=NOW, booking_id="bk-1")

        assert ledger.get_origin_trace("bk-1") == trace
        assert ledger.get_origin_trace("unknown").total == 0


class TestExpirySweep:
    def test_sweep_stamps_expired_grants_once(self, db, ledger, make_grant):
        expired = make_grant(remaining=2, expires_at=NOW - timedelta(days=1))
        live = make_grant(remaining=2)
        forever = make_grant(remaining=2, expires_at=None, source=GrantSource.ADJUSTMENT.value)

        assert ledger.expire_sweep(NOW) == 1
        assert ledger.expire_sweep(NOW) == 0

        db.expire_all()
        assert db.get(MemberBenefitCredit, expired.id).exhausted_at is not None
        assert db.get(MemberBenefitCredit, live.id).exhausted_at is None
        assert db.get(MemberBenefitCredit, forever.id).exhausted_at is None


class TestGrantsAndBalance:
    def test_balance_by_source(self, ledger, make_grant):
        make_grant(remaining=2)
        make_grant(remaining=3, source=GrantSource.PACKAGE.value)
        make_grant(remaining=1, expires_at=NOW - timedelta(days=1))

        balance = ledger.get_balance(MEMBER_ID, SAUNA, NOW)

        assert balance.plan_credits == 2
        assert balance.package_credits == 3
        assert balance.adjustment_credits == 0
        assert balance.total_available == 5

    def test_grant_credits_from_entitlement(self, ledger):
        entitlement = PlanEntitlement(
            benefit_type="SAUNA_ACCESS", quantity=4, valid_until=NOW + timedelta(days=30)
        )

        grant = ledger.grant_credits(MEMBER_ID, entitlement, now=NOW)

        assert grant.benefit_type == SAUNA
        assert grant.credits_remaining == 4
        assert grant.source == GrantSource.PLAN.value
        assert ledger.get_balance(MEMBER_ID, SAUNA, NOW).plan_credits == 4

    def test_expired_entitlement_rejected(self, ledger):
        entitlement = PlanEntitlement(benefit_type=SAUNA, quantity=1, valid_until=NOW)

        with pytest.raises(ValidationException):
            ledger.grant_credits(MEMBER_ID, entitlement, now=NOW)

    def test_unknown_benefit_type_is_stored_as_other(self, ledger):
        grant = ledger.grant_credits(
            MEMBER_ID, PlanEntitlement(benefit_type="cryo_chamber", quantity=1), now=NOW
        )
        assert grant.benefit_type == "other"

    def test_purchase_package_creates_expiring_grant(self, ledger, make_package):
        package = make_package(quantity=10, validity_days=90)

        grant = ledger.purchase_package(MEMBER_ID, package.id, now=NOW)

        assert grant.source == GrantSource.PACKAGE.value
        assert grant.package_id == package.id
        assert grant.credits_total == 10
        assert grant.expires_at == NOW + timedelta(days=90)

    def test_purchase_inactive_package_rejected(self, ledger, make_package):
        package = make_package(is_active=False)

        with pytest.raises(NotFoundException):
            ledger.purchase_package(MEMBER_ID, package.id, now=NOW)

    def test_member_credits_listing(self, ledger, make_grant):
        make_grant(remaining=2)
        make_grant(remaining=0, total=2)

        assert len(ledger.get_member_credits(MEMBER_ID, now=NOW)) == 1
        assert len(ledger.get_member_credits(MEMBER_ID, now=NOW, include_unusable=True)) == 2
