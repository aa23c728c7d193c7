"""Credits ledger: per-member, per-benefit-type entitlements.

Balances live on grants (``member_benefit_credits``); every movement is also
appended to ``credit_ledger_entries``. The debit rows written for a booking
are its origin grant trace, which refunds and forfeits replay.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.enums import GrantSource, LedgerEntryType, normalize_benefit_type
from ..core.exceptions import (
    ConcurrentUpdateError,
    InsufficientCredits,
    InternalConsistencyFault,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc
from ..models.credit import CreditLedgerEntry, MemberBenefitCredit
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import PlanEntitlement
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantDebit:
    grant_id: str
    amount: int


@dataclass(frozen=True)
class GrantTrace:
    """Ordered (grant, amount) pairs in the order they were consumed."""

    entries: Tuple[GrantDebit, ...] = ()

    def __iter__(self) -> Iterator[GrantDebit]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def total(self) -> int:
        return sum(entry.amount for entry in self.entries)

    @property
    def grant_ids(self) -> List[str]:
        return [entry.grant_id for entry in self.entries]


@dataclass(frozen=True)
class CreditBalance:
    member_id: str
    benefit_type: str
    plan_credits: int = 0
    package_credits: int = 0
    adjustment_credits: int = 0

    @property
    def total_available(self) -> int:
        return self.plan_credits + self.package_credits + self.adjustment_credits


def _is_usable(grant: MemberBenefitCredit, now: datetime) -> bool:
    if grant.exhausted_at is not None:
        return False
    return grant.expires_at is None or ensure_utc(grant.expires_at) > now


class CreditLedger(BaseService):
    """Consumes, refunds and forfeits credits; originates grants."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.credit_repository = RepositoryFactory.create_credit_repository(db)
        self.package_repository = RepositoryFactory.create_benefit_package_repository(db)

    def _ledger_rows(
        self,
        trace: GrantTrace,
        *,
        entry_type: LedgerEntryType,
        member_id: str,
        benefit_type: str,
        booking_id: Optional[str],
        now: datetime,
    ) -> List[CreditLedgerEntry]:
        return [
            CreditLedgerEntry(
                grant_id=entry.grant_id,
                member_id=member_id,
                benefit_type=benefit_type,
                booking_id=booking_id,
                entry_type=entry_type.value,
                amount=entry.amount,
                sequence=index,
                created_at=now,
            )
            for index, entry in enumerate(trace)
        ]

    def lock_member_grants(
        self, member_id: str, benefit_type: str, *, now: datetime
    ) -> List[MemberBenefitCredit]:
        """
        Row-lock the member's usable grants of one benefit type.

        Must run inside the caller's transaction; concurrent bookings by the
        same member then queue here until that transaction ends.
        """
        return self.credit_repository.get_consumable_grants(
            member_id=member_id,
            benefit_type=normalize_benefit_type(benefit_type),
            now=ensure_utc(now),
            for_update=True,
        )

    @BaseService.measure_operation("credit_consume")
    def consume(
        self,
        member_id: str,
        benefit_type: str,
        amount: int = 1,
        *,
        now: datetime,
        booking_id: Optional[str] = None,
        use_transaction: bool = True,
    ) -> GrantTrace:
        """
        Debit ``amount`` units, soonest-expiring grants first.

        All or nothing: if the usable total is short nothing is debited.

        Raises:
            InsufficientCredits: usable balance below ``amount``
            ConcurrentUpdateError: a grant changed under us; retry the whole request
        """
        if amount <= 0:
            raise ValidationException("Credit amount must be positive", code="INVALID_AMOUNT")
        benefit_type = normalize_benefit_type(benefit_type)
        now = ensure_utc(now)

        def _consume() -> GrantTrace:
            grants = self.credit_repository.get_consumable_grants(
                member_id=member_id, benefit_type=benefit_type, now=now
            )
            available = sum(int(g.credits_remaining) for g in grants)
            if available < amount:
                raise InsufficientCredits(member_id, benefit_type, amount, available)

            debits: List[GrantDebit] = []
            left = amount
            for grant in grants:
                if left == 0:
                    break
                take = min(int(grant.credits_remaining), left)
                if not self.credit_repository.debit_if_sufficient(
                    grant_id=grant.id, amount=take, now=now
                ):
                    raise ConcurrentUpdateError(
                        "Credit balance changed while booking",
                        details={"member_id": member_id, "grant_id": grant.id},
                    )
                debits.append(GrantDebit(grant_id=grant.id, amount=take))
                left -= take

            trace = GrantTrace(tuple(debits))
            self.credit_repository.add_ledger_entries(
                self._ledger_rows(
                    trace,
                    entry_type=LedgerEntryType.DEBIT,
                    member_id=member_id,
                    benefit_type=benefit_type,
                    booking_id=booking_id,
                    now=now,
                )
            )
            return trace

        if use_transaction:
            with self.transaction():
                trace = _consume()
        else:
            trace = _consume()
        prometheus_metrics.inc_credit_movement(LedgerEntryType.DEBIT.value, amount)
        return trace

    @BaseService.measure_operation("credit_refund")
    def refund(
        self,
        member_id: str,
        benefit_type: str,
        amount: int,
        origin_trace: GrantTrace,
        *,
        now: datetime,
        booking_id: Optional[str] = None,
        use_transaction: bool = True,
    ) -> GrantTrace:
        """
        Credit ``amount`` units back to the grants they came from, newest debit first.

        A grant that has since expired or been exhausted is not revived; its
        portion is issued as a single new non-expiring adjustment grant.
        Returns the trace of grants actually credited.
        """
        if amount <= 0:
            raise ValidationException("Credit amount must be positive", code="INVALID_AMOUNT")
        if amount > origin_trace.total:
            raise InternalConsistencyFault(
                "Refund exceeds the credits originally consumed",
                details={"booking_id": booking_id, "amount": amount, "consumed": origin_trace.total},
            )
        benefit_type = normalize_benefit_type(benefit_type)
        now = ensure_utc(now)

        def _refund() -> GrantTrace:
            grants: Dict[str, MemberBenefitCredit] = {
                g.id: g
                for g in self.credit_repository.get_grants_by_ids(origin_trace.grant_ids)
            }
            credited: List[GrantDebit] = []
            orphaned = 0
            left = amount
            for entry in reversed(origin_trace.entries):
                if left == 0:
                    break
                portion = min(entry.amount, left)
                left -= portion
                grant = grants.get(entry.grant_id)
                if grant is None:
                    self.logger.error(
                        "Traced grant missing on refund",
                        extra={
                            "grant_id": entry.grant_id,
                            "booking_id": booking_id,
                            "member_id": member_id,
                            "portion": portion,
                        },
                    )
                    raise InternalConsistencyFault(
                        "Traced grant no longer exists",
                        details={"grant_id": entry.grant_id, "booking_id": booking_id},
                    )
                if not _is_usable(grant, now):
                    orphaned += portion
                    continue
                if int(grant.credits_remaining) + portion > int(grant.credits_total):
                    self.logger.error(
                        "Refund would exceed grant total",
                        extra={
                            "grant_id": grant.id,
                            "booking_id": booking_id,
                            "remaining": grant.credits_remaining,
                            "total": grant.credits_total,
                            "portion": portion,
                        },
                    )
                    raise InternalConsistencyFault(
                        "Refund would exceed the grant's total credits",
                        details={"grant_id": grant.id, "booking_id": booking_id},
                    )
                if not self.credit_repository.credit_back_if_room(
                    grant_id=grant.id, amount=portion, now=now
                ):
                    raise ConcurrentUpdateError(
                        "Credit grant changed while refunding",
                        details={"grant_id": grant.id, "booking_id": booking_id},
                    )
                credited.append(GrantDebit(grant_id=grant.id, amount=portion))

            entries = self._ledger_rows(
                GrantTrace(tuple(credited)),
                entry_type=LedgerEntryType.REFUND,
                member_id=member_id,
                benefit_type=benefit_type,
                booking_id=booking_id,
                now=now,
            )
            if orphaned:
                replacement = self.credit_repository.create(
                    member_id=member_id,
                    benefit_type=benefit_type,
                    source=GrantSource.ADJUSTMENT.value,
                    note=f"Refund of expired credits for booking {booking_id or '-'}",
                    credits_total=orphaned,
                    credits_remaining=orphaned,
                    purchased_at=now,
                    expires_at=None,
                )
                credited.append(GrantDebit(grant_id=replacement.id, amount=orphaned))
                entries.append(
                    CreditLedgerEntry(
                        grant_id=replacement.id,
                        member_id=member_id,
                        benefit_type=benefit_type,
                        booking_id=booking_id,
                        entry_type=LedgerEntryType.ADJUSTMENT.value,
                        amount=orphaned,
                        sequence=len(entries),
                        created_at=now,
                    )
                )
                self.logger.info(
                    "Issued adjustment grant for refund to expired credits",
                    extra={"member_id": member_id, "grant_id": replacement.id, "amount": orphaned},
                )
            self.credit_repository.add_ledger_entries(entries)
            return GrantTrace(tuple(credited))

        if use_transaction:
            with self.transaction():
                result = _refund()
        else:
            result = _refund()
        prometheus_metrics.inc_credit_movement(LedgerEntryType.REFUND.value, amount)
        return result

    def forfeit(
        self,
        member_id: str,
        benefit_type: str,
        origin_trace: GrantTrace,
        *,
        now: datetime,
        booking_id: Optional[str] = None,
        use_transaction: bool = True,
    ) -> None:
        """Record that the traced credits stay consumed. Balances do not change."""
        if not origin_trace.total:
            return
        rows = self._ledger_rows(
            origin_trace,
            entry_type=LedgerEntryType.FORFEIT,
            member_id=member_id,
            benefit_type=normalize_benefit_type(benefit_type),
            booking_id=booking_id,
            now=ensure_utc(now),
        )
        if use_transaction:
            with self.transaction():
                self.credit_repository.add_ledger_entries(rows)
        else:
            self.credit_repository.add_ledger_entries(rows)
        prometheus_metrics.inc_credit_movement(LedgerEntryType.FORFEIT.value, origin_trace.total)

    def get_origin_trace(self, booking_id: str) -> GrantTrace:
        entries = self.credit_repository.get_booking_entries(
            booking_id=booking_id, entry_type=LedgerEntryType.DEBIT
        )
        return GrantTrace(tuple(GrantDebit(e.grant_id, int(e.amount)) for e in entries))

    @BaseService.measure_operation("credit_expire_sweep")
    def expire_sweep(self, now: datetime) -> int:
        """Stamp every grant past its expiry as exhausted. Safe to run repeatedly."""
        with self.transaction():
            stamped = self.credit_repository.stamp_expired(as_of=ensure_utc(now))
        if stamped:
            self.logger.info("Expired %d credit grants", stamped)
        return stamped

    # Grant origination

    @BaseService.measure_operation("grant_credits")
    def grant_credits(
        self, member_id: str, entitlement: PlanEntitlement, *, now: datetime
    ) -> MemberBenefitCredit:
        """Originate a grant from a plan entitlement supplied by the membership service."""
        if entitlement.quantity <= 0:
            raise ValidationException("Entitlement quantity must be positive", code="INVALID_AMOUNT")
        now = ensure_utc(now)
        expires_at = ensure_utc(entitlement.valid_until) if entitlement.valid_until else None
        if expires_at is not None and expires_at <= now:
            raise ValidationException("Entitlement has already expired", code="INVALID_ENTITLEMENT")

        with self.transaction():
            grant = self.credit_repository.create(
                member_id=member_id,
                membership_id=entitlement.membership_id,
                benefit_type=entitlement.benefit_type,
                source=GrantSource.PLAN.value,
                credits_total=entitlement.quantity,
                credits_remaining=entitlement.quantity,
                purchased_at=now,
                expires_at=expires_at,
            )
        self.log_operation("grant_credits", member_id=member_id, grant_id=grant.id)
        return grant

    @BaseService.measure_operation("purchase_package")
    def purchase_package(
        self,
        member_id: str,
        package_id: str,
        *,
        now: datetime,
        membership_id: Optional[str] = None,
    ) -> MemberBenefitCredit:
        """
        Turn a purchased package into a grant valid for the package's validity days.

        Payment capture happens elsewhere; this is called once it succeeded.
        """
        package = self.package_repository.get_by_id(package_id)
        if package is None or not package.is_active:
            raise NotFoundException(
                "Benefit package not found",
                code="PACKAGE_NOT_FOUND",
                details={"package_id": package_id},
            )
        now = ensure_utc(now)
        with self.transaction():
            grant = self.credit_repository.create(
                member_id=member_id,
                membership_id=membership_id,
                benefit_type=package.benefit_type,
                source=GrantSource.PACKAGE.value,
                package_id=package.id,
                credits_total=package.quantity,
                credits_remaining=package.quantity,
                purchased_at=now,
                expires_at=now + timedelta(days=int(package.validity_days)),
            )
        self.log_operation("purchase_package", member_id=member_id, package_id=package_id)
        return grant

    # Reads

    def get_balance(self, member_id: str, benefit_type: str, now: datetime) -> CreditBalance:
        benefit_type = normalize_benefit_type(benefit_type)
        totals = {source: 0 for source in GrantSource}
        for grant in self.credit_repository.get_member_grants(
            member_id=member_id, benefit_type=benefit_type, now=ensure_utc(now)
        ):
            totals[GrantSource(grant.source)] += int(grant.credits_remaining)
        return CreditBalance(
            member_id=member_id,
            benefit_type=benefit_type,
            plan_credits=totals[GrantSource.PLAN],
            package_credits=totals[GrantSource.PACKAGE],
            adjustment_credits=totals[GrantSource.ADJUSTMENT],
        )

    def get_member_credits(
        self,
        member_id: str,
        benefit_type: Optional[str] = None,
        *,
        now: datetime,
        include_unusable: bool = False,
    ) -> List[MemberBenefitCredit]:
        return self.credit_repository.get_member_grants(
            member_id=member_id,
            now=ensure_utc(now),
            benefit_type=normalize_benefit_type(benefit_type) if benefit_type else None,
            include_unusable=include_unusable,
        )
