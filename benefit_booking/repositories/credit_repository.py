# benefit_booking/repositories/credit_repository.py
"""
Credit Repository

Queries and conditional updates over member credit grants and the credit
ledger. Balances only change through ``debit_if_sufficient`` and
``credit_back_if_room``, both single UPDATE statements whose WHERE clause
re-checks the invariant (never below zero, never above credits_total).
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional, Sequence, cast

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import LedgerEntryType
from ..core.exceptions import RepositoryException
from ..models.credit import CreditLedgerEntry, MemberBenefitCredit
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


def _usable_at(now: datetime):
    return and_(
        MemberBenefitCredit.exhausted_at.is_(None),
        or_(MemberBenefitCredit.expires_at.is_(None), MemberBenefitCredit.expires_at > now),
    )


class CreditRepository(BaseRepository[MemberBenefitCredit]):
    """Repository for member credit grants and ledger entries."""

    def __init__(self, db: Session):
        super().__init__(db, MemberBenefitCredit)
        self.logger = logging.getLogger(__name__)

    def get_consumable_grants(
        self, *, member_id: str, benefit_type: str, now: datetime, for_update: bool = True
    ) -> List[MemberBenefitCredit]:
        """
        Return usable grants with a positive balance, soonest expiry first.

        Never-expiring grants come last; ties break on purchase time then id
        so the order is deterministic across processes.
        """
        try:
            query = (
                self.db.query(MemberBenefitCredit)
                .filter(
                    MemberBenefitCredit.member_id == member_id,
                    MemberBenefitCredit.benefit_type == benefit_type,
                    MemberBenefitCredit.credits_remaining > 0,
                    _usable_at(now),
                )
                .order_by(
                    case((MemberBenefitCredit.expires_at.is_(None), 1), else_=0),
                    MemberBenefitCredit.expires_at.asc(),
                    MemberBenefitCredit.purchased_at.asc(),
                    MemberBenefitCredit.id.asc(),
                )
                .populate_existing()
            )
            if for_update:
                query = self._lock_rows(query)
            return cast(List[MemberBenefitCredit], query.all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to get consumable grants: %s", str(exc))
            raise RepositoryException("Failed to get consumable grants") from exc

    def get_grants_by_ids(
        self, grant_ids: Sequence[str], *, for_update: bool = True
    ) -> List[MemberBenefitCredit]:
        if not grant_ids:
            return []
        try:
            query = (
                self.db.query(MemberBenefitCredit)
                .filter(MemberBenefitCredit.id.in_(list(grant_ids)))
                .order_by(MemberBenefitCredit.id.asc())
                .populate_existing()
            )
            if for_update:
                query = self._lock_rows(query)
            return cast(List[MemberBenefitCredit], query.all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load grants %s: %s", list(grant_ids), str(exc))
            raise RepositoryException("Failed to load grants") from exc

    def get_member_grants(
        self,
        *,
        member_id: str,
        now: datetime,
        benefit_type: Optional[str] = None,
        include_unusable: bool = False,
    ) -> List[MemberBenefitCredit]:
        try:
            query = self.db.query(MemberBenefitCredit).filter(
                MemberBenefitCredit.member_id == member_id
            )
            if benefit_type:
                query = query.filter(MemberBenefitCredit.benefit_type == benefit_type)
            if not include_unusable:
                query = query.filter(
                    MemberBenefitCredit.credits_remaining > 0,
                    _usable_at(now),
                )
            query = query.order_by(
                case((MemberBenefitCredit.expires_at.is_(None), 1), else_=0),
                MemberBenefitCredit.expires_at.asc(),
                MemberBenefitCredit.id.asc(),
            )
            return cast(List[MemberBenefitCredit], query.all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to get member grants: %s", str(exc))
            raise RepositoryException("Failed to get member grants") from exc

    def get_total_available(self, *, member_id: str, benefit_type: str, now: datetime) -> int:
        try:
            result = (
                self.db.query(func.sum(MemberBenefitCredit.credits_remaining))
                .filter(
                    MemberBenefitCredit.member_id == member_id,
                    MemberBenefitCredit.benefit_type == benefit_type,
                    _usable_at(now),
                )
                .scalar()
            )
            return int(result or 0)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to total available credits: %s", str(exc))
            raise RepositoryException("Failed to total available credits") from exc

    def debit_if_sufficient(self, *, grant_id: str, amount: int, now: datetime) -> bool:
        """Conditional decrement; False if the grant lost balance or became unusable."""
        stmt = (
            update(MemberBenefitCredit)
            .where(
                and_(
                    MemberBenefitCredit.id == grant_id,
                    MemberBenefitCredit.credits_remaining >= amount,
                    _usable_at(now),
                )
            )
            .values(credits_remaining=MemberBenefitCredit.credits_remaining - amount)
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as exc:
            self.logger.error("Failed to debit grant %s: %s", grant_id, str(exc))
            raise RepositoryException("Failed to debit grant") from exc

    def credit_back_if_room(self, *, grant_id: str, amount: int, now: datetime) -> bool:
        """Conditional increment; never revives an unusable grant or exceeds its total."""
        stmt = (
            update(MemberBenefitCredit)
            .where(
                and_(
                    MemberBenefitCredit.id == grant_id,
                    MemberBenefitCredit.credits_remaining + amount
                    <= MemberBenefitCredit.credits_total,
                    _usable_at(now),
                )
            )
            .values(credits_remaining=MemberBenefitCredit.credits_remaining + amount)
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as exc:
            self.logger.error("Failed to refund grant %s: %s", grant_id, str(exc))
            raise RepositoryException("Failed to refund grant") from exc

    def stamp_expired(self, *, as_of: datetime) -> int:
        """Mark every grant whose expiry has passed as exhausted. Idempotent."""
        stmt = (
            update(MemberBenefitCredit)
            .where(
                and_(
                    MemberBenefitCredit.exhausted_at.is_(None),
                    MemberBenefitCredit.expires_at.is_not(None),
                    MemberBenefitCredit.expires_at <= as_of,
                )
            )
            .values(exhausted_at=as_of)
            .execution_options(synchronize_session=False)
        )
        try:
            return int(self.db.execute(stmt).rowcount or 0)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to stamp expired grants: %s", str(exc))
            raise RepositoryException("Failed to stamp expired grants") from exc

    # Ledger

    def add_ledger_entries(self, entries: List[CreditLedgerEntry]) -> None:
        try:
            self.db.add_all(entries)
            self.db.flush()
        except SQLAlchemyError as exc:
            self.logger.error("Failed to write ledger entries: %s", str(exc))
            raise RepositoryException("Failed to write ledger entries") from exc

    def get_booking_entries(
        self, *, booking_id: str, entry_type: Optional[LedgerEntryType] = None
    ) -> List[CreditLedgerEntry]:
        try:
            query = self.db.query(CreditLedgerEntry).filter(
                CreditLedgerEntry.booking_id == booking_id
            )
            if entry_type is not None:
                query = query.filter(CreditLedgerEntry.entry_type == entry_type.value)
            query = query.order_by(CreditLedgerEntry.sequence.asc(), CreditLedgerEntry.id.asc())
            return cast(List[CreditLedgerEntry], query.all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load ledger for booking %s: %s", booking_id, str(exc))
            raise RepositoryException("Failed to load booking ledger") from exc


__all__ = ["CreditRepository"]
