# benefit_booking/repositories/slot_repository.py
"""
Slot Repository

Data access for benefit slots. Seat accounting is done exclusively with
single-statement conditional updates: the capacity check and the increment
happen in one UPDATE, so concurrent requests against the last seat observe a
single linear sequence of increments regardless of which process runs them.
"""

from datetime import date
import logging
from typing import Iterator, List, Optional

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.slot import BenefitSlot
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SlotRepository(BaseRepository[BenefitSlot]):
    def __init__(self, db: Session):
        super().__init__(db, BenefitSlot)

    def get_fresh(self, slot_id: str) -> Optional[BenefitSlot]:
        """Load a slot bypassing the identity map so counters are current."""
        try:
            return (
                self.db.query(BenefitSlot)
                .filter(BenefitSlot.id == slot_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to load slot: {e}") from e

    def increment_booked_if_available(self, slot_id: str) -> bool:
        """
        Compare-and-increment: take one seat iff active and not full.

        Returns True when exactly one row was updated.
        """
        stmt = (
            update(BenefitSlot)
            .where(
                and_(
                    BenefitSlot.id == slot_id,
                    BenefitSlot.is_active.is_(True),
                    BenefitSlot.booked_count < BenefitSlot.capacity,
                )
            )
            .values(booked_count=BenefitSlot.booked_count + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Seat reservation failed for slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to reserve seat: {e}") from e
        return result.rowcount == 1

    def decrement_booked_if_positive(self, slot_id: str) -> bool:
        """Give one seat back; False means the counter was already zero (or no slot)."""
        stmt = (
            update(BenefitSlot)
            .where(and_(BenefitSlot.id == slot_id, BenefitSlot.booked_count > 0))
            .values(booked_count=BenefitSlot.booked_count - 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Seat release failed for slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to release seat: {e}") from e
        return result.rowcount == 1

    def set_active(self, slot_id: str, is_active: bool) -> bool:
        stmt = (
            update(BenefitSlot)
            .where(BenefitSlot.id == slot_id)
            .values(is_active=is_active)
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error("Failed to update slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to update slot: {e}") from e

    def update_if_fits(self, slot_id: str, **values) -> bool:
        """
        Apply catalog edits to a slot in one statement.

        A new ``capacity`` only applies when it still covers ``booked_count``;
        returns False when no row matched.
        """
        conditions = [BenefitSlot.id == slot_id]
        if "capacity" in values:
            conditions.append(BenefitSlot.booked_count <= values["capacity"])
        stmt = (
            update(BenefitSlot)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error("Failed to update slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to update slot: {e}") from e

    def iter_active_slots(
        self,
        *,
        branch_id: str,
        benefit_type: str,
        date_from: date,
        date_to: date,
        benefit_type_id: Optional[str] = None,
        batch_size: int = 200,
    ) -> Iterator[BenefitSlot]:
        """
        Stream active slots in a date range, ordered by date then start time.

        Custom benefit types are matched on ``benefit_type_id``; standard
        ones on the enum column.
        """
        query = self.db.query(BenefitSlot).filter(
            BenefitSlot.branch_id == branch_id,
            BenefitSlot.is_active.is_(True),
            BenefitSlot.slot_date >= date_from,
            BenefitSlot.slot_date <= date_to,
        )
        if benefit_type_id:
            query = query.filter(BenefitSlot.benefit_type_id == benefit_type_id)
        else:
            query = query.filter(BenefitSlot.benefit_type == benefit_type)
        query = query.order_by(
            BenefitSlot.slot_date.asc(), BenefitSlot.start_time.asc(), BenefitSlot.id.asc()
        )
        try:
            yield from query.yield_per(batch_size)
        except SQLAlchemyError as e:
            self.logger.error("Failed to list slots for branch %s: %s", branch_id, e)
            raise RepositoryException(f"Failed to list slots: {e}") from e

    def has_slots_on(
        self,
        *,
        branch_id: str,
        benefit_type: str,
        slot_date: date,
        benefit_type_id: Optional[str] = None,
        facility_id: Optional[str] = None,
    ) -> bool:
        query = self.db.query(BenefitSlot.id).filter(
            BenefitSlot.branch_id == branch_id,
            BenefitSlot.slot_date == slot_date,
            BenefitSlot.is_active.is_(True),
        )
        if benefit_type_id:
            query = query.filter(BenefitSlot.benefit_type_id == benefit_type_id)
        else:
            query = query.filter(BenefitSlot.benefit_type == benefit_type)
        if facility_id:
            query = query.filter(BenefitSlot.facility_id == facility_id)
        try:
            return query.first() is not None
        except SQLAlchemyError as e:
            self.logger.error("Failed to check slots on %s: %s", slot_date, e)
            raise RepositoryException(f"Failed to check slots: {e}") from e

    def add_all(self, slots: List[BenefitSlot]) -> List[BenefitSlot]:
        try:
            self.db.add_all(slots)
            self.db.flush()
            return slots
        except SQLAlchemyError as e:
            self.logger.error("Failed to create %d slots: %s", len(slots), e)
            raise RepositoryException(f"Failed to create slots: {e}") from e
