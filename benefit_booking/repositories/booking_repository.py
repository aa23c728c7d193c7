# benefit_booking/repositories/booking_repository.py
"""
Booking Repository

Data access for benefit bookings. Leaving the ``booked`` state is a single
compare-and-set UPDATE guarded on ``status = 'booked'``: when cancel,
check-in and no-show race near a deadline exactly one of them updates the
row and the others see zero rows affected.
"""

from datetime import date, datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..core.exceptions import RepositoryException
from ..models.booking import ACTIVE_STATUSES, Booking, BookingStatus
from ..models.slot import BenefitSlot
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_with_slot(self, booking_id: str) -> Optional[Booking]:
        try:
            return (
                self.db.query(Booking)
                .options(joinedload(Booking.slot))
                .filter(Booking.id == booking_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load booking %s: %s", booking_id, e)
            raise RepositoryException(f"Failed to load booking: {e}") from e

    def find_booked_for_member_slot(self, *, member_id: str, slot_id: str) -> Optional[Booking]:
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.member_id == member_id,
                    Booking.slot_id == slot_id,
                    Booking.status == BookingStatus.BOOKED.value,
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to check existing booking: %s", e)
            raise RepositoryException(f"Failed to check existing booking: {e}") from e

    def find_by_idempotency_key(self, key: str) -> Optional[Booking]:
        return self.find_one_by(idempotency_key=key)

    def get_member_active_bookings(
        self,
        *,
        member_id: str,
        benefit_type: str,
        date_from: date,
        date_to: date,
    ) -> List[Booking]:
        """Booked or checked-in bookings of one benefit type whose slot falls in the range."""
        try:
            return (
                self.db.query(Booking)
                .join(BenefitSlot, Booking.slot_id == BenefitSlot.id)
                .options(joinedload(Booking.slot))
                .filter(
                    Booking.member_id == member_id,
                    Booking.benefit_type == benefit_type,
                    Booking.status.in_(ACTIVE_STATUSES),
                    BenefitSlot.slot_date >= date_from,
                    BenefitSlot.slot_date <= date_to,
                )
                .order_by(BenefitSlot.slot_date.asc(), BenefitSlot.start_time.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load active bookings for %s: %s", member_id, e)
            raise RepositoryException(f"Failed to load active bookings: {e}") from e

    def get_member_bookings(
        self, *, member_id: str, statuses: Optional[Sequence[BookingStatus]] = None
    ) -> List[Booking]:
        try:
            query = (
                self.db.query(Booking)
                .options(joinedload(Booking.slot))
                .filter(Booking.member_id == member_id)
            )
            if statuses:
                query = query.filter(Booking.status.in_([s.value for s in statuses]))
            return query.order_by(Booking.booked_at.desc(), Booking.id.desc()).all()
        except SQLAlchemyError as e:
            self.logger.error("Failed to load bookings for member %s: %s", member_id, e)
            raise RepositoryException(f"Failed to load member bookings: {e}") from e

    def get_slot_bookings(self, slot_id: str) -> List[Booking]:
        try:
            return (
                self.db.query(Booking)
                .filter(Booking.slot_id == slot_id, Booking.status.in_(ACTIVE_STATUSES))
                .order_by(Booking.booked_at.asc(), Booking.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load bookings for slot %s: %s", slot_id, e)
            raise RepositoryException(f"Failed to load slot bookings: {e}") from e

    def get_booked_ids_up_to(self, last_slot_date: date, *, limit: int = 500) -> List[str]:
        """Ids of still-booked bookings whose slot date is on or before ``last_slot_date``."""
        try:
            rows = (
                self.db.query(Booking.id)
                .join(BenefitSlot, Booking.slot_id == BenefitSlot.id)
                .filter(
                    Booking.status == BookingStatus.BOOKED.value,
                    BenefitSlot.slot_date <= last_slot_date,
                )
                .order_by(BenefitSlot.slot_date.asc(), BenefitSlot.start_time.asc(), Booking.id)
                .limit(limit)
                .all()
            )
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self.logger.error("Failed to load overdue bookings: %s", e)
            raise RepositoryException(f"Failed to load overdue bookings: {e}") from e

    def transition_from_booked(
        self,
        *,
        booking_id: str,
        new_status: BookingStatus,
        at: datetime,
        cancellation_reason: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set the booking out of ``booked``.

        Returns False when the row is no longer booked (another transition won).
        """
        stmt = (
            update(Booking)
            .where(and_(Booking.id == booking_id, Booking.status == BookingStatus.BOOKED.value))
            .values(
                status=new_status.value,
                status_changed_at=at,
                cancellation_reason=cancellation_reason,
                version=Booking.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error("Failed to transition booking %s: %s", booking_id, e)
            raise RepositoryException(f"Failed to transition booking: {e}") from e
