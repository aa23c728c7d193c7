# benefit_booking/services/slot_directory.py
"""
Slot Directory Service

Catalog of bookable slots per branch and benefit type:
- Atomic seat reserve/release (the capacity guard)
- Slot creation, daily and per-facility generation from settings, edits,
  deactivation
- Available-slot listing

``reserve_seat`` and ``release_seat`` never commit. They run inside the
booking engine's transaction so a seat is only ever held together with the
credit debit and the booking row that justify it.
"""

from dataclasses import replace
from datetime import date, datetime, time, timedelta
import logging
from typing import Iterator, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings as app_settings
from ..core.enums import normalize_benefit_type
from ..core.exceptions import (
    ConflictException,
    InternalConsistencyFault,
    SlotFull,
    SlotInactive,
    SlotNotFound,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc
from ..models.booking import Booking
from ..models.slot import BenefitSlot
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import FacilitySchedule
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_repository import SlotRepository
from .base import BaseService
from .benefit_settings_service import BenefitSettingsService
from .booking_policy import SettingsSnapshot

logger = logging.getLogger(__name__)


def _range_days(date_from: date, date_to: date) -> int:
    """Number of days in an inclusive range, within the configured maximum."""
    if date_to < date_from:
        raise ValidationException(
            "date_to must not be before date_from", code="INVALID_DATE_RANGE"
        )
    span = (date_to - date_from).days + 1
    if span > app_settings.available_slots_max_days:
        raise ValidationException(
            f"Date range cannot exceed {app_settings.available_slots_max_days} days",
            code="INVALID_DATE_RANGE",
            details={"days": span},
        )
    return span


class SlotDirectory(BaseService):
    """Slot catalog and the only writer of ``booked_count``."""

    def __init__(self, db: Session, repository: Optional[SlotRepository] = None):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = repository or RepositoryFactory.create_slot_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.settings_service = BenefitSettingsService(db)

    # Seat accounting (transaction participants)

    def reserve_seat(self, slot_id: str) -> BenefitSlot:
        """
        Take one seat in the slot.

        Raises:
            SlotNotFound: no such slot
            SlotInactive: slot was deactivated
            SlotFull: booked_count already equals capacity
        """
        if self.repository.increment_booked_if_available(slot_id):
            slot = self.repository.get_fresh(slot_id)
            if slot is None:
                raise InternalConsistencyFault(
                    "Reserved a seat on a slot that cannot be read back",
                    details={"slot_id": slot_id},
                )
            return slot

        slot = self.repository.get_fresh(slot_id)
        if slot is None:
            prometheus_metrics.inc_seat_rejection("not_found")
            raise SlotNotFound(slot_id)
        if not slot.is_active:
            prometheus_metrics.inc_seat_rejection("inactive")
            raise SlotInactive(slot_id)
        prometheus_metrics.inc_seat_rejection("full")
        raise SlotFull(slot_id, slot.capacity)

    def release_seat(self, slot_id: str) -> None:
        """
        Give one seat back.

        A zero counter means a seat is being released twice; that is logged
        and raised, never clamped.
        """
        if self.repository.decrement_booked_if_positive(slot_id):
            return
        slot = self.repository.get_fresh(slot_id)
        if slot is None:
            raise SlotNotFound(slot_id)
        self.logger.error(
            "Seat release underflow",
            extra={"slot_id": slot_id, "booked_count": slot.booked_count, "capacity": slot.capacity},
        )
        raise InternalConsistencyFault(
            "Slot booked count would go below zero",
            details={"slot_id": slot_id, "booked_count": slot.booked_count},
        )

    # Reads

    def get_slot(self, slot_id: str, branch_id: Optional[str] = None) -> BenefitSlot:
        slot = self.repository.get_fresh(slot_id)
        if slot is None or (branch_id is not None and slot.branch_id != branch_id):
            raise SlotNotFound(slot_id, branch_id=branch_id)
        return slot

    def list_available_slots(
        self,
        branch_id: str,
        benefit_type: str,
        date_from: date,
        date_to: date,
        now: datetime,
        benefit_type_id: Optional[str] = None,
    ) -> Iterator[BenefitSlot]:
        """
        Lazily yield active slots that have not started yet, by date then start time.

        Validation happens before the first slot is produced.
        """
        _range_days(date_from, date_to)
        return self._iter_upcoming(
            branch_id=branch_id,
            benefit_type=normalize_benefit_type(benefit_type),
            benefit_type_id=benefit_type_id,
            date_from=date_from,
            date_to=date_to,
            now=ensure_utc(now),
        )

    def _iter_upcoming(
        self,
        *,
        branch_id: str,
        benefit_type: str,
        benefit_type_id: Optional[str],
        date_from: date,
        date_to: date,
        now: datetime,
    ) -> Iterator[BenefitSlot]:
        for slot in self.repository.iter_active_slots(
            branch_id=branch_id,
            benefit_type=benefit_type,
            benefit_type_id=benefit_type_id,
            date_from=date_from,
            date_to=date_to,
        ):
            if slot.start_at > now:
                yield slot

    def get_slot_bookings(self, slot_id: str) -> List[Booking]:
        self.get_slot(slot_id)
        return self.booking_repository.get_slot_bookings(slot_id)

    # Catalog management

    @BaseService.measure_operation("create_slot")
    def create_slot(
        self,
        *,
        branch_id: str,
        benefit_type: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        capacity: int,
        benefit_type_id: Optional[str] = None,
        facility_id: Optional[str] = None,
    ) -> BenefitSlot:
        if capacity <= 0:
            raise ValidationException("Slot capacity must be positive", code="INVALID_SLOT")
        if start_time == end_time:
            raise ValidationException("Slot start and end times must differ", code="INVALID_SLOT")

        with self.transaction():
            slot = self.repository.create(
                branch_id=branch_id,
                benefit_type=normalize_benefit_type(benefit_type),
                benefit_type_id=benefit_type_id,
                facility_id=facility_id,
                slot_date=slot_date,
                start_time=start_time,
                end_time=end_time,
                capacity=capacity,
            )

        self.log_operation("create_slot", slot_id=slot.id, branch_id=branch_id)
        return slot

    @BaseService.measure_operation("generate_daily_slots")
    def generate_daily_slots(
        self,
        branch_id: str,
        benefit_type: str,
        slot_date: date,
        settings: SettingsSnapshot,
        *,
        benefit_type_id: Optional[str] = None,
        facility_id: Optional[str] = None,
    ) -> List[BenefitSlot]:
        """
        Lay out one day of slots across the operating hours.

        Slots are ``slot_duration_minutes`` long with
        ``buffer_between_sessions_minutes`` between them; the last slot must
        end by closing time. A date that already has slots is left alone.
        """
        normalized = normalize_benefit_type(benefit_type)
        if not settings.is_slot_booking_enabled:
            return []
        if self.repository.has_slots_on(
            branch_id=branch_id,
            benefit_type=normalized,
            slot_date=slot_date,
            benefit_type_id=benefit_type_id,
            facility_id=facility_id,
        ):
            self.logger.debug(
                "Slots already generated for %s %s on %s", branch_id, normalized, slot_date
            )
            return []

        duration = timedelta(minutes=settings.slot_duration_minutes)
        step = duration + timedelta(minutes=settings.buffer_between_sessions_minutes)
        cursor = datetime.combine(slot_date, settings.operating_hours_start)
        closing = datetime.combine(slot_date, settings.operating_hours_end)

        slots: List[BenefitSlot] = []
        while cursor + duration <= closing:
            slots.append(
                BenefitSlot(
                    branch_id=branch_id,
                    benefit_type=normalized,
                    benefit_type_id=benefit_type_id,
                    facility_id=facility_id,
                    slot_date=slot_date,
                    start_time=cursor.time(),
                    end_time=(cursor + duration).time(),
                    capacity=settings.capacity_per_slot,
                )
            )
            cursor += step

        if not slots:
            return []

        with self.transaction():
            self.repository.add_all(slots)

        self.logger.info(
            "Generated %d slots for %s %s on %s", len(slots), branch_id, normalized, slot_date
        )
        return slots

    @BaseService.measure_operation("deactivate_slot")
    def deactivate_slot(self, slot_id: str) -> BenefitSlot:
        """Stop new bookings on a slot; existing bookings are untouched."""
        with self.transaction():
            if not self.repository.set_active(slot_id, False):
                raise SlotNotFound(slot_id)
        return self.get_slot(slot_id)

    @BaseService.measure_operation("update_slot")
    def update_slot(
        self,
        slot_id: str,
        *,
        capacity: Optional[int] = None,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> BenefitSlot:
        """
        Edit a slot's capacity or times.

        Capacity can never drop below the seats already taken; the check and
        the write are one conditional UPDATE.
        """
        slot = self.get_slot(slot_id)
        values = {}
        if capacity is not None:
            if capacity <= 0:
                raise ValidationException("Slot capacity must be positive", code="INVALID_SLOT")
            values["capacity"] = capacity
        if start_time is not None:
            values["start_time"] = start_time
        if end_time is not None:
            values["end_time"] = end_time
        if not values:
            return slot
        if values.get("start_time", slot.start_time) == values.get("end_time", slot.end_time):
            raise ValidationException("Slot start and end times must differ", code="INVALID_SLOT")

        with self.transaction():
            if not self.repository.update_if_fits(slot_id, **values):
                current = self.repository.get_fresh(slot_id)
                if current is None:
                    raise SlotNotFound(slot_id)
                raise ConflictException(
                    "Capacity cannot be lower than the seats already booked",
                    code="CAPACITY_BELOW_BOOKED",
                    details={
                        "slot_id": slot_id,
                        "capacity": capacity,
                        "booked_count": current.booked_count,
                    },
                )

        self.log_operation("update_slot", slot_id=slot_id, **{k: str(v) for k, v in values.items()})
        return self.get_slot(slot_id)

    @BaseService.measure_operation("ensure_slots_for_range")
    def ensure_slots_for_range(
        self,
        branch_id: str,
        date_from: date,
        date_to: date,
        facilities: Sequence[FacilitySchedule],
    ) -> List[BenefitSlot]:
        """
        Generate missing slots for every facility on every day in the range.

        Facilities that are inactive or under maintenance are skipped, as are
        days outside a facility's ``available_days`` and benefit types whose
        settings disable slot booking. Days that already have slots for a
        facility are left alone, so the call can be repeated.
        """
        span = _range_days(date_from, date_to)

        created: List[BenefitSlot] = []
        for facility in facilities:
            if not facility.is_schedulable:
                self.logger.debug("Skipping facility %s: not schedulable", facility.facility_id)
                continue
            settings = self.settings_service.get_snapshot(
                branch_id, facility.benefit_type, facility.benefit_type_id
            )
            if not settings.is_slot_booking_enabled:
                continue
            if facility.capacity:
                settings = replace(settings, capacity_per_slot=facility.capacity)
            for offset in range(span):
                day = date_from + timedelta(days=offset)
                if not facility.is_open_on(day):
                    continue
                created.extend(
                    self.generate_daily_slots(
                        branch_id,
                        facility.benefit_type,
                        day,
                        settings,
                        benefit_type_id=facility.benefit_type_id,
                        facility_id=facility.facility_id,
                    )
                )

        self.logger.info(
            "Ensured slots for %s from %s to %s: %d created",
            branch_id,
            date_from,
            date_to,
            len(created),
        )
        return created
