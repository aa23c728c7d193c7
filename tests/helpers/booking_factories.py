"""Row builders and shared constants for booking engine tests."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from benefit_booking.core.enums import BenefitType, GrantSource, NoShowPolicy
from benefit_booking.models.benefit_settings import BenefitPackage, BenefitSettings
from benefit_booking.models.credit import MemberBenefitCredit
from benefit_booking.models.slot import BenefitSlot

BRANCH_ID = "branch-1"
MEMBER_ID = "member-1"
OTHER_MEMBER_ID = "member-2"
STAFF_ID = "staff-1"
SAUNA = BenefitType.SAUNA_ACCESS.value

# T: the default slot runs 10:00-11:00 UTC on this date
SLOT_DATE = date(2030, 6, 10)
SLOT_START = datetime(2030, 6, 10, 10, 0, tzinfo=timezone.utc)
SLOT_END = SLOT_START + timedelta(hours=1)


def minutes_before_start(minutes: int) -> datetime:
    return SLOT_START - timedelta(minutes=minutes)


def create_slot(
    db: Session,
    *,
    branch_id: str = BRANCH_ID,
    benefit_type: str = SAUNA,
    slot_date: date = SLOT_DATE,
    start_time: time = time(10, 0),
    end_time: time = time(11, 0),
    capacity: int = 1,
    booked_count: int = 0,
    is_active: bool = True,
    benefit_type_id: Optional[str] = None,
    facility_id: Optional[str] = None,
) -> BenefitSlot:
    slot = BenefitSlot(
        branch_id=branch_id,
        benefit_type=benefit_type,
        benefit_type_id=benefit_type_id,
        facility_id=facility_id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        capacity=capacity,
        booked_count=booked_count,
        is_active=is_active,
    )
    db.add(slot)
    db.commit()
    return slot


def create_grant(
    db: Session,
    *,
    member_id: str = MEMBER_ID,
    benefit_type: str = SAUNA,
    remaining: int = 1,
    total: Optional[int] = None,
    expires_at: Optional[datetime] = SLOT_START + timedelta(days=30),
    purchased_at: datetime = SLOT_START - timedelta(days=30),
    source: str = GrantSource.PLAN.value,
) -> MemberBenefitCredit:
    grant = MemberBenefitCredit(
        member_id=member_id,
        benefit_type=benefit_type,
        source=source,
        credits_total=total if total is not None else remaining,
        credits_remaining=remaining,
        purchased_at=purchased_at,
        expires_at=expires_at,
    )
    db.add(grant)
    db.commit()
    return grant


def create_settings(
    db: Session,
    *,
    branch_id: str = BRANCH_ID,
    benefit_type: str = SAUNA,
    benefit_type_id: Optional[str] = None,
    **overrides,
) -> BenefitSettings:
    values = {
        "is_slot_booking_enabled": True,
        "slot_duration_minutes": 60,
        "booking_opens_hours_before": 24,
        "cancellation_deadline_minutes": 60,
        "no_show_policy": NoShowPolicy.FORFEIT_CREDIT.value,
        "no_show_penalty_amount": Decimal("0"),
        "max_bookings_per_day": 1,
        "buffer_between_sessions_minutes": 0,
        "operating_hours_start": time(6, 0),
        "operating_hours_end": time(22, 0),
        "capacity_per_slot": 1,
    }
    values.update(overrides)
    row = BenefitSettings(
        branch_id=branch_id, benefit_type=benefit_type, benefit_type_id=benefit_type_id, **values
    )
    db.add(row)
    db.commit()
    return row


def create_package(db: Session, **overrides) -> BenefitPackage:
    values = {
        "branch_id": BRANCH_ID,
        "name": "Sauna 10-pack",
        "benefit_type": SAUNA,
        "quantity": 10,
        "price": Decimal("99.00"),
        "validity_days": 90,
    }
    values.update(overrides)
    package = BenefitPackage(**values)
    db.add(package)
    db.commit()
    return package
