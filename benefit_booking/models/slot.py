# benefit_booking/models/slot.py
"""
Bookable time slot for a benefit type at a branch.

``booked_count`` is a live counter and is only ever changed by the
conditional UPDATE statements in SlotRepository; never assign it from
service code.
"""

from datetime import datetime, timedelta

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Time,
    text,
)
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import facility_datetime
from ..database import Base


class BenefitSlot(Base):
    __tablename__ = "benefit_slots"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    branch_id = Column(String(64), nullable=False)
    benefit_type = Column(String(32), nullable=False)
    benefit_type_id = Column(String(64), nullable=True)
    facility_id = Column(String(64), nullable=True)

    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    capacity = Column(Integer, nullable=False)
    booked_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_benefit_slots_capacity_positive"),
        CheckConstraint("booked_count >= 0", name="ck_benefit_slots_booked_non_negative"),
        CheckConstraint("booked_count <= capacity", name="ck_benefit_slots_not_overbooked"),
        Index("ix_benefit_slots_branch_type_date", "branch_id", "benefit_type", "slot_date"),
    )

    @property
    def start_at(self) -> datetime:
        """Slot start as an aware UTC instant."""
        return facility_datetime(self.slot_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        end = facility_datetime(self.slot_date, self.end_time)
        if self.end_time <= self.start_time:
            # Slot runs past midnight
            end += timedelta(days=1)
        return end

    @property
    def seats_left(self) -> int:
        return max(0, int(self.capacity or 0) - int(self.booked_count or 0))

    def __repr__(self) -> str:
        return (
            f"<BenefitSlot {self.id}: branch={self.branch_id}, type={self.benefit_type}, "
            f"date={self.slot_date}, time={self.start_time}-{self.end_time}, "
            f"booked={self.booked_count}/{self.capacity}, active={self.is_active}>"
        )
