# benefit_booking/models/benefit_settings.py
"""Per-branch benefit configuration and the packages members can buy."""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func
import ulid

from ..core.enums import NoShowPolicy
from ..database import Base


class BenefitSettings(Base):
    __tablename__ = "benefit_settings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    branch_id = Column(String(64), nullable=False, index=True)
    benefit_type = Column(String(32), nullable=False)
    # Custom benefit types are stored as benefit_type='other' plus this id
    benefit_type_id = Column(String(64), nullable=True)

    is_slot_booking_enabled = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    slot_duration_minutes = Column(Integer, nullable=False, default=30)
    booking_opens_hours_before = Column(Integer, nullable=False, default=24)
    cancellation_deadline_minutes = Column(Integer, nullable=False, default=60)
    no_show_policy = Column(String(20), nullable=False, default=NoShowPolicy.MONETARY_PENALTY.value)
    no_show_penalty_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    max_bookings_per_day = Column(Integer, nullable=False, default=1)
    buffer_between_sessions_minutes = Column(Integer, nullable=False, default=0)
    operating_hours_start = Column(Time, nullable=False)
    operating_hours_end = Column(Time, nullable=False)
    capacity_per_slot = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "branch_id", "benefit_type", "benefit_type_id", name="uq_benefit_settings_branch_type"
        ),
        CheckConstraint("slot_duration_minutes > 0", name="ck_benefit_settings_duration_positive"),
        CheckConstraint("capacity_per_slot > 0", name="ck_benefit_settings_capacity_positive"),
        CheckConstraint(
            "no_show_policy IN ('none', 'forfeit_credit', 'monetary_penalty', 'both')",
            name="ck_benefit_settings_no_show_policy",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BenefitSettings branch={self.branch_id} type={self.benefit_type} "
            f"type_id={self.benefit_type_id}>"
        )


class BenefitPackage(Base):
    """Purchasable bundle of credits (upsell on top of plan allowances)."""

    __tablename__ = "benefit_packages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    branch_id = Column(String(64), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    benefit_type = Column(String(32), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    validity_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    display_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_benefit_packages_quantity_positive"),
        CheckConstraint("validity_days > 0", name="ck_benefit_packages_validity_positive"),
        CheckConstraint("price >= 0", name="ck_benefit_packages_price_non_negative"),
    )
