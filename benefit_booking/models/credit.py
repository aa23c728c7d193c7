# benefit_booking/models/credit.py
"""
Credits ledger models.

MemberBenefitCredit is a grant: a balance of bookable units for one member
and benefit type, optionally expiring. CreditLedgerEntry rows are the
append-only history of every debit, refund and forfeit; the debit rows of a
booking are its origin grant trace.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func
import ulid

from ..core.enums import GrantSource
from ..database import Base


class MemberBenefitCredit(Base):
    __tablename__ = "member_benefit_credits"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    member_id = Column(String(64), nullable=False)
    membership_id = Column(String(64), nullable=True)
    benefit_type = Column(String(32), nullable=False)

    source = Column(String(20), nullable=False, default=GrantSource.PLAN.value)
    package_id = Column(String(26), ForeignKey("benefit_packages.id"), nullable=True)
    note = Column(Text, nullable=True)

    credits_total = Column(Integer, nullable=False)
    credits_remaining = Column(Integer, nullable=False)

    purchased_at = Column(DateTime(timezone=True), nullable=False)
    # NULL means the grant never expires (adjustment grants)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    # Stamped by the expiry sweep; exhausted grants are never consumed or refunded into
    exhausted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("credits_total >= 0", name="ck_member_credits_total_non_negative"),
        CheckConstraint("credits_remaining >= 0", name="ck_member_credits_remaining_non_negative"),
        CheckConstraint(
            "credits_remaining <= credits_total", name="ck_member_credits_remaining_within_total"
        ),
        CheckConstraint(
            "source IN ('plan', 'package', 'adjustment')", name="ck_member_credits_source"
        ),
        Index("ix_member_credits_member_type", "member_id", "benefit_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<MemberBenefitCredit {self.id}: member={self.member_id}, type={self.benefit_type}, "
            f"{self.credits_remaining}/{self.credits_total}, expires={self.expires_at}>"
        )


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger_entries"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    grant_id = Column(String(26), ForeignKey("member_benefit_credits.id"), nullable=False)
    member_id = Column(String(64), nullable=False)
    benefit_type = Column(String(32), nullable=False)
    booking_id = Column(String(26), nullable=True, index=True)
    entry_type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    # Position within the operation that wrote it; orders a booking's trace
    sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_ledger_amount_positive"),
        CheckConstraint(
            "entry_type IN ('debit', 'refund', 'forfeit', 'adjustment')",
            name="ck_credit_ledger_entry_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditLedgerEntry {self.entry_type} {self.amount} grant={self.grant_id} "
            f"booking={self.booking_id}>"
        )
