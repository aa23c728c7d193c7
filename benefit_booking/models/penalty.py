# benefit_booking/models/penalty.py
"""Monetary penalties recorded for external billing."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String
import ulid

from ..database import Base


class NoShowPenalty(Base):
    """One penalty per booking; billing picks these up, the engine never charges."""

    __tablename__ = "no_show_penalties"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26), ForeignKey("benefit_bookings.id"), nullable=False, unique=True
    )
    member_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(String(30), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_no_show_penalties_amount_positive"),
        CheckConstraint(
            "reason IN ('late_cancellation', 'no_show')", name="ck_no_show_penalties_reason"
        ),
    )

    def __repr__(self) -> str:
        return f"<NoShowPenalty booking={self.booking_id} amount={self.amount} reason={self.reason}>"
