"""Request and response schemas for the benefit booking API."""

from datetime import date, datetime, time
from typing import List, Optional

from pydantic import Field, field_validator

from .base import Money, StandardizedModel, StrictModel, as_utc

ULID_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


class SlotResponse(StandardizedModel):
    id: str
    branch_id: str
    benefit_type: str
    benefit_type_id: Optional[str] = None
    facility_id: Optional[str] = None
    slot_date: date
    start_time: time
    end_time: time
    start_at: datetime
    end_at: datetime
    capacity: int
    booked_count: int
    seats_left: int
    is_active: bool


class AvailableSlotsResponse(StandardizedModel):
    items: List[SlotResponse]
    total: int


class BookingCreate(StrictModel):
    """Schema for booking a slot."""

    slot_id: str = Field(..., pattern=ULID_PATTERN, description="Slot ULID")
    membership_id: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(
        default=None,
        min_length=8,
        max_length=128,
        description="Client-generated key; resending it returns the original booking",
    )


class BookingCancel(StrictModel):
    """Schema for cancelling a booking."""

    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class BookingResponse(StandardizedModel):
    id: str
    slot_id: str
    member_id: str
    membership_id: Optional[str] = None
    branch_id: str
    benefit_type: str
    status: str
    booked_at: datetime
    status_changed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    check_in_at: Optional[datetime] = None
    no_show_marked_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    slot: Optional[SlotResponse] = None

    @field_validator(
        "booked_at",
        "status_changed_at",
        "cancelled_at",
        "check_in_at",
        "no_show_marked_at",
        mode="before",
    )
    @classmethod
    def normalize_timestamps(cls, v: object) -> object:
        return as_utc(v)


class CancellationOutcomeResponse(StandardizedModel):
    is_free: bool
    refund_credit: bool
    forfeit_credit: bool
    penalty_amount: Money
    policy_basis: str


class BookingTransitionResponse(StandardizedModel):
    booking: BookingResponse
    outcome: CancellationOutcomeResponse


class BookingListResponse(StandardizedModel):
    items: List[BookingResponse]
    total: int


class CreditBalanceResponse(StandardizedModel):
    member_id: str
    benefit_type: str
    plan_credits: int
    package_credits: int
    adjustment_credits: int
    total_available: int
