"""Pydantic schemas for the benefit booking API."""

from .benefit_booking import (
    AvailableSlotsResponse,
    BookingCancel,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingTransitionResponse,
    CancellationOutcomeResponse,
    CreditBalanceResponse,
    SlotResponse,
)

__all__ = [
    "AvailableSlotsResponse",
    "BookingCancel",
    "BookingCreate",
    "BookingListResponse",
    "BookingResponse",
    "BookingTransitionResponse",
    "CancellationOutcomeResponse",
    "CreditBalanceResponse",
    "SlotResponse",
]
