"""
Database models for the benefit booking engine.

- Slots: bookable time windows with a live booked counter
- Bookings: the booking lifecycle (tagged state)
- Credits: member grants and the append-only ledger
- Settings: per-branch benefit configuration and purchasable packages
- Penalties: monetary no-show/late-cancellation penalties for billing
"""

from .benefit_settings import BenefitPackage, BenefitSettings
from .booking import (
    ACTIVE_STATUSES,
    Booked,
    Booking,
    BookingState,
    BookingStatus,
    Cancelled,
    CheckedIn,
    NoShow,
)
from .credit import CreditLedgerEntry, MemberBenefitCredit
from .penalty import NoShowPenalty
from .slot import BenefitSlot

__all__ = [
    "ACTIVE_STATUSES",
    "BenefitPackage",
    "BenefitSettings",
    "BenefitSlot",
    "Booked",
    "Booking",
    "BookingState",
    "BookingStatus",
    "Cancelled",
    "CheckedIn",
    "CreditLedgerEntry",
    "MemberBenefitCredit",
    "NoShow",
    "NoShowPenalty",
]
