"""
Repository layer for the benefit booking engine.

Repositories own every SQL statement and never commit; services own the
transaction boundary.

Usage:
    from benefit_booking.repositories import RepositoryFactory

    slots = RepositoryFactory.create_slot_repository(db)
    reserved = slots.increment_booked_if_available(slot_id)
"""

from .base_repository import BaseRepository
from .benefit_settings_repository import BenefitPackageRepository, BenefitSettingsRepository
from .booking_repository import BookingRepository
from .credit_repository import CreditRepository
from .factory import RepositoryFactory
from .slot_repository import SlotRepository

__all__ = [
    "BaseRepository",
    "BenefitPackageRepository",
    "BenefitSettingsRepository",
    "BookingRepository",
    "CreditRepository",
    "RepositoryFactory",
    "SlotRepository",
]
