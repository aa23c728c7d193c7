# benefit_booking/repositories/factory.py
"""
Repository Factory

Central place where services obtain repository instances, so tests can
patch a single seam.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

if TYPE_CHECKING:
    from .benefit_settings_repository import BenefitPackageRepository, BenefitSettingsRepository
    from .booking_repository import BookingRepository
    from .credit_repository import CreditRepository
    from .slot_repository import SlotRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Generic repository for models without bespoke queries (e.g. penalties)."""
        return BaseRepository(db, model)

    @staticmethod
    def create_slot_repository(db: Session) -> "SlotRepository":
        from .slot_repository import SlotRepository

        return SlotRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_credit_repository(db: Session) -> "CreditRepository":
        from .credit_repository import CreditRepository

        return CreditRepository(db)

    @staticmethod
    def create_benefit_settings_repository(db: Session) -> "BenefitSettingsRepository":
        from .benefit_settings_repository import BenefitSettingsRepository

        return BenefitSettingsRepository(db)

    @staticmethod
    def create_benefit_package_repository(db: Session) -> "BenefitPackageRepository":
        from .benefit_settings_repository import BenefitPackageRepository

        return BenefitPackageRepository(db)
