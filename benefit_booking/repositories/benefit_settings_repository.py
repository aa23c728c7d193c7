# benefit_booking/repositories/benefit_settings_repository.py
"""Data access for per-branch benefit settings and benefit packages."""

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.benefit_settings import BenefitPackage, BenefitSettings
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BenefitSettingsRepository(BaseRepository[BenefitSettings]):
    def __init__(self, db: Session):
        super().__init__(db, BenefitSettings)

    def find_for_type_id(self, *, branch_id: str, benefit_type_id: str) -> Optional[BenefitSettings]:
        try:
            return (
                self.db.query(BenefitSettings)
                .filter(
                    BenefitSettings.branch_id == branch_id,
                    BenefitSettings.benefit_type_id == benefit_type_id,
                )
                .order_by(BenefitSettings.id.asc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load settings for type id %s: %s", benefit_type_id, e)
            raise RepositoryException(f"Failed to load benefit settings: {e}") from e

    def find_for_enum(self, *, branch_id: str, benefit_type: str) -> Optional[BenefitSettings]:
        """Settings row for a standard benefit type (no custom type id)."""
        try:
            return (
                self.db.query(BenefitSettings)
                .filter(
                    BenefitSettings.branch_id == branch_id,
                    BenefitSettings.benefit_type == benefit_type,
                    BenefitSettings.benefit_type_id.is_(None),
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to load settings for %s/%s: %s", branch_id, benefit_type, e)
            raise RepositoryException(f"Failed to load benefit settings: {e}") from e

    def list_for_branch(self, branch_id: str) -> List[BenefitSettings]:
        try:
            return (
                self.db.query(BenefitSettings)
                .filter(BenefitSettings.branch_id == branch_id)
                .order_by(BenefitSettings.benefit_type.asc(), BenefitSettings.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to list settings for branch %s: %s", branch_id, e)
            raise RepositoryException(f"Failed to list benefit settings: {e}") from e


class BenefitPackageRepository(BaseRepository[BenefitPackage]):
    def __init__(self, db: Session):
        super().__init__(db, BenefitPackage)

    def list_active(self, *, branch_id: str, benefit_type: Optional[str] = None) -> List[BenefitPackage]:
        try:
            query = self.db.query(BenefitPackage).filter(
                BenefitPackage.branch_id == branch_id,
                BenefitPackage.is_active.is_(True),
            )
            if benefit_type:
                query = query.filter(BenefitPackage.benefit_type == benefit_type)
            return query.order_by(BenefitPackage.display_order.asc(), BenefitPackage.id.asc()).all()
        except SQLAlchemyError as e:
            self.logger.error("Failed to list packages for branch %s: %s", branch_id, e)
            raise RepositoryException(f"Failed to list packages: {e}") from e
