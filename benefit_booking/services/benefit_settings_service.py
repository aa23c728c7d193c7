# benefit_booking/services/benefit_settings_service.py
"""
Benefit Settings Service

Per-branch configuration of each benefit type and the packages a branch
sells. The engine only ever reads settings as an immutable
``SettingsSnapshot``; missing rows fall back to the defaults.
"""

from decimal import Decimal
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import NoShowPolicy, normalize_benefit_type
from ..core.exceptions import NotFoundException, ValidationException
from ..models.benefit_settings import BenefitPackage, BenefitSettings
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_policy import (
    DEFAULT_OPERATING_HOURS_END,
    DEFAULT_OPERATING_HOURS_START,
    SettingsSnapshot,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "is_slot_booking_enabled",
    "slot_duration_minutes",
    "booking_opens_hours_before",
    "cancellation_deadline_minutes",
    "no_show_policy",
    "no_show_penalty_amount",
    "max_bookings_per_day",
    "buffer_between_sessions_minutes",
    "operating_hours_start",
    "operating_hours_end",
    "capacity_per_slot",
)

_PACKAGE_FIELDS = (
    "name",
    "description",
    "benefit_type",
    "quantity",
    "price",
    "validity_days",
    "is_active",
    "display_order",
)


class BenefitSettingsService(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.repository = RepositoryFactory.create_benefit_settings_repository(db)
        self.package_repository = RepositoryFactory.create_benefit_package_repository(db)

    def _find_row(
        self, branch_id: str, benefit_type: str, benefit_type_id: Optional[str]
    ) -> Optional[BenefitSettings]:
        # A custom type id is more specific than the enum and wins when both match
        if benefit_type_id:
            row = self.repository.find_for_type_id(
                branch_id=branch_id, benefit_type_id=benefit_type_id
            )
            if row is not None:
                return row
        return self.repository.find_for_enum(branch_id=branch_id, benefit_type=benefit_type)

    def get_snapshot(
        self, branch_id: str, benefit_type: str, benefit_type_id: Optional[str] = None
    ) -> SettingsSnapshot:
        normalized = normalize_benefit_type(benefit_type)
        row = self._find_row(branch_id, normalized, benefit_type_id)
        if row is None:
            return SettingsSnapshot(
                branch_id=branch_id, benefit_type=normalized, benefit_type_id=benefit_type_id
            )
        return SettingsSnapshot.from_model(row)

    def list_settings(self, branch_id: str) -> List[SettingsSnapshot]:
        return [SettingsSnapshot.from_model(row) for row in self.repository.list_for_branch(branch_id)]

    @BaseService.measure_operation("upsert_settings")
    def upsert(
        self,
        branch_id: str,
        benefit_type: str,
        *,
        benefit_type_id: Optional[str] = None,
        **fields,
    ) -> SettingsSnapshot:
        """Create or update the settings row for a branch and benefit type."""
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationException(
                f"Unknown settings fields: {', '.join(sorted(unknown))}",
                code="INVALID_SETTINGS",
            )
        if "no_show_policy" in fields:
            try:
                fields["no_show_policy"] = NoShowPolicy(fields["no_show_policy"]).value
            except ValueError as exc:
                raise ValidationException(
                    f"Unknown no-show policy: {fields['no_show_policy']}",
                    code="INVALID_SETTINGS",
                ) from exc
        self._validate(fields)

        normalized = normalize_benefit_type(benefit_type)
        if benefit_type_id:
            row = self.repository.find_for_type_id(branch_id=branch_id, benefit_type_id=benefit_type_id)
        else:
            row = self.repository.find_for_enum(branch_id=branch_id, benefit_type=normalized)

        # Hours are checked against the stored row, not just this call's fields
        start = fields.get(
            "operating_hours_start",
            row.operating_hours_start if row is not None else DEFAULT_OPERATING_HOURS_START,
        )
        end = fields.get(
            "operating_hours_end",
            row.operating_hours_end if row is not None else DEFAULT_OPERATING_HOURS_END,
        )
        if end <= start:
            raise ValidationException(
                "operating_hours_end must be after operating_hours_start",
                code="INVALID_SETTINGS",
                details={"start": str(start), "end": str(end)},
            )

        with self.transaction():
            if row is None:
                values = {
                    "operating_hours_start": start,
                    "operating_hours_end": end,
                    **fields,
                }
                row = self.repository.create(
                    branch_id=branch_id,
                    benefit_type=normalized,
                    benefit_type_id=benefit_type_id,
                    **values,
                )
            else:
                for key, value in fields.items():
                    setattr(row, key, value)
                self.repository.flush()

        self.logger.info(
            "Benefit settings saved",
            extra={"branch_id": branch_id, "benefit_type": normalized, "benefit_type_id": benefit_type_id},
        )
        return SettingsSnapshot.from_model(row)

    @staticmethod
    def _validate(fields: dict) -> None:
        for key in ("slot_duration_minutes", "capacity_per_slot"):
            if key in fields and int(fields[key]) <= 0:
                raise ValidationException(f"{key} must be positive", code="INVALID_SETTINGS")
        for key in (
            "booking_opens_hours_before",
            "cancellation_deadline_minutes",
            "max_bookings_per_day",
            "buffer_between_sessions_minutes",
        ):
            if key in fields and int(fields[key]) < 0:
                raise ValidationException(f"{key} cannot be negative", code="INVALID_SETTINGS")
        if "no_show_penalty_amount" in fields and Decimal(str(fields["no_show_penalty_amount"])) < 0:
            raise ValidationException("no_show_penalty_amount cannot be negative", code="INVALID_SETTINGS")

    # Packages

    def list_packages(self, branch_id: str, benefit_type: Optional[str] = None) -> List[BenefitPackage]:
        normalized = normalize_benefit_type(benefit_type) if benefit_type else None
        return self.package_repository.list_active(branch_id=branch_id, benefit_type=normalized)

    @BaseService.measure_operation("create_package")
    def create_package(
        self,
        *,
        branch_id: str,
        name: str,
        benefit_type: str,
        quantity: int,
        price: Decimal,
        validity_days: int,
        description: Optional[str] = None,
        display_order: int = 0,
    ) -> BenefitPackage:
        if quantity <= 0 or validity_days <= 0:
            raise ValidationException(
                "Package quantity and validity must be positive", code="INVALID_PACKAGE"
            )
        with self.transaction():
            package = self.package_repository.create(
                branch_id=branch_id,
                name=name,
                description=description,
                benefit_type=normalize_benefit_type(benefit_type),
                quantity=quantity,
                price=price,
                validity_days=validity_days,
                display_order=display_order,
            )
        return package

    @BaseService.measure_operation("update_package")
    def update_package(self, package_id: str, **fields) -> BenefitPackage:
        """
        Edit a package. Grants already bought from it keep their quantity and expiry.
        """
        unknown = set(fields) - set(_PACKAGE_FIELDS)
        if unknown:
            raise ValidationException(
                f"Unknown package fields: {', '.join(sorted(unknown))}",
                code="INVALID_PACKAGE",
            )
        for key in ("quantity", "validity_days"):
            if key in fields and int(fields[key]) <= 0:
                raise ValidationException(f"{key} must be positive", code="INVALID_PACKAGE")
        if "price" in fields and Decimal(str(fields["price"])) < 0:
            raise ValidationException("price cannot be negative", code="INVALID_PACKAGE")
        if "benefit_type" in fields:
            fields["benefit_type"] = normalize_benefit_type(fields["benefit_type"])

        package = self.get_package(package_id)
        with self.transaction():
            for key, value in fields.items():
                setattr(package, key, value)
            self.package_repository.flush()

        self.log_operation("update_package", package_id=package_id, fields=sorted(fields))
        return package

    def get_package(self, package_id: str) -> BenefitPackage:
        package = self.package_repository.get_by_id(package_id)
        if package is None:
            raise NotFoundException(
                "Benefit package not found",
                code="PACKAGE_NOT_FOUND",
                details={"package_id": package_id},
            )
        return package


__all__ = ["BenefitSettingsService"]
