"""
Shared base models and field types for booking API schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, PlainSerializer

from ..core.timezone_utils import ensure_utc


class StandardizedModel(BaseModel):
    """Responses built from ORM rows and engine dataclasses."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class StrictModel(BaseModel):
    """Request bodies: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", validate_default=True)


# Penalty amounts are stored as Numeric and rendered as JSON numbers
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def as_utc(value: Any) -> Any:
    """Field validator helper: stored timestamps come back naive from SQLite."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value
