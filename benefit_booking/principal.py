"""
Values handed to the booking engine by external collaborators.

Identity and role resolution, and membership/plan management, live outside
this package; they reach the engine only as these immutable values.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import FrozenSet, Optional

from .core.enums import RoleName, normalize_benefit_type


@dataclass(frozen=True)
class CallerContext:
    """Who is calling: resolved by the identity service before the engine is invoked."""

    member_id: str
    role: RoleName = RoleName.MEMBER
    branch_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (RoleName.STAFF, RoleName.ADMIN)

    def can_act_for(self, member_id: str, branch_id: Optional[str] = None) -> bool:
        """Members act on their own bookings; staff only within their branch, admins anywhere."""
        if self.member_id == member_id:
            return True
        if self.role == RoleName.ADMIN:
            return True
        return self.role == RoleName.STAFF and branch_id is not None and self.branch_id == branch_id


@dataclass(frozen=True)
class PlanEntitlement:
    """A plan's allowance of one benefit type, fed to ``CreditLedger.grant_credits``."""

    benefit_type: str
    quantity: int
    valid_until: Optional[datetime] = None
    membership_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "benefit_type", normalize_benefit_type(self.benefit_type))


WEEKDAY_CODES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class FacilitySchedule:
    """
    A physical facility as the facility registry describes it.

    ``capacity`` replaces the settings' ``capacity_per_slot`` for slots
    generated at this facility when set.
    """

    facility_id: str
    benefit_type: str
    benefit_type_id: Optional[str] = None
    capacity: Optional[int] = None
    available_days: FrozenSet[str] = frozenset(WEEKDAY_CODES)
    under_maintenance: bool = False
    is_active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "benefit_type", normalize_benefit_type(self.benefit_type))
        object.__setattr__(
            self, "available_days", frozenset(d.strip().lower() for d in self.available_days)
        )

    @property
    def is_schedulable(self) -> bool:
        return self.is_active and not self.under_maintenance

    def is_open_on(self, day: date) -> bool:
        return WEEKDAY_CODES[day.weekday()] in self.available_days
