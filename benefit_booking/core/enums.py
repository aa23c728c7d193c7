# benefit_booking/core/enums.py
"""
Core enums for the benefit booking engine.

Benefit types are a closed enum in storage; branches may define custom
benefit types, which are stored as ``other`` plus a ``benefit_type_id``.
"""

from enum import Enum


class BenefitType(str, Enum):
    """Known benefit type codes."""

    GYM_ACCESS = "gym_access"
    POOL_ACCESS = "pool_access"
    SAUNA_ACCESS = "sauna_access"
    STEAM_ACCESS = "steam_access"
    GROUP_CLASSES = "group_classes"
    PT_SESSIONS = "pt_sessions"
    LOCKER = "locker"
    TOWEL = "towel"
    PARKING = "parking"
    GUEST_PASS = "guest_pass"
    OTHER = "other"
    ICE_BATH = "ice_bath"
    YOGA_CLASS = "yoga_class"
    CROSSFIT_CLASS = "crossfit_class"
    SPA_ACCESS = "spa_access"
    SAUNA_SESSION = "sauna_session"
    CARDIO_AREA = "cardio_area"
    FUNCTIONAL_TRAINING = "functional_training"


KNOWN_BENEFIT_TYPES = frozenset(member.value for member in BenefitType)


def normalize_benefit_type(code: str | BenefitType | None) -> str:
    """Return ``code`` if it is a known benefit type, otherwise ``other``."""
    if isinstance(code, BenefitType):
        return code.value
    if not code:
        return BenefitType.OTHER.value
    candidate = code.strip().lower()
    return candidate if candidate in KNOWN_BENEFIT_TYPES else BenefitType.OTHER.value


class NoShowPolicy(str, Enum):
    """What happens to a late cancellation or a no-show."""

    NONE = "none"
    FORFEIT_CREDIT = "forfeit_credit"
    MONETARY_PENALTY = "monetary_penalty"
    BOTH = "both"


class GrantSource(str, Enum):
    """Where a credits grant came from."""

    PLAN = "plan"
    PACKAGE = "package"
    ADJUSTMENT = "adjustment"


class LedgerEntryType(str, Enum):
    DEBIT = "debit"
    REFUND = "refund"
    FORFEIT = "forfeit"
    ADJUSTMENT = "adjustment"


class PenaltyReason(str, Enum):
    LATE_CANCELLATION = "late_cancellation"
    NO_SHOW = "no_show"


class RoleName(str, Enum):
    """Caller roles resolved by the identity collaborator."""

    MEMBER = "member"
    STAFF = "staff"
    ADMIN = "admin"
