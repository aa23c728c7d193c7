"""
Dependencies for the booking API: database session, caller identity and services.

Authentication happens upstream; the gateway forwards the resolved identity
in ``X-Member-Id``, ``X-Role`` and ``X-Branch-Id`` headers.
"""

import logging
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..core.enums import RoleName
from ..database import get_db as original_get_db
from ..principal import CallerContext
from ..services.booking_engine import BookingEngine
from ..services.credit_ledger import CreditLedger
from ..services.slot_directory import SlotDirectory

logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields:
        Database session that will be closed after use
    """
    yield from original_get_db()


def get_caller(
    x_member_id: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None),
    x_branch_id: Optional[str] = Header(default=None),
) -> CallerContext:
    if not x_member_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Missing caller identity", "code": "UNAUTHENTICATED"},
        )
    try:
        role = RoleName((x_role or RoleName.MEMBER.value).strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": f"Unknown role: {x_role}", "code": "UNKNOWN_ROLE"},
        )
    return CallerContext(member_id=x_member_id, role=role, branch_id=x_branch_id or None)


def require_staff(caller: CallerContext = Depends(get_caller)) -> CallerContext:
    if not caller.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Staff role required", "code": "STAFF_ONLY"},
        )
    return caller


def get_slot_directory(db: Session = Depends(get_db)) -> SlotDirectory:
    return SlotDirectory(db)


def get_credit_ledger(db: Session = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


def get_booking_engine(db: Session = Depends(get_db)) -> BookingEngine:
    """Engine sharing one request-scoped session with its collaborators."""
    return BookingEngine(db)
