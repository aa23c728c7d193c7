# benefit_booking/tasks/booking_maintenance.py
"""
Periodic booking maintenance.

Both jobs are idempotent: a sweep that runs twice, or overlaps with a staff
member marking a no-show by hand, changes each booking or grant at most once.
"""

import logging
from typing import Any, Callable, Dict, TypeVar, cast

from celery import shared_task

from benefit_booking.core.timezone_utils import utc_now
from benefit_booking.database import get_db_session, with_db_retry
from benefit_booking.services.booking_engine import BookingEngine
from benefit_booking.services.credit_ledger import CreditLedger
from benefit_booking.tasks.celery_app import BaseTask

logger = logging.getLogger(__name__)

_TaskFunc = TypeVar("_TaskFunc", bound=Callable[..., Any])


def _typed_shared_task(*args: Any, **kwargs: Any) -> Callable[[_TaskFunc], _TaskFunc]:
    """Typed wrapper for Celery's shared_task decorator."""
    return cast(Callable[[_TaskFunc], _TaskFunc], shared_task(*args, **kwargs))


@_typed_shared_task(name="booking_maintenance.sweep_no_shows", base=BaseTask)
def sweep_no_shows() -> Dict[str, int]:
    """Mark overdue booked bookings as no-shows."""
    now = utc_now()
    with get_db_session() as db:
        engine = BookingEngine(db)
        result = with_db_retry("sweep_no_shows", lambda: engine.sweep_no_shows(now))
    if result.failed:
        logger.warning("[BOOKING-MAINT] %d no-show transitions failed", result.failed)
    return {"marked": result.marked, "skipped": result.skipped, "failed": result.failed}


@_typed_shared_task(name="booking_maintenance.expire_credits", base=BaseTask)
def expire_credits() -> Dict[str, int]:
    """Stamp credit grants whose expiry has passed."""
    now = utc_now()
    with get_db_session() as db:
        ledger = CreditLedger(db)
        expired = with_db_retry("expire_credits", lambda: ledger.expire_sweep(now))
    logger.info("[BOOKING-MAINT] expired %d credit grants", expired)
    return {"expired": expired}
