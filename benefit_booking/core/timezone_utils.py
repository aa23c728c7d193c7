"""
Timezone utilities for the booking engine.

Slots are stored as a local date plus wall-clock start/end times in the
facility timezone; every decision is made on timezone-aware instants.
"""

from datetime import date, datetime, time, timezone

import pytz

from .config import settings


def get_facility_timezone() -> pytz.BaseTzInfo:
    return pytz.timezone(settings.facility_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to UTC.

    Naive values are assumed to already be UTC (SQLite returns stored
    timestamps without tzinfo).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def facility_datetime(day: date, wall_time: time) -> datetime:
    """Combine a slot date and wall-clock time into an aware UTC instant."""
    tz = get_facility_timezone()
    local = tz.localize(datetime.combine(day, wall_time))
    return local.astimezone(timezone.utc)


def facility_today(now: datetime | None = None) -> date:
    reference = ensure_utc(now) if now else utc_now()
    return reference.astimezone(get_facility_timezone()).date()
