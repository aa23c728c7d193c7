# benefit_booking/tasks/beat_schedule.py
"""
Celery Beat schedule for the booking engine.

- No-show sweep every few minutes so released seats return quickly
- Credit expiry sweep once a night, in the facility timezone
"""

from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab

from benefit_booking.core.config import settings


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        "sweep-no-shows": {
            "task": "booking_maintenance.sweep_no_shows",
            "schedule": timedelta(minutes=settings.no_show_sweep_interval_minutes),
            "options": {"queue": "maintenance", "expires": 60 * settings.no_show_sweep_interval_minutes},
        },
        "expire-credits": {
            "task": "booking_maintenance.expire_credits",
            "schedule": crontab(hour=settings.credit_expiry_sweep_hour, minute=0),
            "options": {"queue": "maintenance"},
        },
    }
