# benefit_booking/tasks/__init__.py
"""
Celery tasks package for the booking engine.

- booking_maintenance.sweep_no_shows: mark overdue bookings as no-shows
- booking_maintenance.expire_credits: stamp expired credit grants
"""

from benefit_booking.tasks.booking_maintenance import expire_credits, sweep_no_shows
from benefit_booking.tasks.celery_app import BaseTask, celery_app

__all__ = ["BaseTask", "celery_app", "expire_credits", "sweep_no_shows"]
