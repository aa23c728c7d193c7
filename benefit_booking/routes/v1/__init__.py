# benefit_booking/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import benefit_bookings

__all__ = ["benefit_bookings"]
