# benefit_booking/core/exceptions.py
"""
Domain-specific exceptions for the benefit booking engine.

Every booking, cancellation and ledger failure is reported as one of these,
so the API layer can map it to a response without inspecting messages.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the caller lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Slot directory


class SlotNotFound(NotFoundException):
    """Slot does not exist or belongs to another branch."""

    def __init__(self, slot_id: str, *, branch_id: Optional[str] = None):
        details: Dict[str, Any] = {"slot_id": slot_id}
        if branch_id:
            details["branch_id"] = branch_id
        super().__init__(message="Slot not found", code="SLOT_NOT_FOUND", details=details)


class SlotFull(ConflictException):
    """No seat left in the slot."""

    def __init__(self, slot_id: str, capacity: Optional[int] = None):
        super().__init__(
            message="This slot is fully booked",
            code="SLOT_FULL",
            details={"slot_id": slot_id, "capacity": capacity},
        )


class SlotInactive(ConflictException):
    """Slot has been deactivated by the branch."""

    def __init__(self, slot_id: str):
        super().__init__(
            message="This slot is no longer available",
            code="SLOT_INACTIVE",
            details={"slot_id": slot_id},
        )


# Bookings


class BookingNotFound(NotFoundException):
    def __init__(self, booking_id: str):
        super().__init__(
            message="Booking not found",
            code="BOOKING_NOT_FOUND",
            details={"booking_id": booking_id},
        )


class AlreadyBooked(ConflictException):
    """Member already holds an active booking for this slot."""

    def __init__(self, member_id: str, slot_id: str, booking_id: Optional[str] = None):
        super().__init__(
            message="You already have a booking for this slot",
            code="ALREADY_BOOKED",
            details={"member_id": member_id, "slot_id": slot_id, "booking_id": booking_id},
        )


class InsufficientCredits(BusinessRuleException):
    def __init__(self, member_id: str, benefit_type: str, requested: int, available: int):
        super().__init__(
            message=f"Not enough {benefit_type} credits: {available} available, {requested} needed",
            code="INSUFFICIENT_CREDITS",
            details={
                "member_id": member_id,
                "benefit_type": benefit_type,
                "requested": requested,
                "available": available,
            },
        )


class BookingWindowClosed(BusinessRuleException):
    """Too early or too late to book the slot."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="BOOKING_WINDOW_CLOSED", details=details or {})


class DailyLimitExceeded(BusinessRuleException):
    def __init__(self, limit: int, slot_date: str):
        super().__init__(
            message=f"Daily booking limit of {limit} reached for {slot_date}",
            code="DAILY_LIMIT_EXCEEDED",
            details={"max_bookings_per_day": limit, "date": slot_date},
        )


class BufferConflict(ConflictException):
    """Slot is too close to another active booking of the member."""

    def __init__(self, conflicting_booking_id: str, buffer_minutes: int):
        super().__init__(
            message=(
                f"This slot is within {buffer_minutes} minutes of another booking you hold"
            ),
            code="BUFFER_CONFLICT",
            details={
                "conflicting_booking_id": conflicting_booking_id,
                "buffer_minutes": buffer_minutes,
            },
        )


class InvalidTransition(ConflictException):
    """Booking state machine guard failed."""

    def __init__(self, booking_id: str, current_status: str, event: str, reason: str = ""):
        message = f"Cannot {event} a booking in status '{current_status}'"
        if reason:
            message = f"Cannot {event} booking: {reason}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={"booking_id": booking_id, "status": current_status, "event": event},
        )


# Storage / consistency


class ConcurrentUpdateError(ServiceException):
    """
    A conditional update lost a race with another request.

    Transient: nothing was committed, the whole operation may be retried.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="CONCURRENT_UPDATE", details=details or {})


class InternalConsistencyFault(ServiceException):
    """
    An invariant of the booking store was found violated.

    Fatal for the operation: the transaction is rolled back and the fault is
    logged for operator attention.
    """

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="INTERNAL_CONSISTENCY_FAULT", details=details or {})


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues, query failures, or constraint violations.
    """


TRANSIENT_EXCEPTIONS = (ConcurrentUpdateError,)


def is_lock_contention(exc: Exception) -> bool:
    """Check if a storage error is lock contention or a lock timeout."""
    error_str = str(exc).lower()
    return (
        "database is locked" in error_str
        or "could not obtain lock" in error_str
        or "lock timeout" in error_str
        or "deadlock detected" in error_str
        or "could not serialize access" in error_str
    )
