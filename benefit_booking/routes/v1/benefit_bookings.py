# benefit_booking/routes/v1/benefit_bookings.py
"""
Benefit booking routes - API v1

Versioned endpoints under /api/v1/benefit-bookings.
All business logic is delegated to BookingEngine, SlotDirectory and CreditLedger.

Endpoints:
    GET /slots - Upcoming slots for a branch and benefit type
    GET /credits/balance - Caller's credit balance for a benefit type
    GET / - Caller's bookings, optionally filtered by status
    POST / - Book a slot
    POST /{booking_id}/cancel - Cancel a booking
    POST /{booking_id}/check-in - Check in to a booking
    POST /{booking_id}/no-show - Mark a booking as no-show (staff only)
"""

import asyncio
from datetime import date
import logging
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import (
    get_booking_engine,
    get_caller,
    get_credit_ledger,
    get_slot_directory,
    require_staff,
)
from ...core.exceptions import DomainException, ValidationException
from ...core.timezone_utils import utc_now
from ...database import with_db_retry
from ...models.booking import BookingStatus
from ...principal import CallerContext
from ...schemas.benefit_booking import (
    AvailableSlotsResponse,
    BookingCancel,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingTransitionResponse,
    CreditBalanceResponse,
    SlotResponse,
)
from ...services.booking_engine import BookingEngine, TransitionResult
from ...services.credit_ledger import CreditLedger
from ...services.slot_directory import SlotDirectory

logger = logging.getLogger(__name__)

# V1 router - no prefix here, added when mounting in main.py
router = APIRouter(tags=["benefit-bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _target_member(caller: CallerContext, member_id: Optional[str]) -> str:
    if member_id and member_id != caller.member_id:
        if not caller.is_staff:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": "Cannot read another member's data", "code": "FORBIDDEN"},
            )
        return member_id
    return caller.member_id


def _transition_response(result: TransitionResult) -> BookingTransitionResponse:
    return BookingTransitionResponse.model_validate(
        {"booking": result.booking, "outcome": result.outcome}
    )


# ============================================================================
# Static routes (no path parameters)
# ============================================================================


@router.get("/slots", response_model=AvailableSlotsResponse)
async def list_available_slots(
    benefit_type: str = Query(..., min_length=1, max_length=32),
    date_from: date = Query(...),
    date_to: date = Query(...),
    branch_id: Optional[str] = Query(default=None, max_length=64),
    benefit_type_id: Optional[str] = Query(default=None, max_length=64),
    caller: CallerContext = Depends(get_caller),
    slot_directory: SlotDirectory = Depends(get_slot_directory),
) -> AvailableSlotsResponse:
    """List active slots that have not started yet, ordered by date and start time."""
    try:
        target_branch = branch_id or caller.branch_id
        if not target_branch:
            raise ValidationException("branch_id is required", code="BRANCH_REQUIRED")

        def _load() -> List[SlotResponse]:
            slots = slot_directory.list_available_slots(
                target_branch,
                benefit_type,
                date_from,
                date_to,
                utc_now(),
                benefit_type_id=benefit_type_id,
            )
            return [SlotResponse.model_validate(slot) for slot in slots]

        items = await asyncio.to_thread(_load)
        return AvailableSlotsResponse(items=items, total=len(items))
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/credits/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    benefit_type: str = Query(..., min_length=1, max_length=32),
    member_id: Optional[str] = Query(default=None, max_length=64),
    caller: CallerContext = Depends(get_caller),
    credit_ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditBalanceResponse:
    """Usable credits by source (plan, package, adjustment)."""
    target = _target_member(caller, member_id)
    try:
        balance = await asyncio.to_thread(
            credit_ledger.get_balance, target, benefit_type, utc_now()
        )
        return CreditBalanceResponse(
            member_id=balance.member_id,
            benefit_type=balance.benefit_type,
            plan_credits=balance.plan_credits,
            package_credits=balance.package_credits,
            adjustment_credits=balance.adjustment_credits,
            total_available=balance.total_available,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[List[BookingStatus]] = Query(default=None, alias="status"),
    member_id: Optional[str] = Query(default=None, max_length=64),
    caller: CallerContext = Depends(get_caller),
    booking_engine: BookingEngine = Depends(get_booking_engine),
) -> BookingListResponse:
    """List a member's bookings, newest first."""
    target = _target_member(caller, member_id)
    try:
        bookings = await asyncio.to_thread(
            booking_engine.get_member_bookings, target, status_filter or None
        )
        items = [BookingResponse.model_validate(b) for b in bookings]
        return BookingListResponse(items=items, total=len(items))
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate = Body(...),
    caller: CallerContext = Depends(get_caller),
    booking_engine: BookingEngine = Depends(get_booking_engine),
) -> BookingResponse:
    """Book a slot: takes a seat and one credit, or fails with nothing changed."""
    try:
        booking = await asyncio.to_thread(
            with_db_retry,
            "book",
            lambda: booking_engine.book(
                caller.member_id,
                payload.slot_id,
                branch_id=caller.branch_id,
                membership_id=payload.membership_id,
                idempotency_key=payload.idempotency_key,
                notes=payload.notes,
            ),
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


# ============================================================================
# Booking transitions
# ============================================================================


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingTransitionResponse,
    responses={404: {"description": "Booking not found"}},
)
async def cancel_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    cancel_data: Optional[BookingCancel] = Body(default=None),
    caller: CallerContext = Depends(get_caller),
    booking_engine: BookingEngine = Depends(get_booking_engine),
) -> BookingTransitionResponse:
    """Cancel a booking; the response says whether it was free and what it cost."""
    reason = cancel_data.reason if cancel_data else None
    try:
        result = await asyncio.to_thread(
            with_db_retry,
            "cancel",
            lambda: booking_engine.cancel(booking_id, reason=reason, caller=caller),
        )
        return _transition_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/check-in",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def check_in_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    caller: CallerContext = Depends(get_caller),
    booking_engine: BookingEngine = Depends(get_booking_engine),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            with_db_retry,
            "check_in",
            lambda: booking_engine.check_in(booking_id, caller=caller),
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/no-show",
    response_model=BookingTransitionResponse,
    responses={403: {"description": "Staff only"}, 404: {"description": "Booking not found"}},
)
async def mark_no_show(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    caller: CallerContext = Depends(require_staff),
    booking_engine: BookingEngine = Depends(get_booking_engine),
) -> BookingTransitionResponse:
    """Mark a booking as no-show once its grace period has passed."""
    try:
        result = await asyncio.to_thread(
            with_db_retry,
            "mark_no_show",
            lambda: booking_engine.mark_no_show(booking_id, caller=caller),
        )
        return _transition_response(result)
    except DomainException as e:
        handle_domain_exception(e)
