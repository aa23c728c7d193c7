"""Problem+json error responses (RFC 7807) for the booking API."""

from http import HTTPStatus
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"
PROBLEM_TYPE_BASE = "urn:benefit-booking:problem:"

# Transient failures the client may retry whole
RETRYABLE_STATUSES = {HTTPStatus.SERVICE_UNAVAILABLE}


def problem_response(
    request: Request,
    status: int,
    *,
    detail: Optional[str] = None,
    code: Optional[str] = None,
    errors: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render one problem document; ``type`` is derived from the error code."""
    try:
        title = HTTPStatus(status).phrase
    except ValueError:
        title = "Error"
    body: Dict[str, Any] = {
        "type": f"{PROBLEM_TYPE_BASE}{code.lower()}" if code else "about:blank",
        "title": title,
        "status": status,
        "detail": detail or "",
        "instance": request.url.path,
    }
    if code:
        body["code"] = code
    if errors is not None:
        body["errors"] = jsonable_encoder(errors)
    if status in RETRYABLE_STATUSES and not headers:
        headers = {"Retry-After": "1"}
    return JSONResponse(body, status_code=status, media_type=PROBLEM_MEDIA_TYPE, headers=headers)


def _unpack_detail(detail: Any) -> tuple[Optional[str], Optional[str], Optional[Any]]:
    """Split an HTTPException detail built by DomainException.to_http_exception()."""
    if isinstance(detail, dict):
        message = detail.get("message")
        code = detail.get("code")
        return (
            message if isinstance(message, str) else None,
            code if isinstance(code, str) else None,
            detail.get("details") or None,
        )
    if detail is None:
        return None, None, None
    return str(detail), None, None


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message, code, errors = _unpack_detail(exc.detail)
        return problem_response(
            request,
            exc.status_code,
            detail=message,
            code=code,
            errors=errors,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return problem_response(
            request,
            422,
            detail="Request validation failed",
            code="validation_error",
            errors=exc.errors(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return problem_response(
            request, 500, detail="Internal Server Error", code="internal_server_error"
        )
