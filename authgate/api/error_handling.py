from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authgate.api.schemas import Envelope, ErrorBody
from authgate.logging import get_logger
from authgate.service.errors import RateLimitedError, ServiceError
from authgate.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "unavailable",
    504: "timeout",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def describe_error(exc: Exception) -> Tuple[int, ErrorBody]:
    """Map any exception to ``(http_status, ErrorBody)``.

    Shared by the HTTP handlers and the RPC dispatcher so both transports
    report the same stable codes. Unknown exceptions never leak their text.
    """
    if isinstance(exc, ServiceError):
        return exc.status_code, ErrorBody(
            code=exc.error_code, message=exc.message, details=exc.detail or None
        )
    if isinstance(exc, ConstraintViolation):
        return 409, ErrorBody(code="conflict", message=exc.message, details=exc.detail or None)
    if isinstance(exc, StorageUnavailable):
        return 503, ErrorBody(code="unavailable", message="storage unavailable")
    return 500, ErrorBody(code="server_error", message="internal server error")


def rate_limit_headers(exc: RateLimitedError) -> Dict[str, str]:
    headers = {"Retry-After": str(max(1, exc.retry_after))}
    if "limit" in exc.detail:
        headers["X-RateLimit-Limit"] = str(exc.detail["limit"])
        headers["X-RateLimit-Remaining"] = str(exc.detail.get("remaining", 0))
        headers["X-RateLimit-Reset"] = str(exc.detail.get("reset_seconds", 0))
    return headers


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(503, "storage unavailable", code="unavailable")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = rate_limit_headers(exc) if isinstance(exc, RateLimitedError) else None
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=code,
            message=message,
        )
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
