"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from polaris.core.logging import get_request_id


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidJSONError(ValidationError):
    code = "INVALID_JSON"


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "NOT_FOUND"
    status_code = 404


class MethodNotAllowedError(AppError):
    code = "METHOD_NOT_ALLOWED"
    status_code = 405


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429


class ServiceUnavailableError(AppError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503


# Subscription lifecycle errors

class PlanNotConfiguredError(AppError):
    code = "PLAN_NOT_CONFIGURED"
    status_code = 400


class DuplicateSubscriptionError(AppError):
    """Raised when the user already holds a live subscription in the tier family."""
    code = "DUPLICATE_SUBSCRIPTION"
    status_code = 400


class NoActiveSubscriptionError(AppError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    status_code = 404


class SubscriptionNotFoundError(AppError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class InvalidSubscriptionStatusError(AppError):
    code = "INVALID_SUBSCRIPTION_STATUS"
    status_code = 400


class ProcessorCustomerError(AppError):
    code = "RAZORPAY_CUSTOMER_ERROR"
    status_code = 500


class ProcessorSubscriptionError(AppError):
    code = "RAZORPAY_SUBSCRIPTION_ERROR"
    status_code = 500


class ProcessorCancellationError(AppError):
    code = "RAZORPAY_CANCELLATION_ERROR"
    status_code = 500


class ProcessorFetchError(AppError):
    code = "RAZORPAY_FETCH_ERROR"
    status_code = 500


class SubscriptionPersistenceError(AppError):
    """Local write failed after the processor already created a subscription."""
    code = "DATABASE_ERROR"
    status_code = 500


class DatabaseUpdateError(AppError):
    code = "DATABASE_UPDATE_ERROR"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("polaris")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "NOT_FOUND"
    elif exc.status_code == 405:
        code = "METHOD_NOT_ALLOWED"
    else:
        code = "HTTP_ERROR"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("polaris")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("polaris")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "INTERNAL_ERROR"})
    payload = _error_payload("INTERNAL_ERROR", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
