"""Error taxonomy and the JSON error envelope.

Every business failure is raised as a ServiceError subclass and rendered by
the handlers below as ``{"success": false, "message": ..., "code": ...}``.
Internal detail is only attached in debug mode.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from servicehub.core.config import settings

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors that map to a structured API response."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class InvalidState(ServiceError):
    code = "invalid_state"


class InvalidTransition(ServiceError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot change status from {current} to {requested}")
        self.current = current
        self.requested = requested


class InvalidSignature(ServiceError):
    code = "invalid_signature"


class NoRefundDue(ServiceError):
    code = "no_refund_due"


class ValidationFailed(ServiceError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_failed"


class StaleBooking(ServiceError):
    """A conditional write matched no row: the booking changed underneath us."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class GatewayError(ServiceError):
    """The payment processor rejected or failed a request."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_error"

    def __init__(self, message: str, upstream_message: str | None = None, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_message = upstream_message
        self.upstream_status = upstream_status


class PaymentOutcomeUnknown(GatewayError):
    """A money-moving call timed out or failed in transit.

    The processor may or may not have acted on it. It must be reconciled via
    webhook or retried with a fresh idempotency key, never resubmitted blindly.
    """

    code = "payment_outcome_unknown"


class GatewayUnavailable(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"


def error_body(message: str, code: str, **extra) -> dict:
    body = {"success": False, "message": message, "code": code}
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure in the standard envelope."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        extra = {}
        if settings.debug:
            extra["error"] = {"type": type(exc).__name__}
            if isinstance(exc, GatewayError) and exc.upstream_message:
                extra["error"]["upstream"] = exc.upstream_message
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code, **extra))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, f"http_{exc.status_code}"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body("Invalid input data", ValidationFailed.code, errors=errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        extra = {"error": {"type": type(exc).__name__, "detail": str(exc)}} if settings.debug else {}
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Something went wrong", "internal_error", **extra),
        )
