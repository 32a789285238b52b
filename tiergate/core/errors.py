"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tiergate.core.logging import get_request_id

logger = logging.getLogger("tiergate")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnknownTier(AppError, ValueError):
    """Tier name is not part of the configured tier order."""
    code = "unknown_tier"
    status_code = 400


class UnknownUsageType(AppError, KeyError):
    """Usage type is not declared in the tier catalog."""
    code = "unknown_usage_type"
    status_code = 400

    def __str__(self) -> str:
        return self.message


class MisconfiguredCatalog(AppError):
    """Catalog failed load-time validation. Startup only."""
    code = "misconfigured_catalog"
    status_code = 500


class CounterStoreUnavailable(AppError):
    """Usage counter backend could not be read or written."""
    code = "counter_store_unavailable"
    status_code = 503


class InteractionStoreUnavailable(AppError):
    code = "interaction_store_unavailable"
    status_code = 503


class VariantNotFound(AppError, LookupError):
    """No prompt variant configured for a trigger."""
    code = "variant_not_found"
    status_code = 404


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _error_response(rid: str, status_code: int, code: str, message: str) -> JSONResponse:
    """Uniform error envelope; `detail` mirrors the message for FastAPI-style clients."""
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(rid, exc.status_code, code, str(exc.detail or "HTTP error"))


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    msg = first.get("msg", "invalid request")
    return f"{field}: {msg}" if field else msg


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 422})
    return _error_response(rid, 422, "validation_error", _describe_validation_error(exc))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(rid, 500, "internal_error", "Unexpected error")
