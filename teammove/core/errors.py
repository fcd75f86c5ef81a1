"""Error taxonomy, normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from teammove.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def details(self) -> Dict[str, Any]:
        """Extra fields merged into the error payload."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class InvalidPlanError(AppError, ValueError):
    code = "invalid_plan"
    status_code = 400

    def __init__(self, plan_id: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Unknown plan: {plan_id}")
        self.plan_id = plan_id


class UnknownTenantError(AppError, LookupError):
    code = "unknown_tenant"
    status_code = 404

    def __init__(self, tenant_id: str, message: Optional[str] = None):
        super().__init__(message or f"Unknown tenant: {tenant_id}")
        self.tenant_id = tenant_id


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(
        self,
        message: str,
        *,
        quota_kind: Optional[str] = None,
        remaining: int = 0,
        limit: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.quota_kind = quota_kind
        self.remaining = remaining
        self.limit = limit

    def details(self) -> Dict[str, Any]:
        return {"quota_kind": self.quota_kind, "remaining": self.remaining, "limit": self.limit}


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class ConcurrentUpdateError(ConflictError):
    code = "concurrent_update"


class InvalidSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class ReconciliationFailedError(AppError):
    code = "reconciliation_failed"
    status_code = 500


class PaymentProviderError(AppError):
    code = "payment_provider_error"
    status_code = 502


class PaymentProviderUnavailableError(PaymentProviderError):
    code = "payment_provider_unavailable"
    status_code = 503
    retryable = True


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error.update(details)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    details = dict(exc.details())
    if exc.retryable:
        details["retryable"] = True
    payload = _error_payload(exc.code, exc.message, rid, details)
    logger = logging.getLogger("teammove")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.retryable:
        response.headers["retry-after"] = "5"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("teammove")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("teammove")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
