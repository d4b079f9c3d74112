"""Reconciliation error taxonomy and API error rendering."""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


def build_error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details
    return payload


class ReconciliationError(RuntimeError):
    """Base class for errors surfaced to reconciliation callers."""

    status_code = 500
    code = "reconciliation_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def payload(self) -> dict[str, Any]:
        return build_error_payload(self.code, self.message, self.details)


class ValidationError(ReconciliationError):
    """Bad mode, batch size, date or a missing confirmation. Never retried."""

    status_code = 400
    code = "validation_error"


class AuthorizationError(ReconciliationError):
    """Unauthenticated caller or a target outside the caller's owner scope."""

    status_code = 401
    code = "authorization_error"


class NotFoundError(ReconciliationError):
    status_code = 404
    code = "not_found"


class ContentionError(ReconciliationError):
    """The owner's reconciliation lock is already held."""

    status_code = 409
    code = "run_in_progress"


class RateLimitError(ReconciliationError):
    """A per-owner or per-origin request budget is exhausted."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, action_class: str, retry_after_seconds: float, *, limit: int, window_seconds: int) -> None:
        super().__init__(
            f"Rate limit exceeded for action class '{action_class}'",
            details={
                "action_class": action_class,
                "limit": limit,
                "window_seconds": window_seconds,
                "retry_after_seconds": round(retry_after_seconds, 2),
            },
        )
        self.action_class = action_class
        self.retry_after_seconds = retry_after_seconds


class PersistenceError(ReconciliationError):
    """Storage or transaction failure; the active batch was rolled back in full."""

    status_code = 500
    code = "persistence_error"


class PartialRecordError(ReconciliationError):
    """One candidate in a batch failed validation or conflicted; the batch continues."""

    status_code = 409
    code = "record_conflict"


async def reconciliation_error_handler(_: Request, exc: ReconciliationError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(max(1, int(exc.retry_after_seconds + 0.999)))}
    return JSONResponse(status_code=exc.status_code, content=exc.payload, headers=headers)


async def request_validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=build_error_payload(
            ValidationError.code,
            "Request validation failed",
            {"errors": jsonable_errors(exc)},
        ),
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", ""))}
        for error in exc.errors()
    ]
