"""Typed application errors carrying an HTTP status and a stable code."""

from __future__ import annotations

from typing import Any, Dict


class AppError(Exception):
    """Base error rendered to clients as `{ok: false, code, message}`.

    Attributes:
        status: HTTP status used when the error reaches a route.
        code: Stable machine-readable identifier (e.g. `IMAGE_TOO_LARGE`).
        message: Human-readable description.
    """

    default_status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = int(status or self.default_status)
        self.code = code or self.default_code

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "code": self.code, "message": self.message}


class ValidationError(AppError):
    """Bad URL, scheme, credentials, blocked host, or an unacceptable payload."""

    default_status = 400
    default_code = "VALIDATION_ERROR"


class UpstreamError(AppError):
    """Non-2xx upstream response, malformed redirect, or redirect loop."""

    default_status = 502
    default_code = "UPSTREAM_ERROR"


class UpstreamTimeoutError(AppError):
    """An outbound request did not complete within its time budget."""

    default_status = 504
    default_code = "UPSTREAM_TIMEOUT"


class StoreCorruptionError(AppError):
    """The persisted gallery index could not be parsed."""

    default_status = 500
    default_code = "INDEX_CORRUPTED"


class TransportError(AppError):
    """A live-update connection dropped or could not be opened."""

    default_status = 502
    default_code = "TRANSPORT_ERROR"


def to_error_message(error: BaseException | None) -> str:
    if error is None:
        return "unknown error"
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__


def to_http_error(error: BaseException, fallback_message: str = "Internal server error") -> Dict[str, Any]:
    """Map any exception to `{status, code, message}` for a JSON error body."""
    if isinstance(error, AppError):
        return {"status": error.status, "code": error.code, "message": error.message}
    return {
        "status": 500,
        "code": "INTERNAL_ERROR",
        "message": f"{fallback_message}: {to_error_message(error)}",
    }
