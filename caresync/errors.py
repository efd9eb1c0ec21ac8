from __future__ import annotations

from typing import Any


RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


class CareSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ValidationError(CareSyncError):
    """A local entity cannot be mapped onto a calendar event."""


class ProviderError(CareSyncError):
    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.context = context or {}


class AuthError(ProviderError):
    """The credential is expired or revoked; the user has to reconnect."""


class NotConnectedError(AuthError):
    pass


class TransientProviderError(ProviderError):
    """Timeouts, rate limits and 5xx responses. Safe to retry with backoff."""


class CursorInvalidatedError(ProviderError):
    """The incremental sync token is no longer accepted; a full resync is required."""


class ConflictError(ProviderError):
    pass


class NotFoundError(ProviderError):
    pass


class NotificationRejectedError(CareSyncError):
    """A webhook notification did not match its registered channel."""


def _error_reasons(payload: dict[str, Any]) -> set[str]:
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return set()
    reasons = set()
    for entry in error.get("errors") or []:
        if isinstance(entry, dict) and entry.get("reason"):
            reasons.add(str(entry["reason"]))
    return reasons


def error_for_status(
    status: int,
    message: str,
    payload: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> ProviderError:
    payload = payload or {}
    error = payload.get("error")
    code = None
    if isinstance(error, dict):
        code = error.get("status") or None
    elif isinstance(error, str):
        code = error
    reasons = _error_reasons(payload)
    ctx = dict(context or {})
    ctx["payload"] = payload

    if status == 401 or code == "invalid_grant":
        return AuthError(message, status, code or "unauthorized", ctx)
    if status == 403 and reasons & RATE_LIMIT_REASONS:
        return TransientProviderError(message, status, "rate_limited", ctx)
    if status == 404:
        return NotFoundError(message, status, code or "not_found", ctx)
    if status == 409:
        return ConflictError(message, status, "duplicate", ctx)
    if status == 410:
        return CursorInvalidatedError(message, status, "full_sync_required", ctx)
    if status == 412:
        return ConflictError(message, status, "precondition_failed", ctx)
    if status == 429 or status >= 500:
        return TransientProviderError(message, status, code or "unavailable", ctx)
    return ProviderError(message, status, code, ctx)


def describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__
