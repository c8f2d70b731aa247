"""
errors.py — Core exceptions and the denial → HTTP translation.

Two kinds of failure leave the quota core:
  - Denials: a QuotaVerdict with allowed=False. Terminal, never retried.
  - System errors: QuotaSystemError. The store was unreachable or too
    slow; the caller may retry with backoff. Never shown as "access denied".

denial_to_http() is the only place a DenialReason becomes a status code,
so every gated route reports the same reason the same way.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, status

from keygate.models.credential import DenialReason, QuotaVerdict


class InvalidTokenFormat(ValueError):
    """Token does not have the ``<prefix>_<class>_<hex>`` shape."""


class QuotaSystemError(RuntimeError):
    """Backing store failed or timed out during a quota check or record."""


# Seconds a client should wait before retrying after a system error.
SYSTEM_RETRY_AFTER = 1

_STATUS = {
    DenialReason.INVALID_FORMAT: status.HTTP_401_UNAUTHORIZED,
    DenialReason.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
    DenialReason.WRONG_CREDENTIAL_CLASS: status.HTTP_403_FORBIDDEN,
    DenialReason.FREE_TIER_EXHAUSTED: status.HTTP_402_PAYMENT_REQUIRED,
    DenialReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


def denial_message(verdict: QuotaVerdict) -> str:
    """User-facing text for a denied verdict. Each reason asks for a different action."""
    reason = verdict.reason
    if reason is DenialReason.INVALID_FORMAT:
        return "Malformed API key. Send the full key in the X-API-Key header."
    if reason is DenialReason.INVALID_CREDENTIAL:
        return "Invalid, inactive or expired API key."
    if reason is DenialReason.WRONG_CREDENTIAL_CLASS:
        return "This API key is not valid for this service. Create a key of the matching type."
    if reason is DenialReason.FREE_TIER_EXHAUSTED:
        return (
            f"Free tier limit reached ({verdict.limit} calls). "
            "Upgrade to continue using this API."
        )
    if reason is DenialReason.RATE_LIMITED:
        when = verdict.reset_at.isoformat() if verdict.reset_at else "later"
        return (
            f"Rate limit exceeded. Maximum {verdict.limit} requests per window. "
            f"Try again after {when}."
        )
    raise ValueError(f"verdict has no denial reason: {verdict!r}")


def rate_limit_headers(verdict: QuotaVerdict) -> dict[str, str]:
    """X-RateLimit-* headers derived from a verdict (informational only)."""
    headers: dict[str, str] = {}
    if verdict.limit is not None:
        headers["X-RateLimit-Limit"] = str(verdict.limit)
    if verdict.remaining is not None:
        headers["X-RateLimit-Remaining"] = str(verdict.remaining)
    if verdict.reset_at is not None:
        headers["X-RateLimit-Reset"] = str(int(verdict.reset_at.timestamp()))
    return headers


def _retry_after(reset_at: Optional[datetime]) -> str:
    now = datetime.now(tz=timezone.utc)
    return str(max(1, int((reset_at - now).total_seconds()) + 1)) if reset_at else "1"


def denial_to_http(verdict: QuotaVerdict) -> HTTPException:
    """Build the HTTPException a route raises for a denied verdict."""
    headers = rate_limit_headers(verdict)
    if verdict.reason in (DenialReason.INVALID_FORMAT, DenialReason.INVALID_CREDENTIAL):
        headers["WWW-Authenticate"] = "ApiKey"
    if verdict.reason is DenialReason.RATE_LIMITED:
        headers["Retry-After"] = _retry_after(verdict.reset_at)

    return HTTPException(
        status_code=_STATUS[verdict.reason],
        detail={
            "error": verdict.reason.value,
            "message": denial_message(verdict),
            "remaining": verdict.remaining,
            "reset_at": verdict.reset_at.isoformat() if verdict.reset_at else None,
        },
        headers=headers,
    )


def system_error_to_http() -> HTTPException:
    """503 for a failed or timed-out quota check. Retryable, unlike a denial."""
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "usage_service_unavailable",
            "message": "Usage service temporarily unavailable, please retry.",
        },
        headers={"Retry-After": str(SYSTEM_RETRY_AFTER)},
    )
