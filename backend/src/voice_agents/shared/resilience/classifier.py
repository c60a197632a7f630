"""Canonical quota / rate-limit error classifier.

A single rule used by every call site that decides between "retry the
same provider" and "substitute another provider".
"""

from __future__ import annotations

import re

import httpx

QUOTA_STATUS_CODES = frozenset({402, 429})

_QUOTA_MARKERS = (
    "quota",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "credits",
    "insufficient_quota",
    "payment required",
    "too many requests",
)

_STATUS_IN_MESSAGE = re.compile(r"\b(402|429)\b")


def error_status_code(exc: BaseException) -> int | None:
    """Best-effort HTTP status extracted from an error object."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "http_status", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_quota_error(exc: BaseException) -> bool:
    """True when ``exc`` signals quota exhaustion, rate limiting or billing."""
    if error_status_code(exc) in QUOTA_STATUS_CODES:
        return True
    message = str(exc).lower()
    if any(marker in message for marker in _QUOTA_MARKERS):
        return True
    return bool(_STATUS_IN_MESSAGE.search(message))
