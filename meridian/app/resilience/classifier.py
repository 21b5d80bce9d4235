from __future__ import annotations

import asyncio

import httpx

from meridian.app.resilience.contracts import BackendError, ErrorCategory

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "throttled",
    "429",
)
PERMANENT_PATTERNS = (
    "unauthorized",
    "authentication failed",
    "invalid api key",
    "access denied",
    "forbidden",
    "invalid credentials",
    "bad request",
    "malformed",
    "invalid parameter",
    "validation",
    "not found",
    "401",
    "403",
    "404",
)
TIMEOUT_PATTERNS = ("timeout", "timed out")


def classify_status_code(status_code: int) -> ErrorCategory:
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code in {408, 425} or status_code >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


def classify_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, BackendError):
        return exc.category
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status_code(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT

    message = str(exc).lower()
    if any(pattern in message for pattern in RATE_LIMIT_PATTERNS):
        return ErrorCategory.RATE_LIMITED
    if any(pattern in message for pattern in PERMANENT_PATTERNS):
        return ErrorCategory.PERMANENT
    if any(pattern in message for pattern in TIMEOUT_PATTERNS):
        return ErrorCategory.TIMEOUT
    return ErrorCategory.TRANSIENT


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, BackendError):
        return exc.message
    text = str(exc).strip()
    if not text:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {text}"[:300]
