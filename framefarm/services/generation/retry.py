from __future__ import annotations

import errno
import logging
import socket
import time
import urllib.error
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HTTP_CODES = frozenset({408, 429, 502, 503, 504})
TRANSIENT_MARKERS = (
    "fetch failed",
    "econnreset",
    "econnrefused",
    "enotfound",
    "etimedout",
    "timed out",
    "timeout",
    "gateway timeout",
    "bad gateway",
    "service unavailable",
    "networkerror",
    "connection reset",
    "connection refused",
    "temporary failure in name resolution",
)
TRANSIENT_ERRNOS = frozenset({errno.ECONNRESET, errno.ECONNREFUSED, errno.ECONNABORTED, errno.ETIMEDOUT, errno.EPIPE})


def backoff_delay(attempt: int, base_delay_s: float = 1.0, max_delay_s: float = 10.0) -> float:
    """Delay before retry number `attempt` (1-based): min(base * 2**(attempt-1), max)."""
    return min(base_delay_s * (2 ** max(0, attempt - 1)), max_delay_s)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code in TRANSIENT_HTTP_CODES
    if isinstance(exc, urllib.error.URLError):
        reason = exc.reason
        if isinstance(reason, BaseException):
            return is_transient_error(reason)
        return _has_marker(str(reason))

    transient = getattr(exc, "transient", None)
    if isinstance(transient, bool):
        return transient
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionError, socket.gaierror)):
        return True
    if isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS:
        return True
    return _has_marker(str(exc))


def _has_marker(text: str) -> bool:
    lower = text.lower()
    if any(marker in lower for marker in TRANSIENT_MARKERS):
        return True
    return any(str(code) in lower for code in (502, 503, 504))


def retry_call(
    fn: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    max_delay_s: float = 10.0,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    delay_fn: Optional[Callable[[int], float]] = None,
) -> T:
    """
    Calls fn until it succeeds, it raises a non-retryable error, or
    max_attempts is reached. The last error is re-raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if attempt >= max_attempts or not is_retryable(e):
                raise
            delay = delay_fn(attempt) if delay_fn else backoff_delay(attempt, base_delay_s, max_delay_s)
            logger.warning(f"{label} failed (attempt {attempt}/{max_attempts}): {e}; retrying in {delay:.1f}s")
            sleep(delay)
