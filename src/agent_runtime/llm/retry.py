"""
Retry engine for provider calls.

Wraps any awaitable factory with bounded, jittered exponential backoff that
honours server-supplied retry hints and a global wall-clock budget. Once the
budget is spent the last error is re-raised, even if it looks retryable.
"""

import asyncio
import errno
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

import anthropic
import httpx
import openai
import structlog

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})
RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "ENOTFOUND"})
RETRYABLE_ERROR_TYPES = frozenset({"overloaded_error", "rate_limit_error"})
RETRYABLE_MESSAGE_HINTS = ("network", "timeout", "unavailable", "bad gateway", "rate limit", "overloaded")

_RETRYABLE_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
})

# (header name, value is in seconds)
RETRY_AFTER_HEADERS: tuple[tuple[str, bool], ...] = (
    ("retry-after", True),
    ("retry-after-ms", False),
    ("x-ms-retry-after-ms", False),
    ("x-ratelimit-reset", True),
    ("x-ratelimit-reset-requests", True),
    ("x-ratelimit-reset-tokens", True),
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior. All durations in milliseconds."""

    time_budget_ms: int = 5 * 60 * 1000
    base_delay_ms: int = 1_000
    max_delay_ms: int = 60_000
    rate_limit_floor_ms: int = 5_000
    rate_limit_max_ms: int = 60_000


def get_status_code(error: BaseException) -> int | None:
    """Find an HTTP status code on an SDK or transport error."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _error_type(error: BaseException) -> str | None:
    """Find the provider error tag (e.g. ``overloaded_error``)."""
    value = getattr(error, "type", None)
    if isinstance(value, str):
        return value
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error") if isinstance(body.get("error"), dict) else body
        tag = inner.get("type")
        if isinstance(tag, str):
            return tag
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    """Check if an error is a rate limit."""
    return get_status_code(error) == 429 or _error_type(error) == "rate_limit_error"


def is_transient_error(error: BaseException) -> bool:
    """Default retry predicate."""
    status = get_status_code(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES:
            return True
        if status in NON_RETRYABLE_STATUS_CODES:
            return False

    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True

    if isinstance(error, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return True
    if isinstance(error, OSError) and error.errno in _RETRYABLE_ERRNOS:
        return True
    if isinstance(error, ConnectionError):
        return True

    if _error_type(error) in RETRYABLE_ERROR_TYPES:
        return True

    message = str(error).lower()
    return any(hint in message for hint in RETRYABLE_MESSAGE_HINTS)


def _read_header(headers: Any, name: str) -> str:
    """Read a header case-insensitively from a mapping or httpx.Headers."""
    if headers is None:
        return ""
    target = name.lower()
    try:
        items = headers.items()
    except AttributeError:
        return ""
    for key, raw in items:
        if str(key).lower() != target:
            continue
        if isinstance(raw, (list, tuple)):
            raw = raw[0] if raw else ""
        value = str(raw).strip()
        if value:
            return value
    return ""


def parse_retry_after_ms(value: str, assume_seconds: bool = True) -> float | None:
    """Parse a retry hint given as a number or an HTTP date."""
    normalized = (value or "").strip()
    if not normalized:
        return None

    try:
        numeric = float(normalized)
    except ValueError:
        numeric = None

    if numeric is not None:
        if numeric < 0:
            return None
        return numeric * 1000 if assume_seconds else numeric

    try:
        when = parsedate_to_datetime(normalized)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    diff = (when.timestamp() - time.time()) * 1000
    return diff if diff > 0 else None


def extract_retry_after_ms(error: BaseException) -> float | None:
    """Get the largest retry hint carried by an error's response headers."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if headers is None:
        headers = getattr(error, "headers", None)
    if headers is None:
        return None

    hints = []
    for name, in_seconds in RETRY_AFTER_HEADERS:
        parsed = parse_retry_after_ms(_read_header(headers, name), in_seconds)
        if parsed is not None and parsed > 0:
            hints.append(parsed)

    return max(hints) if hints else None


def compute_delay_ms(error: BaseException, attempt: int, config: RetryConfig) -> float:
    """Compute the backoff delay before the next attempt."""
    rate_limited = is_rate_limit_error(error)
    cap = config.rate_limit_max_ms if rate_limited else config.max_delay_ms

    exp_delay = min(config.base_delay_ms * (2 ** attempt), cap)
    delay = exp_delay + random.random() * exp_delay * 0.3

    retry_after = extract_retry_after_ms(error)
    if retry_after is not None:
        delay = max(delay, retry_after)
    elif rate_limited:
        delay = max(delay, config.rate_limit_floor_ms)

    return min(delay, cap)


async def retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or the budget runs out.

    Args:
        fn: Zero-argument factory returning a fresh awaitable per attempt
        config: Backoff and budget settings
        should_retry: Predicate deciding whether an error is worth retrying

    Returns:
        The first successful result
    """
    config = config or RetryConfig()
    deadline = (
        time.monotonic() + config.time_budget_ms / 1000
        if config.time_budget_ms > 0
        else None
    )
    attempt = 0

    while True:
        try:
            return await fn()
        except Exception as e:
            status = get_status_code(e)
            logger.warning(
                "Provider call attempt failed",
                attempt=attempt + 1,
                status=status,
                error=str(e),
            )

            if not should_retry(e):
                logger.warning("Not retrying non-transient error", attempt=attempt + 1, status=status)
                raise

            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Retry time budget exceeded", attempt=attempt + 1, status=status)
                raise

            delay_ms = compute_delay_ms(e, attempt, config)

            if deadline is not None:
                remaining_ms = (deadline - time.monotonic()) * 1000
                if remaining_ms <= 0:
                    logger.warning("Retry deadline reached before delay", attempt=attempt + 1)
                    raise
                delay_ms = min(delay_ms, remaining_ms)

            logger.info(
                "Scheduling retry",
                attempt=attempt + 1,
                status=status,
                delay_ms=int(delay_ms),
                retry_after_ms=extract_retry_after_ms(e),
            )

            await asyncio.sleep(delay_ms / 1000)
            attempt += 1
