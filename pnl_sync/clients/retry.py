"""
Retrying transport for SP-API calls.

Wraps one upstream call with bounded, rate-limit-aware retry. Only throttling
(429) and transient server errors (500/502/503/504) are retried; everything
else propagates on the first attempt. When attempts run out the last error is
re-raised unchanged.
"""

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from pnl_sync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
RATE_LIMIT_HEADERS = ("x-amzn-ratelimit-limit", "x-amzn-ratelimit", "x-amzn-rate-limit-limit")

DEFAULT_ATTEMPTS = 4
DEFAULT_BASE_DELAY_MS = 2500
DEFAULT_MAX_DELAY_MS = 60_000


def get_status_code(error: BaseException) -> Optional[int]:
    """
    Extract the HTTP status carried by an exception.

    Looks at ``error.status_code`` first, then ``error.response.status_code``
    (the shape of ``httpx.HTTPStatusError``).
    """
    status = getattr(error, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status

    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status

    return None


def _error_headers(error: BaseException) -> dict[str, Any]:
    headers = getattr(error, "headers", None)
    if not headers:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    if not headers:
        return {}
    return {str(key).lower(): value for key, value in dict(headers).items()}


def get_rate_limit_hint(error: BaseException) -> Optional[float]:
    """
    Read the requests-per-second hint from a throttled response.

    Returns:
        Positive rate, or None when no usable header is present
    """
    headers = _error_headers(error)

    value: Any = None
    for name in RATE_LIMIT_HEADERS:
        if headers.get(name) is not None:
            value = headers[name]
            break

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        rate = float(value)
    elif isinstance(value, str):
        try:
            rate = float(value.strip())
        except ValueError:
            return None
    else:
        return None

    if math.isfinite(rate) and rate > 0:
        return rate
    return None


def is_retryable(error: BaseException) -> bool:
    """Whether the failure is throttling or a transient server error."""
    return get_status_code(error) in RETRYABLE_STATUS_CODES


def compute_retry_delay_ms(
    error: BaseException,
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """
    Delay before the next attempt.

    429 with a rate-limit hint waits ``ceil(1000 / hint) + 1500`` ms clamped to
    ``[base_delay_ms, max_delay_ms]``. Everything else backs off exponentially
    from ``base_delay_ms``, capped at ``max_delay_ms``.

    Args:
        error: The failure of the attempt that just ran
        attempt: 1-based number of that attempt
        base_delay_ms: Base delay
        max_delay_ms: Upper bound

    Returns:
        Delay in milliseconds
    """
    if get_status_code(error) == 429:
        rate = get_rate_limit_hint(error)
        if rate:
            delay = math.ceil(1000 / rate) + 1500
            return min(max(delay, base_delay_ms), max_delay_ms)

    exponential = base_delay_ms * 2 ** (attempt - 1)
    return min(exponential, max_delay_ms)


class RetryingTransport:
    """
    Executes one upstream call with the SP-API retry policy.

    Examples:
        >>> transport = RetryingTransport(attempts=4, base_delay_ms=4000)
        >>> payload = await transport.call(lambda: client.get_orders(created_after))
    """

    def __init__(
        self,
        attempts: int = DEFAULT_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize transport.

        Args:
            attempts: Total attempts including the first call
            base_delay_ms: Base backoff delay
            max_delay_ms: Backoff cap
            sleep: Coroutine used to wait between attempts (seconds)
        """
        self.attempts = max(attempts, 1)
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        assert retry_state.outcome is not None
        error = retry_state.outcome.exception()
        delay_ms = compute_retry_delay_ms(
            error,
            retry_state.attempt_number,
            self.base_delay_ms,
            self.max_delay_ms,
        )
        return delay_ms / 1000

    def with_options(self, **options: Any) -> "RetryingTransport":
        """Copy of this transport with some options overridden."""
        params = {
            "attempts": self.attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "sleep": self._sleep,
        }
        params.update(options)
        return RetryingTransport(**params)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` until it succeeds, fails permanently, or attempts run out.

        Args:
            fn: Zero-argument callable returning an awaitable, called once per
                attempt (plain lambdas included)

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The last error raised by ``fn``
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        async def attempt() -> T:
            return await fn()

        return await retrying(attempt)


async def with_retry(fn: Callable[[], Awaitable[T]], **options: Any) -> T:
    """Run ``fn`` through a one-off ``RetryingTransport``."""
    return await RetryingTransport(**options).call(fn)
