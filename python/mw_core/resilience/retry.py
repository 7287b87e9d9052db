"""Bounded retry for provider calls.

A single :class:`RetryPolicy` drives every mailbox API call: exponential
backoff with jitter (tenacity), a pluggable retryability predicate, optional
``Retry-After`` honouring and execution statistics.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mw_core.config import RetryConfig
from mw_core.errors import AuthenticationError, ProviderError

logger = structlog.get_logger()

T = TypeVar("T")

TRANSIENT_MESSAGE_PATTERNS = (
    "econnrefused",
    "econnreset",
    "etimedout",
    "socket hang up",
    "network",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "service unavailable",
    "too many requests",
    "rate limit",
    "quota",
)


def is_retryable_error(error: BaseException) -> bool:
    """Default classifier: throttling, 5xx and network failures are retryable.

    Authentication and other 4xx errors are not.
    """
    if isinstance(error, AuthenticationError):
        return False
    if isinstance(error, ProviderError) and error.status_code is not None:
        return error.status_code == 429 or 500 <= error.status_code < 600
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


@dataclass
class RetryStats:
    total_executions: int = 0
    total_retries: int = 0
    successful_executions: int = 0
    failed_executions: int = 0


class RetryPolicy:
    """Reusable retry configuration with statistics.

    Example:
        policy = RetryPolicy(max_attempts=3, is_retryable=gmail_is_retryable)
        message = await policy.execute(lambda: client.get_message(msg_id))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        on_retry: Callable[[BaseException, int], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the policy.

        Args:
            max_attempts: Total attempts including the first call.
            base_delay: First backoff delay in seconds.
            max_delay: Upper bound for any single delay, including Retry-After.
            jitter: Add up to ``base_delay`` seconds of random jitter.
            is_retryable: Predicate deciding whether an exception is retried.
            on_retry: Called with (error, attempt_number) before each sleep.
            sleep: Async sleep function, injectable for tests.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.is_retryable = is_retryable
        self.on_retry = on_retry
        self._sleep = sleep
        self._backoff = wait_exponential_jitter(
            initial=base_delay,
            max=max_delay,
            jitter=base_delay if jitter else 0,
        )
        self._stats = RetryStats()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            jitter=config.jitter,
            **kwargs,
        )

    async def execute(self, fn: Callable[[], Awaitable[T]], *, operation: str = "call") -> T:
        """Run ``fn`` until it succeeds, fails permanently or attempts run out.

        The last exception is re-raised unchanged.
        """
        with self._lock:
            self._stats.total_executions += 1

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=lambda state: self._before_sleep(state, operation),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            result = await retrying(fn)
        except Exception:
            with self._lock:
                self._stats.failed_executions += 1
            raise

        with self._lock:
            self._stats.successful_executions += 1
        return result

    def stats(self) -> RetryStats:
        with self._lock:
            return replace(self._stats)

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = RetryStats()

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and retry_after > 0:
            return min(float(retry_after), self.max_delay)
        return float(self._backoff(retry_state))

    def _before_sleep(self, retry_state: RetryCallState, operation: str) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        with self._lock:
            self._stats.total_retries += 1
        logger.warning(
            "provider_call_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(error),
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
        )
        if self.on_retry is not None and error is not None:
            self.on_retry(error, retry_state.attempt_number)
