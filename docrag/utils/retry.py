"""Retry policy shared by the embedding gateway, connection pool and job queue.

Wraps ``tenacity`` so every component retries the same way: exponential
backoff ``base_delay * multiplier ** (attempt - 1)`` capped at
``max_delay``, a bounded number of attempts, and a predicate that decides
which exceptions are worth another try.  After the last attempt the
original exception propagates unchanged (``reraise=True``).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docrag.utils.errors import is_transient

logger = structlog.get_logger(logger_name=__name__)

T = TypeVar("T")


class RetryPolicy:
    """Bounded exponential-backoff retry.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first one.  ``1`` disables retrying.
    base_delay:
        Delay in seconds before the second attempt.
    max_delay:
        Upper bound for any single delay.
    multiplier:
        Growth factor between consecutive delays.
    retryable:
        Predicate deciding whether an exception is retried.  Defaults to
        :func:`~docrag.utils.errors.is_transient`.
    name:
        Label attached to retry log lines.
    sleep:
        Awaitable sleep function; tests pass a no-op to avoid real delays.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        retryable: Callable[[BaseException], bool] | None = None,
        name: str = "operation",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.name = name
        self._retryable = retryable or is_transient
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Return the delay to wait after failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def is_retryable(self, exc: BaseException) -> bool:
        return self._retryable(exc)

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)``, retrying retryable failures.

        Raises
        ------
        Exception
            The last exception raised by *fn* once attempts are exhausted,
            or the first non-retryable one.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
            ),
            retry=retry_if_exception(self._retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fn(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retrying_operation",
            operation=self.name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(exc),
        )
