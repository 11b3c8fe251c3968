"""
Extraction retry policy with tenacity.

Extraction gets a fixed number of attempts separated by a fixed delay.
Errors whose kind is non-retryable (archive too large / archive timeout)
and cancellation stop the loop immediately.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from docharvest.core.backends.base import BackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0  # seconds


def is_retryable(error: BaseException) -> bool:
    """Only backend errors flagged retryable earn another attempt."""
    return isinstance(error, BackendError) and error.retryable


class RetryPolicy:
    """Configuration for extraction retries."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY,
        on_retry: Callable[[RetryCallState], Any] | None = None,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Maximum number of attempts
            delay: Fixed wait between attempts in seconds
            on_retry: Extra hook called before each retry sleep
        """
        self.max_attempts = max_attempts
        self.delay = delay
        self.on_retry = on_retry

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        before_sleep_log(logger, logging.WARNING)(retry_state)
        if self.on_retry is not None:
            self.on_retry(retry_state)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep,
            reraise=True,
        )

    async def call(self, attempt_func: Callable[[int], Awaitable[T]]) -> T:
        """Run ``attempt_func(attempt_number)`` under this policy.

        The last error is re-raised once attempts are exhausted or a
        non-retryable error occurs.
        """
        async for attempt in self.retrying():
            with attempt:
                return await attempt_func(attempt.retry_state.attempt_number)
        raise RuntimeError("retry loop exited without result")  # pragma: no cover
