from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from store_assistant.errors import is_retryable_error

T = TypeVar("T")


class RetryPolicy:
    """Bounded exponential backoff around a transient-failure-prone async call.

    Waits ``base_delay * 2 ** (attempt - 1)`` seconds after each failed attempt (2s, 4s, ... with the
    default base). Failures the classifier rejects are raised immediately; when the
    attempts run out the last failure is raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2,
        *,
        classifier: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._classifier = classifier
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def execute(self, operation: Callable[[], Awaitable[T]], *, operation_name: str = "operation") -> T:
        def on_retry(retry_state: RetryCallState) -> None:
            attempt = retry_state.attempt_number
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            reason = type(exc).__name__ if exc else "Unknown"
            logger.warning(
                f"{operation_name}: {reason}. Retrying in {wait:.0f}s (attempt {attempt}/{self._max_attempts})..."
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(self._classifier),
            wait=wait_exponential(multiplier=self._base_delay, exp_base=2),
            stop=stop_after_attempt(self._max_attempts),
            before_sleep=on_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise AssertionError("unreachable: tenacity reraises the last failure")
