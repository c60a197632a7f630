"""Retry executor: bounded retries with exponential backoff and jitter.

Built on tenacity's ``AsyncRetrying`` so the retry sleep suspends only
the calling task.  No error classification happens here beyond the fixed
rule that an open circuit or a cancelled task is never retried; callers
pass their own ``retryable`` predicate when they need narrower behaviour.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from voice_agents.domain.exceptions import CircuitOpenError, RetryExhaustedError
from voice_agents.shared.resilience.types import OperationContext, RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


def _always(_: BaseException) -> bool:
    return True


class RetryExecutor:
    """Runs an async operation under a :class:`RetryPolicy`.

    Usage::

        executor = RetryExecutor()
        result = await executor.execute_with_retry(
            lambda: client.post(...),
            RetryPolicy(max_retries=2, base_delay=0.5),
            OperationContext("crm_call", session_id=sid),
        )
    """

    def __init__(
        self,
        *,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay before the retry that follows 0-indexed ``attempt``."""
        delay = policy.base_delay * (policy.backoff_multiplier ** attempt)
        if policy.jitter:
            delay *= self._rng.uniform(0.5, 1.5)
        return min(delay, policy.max_delay)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        context: OperationContext | None = None,
        *,
        retryable: Callable[[BaseException], bool] = _always,
    ) -> T:
        """Run ``operation`` up to ``policy.max_retries + 1`` times.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error.
            CircuitOpenError: surfaced immediately, never retried.
            asyncio.CancelledError: propagated as-is, never retried or wrapped.
            Exception: any error ``retryable`` rejects, unchanged.
        """
        context = context or OperationContext("operation")
        log = logger.bind(**context.as_log_fields())

        def _should_retry(exc: BaseException) -> bool:
            # Cancellation and interpreter exits propagate unchanged
            if not isinstance(exc, Exception) or isinstance(exc, CircuitOpenError):
                return False
            return retryable(exc)

        def _wait(retry_state: RetryCallState) -> float:
            return self.compute_delay(policy, retry_state.attempt_number - 1)

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            log.warning(
                "retry_attempt_failed",
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay_s=round(delay, 3),
                error=f"{type(exc).__name__}: {exc}" if exc else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=_wait,
            retry=retry_if_exception(_should_retry),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=False,
        )

        try:
            return await retrying(operation)
        except RetryError as exc:
            last_attempt = exc.last_attempt
            last_error = last_attempt.exception()
            assert last_error is not None
            log.error(
                "retry_exhausted",
                attempts=last_attempt.attempt_number,
                error=f"{type(last_error).__name__}: {last_error}",
            )
            raise RetryExhaustedError(
                last_error,
                attempts=last_attempt.attempt_number,
                context=context,
            ) from last_error
