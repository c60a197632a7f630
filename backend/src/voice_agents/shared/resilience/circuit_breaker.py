"""Circuit breaker: stops calling a failing dependency for a cooldown period.

State machine:
    CLOSED    → (N consecutive failures)        → OPEN
    OPEN      → (recovery timeout expires)      → HALF_OPEN
    HALF_OPEN → (M consecutive trial successes) → CLOSED
    HALF_OPEN → (any trial failure)             → OPEN

One instance protects one logical dependency.  State mutations happen
under a lock with no await inside, so concurrent tasks on the event loop
never double count or race the threshold check.
"""

from __future__ import annotations

import asyncio
import enum
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from voice_agents.domain.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitSnapshot:
    name: str
    state: CircuitState
    failure_count: int
    opened_at: float | None
    half_open_call_count: int


def _count_everything(_: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Generic async circuit breaker with limited half-open trial calls."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        is_failure: Callable[[BaseException], bool] = _count_everything,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._is_failure = is_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._half_open_call_count = 0
        self._half_open_successes = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def can_execute(self) -> bool:
        """Whether a call would currently be admitted (no side effects)."""
        with self._lock:
            self._maybe_transition_to_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                return self._half_open_call_count < self._half_open_max_calls
            return False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: the circuit rejected the call; ``operation``
                was not invoked.
        """
        self._admit()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._release_trial_slot()
            raise
        except Exception as exc:
            if self._is_failure(exc):
                self.record_failure()
            else:
                self._release_trial_slot()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self._half_open_max_calls:
                    self._close()
            else:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN:
                # Trial failed; back to OPEN with a fresh window
                self._open()
                logger.warning(
                    "circuit_breaker_reopened",
                    circuit=self._name,
                    failures=self._failure_count,
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._failure_threshold
            ):
                self._open()
                logger.warning(
                    "circuit_breaker_opened",
                    circuit=self._name,
                    failures=self._failure_count,
                    recovery_timeout_s=self._recovery_timeout,
                )

    def reset(self) -> None:
        """Force-reset the circuit to CLOSED (admin override)."""
        with self._lock:
            self._close(log=False)
            logger.info("circuit_breaker_force_reset", circuit=self._name)

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_transition_to_half_open()
            return CircuitSnapshot(
                name=self._name,
                state=self._state,
                failure_count=self._failure_count,
                opened_at=self._opened_at,
                half_open_call_count=self._half_open_call_count,
            )

    # ── Internals (caller holds lock unless noted) ───────────
    def _admit(self) -> None:
        """Reserve permission for one call or raise CircuitOpenError."""
        with self._lock:
            self._maybe_transition_to_half_open()
            if self._state == CircuitState.CLOSED:
                return
            if (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_call_count < self._half_open_max_calls
            ):
                self._half_open_call_count += 1
                return
            retry_after = self._retry_after()
        logger.debug("circuit_breaker_rejected", circuit=self._name)
        raise CircuitOpenError(self._name, retry_after_s=retry_after)

    def _release_trial_slot(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_call_count > 0:
                self._half_open_call_count -= 1

    def _retry_after(self) -> float:
        if self._opened_at is None or self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._recovery_timeout - (self._clock() - self._opened_at))

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_call_count = 0
        self._half_open_successes = 0

    def _close(self, *, log: bool = True) -> None:
        prev = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_call_count = 0
        self._half_open_successes = 0
        if log and prev != CircuitState.CLOSED:
            logger.info(
                "circuit_breaker_closed",
                circuit=self._name,
                previous_state=prev.value,
            )

    def _maybe_transition_to_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_call_count = 0
                self._half_open_successes = 0
                logger.info(
                    "circuit_breaker_half_open",
                    circuit=self._name,
                    elapsed_s=round(elapsed, 1),
                )
