"""Session registry: conversation state keyed by session id.

A record lives until ``now - last_activity > ttl`` at a sweep, or until
the conversation ends.  Both paths go through ``_evict`` which removes
the record under the lock and then cancels the session's tracked tasks.
``touch`` updates a record only while it is still registered, so a late
activity signal can never bring an evicted session back.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from voice_agents.domain.enums import SessionEndReason
from voice_agents.domain.exceptions import (
    SessionAlreadyExistsError,
    SessionExpiredError,
    SessionNotFoundError,
)
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.observability.metrics import SESSIONS_ACTIVE, SESSIONS_CLOSED

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class SessionRecord:
    session_id: str
    payload: dict[str, Any]
    created_at: float
    last_activity: float
    ttl: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now - self.last_activity > self.ttl

    def idle_for(self, now: float) -> float:
        return max(0.0, now - self.last_activity)


class SessionRegistry:
    """Owns every live session record and the tasks running on its behalf."""

    def __init__(
        self,
        *,
        default_ttl: float = 30 * 60,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        counters: UsageCounters | None = None,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._counters = counters or UsageCounters()

        self._sessions: dict[str, SessionRecord] = {}
        self._tasks: dict[str, set[asyncio.Task[Any]]] = defaultdict(set)
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    # ── Lifecycle ────────────────────────────────────────────
    def create(
        self,
        session_id: str,
        payload: dict[str, Any] | None = None,
        ttl: float | None = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            session_id=session_id,
            payload=dict(payload or {}),
            created_at=now,
            last_activity=now,
            ttl=ttl if ttl is not None else self._default_ttl,
        )
        with self._lock:
            if session_id in self._sessions:
                raise SessionAlreadyExistsError(session_id)
            self._sessions[session_id] = record
            active = len(self._sessions)
        SESSIONS_ACTIVE.set(active)
        self._counters.increment("sessions.started")
        logger.info("session_created", session_id=session_id, ttl_s=record.ttl)
        return record

    def touch(self, session_id: str) -> bool:
        """Record activity.  Returns False (no error) when the session is gone."""
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return False
            record.last_activity = self._clock()
        return True

    def get(self, session_id: str) -> dict[str, Any]:
        return self.get_record(session_id).payload

    def get_record(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def end(self, session_id: str) -> bool:
        """End a conversation.  Returns False when it was already gone."""
        return self._evict(session_id, SessionEndReason.ENDED) is not None

    def sweep(self) -> list[str]:
        """Evict every session idle for longer than its TTL."""
        now = self._clock()
        with self._lock:
            expired = [
                sid for sid, record in self._sessions.items() if record.is_expired(now)
            ]
        evicted = [
            sid
            for sid in expired
            if self._evict(sid, SessionEndReason.EXPIRED, now=now) is not None
        ]
        if evicted:
            logger.info("session_sweep_completed", evicted=len(evicted), active=len(self))
        return evicted

    # ── Task tracking ────────────────────────────────────────
    async def run(self, session_id: str, awaitable: Awaitable[T]) -> T:
        """Run ``awaitable`` on behalf of a session.

        The work is cancelled if the session is evicted while it runs, and a
        result that arrives after eviction is discarded.

        Raises:
            SessionNotFoundError: the session is not registered.
            SessionExpiredError: the session was evicted before the work finished.
        """
        with self._lock:
            record = self._sessions.get(session_id)
        if record is None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SessionNotFoundError(session_id)

        task = asyncio.ensure_future(awaitable)
        with self._lock:
            self._tasks[session_id].add(task)
        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            if not self._still_registered(session_id, record):
                raise SessionExpiredError(session_id) from None
            raise
        finally:
            self._untrack(session_id, task)

        if not self._still_registered(session_id, record):
            logger.info("session_result_discarded", session_id=session_id)
            raise SessionExpiredError(session_id)
        return result

    # ── Sweeper ──────────────────────────────────────────────
    async def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("session_sweeper_started", interval_s=self._sweep_interval)

    async def stop(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None
        logger.info("session_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("session_sweep_failed")

    # ── Introspection ────────────────────────────────────────
    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def pending_tasks(self, session_id: str) -> int:
        with self._lock:
            return len(self._tasks.get(session_id, ()))

    # ── Internals ────────────────────────────────────────────
    def _evict(
        self,
        session_id: str,
        reason: SessionEndReason,
        *,
        now: float | None = None,
    ) -> SessionRecord | None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            # a touch may have landed since the sweep snapshot
            if (
                reason is SessionEndReason.EXPIRED
                and now is not None
                and not record.is_expired(now)
            ):
                return None
            del self._sessions[session_id]
            tasks = self._tasks.pop(session_id, set())
            active = len(self._sessions)

        cancelled = 0
        for task in tasks:
            if not task.done():
                task.cancel()
                cancelled += 1

        SESSIONS_ACTIVE.set(active)
        SESSIONS_CLOSED.labels(reason=reason.value).inc()
        self._counters.increment(
            "sessions.evicted" if reason is SessionEndReason.EXPIRED else "sessions.ended"
        )
        logger.info(
            "session_evicted" if reason is SessionEndReason.EXPIRED else "session_ended",
            session_id=session_id,
            reason=reason.value,
            cancelled_tasks=cancelled,
            lifetime_s=round(self._clock() - record.created_at, 1),
        )
        return record

    def _still_registered(self, session_id: str, record: SessionRecord) -> bool:
        with self._lock:
            return self._sessions.get(session_id) is record

    def _untrack(self, session_id: str, task: asyncio.Task[Any]) -> None:
        with self._lock:
            tasks = self._tasks.get(session_id)
            if tasks is None:
                return
            tasks.discard(task)
            if not tasks:
                del self._tasks[session_id]
