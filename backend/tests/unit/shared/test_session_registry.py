"""Tests for SessionRegistry expiry, eviction and task tracking."""

from __future__ import annotations

import asyncio

import pytest

from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import (
    SessionAlreadyExistsError,
    SessionExpiredError,
    SessionNotFoundError,
)
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.resilience import FallbackExecutor, ProviderRegistry, RetryPolicy
from voice_agents.shared.sessions import SessionRegistry

TTL = 10.0
EPS = 0.001


@pytest.fixture
def counters() -> UsageCounters:
    return UsageCounters()


@pytest.fixture
def sessions(clock, counters) -> SessionRegistry:
    return SessionRegistry(default_ttl=TTL, sweep_interval=0.01, clock=clock, counters=counters)


# ═══════════════════════════════════════════════════════════════
#  Expiry
# ═══════════════════════════════════════════════════════════════
class TestExpiry:
    def test_retrievable_just_before_ttl(self, sessions, clock) -> None:
        sessions.create("call-1", {"caller": "+15550100"})
        clock.advance(TTL - EPS)

        assert sessions.sweep() == []
        assert sessions.get("call-1") == {"caller": "+15550100"}

    def test_exactly_ttl_is_not_expired(self, sessions, clock) -> None:
        sessions.create("call-1")
        clock.advance(TTL)
        assert sessions.sweep() == []
        assert "call-1" in sessions

    def test_absent_just_after_ttl(self, sessions, clock, counters) -> None:
        sessions.create("call-1")
        clock.advance(TTL + EPS)

        assert sessions.sweep() == ["call-1"]
        assert "call-1" not in sessions
        with pytest.raises(SessionNotFoundError):
            sessions.get("call-1")
        assert counters.get("sessions.evicted") == 1

    def test_expiry_is_lazy_until_sweep(self, sessions, clock) -> None:
        sessions.create("call-1")
        clock.advance(TTL * 3)
        assert "call-1" in sessions

    def test_touch_extends_lifetime(self, sessions, clock) -> None:
        sessions.create("call-1")
        clock.advance(TTL - 1)
        assert sessions.touch("call-1") is True
        clock.advance(TTL - 1)

        assert sessions.sweep() == []
        assert sessions.get_record("call-1").idle_for(clock()) == pytest.approx(TTL - 1)

    def test_per_session_ttl(self, sessions, clock) -> None:
        sessions.create("short", ttl=1.0)
        sessions.create("long")
        clock.advance(2.0)
        assert sessions.sweep() == ["short"]
        assert sessions.active_ids() == ["long"]

    def test_rejects_non_positive_default_ttl(self) -> None:
        with pytest.raises(ValueError):
            SessionRegistry(default_ttl=0)


# ═══════════════════════════════════════════════════════════════
#  Lifecycle
# ═══════════════════════════════════════════════════════════════
class TestLifecycle:
    def test_touch_absent_session_is_noop(self, sessions) -> None:
        assert sessions.touch("never-created") is False
        assert len(sessions) == 0

    def test_touch_after_eviction_does_not_resurrect(self, sessions, clock) -> None:
        sessions.create("call-1")
        clock.advance(TTL + 1)
        sessions.sweep()

        assert sessions.touch("call-1") is False
        assert "call-1" not in sessions
        with pytest.raises(SessionNotFoundError):
            sessions.get_record("call-1")

    def test_duplicate_create_rejected(self, sessions) -> None:
        sessions.create("call-1")
        with pytest.raises(SessionAlreadyExistsError):
            sessions.create("call-1")

    def test_payload_is_copied(self, sessions) -> None:
        payload = {"step": "greeting"}
        sessions.create("call-1", payload)
        payload["step"] = "mutated"
        assert sessions.get("call-1") == {"step": "greeting"}

    def test_end(self, sessions, counters) -> None:
        sessions.create("call-1")
        assert sessions.end("call-1") is True
        assert sessions.end("call-1") is False
        assert "call-1" not in sessions
        assert counters.get("sessions.started") == 1
        assert counters.get("sessions.ended") == 1

    def test_id_can_be_reused_after_end(self, sessions) -> None:
        sessions.create("call-1", {"n": 1})
        sessions.end("call-1")
        sessions.create("call-1", {"n": 2})
        assert sessions.get("call-1") == {"n": 2}


# ═══════════════════════════════════════════════════════════════
#  Work run on behalf of a session
# ═══════════════════════════════════════════════════════════════
class TestRun:
    @pytest.mark.asyncio
    async def test_returns_result(self, sessions) -> None:
        sessions.create("call-1")

        async def work() -> str:
            await asyncio.sleep(0)
            return "reply"

        assert await sessions.run("call-1", work()) == "reply"
        assert sessions.pending_tasks("call-1") == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, sessions) -> None:
        async def work() -> str:
            return "never"

        with pytest.raises(SessionNotFoundError):
            await sessions.run("ghost", work())

    @pytest.mark.asyncio
    async def test_eviction_cancels_in_flight_work(self, sessions, clock) -> None:
        sessions.create("call-1")
        gate = asyncio.Event()
        finished = []

        async def work() -> str:
            await gate.wait()
            finished.append(True)
            return "late reply"

        runner = asyncio.create_task(sessions.run("call-1", work()))
        await asyncio.sleep(0)
        assert sessions.pending_tasks("call-1") == 1

        clock.advance(TTL + 1)
        sessions.sweep()
        gate.set()

        with pytest.raises(SessionExpiredError):
            await runner
        assert finished == []

    @pytest.mark.asyncio
    async def test_work_ending_its_own_session_is_discarded(self, sessions) -> None:
        sessions.create("call-1")

        async def hang_up() -> str:
            sessions.end("call-1")
            return "goodbye"

        with pytest.raises(SessionExpiredError):
            await sessions.run("call-1", hang_up())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("evict", [False, True])
    async def test_closing_session_stops_provider_call_without_retry(
        self, sessions, clock, retry_executor, recording_sleep, make_provider, evict
    ) -> None:
        registry = ProviderRegistry()
        alpha = make_provider("alpha")
        registry.register(Capability.LLM, "alpha", priority=1, factory=lambda: alpha)
        executor = FallbackExecutor(
            registry,
            retry_executor=retry_executor,
            retry_policy=RetryPolicy(max_retries=2, base_delay=0, jitter=False),
        )
        started = asyncio.Event()
        calls = 0

        async def slow_turn(provider) -> dict:
            nonlocal calls
            calls += 1
            started.set()
            await asyncio.Event().wait()
            return await provider.invoke({"messages": []})

        sessions.create("call-1")
        runner = asyncio.create_task(
            sessions.run("call-1", executor.execute(Capability.LLM, slow_turn))
        )
        await started.wait()

        if evict:
            clock.advance(TTL + 1)
            sessions.sweep()
        else:
            sessions.end("call-1")

        with pytest.raises(SessionExpiredError):
            await runner
        await asyncio.sleep(0)
        assert calls == 1
        assert alpha.calls == 0
        assert recording_sleep.delays == []
        assert registry.is_healthy("llm", "alpha")

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, sessions) -> None:
        sessions.create("call-1")

        async def work() -> None:
            await asyncio.Event().wait()

        runner = asyncio.create_task(sessions.run("call-1", work()))
        await asyncio.sleep(0)
        runner.cancel()

        with pytest.raises(asyncio.CancelledError):
            await runner
        assert "call-1" in sessions
        assert sessions.pending_tasks("call-1") == 0

    @pytest.mark.asyncio
    async def test_errors_propagate(self, sessions) -> None:
        sessions.create("call-1")

        async def work() -> None:
            raise RuntimeError("llm blew up")

        with pytest.raises(RuntimeError, match="llm blew up"):
            await sessions.run("call-1", work())
        assert "call-1" in sessions


# ═══════════════════════════════════════════════════════════════
#  Background sweeper
# ═══════════════════════════════════════════════════════════════
class TestSweeper:
    @pytest.mark.asyncio
    async def test_sweeper_evicts_expired_sessions(self, sessions, clock) -> None:
        sessions.create("stale")
        clock.advance(TTL + 1)
        sessions.create("fresh")

        await sessions.start()
        try:
            for _ in range(50):
                if "stale" not in sessions:
                    break
                await asyncio.sleep(0.01)
        finally:
            await sessions.stop()

        assert sessions.active_ids() == ["fresh"]

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_safe(self, sessions) -> None:
        await sessions.start()
        first = sessions._sweeper
        await sessions.start()
        assert sessions._sweeper is first
        await sessions.stop()
        await sessions.stop()
        assert sessions._sweeper is None
