"""Agent runtime: the surface the voice orchestrator calls into.

Session lifecycle hooks, one LLM turn (whole or streamed), one TTS
synthesis and CRM tool calls, each routed through the resilience layer.  Exhaustion never
crashes the conversation: the caller gets one generic apology while the
technical detail goes to the structured log.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import structlog

from voice_agents.adapters.outbound.crm import CRMToolClient
from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import (
    CircuitOpenError,
    MalformedResponseError,
    NoHealthyProviderError,
    RemoteCallError,
    ResilienceError,
    RetryExhaustedError,
    SessionExpiredError,
)
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.resilience.fallback import FallbackExecutor
from voice_agents.shared.resilience.types import OperationContext
from voice_agents.shared.sessions.registry import SessionRecord, SessionRegistry

logger = structlog.get_logger(__name__)

DEGRADED_SERVICE_REPLY = (
    "I'm sorry, I'm having trouble on my end right now. "
    "Could you give me a moment and try again?"
)

_EXHAUSTION_ERRORS = (NoHealthyProviderError, RetryExhaustedError, CircuitOpenError)


@dataclass
class TurnResult:
    text: str
    provider: str | None = None
    degraded: bool = False


class AgentRuntime:
    def __init__(
        self,
        executor: FallbackExecutor,
        sessions: SessionRegistry,
        *,
        counters: UsageCounters,
        crm: CRMToolClient | None = None,
        tenant_id: str | None = None,
        reset_delay: float = 5.0,
    ) -> None:
        self._executor = executor
        self._sessions = sessions
        self._counters = counters
        self._crm = crm
        self._tenant_id = tenant_id
        self._reset_delay = reset_delay

    @property
    def executor(self) -> FallbackExecutor:
        return self._executor

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    # ── Session hooks ────────────────────────────────────────
    def on_session_start(
        self, session_id: str, initial_payload: dict[str, Any] | None = None
    ) -> SessionRecord:
        return self._sessions.create(session_id, initial_payload)

    def on_activity(self, session_id: str) -> None:
        self._sessions.touch(session_id)

    def on_session_end(self, session_id: str) -> None:
        self._sessions.end(session_id)

    # ── Turns ────────────────────────────────────────────────
    async def complete_turn(
        self,
        session_id: str,
        messages: list[dict[str, str]],
        *,
        tenant_id: str | None = None,
    ) -> TurnResult:
        """Generate the agent's next utterance for ``session_id``.

        Raises:
            SessionNotFoundError: the session was never started or is gone.
            SessionExpiredError: the session was evicted mid-turn.
        """
        context = self._context("llm_turn", session_id, tenant_id)
        self._sessions.touch(session_id)

        with structlog.contextvars.bound_contextvars(
            session_id=session_id, tenant_id=context.tenant_id
        ):
            try:
                response = await self._sessions.run(
                    session_id,
                    self._executor.execute(
                        Capability.LLM,
                        lambda llm: llm.invoke({"messages": messages}),
                        context=context,
                    ),
                )
            except _EXHAUSTION_ERRORS as exc:
                self._degraded(Capability.LLM, exc, context)
                return TurnResult(DEGRADED_SERVICE_REPLY, degraded=True)

        self._counters.increment("turns.completed")
        return TurnResult(text=response["text"], provider=response.get("provider"))

    async def stream_turn(
        self,
        session_id: str,
        messages: list[dict[str, str]],
        *,
        tenant_id: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream the agent's next utterance as text deltas.

        When no provider can start the stream the apology is yielded as the
        only chunk.  Ending the session stops the stream.

        Raises:
            SessionNotFoundError: the session was never started or is gone.
            SessionExpiredError: the session ended while the reply streamed.
        """
        context = self._context("llm_stream", session_id, tenant_id)
        self._sessions.get_record(session_id)
        self._sessions.touch(session_id)

        stream = self._executor.execute_stream(
            Capability.LLM,
            lambda llm: llm.stream({"messages": messages}),
            context=context,
        )
        try:
            async for delta in stream:
                if session_id not in self._sessions:
                    raise SessionExpiredError(session_id)
                self._sessions.touch(session_id)
                yield delta
        except _EXHAUSTION_ERRORS as exc:
            self._degraded(Capability.LLM, exc, context)
            yield DEGRADED_SERVICE_REPLY
            return
        finally:
            await stream.aclose()

        self._counters.increment("turns.completed")

    async def synthesize(
        self,
        session_id: str,
        text: str,
        *,
        tenant_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Synthesize ``text``; None when no TTS provider can serve it."""
        context = self._context("tts_synthesize", session_id, tenant_id)
        self._sessions.touch(session_id)

        with structlog.contextvars.bound_contextvars(
            session_id=session_id, tenant_id=context.tenant_id
        ):
            try:
                return await self._sessions.run(
                    session_id,
                    self._executor.execute(
                        Capability.TTS,
                        lambda tts: tts.invoke({"text": text}),
                        context=context,
                    ),
                )
            except _EXHAUSTION_ERRORS as exc:
                self._degraded(Capability.TTS, exc, context)
                return None

    async def crm_tool(
        self,
        session_id: str,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> Any:
        """Call a CRM tool for the LLM.

        Failures come back as ``{"success": False, "message": ...}`` so the
        model can tell the caller the lookup did not work.
        """
        if self._crm is None:
            return {"success": False, "message": "CRM integration is not configured"}

        self._sessions.touch(session_id)
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            try:
                return await self._sessions.run(
                    session_id,
                    self._crm.call_tool(name, arguments, session_id=session_id),
                )
            except (RemoteCallError, MalformedResponseError, CircuitOpenError) as exc:
                logger.warning("crm_tool_failed", tool=name, error=exc.message, code=exc.code)
                self._counters.increment("crm.tool_failures")
                return {"success": False, "message": exc.message}

    # ── Provider selection ───────────────────────────────────
    async def select_providers(self) -> dict[str, str | None]:
        """Probe every capability and pick the first provider that passes."""
        selected: dict[str, str | None] = {}
        for capability in Capability:
            try:
                provider = await self._executor.probe_capability(capability)
            except NoHealthyProviderError as exc:
                logger.error("provider_probe_exhausted", capability=capability.value, failed=exc.failed)
                selected[capability.value] = None
                continue
            selected[capability.value] = provider.provider_name
        return selected

    # ── Shutdown ─────────────────────────────────────────────
    def get_counters(self) -> dict[str, int]:
        """Synchronous snapshot for the shutdown hook."""
        return self._counters.snapshot()

    async def start(self) -> None:
        await self._sessions.start()

    async def shutdown(self) -> None:
        await self._sessions.stop()
        await self._executor.aclose()
        await self._executor.registry.close_all()
        if self._crm is not None:
            await self._crm.close()
        logger.info("runtime_shutdown", counters=self.get_counters())

    # ── Internals ────────────────────────────────────────────
    def _context(
        self, operation: str, session_id: str, tenant_id: str | None
    ) -> OperationContext:
        return OperationContext(
            operation, tenant_id=tenant_id or self._tenant_id, session_id=session_id
        )

    def _degraded(
        self, capability: Capability, exc: ResilienceError, context: OperationContext
    ) -> None:
        logger.error(
            "turn_degraded",
            capability=capability.value,
            error=exc.message,
            code=exc.code,
            **context.as_log_fields(),
        )
        self._counters.increment(f"turns.degraded.{capability.value}")
        if isinstance(exc, NoHealthyProviderError):
            self._executor.schedule_reset(capability, self._reset_delay)
