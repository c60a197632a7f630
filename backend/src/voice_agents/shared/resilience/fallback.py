"""Fallback executor: the main entry-point for provider calls.

Composes ProviderRegistry, CircuitBreaker and RetryExecutor.  For each
call it picks the highest-priority healthy provider, runs the request
through that provider's circuit breaker (which wraps the retry loop), and
branches on the typed outcome:

    success        → return the value
    quota failure  → mark the provider unhealthy, substitute the next one
    other failure  → re-raise unchanged

When every provider for a capability has been marked unhealthy, the
health flags are cleared once and selection is retried exactly once more
before ``NoHealthyProviderError`` escapes.

``execute_stream`` applies the same rules up to the first chunk of a
streamed response; after that the stream belongs to its provider.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from voice_agents.domain.exceptions import CircuitOpenError, NoHealthyProviderError
from voice_agents.ports.outbound import ProviderHandle
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.observability.metrics import (
    CIRCUIT_REJECTIONS,
    PROVIDER_HEALTH_RESETS,
    PROVIDER_INVOCATIONS,
    PROVIDER_LATENCY,
    PROVIDER_SUBSTITUTIONS,
)
from voice_agents.shared.resilience.circuit_breaker import CircuitBreaker
from voice_agents.shared.resilience.classifier import is_quota_error
from voice_agents.shared.resilience.registry import ProviderRegistry
from voice_agents.shared.resilience.retry import RetryExecutor
from voice_agents.shared.resilience.types import (
    InvocationOutcome,
    OperationContext,
    OutcomeKind,
    ProviderStatusSnapshot,
    RetryPolicy,
    capability_key,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RequestFn = Callable[[ProviderHandle], Awaitable[T]]
StreamFn = Callable[[ProviderHandle], AsyncIterator[T]]

_END_OF_STREAM = object()


class FallbackExecutor:
    """Autonomous provider substitution for one process.

    Usage::

        executor = FallbackExecutor(registry)

        reply = await executor.execute(
            Capability.LLM,
            lambda llm: llm.invoke({"messages": messages}),
            context=OperationContext("llm_turn", session_id=sid),
        )

    Breakers are scoped per provider (``"<capability>:<name>"``) so a
    failing vendor never trips the breaker of its substitutes.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        retry_executor: RetryExecutor | None = None,
        retry_policy: RetryPolicy | None = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        classifier: Callable[[BaseException], bool] = is_quota_error,
        counters: UsageCounters | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._retry = retry_executor or RetryExecutor()
        self._policy = retry_policy or RetryPolicy(max_retries=2, base_delay=0.5, max_delay=8.0)
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._is_quota = classifier
        self._counters = counters or UsageCounters()
        self._clock = clock

        self._breakers: dict[str, CircuitBreaker] = {}
        self._wired: set[str] = set()
        self._reset_tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def counters(self) -> UsageCounters:
        return self._counters

    # ── Main entry-point ─────────────────────────────────────
    async def execute(
        self,
        capability: Any,
        request_fn: RequestFn[T],
        *,
        context: OperationContext | None = None,
    ) -> T:
        """Run ``request_fn`` against the best provider, substituting on quota errors.

        Args:
            capability: ``Capability`` member or capability name.
            request_fn: Async callable receiving the selected provider.
            context: Diagnostic context for logs and exhaustion errors.

        Raises:
            NoHealthyProviderError: every provider failed, even after one reset.
            CircuitOpenError: the selected provider's circuit is open and no
                healthy alternative has a closed circuit.
            RetryExhaustedError: non-quota failures exhausted the retry policy.
        """
        cap = capability_key(capability)
        context = context or OperationContext(f"{cap}_invoke")
        provider, reset_used = self._select(cap, allow_reset=True)
        attempted: list[str] = []

        while True:
            attempted.append(provider.provider_name)
            outcome = await self.invoke(cap, provider, request_fn, context=context)

            if outcome.ok:
                if len(attempted) > 1:
                    logger.info(
                        "provider_failover_success",
                        capability=cap,
                        provider=outcome.provider_name,
                        attempted=attempted,
                        **context.as_log_fields(),
                    )
                return outcome.value  # type: ignore[return-value]

            assert outcome.error is not None
            if outcome.kind is OutcomeKind.OTHER_FAILURE:
                raise outcome.error

            provider, did_reset = self._substitute(
                cap, outcome.provider_name, outcome.error, allow_reset=not reset_used
            )
            reset_used = reset_used or did_reset

    async def execute_stream(
        self,
        capability: Any,
        stream_fn: StreamFn[T],
        *,
        context: OperationContext | None = None,
    ) -> AsyncIterator[T]:
        """Stream from the best provider, substituting until the first chunk.

        Opening the stream and receiving its first chunk go through
        :meth:`execute`, so quota errors at that point substitute the next
        provider.  After the first chunk the stream is committed: a later
        error propagates to the caller, and a provider that reports it
        through its error events is flagged for the next call.
        """
        cap = capability_key(capability)
        context = context or OperationContext(f"{cap}_stream")

        async def _first_chunk(provider: ProviderHandle) -> tuple[str, AsyncIterator[T], Any]:
            stream = stream_fn(provider)
            return provider.provider_name, stream, await anext(stream, _END_OF_STREAM)

        name, stream, first = await self.execute(cap, _first_chunk, context=context)
        if first is _END_OF_STREAM:
            return
        try:
            yield first
            async for chunk in stream:
                yield chunk
        except Exception as exc:
            logger.warning(
                "provider_stream_interrupted",
                capability=cap,
                provider=name,
                quota=self._is_quota(exc),
                error=f"{type(exc).__name__}: {exc}",
                **context.as_log_fields(),
            )
            self._counters.increment(f"provider.stream_interrupted.{cap}.{name}")
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def invoke(
        self,
        capability: Any,
        provider: ProviderHandle,
        request_fn: RequestFn[T],
        *,
        context: OperationContext | None = None,
    ) -> InvocationOutcome[T]:
        """One guarded invocation: breaker → retry → provider.

        Quota errors are not retried here; they come back as a
        ``QUOTA_FAILURE`` outcome so the caller can substitute.

        Raises:
            CircuitOpenError: the breaker rejected the call.
        """
        cap = capability_key(capability)
        name = provider.provider_name
        context = context or OperationContext(f"{cap}_invoke")
        breaker = self.breaker_for(cap, name)

        async def _attempt() -> T:
            return await request_fn(provider)

        async def _with_retry() -> T:
            return await self._retry.execute_with_retry(
                _attempt,
                self._policy,
                context,
                retryable=self._retryable,
            )

        start = time.monotonic()
        try:
            value = await breaker.call(_with_retry)
        except CircuitOpenError:
            CIRCUIT_REJECTIONS.labels(circuit=breaker.name).inc()
            self._counters.increment(f"circuit.rejections.{breaker.name}")
            raise
        except Exception as exc:
            quota = self._is_quota(exc)
            outcome: InvocationOutcome[T] = InvocationOutcome.failure(name, exc, quota=quota)
            logger.warning(
                "provider_invocation_failed",
                capability=cap,
                provider=name,
                quota=quota,
                error=f"{type(exc).__name__}: {exc}",
                **context.as_log_fields(),
            )
        else:
            outcome = InvocationOutcome.success(name, value)
        finally:
            PROVIDER_LATENCY.labels(capability=cap, provider=name).observe(
                time.monotonic() - start
            )

        PROVIDER_INVOCATIONS.labels(
            capability=cap, provider=name, outcome=outcome.kind.value
        ).inc()
        self._counters.increment(f"provider.{outcome.kind.value}.{cap}.{name}")
        return outcome

    # ── Selection / substitution ─────────────────────────────
    def get_healthy_provider(self, capability: Any) -> ProviderHandle:
        """Highest-priority healthy provider, preferring closed circuits.

        Raises:
            NoHealthyProviderError: every provider is flagged unhealthy.
        """
        cap = capability_key(capability)
        open_circuits = {
            name
            for name in self._registry.available_providers(cap)
            if not self.breaker_for(cap, name).can_execute()
        }
        try:
            provider = self._registry.get_healthy_provider(cap, exclude=open_circuits)
        except NoHealthyProviderError:
            if not open_circuits:
                raise
            provider = self._registry.get_healthy_provider(cap)
        self._wire_error_events(cap, provider)
        return provider

    def handle_failure(
        self, capability: Any, current_provider_name: str, error: BaseException
    ) -> ProviderHandle:
        """Substitute ``current_provider_name`` after ``error``.

        Non-quota errors are re-raised unchanged.  A quota error marks the
        provider unhealthy and returns the next healthy one, resetting all
        health flags once if none remain.

        Raises:
            NoHealthyProviderError: selection failed even after the reset.
        """
        provider, _ = self._substitute(
            capability_key(capability), current_provider_name, error, allow_reset=True
        )
        return provider

    async def probe_capability(self, capability: Any) -> ProviderHandle:
        """Pick the first provider, in priority order, whose probe passes.

        Providers failing the probe are marked unhealthy.

        Raises:
            NoHealthyProviderError: no provider passed its probe.
        """
        cap = capability_key(capability)
        while True:
            provider = self._registry.get_healthy_provider(cap)
            try:
                ok = await provider.probe()
            except Exception as exc:
                logger.warning(
                    "provider_probe_error",
                    capability=cap,
                    provider=provider.provider_name,
                    error=str(exc),
                )
                ok = False
            if ok:
                logger.info("provider_probe_passed", capability=cap, provider=provider.provider_name)
                self._wire_error_events(cap, provider)
                return provider
            self._registry.mark_unhealthy(cap, provider.provider_name)

    def schedule_reset(self, capability: Any, delay: float) -> asyncio.Task[None]:
        """Clear the failed-provider flags for ``capability`` after ``delay`` seconds."""
        cap = capability_key(capability)

        async def _reset_later() -> None:
            await asyncio.sleep(delay)
            failed = self._registry.failed_providers(cap)
            if failed:
                logger.info("provider_delayed_reset", capability=cap, failed=failed)
                self._registry.reset(cap)

        task = asyncio.create_task(_reset_later())
        self._reset_tasks.add(task)
        task.add_done_callback(self._reset_tasks.discard)
        return task

    async def aclose(self) -> None:
        """Cancel delayed resets that have not fired yet."""
        pending = [task for task in self._reset_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("delayed_resets_cancelled", count=len(pending))
        self._reset_tasks.clear()

    def _retryable(self, exc: BaseException) -> bool:
        # Quota errors substitute instead; a missing capability never recovers
        return not self._is_quota(exc) and not isinstance(exc, NotImplementedError)

    def _substitute(
        self,
        cap: str,
        current_name: str,
        error: BaseException,
        *,
        allow_reset: bool,
    ) -> tuple[ProviderHandle, bool]:
        if not self._is_quota(error):
            raise error

        self._registry.mark_unhealthy(cap, current_name, error)
        PROVIDER_SUBSTITUTIONS.labels(capability=cap, from_provider=current_name).inc()
        self._counters.increment(f"provider.substitutions.{cap}")

        provider, did_reset = self._select(cap, allow_reset=allow_reset)
        logger.info(
            "provider_substituted",
            capability=cap,
            from_provider=current_name,
            to_provider=provider.provider_name,
            after_reset=did_reset,
        )
        return provider, did_reset

    def _select(self, cap: str, *, allow_reset: bool) -> tuple[ProviderHandle, bool]:
        """Select a provider, clearing every health flag once if none is healthy."""
        try:
            return self.get_healthy_provider(cap), False
        except NoHealthyProviderError:
            if not allow_reset:
                logger.error("provider_pool_exhausted", capability=cap)
                raise
        logger.warning("all_providers_failed_resetting", capability=cap)
        self._registry.reset(cap)
        PROVIDER_HEALTH_RESETS.labels(capability=cap).inc()
        self._counters.increment(f"provider.resets.{cap}")
        return self.get_healthy_provider(cap), True

    # ── Breakers ─────────────────────────────────────────────
    def breaker_for(self, capability: Any, provider_name: str) -> CircuitBreaker:
        key = f"{capability_key(capability)}:{provider_name}"
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                failure_threshold=self._failure_threshold,
                recovery_timeout=self._recovery_timeout,
                half_open_max_calls=self._half_open_max_calls,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def _wire_error_events(self, cap: str, provider: ProviderHandle) -> None:
        """Out-of-band quota errors (e.g. during streaming) flag the provider too."""
        key = f"{cap}:{provider.provider_name}"
        if key in self._wired:
            return
        self._wired.add(key)
        name = provider.provider_name

        def _on_error(exc: BaseException) -> None:
            logger.warning("provider_error_event", capability=cap, provider=name, error=str(exc))
            if self._is_quota(exc):
                self._registry.mark_unhealthy(cap, name, exc)

        provider.subscribe_to_errors(_on_error)

    # ── Introspection ────────────────────────────────────────
    def status(self, capability: Any) -> list[ProviderStatusSnapshot]:
        cap = capability_key(capability)
        snapshots = self._registry.snapshot(cap)
        for snap in snapshots:
            snap.circuit_state = self.breaker_for(cap, snap.name).state.value
        return snapshots

    def reset_capability(self, capability: Any) -> None:
        """Admin reset: clears health flags and every breaker for ``capability``."""
        cap = capability_key(capability)
        self._registry.reset(cap)
        for name in self._registry.available_providers(cap):
            self.breaker_for(cap, name).reset()
        logger.info("provider_admin_reset", capability=cap)
