"""Dependency injection container: wires adapters to the resilience layer.

FastAPI's ``Depends()`` system uses these factories to inject the
runtime and its collaborators into route handlers.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Callable

from voice_agents.adapters.outbound.crm import CRMToolClient
from voice_agents.adapters.outbound.llm import (
    OPENROUTER_BASE_URL,
    GeminiLLM,
    OpenAICompatibleLLM,
)
from voice_agents.adapters.outbound.rpc import RemoteCallClient
from voice_agents.adapters.outbound.tts import CartesiaTTS, GoogleTTS, OpenAITTS
from voice_agents.application.runtime import AgentRuntime
from voice_agents.config import Settings, get_settings
from voice_agents.domain.enums import Capability
from voice_agents.ports.outbound import ProviderHandle
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.resilience import (
    FallbackExecutor,
    ProviderDescriptor,
    ProviderRegistry,
    RetryPolicy,
)
from voice_agents.shared.sessions import SessionRegistry


# ── Settings ─────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_cached_settings() -> Settings:
    return get_settings()


# ── Provider factories ───────────────────────────────────────
def _llm_factory(settings: Settings, name: str) -> Callable[[], ProviderHandle]:
    timeout = settings.provider_timeout_seconds
    temperature = settings.llm_temperature
    if name == "openrouter":
        return lambda: OpenAICompatibleLLM(
            settings.openrouter_api_key,
            model=settings.openrouter_model,
            base_url=settings.openrouter_base_url or OPENROUTER_BASE_URL,
            temperature=temperature,
            timeout=timeout,
            provider_name="openrouter",
        )
    if name == "openai":
        return lambda: OpenAICompatibleLLM(
            settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            temperature=temperature,
            timeout=timeout,
        )
    if name == "google":
        return lambda: GeminiLLM(
            settings.google_api_key,
            model=settings.google_model,
            temperature=temperature,
            timeout=timeout,
        )
    raise ValueError(f"Unknown LLM provider: {name}")


def _tts_factory(settings: Settings, name: str) -> Callable[[], ProviderHandle]:
    timeout = settings.provider_timeout_seconds
    if name == "cartesia":
        return lambda: CartesiaTTS(
            settings.cartesia_api_key,
            model=settings.cartesia_model,
            voice_id=settings.cartesia_voice_id,
            timeout=timeout,
        )
    if name == "openai":
        return lambda: OpenAITTS(
            settings.openai_api_key,
            model=settings.openai_tts_model,
            voice=settings.openai_tts_voice,
            base_url=settings.openai_base_url,
            timeout=timeout,
        )
    if name == "google":
        return lambda: GoogleTTS(
            settings.google_api_key,
            voice=settings.google_tts_voice,
            language_code=settings.google_tts_language,
            timeout=timeout,
        )
    raise ValueError(f"Unknown TTS provider: {name}")


def build_provider_descriptors(
    settings: Settings,
) -> dict[Capability, list[ProviderDescriptor]]:
    """One descriptor per provider that has a key, priority = list position."""
    factories = {Capability.LLM: _llm_factory, Capability.TTS: _tts_factory}
    descriptors: dict[Capability, list[ProviderDescriptor]] = {}
    for capability, make_factory in factories.items():
        descriptors[capability] = [
            ProviderDescriptor(
                name=name,
                priority=idx + 1,
                factory=make_factory(settings, name),
            )
            for idx, name in enumerate(settings.configured_providers(capability))
        ]
    return descriptors


# ── Runtime assembly ─────────────────────────────────────────
def build_runtime(settings: Settings, *, counters: UsageCounters | None = None) -> AgentRuntime:
    counters = counters or UsageCounters()

    registry = ProviderRegistry()
    for capability, descriptors in build_provider_descriptors(settings).items():
        registry.register_all(capability, descriptors)

    executor = FallbackExecutor(
        registry,
        retry_policy=RetryPolicy(
            max_retries=settings.provider_max_retries,
            base_delay=settings.provider_backoff_base,
            max_delay=settings.provider_backoff_max,
        ),
        failure_threshold=settings.circuit_breaker_failure_threshold,
        recovery_timeout=settings.circuit_breaker_recovery_seconds,
        half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
        counters=counters,
    )

    sessions = SessionRegistry(
        default_ttl=settings.session_ttl_seconds,
        sweep_interval=settings.session_sweep_interval_seconds,
        counters=counters,
    )

    crm: CRMToolClient | None = None
    if settings.crm_enabled:
        rpc = RemoteCallClient(
            timeout=settings.crm_timeout_seconds,
            retry_policy=RetryPolicy(
                max_retries=settings.crm_max_retries,
                base_delay=settings.crm_retry_base_delay,
                max_delay=settings.crm_retry_max_delay,
            ),
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_seconds,
            half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
            counters=counters,
        )
        crm = CRMToolClient(
            rpc,
            api_token=settings.crm_api_token,
            location_id=settings.crm_location_id,
            endpoint=settings.crm_url,
        )

    return AgentRuntime(
        executor,
        sessions,
        counters=counters,
        crm=crm,
        tenant_id=settings.tenant_id or settings.crm_location_id or None,
        reset_delay=settings.provider_reset_delay_seconds,
    )


# ── Singletons ───────────────────────────────────────────────
_runtime: AgentRuntime | None = None


def get_runtime() -> AgentRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_cached_settings())
    return _runtime


def set_runtime(runtime: AgentRuntime | None) -> None:
    """Install (or clear) the process runtime; used by the app factory and tests."""
    global _runtime
    _runtime = runtime
