"""Tests for ProviderRegistry selection and health flags."""

from __future__ import annotations

import pytest

from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import NoHealthyProviderError
from voice_agents.shared.resilience.registry import ProviderRegistry


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


def register(registry, make_provider, name, priority, capability=Capability.LLM):
    provider = make_provider(name, capability=capability)
    registry.register(capability, name, priority=priority, factory=lambda: provider)
    return provider


# ═══════════════════════════════════════════════════════════════
#  Selection
# ═══════════════════════════════════════════════════════════════
class TestSelection:
    def test_lowest_priority_value_wins(self, registry, make_provider) -> None:
        register(registry, make_provider, "google", 3)
        register(registry, make_provider, "openrouter", 1)
        register(registry, make_provider, "openai", 2)

        provider = registry.get_healthy_provider(Capability.LLM)
        assert provider.provider_name == "openrouter"
        assert registry.available_providers("llm") == ["openrouter", "openai", "google"]

    def test_ties_resolved_by_registration_order(self, registry, make_provider) -> None:
        register(registry, make_provider, "first", 1)
        register(registry, make_provider, "second", 1)
        assert registry.get_healthy_provider("llm").provider_name == "first"

    def test_skips_unhealthy(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        register(registry, make_provider, "b", 2)
        registry.mark_unhealthy("llm", "a")
        assert registry.get_healthy_provider("llm").provider_name == "b"

    def test_exclude_does_not_flag(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        register(registry, make_provider, "b", 2)
        assert registry.get_healthy_provider("llm", exclude={"a"}).provider_name == "b"
        assert registry.is_healthy("llm", "a")

    def test_no_healthy_provider(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        registry.mark_unhealthy("llm", "a", RuntimeError("quota"))
        with pytest.raises(NoHealthyProviderError) as exc_info:
            registry.get_healthy_provider("llm")
        assert exc_info.value.capability == "llm"
        assert exc_info.value.failed == ["a"]

    def test_unknown_capability_has_no_provider(self, registry) -> None:
        with pytest.raises(NoHealthyProviderError):
            registry.get_healthy_provider("tts")

    def test_factory_failure_marks_unhealthy_and_moves_on(self, registry, make_provider) -> None:
        def broken():
            raise RuntimeError("missing SDK credentials")

        registry.register("llm", "broken", priority=1, factory=broken)
        register(registry, make_provider, "backup", 2)

        assert registry.get_healthy_provider("llm").provider_name == "backup"
        assert not registry.is_healthy("llm", "broken")
        assert "missing SDK credentials" in registry.snapshot("llm")[0].last_error

    def test_instance_is_cached(self, registry, make_provider) -> None:
        calls = []

        def factory():
            calls.append(1)
            return make_provider("a")

        registry.register("llm", "a", priority=1, factory=factory)
        first = registry.get_healthy_provider("llm")
        second = registry.get_healthy_provider("llm")
        assert first is second
        assert len(calls) == 1

    def test_registry_names_the_instance(self, registry, make_provider) -> None:
        provider = make_provider("vendor-default")
        registry.register("llm", "openrouter", priority=1, factory=lambda: provider)
        assert registry.get_healthy_provider("llm").provider_name == "openrouter"

    def test_tracks_current_provider(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        register(registry, make_provider, "b", 2)
        registry.get_healthy_provider("llm")
        assert registry.current_provider_name("llm") == "a"
        registry.mark_unhealthy("llm", "a")
        registry.get_healthy_provider("llm")
        assert registry.current_provider_name(Capability.LLM) == "b"

    def test_capabilities_are_independent(self, registry, make_provider) -> None:
        register(registry, make_provider, "openai", 1, Capability.LLM)
        register(registry, make_provider, "openai", 1, Capability.TTS)
        registry.mark_unhealthy("llm", "openai")
        assert registry.is_healthy("tts", "openai")
        assert sorted(registry.capabilities()) == ["llm", "tts"]


# ═══════════════════════════════════════════════════════════════
#  Health flags
# ═══════════════════════════════════════════════════════════════
class TestHealthFlags:
    def test_duplicate_registration_rejected(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        with pytest.raises(ValueError):
            register(registry, make_provider, "a", 2)

    def test_mark_unhealthy_reports_transition_once(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        assert registry.mark_unhealthy("llm", "a") is True
        assert registry.mark_unhealthy("llm", "a") is False
        assert registry.snapshot("llm")[0].failure_marks == 1

    def test_mark_unknown_provider_raises(self, registry) -> None:
        with pytest.raises(KeyError):
            registry.mark_unhealthy("llm", "ghost")

    def test_reset_clears_flags_and_counts(self, registry, make_provider) -> None:
        register(registry, make_provider, "a", 1)
        register(registry, make_provider, "b", 2)
        registry.mark_unhealthy("llm", "a")
        registry.mark_unhealthy("llm", "b")
        assert registry.all_unhealthy("llm")

        registry.reset("llm")

        assert not registry.all_unhealthy("llm")
        assert registry.failed_providers("llm") == []
        assert registry.reset_count("llm") == 1
        assert registry.reset_count("tts") == 0

    @pytest.mark.asyncio
    async def test_close_all_closes_instantiated_providers(self, registry, make_provider) -> None:
        a = register(registry, make_provider, "a", 1)
        b = register(registry, make_provider, "b", 2)
        registry.get_healthy_provider("llm")

        await registry.close_all()

        assert a.closed is True
        assert b.closed is False
