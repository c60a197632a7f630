"""Tests for settings, provider wiring and start-up validation."""

from __future__ import annotations

import pytest

from voice_agents.config import get_settings, validate_required_capabilities
from voice_agents.dependencies import build_provider_descriptors, build_runtime
from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ConfigurationError
from voice_agents.main import cli

KEY_VARS = (
    "OPENROUTER_API_KEY",
    "GOOGLE_API_KEY",
    "OPENAI_API_KEY",
    "CARTESIA_API_KEY",
    "CRM_API_TOKEN",
    "CRM_LOCATION_ID",
    "LLM_PROVIDER_PRIORITY",
    "TTS_PROVIDER_PRIORITY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in KEY_VARS:
        monkeypatch.delenv(var, raising=False)


def settings(**overrides):
    return get_settings(_env_file=None, **overrides)


# ═══════════════════════════════════════════════════════════════
#  Settings
# ═══════════════════════════════════════════════════════════════
class TestSettings:
    def test_defaults(self) -> None:
        s = settings()
        assert s.session_ttl_seconds == 1800
        assert s.circuit_breaker_failure_threshold == 5
        assert s.crm_max_retries == 3
        assert s.crm_enabled is False
        assert s.use_json_logs is False

    def test_json_logs_follow_environment(self) -> None:
        assert settings(app_env="production").use_json_logs is True
        assert settings(app_env="production", json_logs=False).use_json_logs is False

    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        monkeypatch.setenv("SESSION_TTL_SECONDS", "120")
        s = settings()
        assert s.openai_api_key == "sk-from-env"
        assert s.session_ttl_seconds == 120

    def test_configured_providers_follow_priority(self) -> None:
        s = settings(
            openrouter_api_key="or-key",
            openai_api_key="oa-key",
            llm_provider_priority="openai, openrouter",
        )
        assert s.configured_providers(Capability.LLM) == ["openai", "openrouter"]
        # TTS: cartesia has no key, so openai is first
        assert s.configured_providers(Capability.TTS) == ["openai"]

    def test_unlisted_providers_appended(self) -> None:
        s = settings(google_api_key="g-key", openai_api_key="oa", llm_provider_priority="openai")
        assert s.configured_providers(Capability.LLM) == ["openai", "google"]

    def test_unknown_names_ignored(self) -> None:
        s = settings(openai_api_key="oa", llm_provider_priority="anthropic,openai")
        assert s.configured_providers(Capability.LLM) == ["openai"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"session_ttl_seconds": 0},
            {"session_sweep_interval_seconds": -1},
            {"circuit_breaker_failure_threshold": 0},
            {"llm_provider_priority": " , "},
        ],
    )
    def test_invalid_values_rejected(self, overrides) -> None:
        with pytest.raises(ValueError):
            settings(**overrides)


# ═══════════════════════════════════════════════════════════════
#  Start-up validation
# ═══════════════════════════════════════════════════════════════
class TestValidation:
    def test_missing_keys_listed(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            validate_required_capabilities(settings(openrouter_api_key="or-key"))
        message = exc_info.value.message
        assert "tts" in message
        assert "CARTESIA_API_KEY" in message
        assert "llm" not in message

    def test_one_key_per_capability_is_enough(self) -> None:
        validate_required_capabilities(settings(openai_api_key="oa-key"))

    def test_cli_exits_non_zero_without_keys(self, monkeypatch, capsys) -> None:
        monkeypatch.setattr("voice_agents.main.get_settings", lambda: settings())
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == 1
        assert capsys.readouterr().err.startswith("voice-agents: No provider API key configured")


# ═══════════════════════════════════════════════════════════════
#  Wiring
# ═══════════════════════════════════════════════════════════════
class TestWiring:
    def test_descriptor_priorities(self) -> None:
        s = settings(
            openrouter_api_key="or-key-0123456789",
            google_api_key="g-key-0123456789",
            cartesia_api_key="ca-key-0123456789",
        )
        descriptors = build_provider_descriptors(s)

        assert [(d.name, d.priority) for d in descriptors[Capability.LLM]] == [
            ("openrouter", 1),
            ("google", 2),
        ]
        assert [(d.name, d.priority) for d in descriptors[Capability.TTS]] == [
            ("cartesia", 1),
            ("google", 2),
        ]

    def test_factories_build_named_providers(self) -> None:
        s = settings(openrouter_api_key="or-key-0123456789", openai_api_key="oa-key-0123456789")
        llm = {d.name: d.factory() for d in build_provider_descriptors(s)[Capability.LLM]}
        assert llm["openrouter"].provider_name == "openrouter"
        assert llm["openai"].provider_name == "openai"
        assert llm["openrouter"].model == s.openrouter_model

    def test_factories_apply_provider_timeout(self) -> None:
        s = settings(
            provider_timeout_seconds=12.5,
            openai_api_key="oa-key-0123456789",
            google_api_key="g-key-0123456789",
            cartesia_api_key="ca-key-0123456789",
        )
        descriptors = build_provider_descriptors(s)
        for capability in (Capability.LLM, Capability.TTS):
            for descriptor in descriptors[capability]:
                provider = descriptor.factory()
                assert provider._client.timeout.read == 12.5, descriptor.name

    def test_build_runtime(self) -> None:
        s = settings(
            openai_api_key="oa-key-0123456789",
            crm_api_token="pit-token",
            crm_location_id="loc-7",
        )
        runtime = build_runtime(s)

        assert runtime.executor.registry.available_providers(Capability.LLM) == ["openai"]
        assert runtime.executor.registry.available_providers(Capability.TTS) == ["openai"]
        assert runtime._crm is not None
        assert runtime._tenant_id == "loc-7"

    def test_crm_disabled_without_token(self) -> None:
        runtime = build_runtime(settings(openai_api_key="oa-key-0123456789"))
        assert runtime._crm is None
