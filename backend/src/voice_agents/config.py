"""Application configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ConfigurationError

KNOWN_PROVIDERS: dict[Capability, tuple[str, ...]] = {
    Capability.LLM: ("openrouter", "google", "openai"),
    Capability.TTS: ("cartesia", "openai", "google"),
}


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "voice-agents"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    json_logs: bool | None = None  # None = JSON in production only
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    tenant_id: str = ""

    # ── Provider keys ────────────────────────────────────────
    openrouter_api_key: str = ""
    google_api_key: str = ""
    openai_api_key: str = ""
    cartesia_api_key: str = ""

    # ── LLM ──────────────────────────────────────────────────
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openai_base_url: str = "https://api.openai.com/v1"
    openrouter_model: str = "openai/gpt-4o-mini"
    openai_model: str = "gpt-4o-mini"
    google_model: str = "gemini-2.5-flash"
    llm_temperature: float = 0.7

    # ── TTS ──────────────────────────────────────────────────
    cartesia_model: str = "sonic-2"
    cartesia_voice_id: str = "794f9389-aac1-45b6-b726-9d9369183238"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    google_tts_voice: str = "en-US-Neural2-F"
    google_tts_language: str = "en-US"

    # ── Provider Resilience ──────────────────────────────────
    llm_provider_priority: str = "openrouter,google,openai"
    tts_provider_priority: str = "cartesia,openai,google"
    probe_providers_on_startup: bool = True
    provider_timeout_seconds: float = 60.0
    provider_max_retries: int = 2
    provider_backoff_base: float = 0.5
    provider_backoff_max: float = 8.0
    provider_reset_delay_seconds: float = 5.0

    # Circuit breaker
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_seconds: float = 60.0
    circuit_breaker_half_open_max_calls: int = 3

    # ── CRM (JSON-RPC tool endpoint) ─────────────────────────
    crm_url: str = "https://services.leadconnectorhq.com/mcp/"
    crm_api_token: str = ""
    crm_location_id: str = ""
    crm_timeout_seconds: float = 30.0
    crm_max_retries: int = 3
    crm_retry_base_delay: float = 1.0
    crm_retry_max_delay: float = 5.0

    # ── Sessions ─────────────────────────────────────────────
    session_ttl_seconds: float = 30 * 60
    session_sweep_interval_seconds: float = 60.0

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def use_json_logs(self) -> bool:
        return self.is_production if self.json_logs is None else self.json_logs

    @property
    def crm_enabled(self) -> bool:
        return bool(self.crm_api_token and self.crm_location_id)

    def provider_key(self, provider: str) -> str:
        return str(getattr(self, f"{provider}_api_key", "") or "").strip()

    def priority_order(self, capability: Capability) -> list[str]:
        raw = (
            self.llm_provider_priority
            if capability is Capability.LLM
            else self.tts_provider_priority
        )
        return [name.strip().lower() for name in raw.split(",") if name.strip()]

    def configured_providers(self, capability: Capability) -> list[str]:
        """Providers for ``capability`` that have a key, in priority order."""
        ordered = self.priority_order(capability)
        # providers missing from the priority list go last, in default order
        ordered += [p for p in KNOWN_PROVIDERS[capability] if p not in ordered]
        return [
            p for p in ordered if p in KNOWN_PROVIDERS[capability] and self.provider_key(p)
        ]

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("llm_provider_priority", "tts_provider_priority")
    @classmethod
    def _validate_priority(cls, v: str) -> str:
        if not any(name.strip() for name in v.split(",")):
            raise ValueError("provider priority list must name at least one provider")
        return v

    @model_validator(mode="after")
    def _validate_timings(self) -> Settings:
        if self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be > 0")
        if self.session_sweep_interval_seconds <= 0:
            raise ValueError("session_sweep_interval_seconds must be > 0")
        if self.circuit_breaker_failure_threshold < 1:
            raise ValueError("circuit_breaker_failure_threshold must be >= 1")
        return self


def validate_required_capabilities(
    settings: Settings,
    required: tuple[Capability, ...] = (Capability.LLM, Capability.TTS),
) -> None:
    """Fail fast when a required capability has no provider key at all.

    Raises:
        ConfigurationError: listing every capability without a key.
    """
    missing = [c for c in required if not settings.configured_providers(c)]
    if missing:
        details = "; ".join(
            f"{c.value}: set one of "
            + ", ".join(f"{p.upper()}_API_KEY" for p in KNOWN_PROVIDERS[c])
            for c in missing
        )
        raise ConfigurationError(f"No provider API key configured ({details})")


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
