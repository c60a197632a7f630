"""Data Transfer Objects: Pydantic models for the admin API boundary.

DTOs handle serialisation, validation, and documentation.  They adapt the
resilience layer's dataclasses to JSON; the layer itself never imports them.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    services: dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
class ProviderStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    priority: int
    healthy: bool
    failure_marks: int
    circuit_state: str
    current: bool
    last_error: str | None = None


class CapabilityStatusResponse(BaseModel):
    capability: str
    current_provider: str | None
    failed_providers: list[str]
    reset_count: int
    providers: list[ProviderStatusResponse]


class ProviderResetResponse(BaseModel):
    status: str = "reset"
    capability: str
    available_providers: list[str]


# ═══════════════════════════════════════════════════════════════
#  Sessions
# ═══════════════════════════════════════════════════════════════
class SessionResponse(BaseModel):
    session_id: str
    payload: dict  # type: ignore[type-arg]
    ttl_seconds: float
    idle_seconds: float
    pending_tasks: int


class CountersResponse(BaseModel):
    counters: dict[str, int]
    active_sessions: int
