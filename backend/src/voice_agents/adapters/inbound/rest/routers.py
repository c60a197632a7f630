"""Health, Providers, Sessions, Counters: admin REST routers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import JSONResponse, Response

from voice_agents.application.dtos import (
    CapabilityStatusResponse,
    CountersResponse,
    HealthResponse,
    ProviderResetResponse,
    ProviderStatusResponse,
    SessionResponse,
)
from voice_agents.application.runtime import AgentRuntime
from voice_agents.config import Settings
from voice_agents.dependencies import get_cached_settings, get_runtime
from voice_agents.domain.enums import Capability


def _capability(name: str) -> Capability:
    try:
        return Capability(name.lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown capability {name!r}",
        ) from None


def _capability_status(runtime: AgentRuntime, capability: Capability) -> CapabilityStatusResponse:
    registry = runtime.executor.registry
    return CapabilityStatusResponse(
        capability=capability.value,
        current_provider=registry.current_provider_name(capability),
        failed_providers=registry.failed_providers(capability),
        reset_count=registry.reset_count(capability),
        providers=[
            ProviderStatusResponse.model_validate(snapshot)
            for snapshot in runtime.executor.status(capability)
        ],
    )


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    runtime: AgentRuntime = Depends(get_runtime),
) -> Response:
    settings: Settings = getattr(request.app.state, "settings", None) or get_cached_settings()
    registry = runtime.executor.registry

    services: dict[str, str] = {}
    for capability in Capability:
        available = registry.available_providers(capability)
        failed = registry.failed_providers(capability)
        if not available:
            services[capability.value] = "unconfigured"
        elif len(failed) == len(available):
            services[capability.value] = "unavailable"
        elif failed:
            services[capability.value] = f"degraded ({len(failed)}/{len(available)} failed)"
        else:
            services[capability.value] = "ok"
    services["sessions"] = str(len(runtime.sessions))

    overall = (
        "ok"
        if all(services[c.value] not in ("unconfigured", "unavailable") for c in Capability)
        else "degraded"
    )
    body = HealthResponse(
        status=overall,
        environment=settings.app_env.value,
        services=services,
    )
    return JSONResponse(
        content=body.model_dump(),
        status_code=200 if overall == "ok" else 503,
    )


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@health_router.get("/counters", response_model=CountersResponse)
async def usage_counters(runtime: AgentRuntime = Depends(get_runtime)) -> CountersResponse:
    return CountersResponse(
        counters=runtime.get_counters(),
        active_sessions=len(runtime.sessions),
    )


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
providers_router = APIRouter(prefix="/providers", tags=["Provider Health"])


@providers_router.get("", response_model=list[CapabilityStatusResponse])
async def provider_status(
    runtime: AgentRuntime = Depends(get_runtime),
) -> list[CapabilityStatusResponse]:
    """Registry health flags and breaker state for every capability."""
    return [_capability_status(runtime, capability) for capability in Capability]


@providers_router.post("/{capability}/reset", response_model=ProviderResetResponse)
async def reset_providers(
    capability: str,
    runtime: AgentRuntime = Depends(get_runtime),
) -> ProviderResetResponse:
    """Admin: clear health flags and circuit breakers for a capability."""
    cap = _capability(capability)
    runtime.executor.reset_capability(cap)
    return ProviderResetResponse(
        capability=cap.value,
        available_providers=runtime.executor.registry.available_providers(cap),
    )


# ═══════════════════════════════════════════════════════════════
#  Sessions
# ═══════════════════════════════════════════════════════════════
sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])


@sessions_router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    runtime: AgentRuntime = Depends(get_runtime),
) -> SessionResponse:
    record = runtime.sessions.get_record(session_id)
    now = runtime.sessions.now()
    return SessionResponse(
        session_id=record.session_id,
        payload=record.payload,
        ttl_seconds=record.ttl,
        idle_seconds=round(record.idle_for(now), 3),
        pending_tasks=runtime.sessions.pending_tasks(session_id),
    )
