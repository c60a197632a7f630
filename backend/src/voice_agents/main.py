"""FastAPI application entry-point.

Assembles the admin routers, middleware, exception handlers, and the
runtime lifecycle (session sweeper, provider probing, counter flush).
"""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from voice_agents.adapters.inbound.rest.routers import (
    health_router,
    providers_router,
    sessions_router,
)
from voice_agents.application.runtime import AgentRuntime
from voice_agents.config import Settings, get_settings, validate_required_capabilities
from voice_agents.dependencies import build_runtime, get_runtime
from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ConfigurationError
from voice_agents.shared.errors import register_exception_handlers
from voice_agents.shared.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    RequestContextMiddleware,
)
from voice_agents.shared.observability import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle: startup & shutdown hooks."""
    settings: Settings = app.state.settings
    runtime: AgentRuntime = app.state.runtime
    configure_logging(log_level=settings.log_level, json_logs=settings.use_json_logs)
    logger.info(
        "application_starting",
        env=settings.app_env.value,
        llm_providers=settings.configured_providers(Capability.LLM),
        tts_providers=settings.configured_providers(Capability.TTS),
        crm_enabled=settings.crm_enabled,
    )

    await runtime.start()
    if settings.probe_providers_on_startup:
        selected = await runtime.select_providers()
        logger.info("providers_selected", **selected)

    yield

    await runtime.shutdown()
    logger.info("application_shutdown", counters=runtime.get_counters())


def create_app(
    settings: Settings | None = None,
    *,
    runtime: AgentRuntime | None = None,
) -> FastAPI:
    """Application factory: creates a fully configured FastAPI instance."""
    settings = settings or get_settings()
    runtime = runtime or build_runtime(settings)

    app = FastAPI(
        title="Voice Agents",
        description=(
            "Admin surface for the voice-agent resilience layer: provider health, "
            "circuit state, live sessions and usage counters."
        ),
        version="0.1.0",
        debug=settings.app_debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.runtime = runtime
    app.dependency_overrides[get_runtime] = lambda: runtime

    # ── Middleware (order matters: first added = outermost) ───
    allow_all_origins = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all_origins else settings.cors_origins,
        allow_origin_regex=".*" if allow_all_origins else None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # ── Exception handlers ───────────────────────────────────
    register_exception_handlers(app)

    # ── REST routers (versioned) ─────────────────────────────
    api_v1 = "/api/v1"
    app.include_router(health_router, prefix=api_v1)
    app.include_router(providers_router, prefix=api_v1)
    app.include_router(sessions_router, prefix=api_v1)

    return app


def cli() -> None:
    """``voice-agents`` console entry-point: validate configuration, then serve."""
    import uvicorn

    settings = get_settings()
    try:
        validate_required_capabilities(settings)
    except ConfigurationError as exc:
        sys.stderr.write(f"{settings.app_name}: {exc.message}\n")
        sys.exit(1)

    uvicorn.run(
        create_app(settings),
        host=settings.app_host,
        port=settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    cli()
