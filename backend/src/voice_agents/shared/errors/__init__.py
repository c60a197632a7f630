"""Global exception handlers: map resilience errors to HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
import structlog

from voice_agents.domain.exceptions import (
    CircuitOpenError,
    MalformedResponseError,
    NoHealthyProviderError,
    ProviderError,
    RemoteCallError,
    ResilienceError,
    RetryExhaustedError,
    SessionAlreadyExistsError,
    SessionExpiredError,
    SessionNotFoundError,
)

logger = structlog.get_logger(__name__)


def _body(exc: ResilienceError) -> dict[str, str]:
    return {"code": exc.code, "message": exc.message}


def register_exception_handlers(app: FastAPI) -> None:
    """Register all resilience→HTTP exception mappings."""

    @app.exception_handler(SessionNotFoundError)
    async def handle_not_found(request: Request, exc: SessionNotFoundError) -> ORJSONResponse:
        return ORJSONResponse(status_code=404, content=_body(exc))

    @app.exception_handler(SessionAlreadyExistsError)
    async def handle_conflict(
        request: Request, exc: SessionAlreadyExistsError
    ) -> ORJSONResponse:
        return ORJSONResponse(status_code=409, content=_body(exc))

    @app.exception_handler(SessionExpiredError)
    async def handle_expired(request: Request, exc: SessionExpiredError) -> ORJSONResponse:
        return ORJSONResponse(status_code=410, content=_body(exc))

    @app.exception_handler(CircuitOpenError)
    async def handle_circuit_open(request: Request, exc: CircuitOpenError) -> ORJSONResponse:
        logger.warning("circuit_open_http", circuit=exc.name)
        return ORJSONResponse(
            status_code=503,
            content=_body(exc),
            headers={"Retry-After": str(max(1, round(exc.retry_after_s)))},
        )

    @app.exception_handler(NoHealthyProviderError)
    async def handle_no_provider(
        request: Request, exc: NoHealthyProviderError
    ) -> ORJSONResponse:
        logger.error("no_healthy_provider_http", capability=exc.capability, failed=exc.failed)
        return ORJSONResponse(status_code=503, content=_body(exc))

    @app.exception_handler(RetryExhaustedError)
    async def handle_exhausted(request: Request, exc: RetryExhaustedError) -> ORJSONResponse:
        logger.error("retry_exhausted_http", message=exc.message)
        return ORJSONResponse(status_code=503, content=_body(exc))

    @app.exception_handler(RemoteCallError)
    async def handle_remote(request: Request, exc: RemoteCallError) -> ORJSONResponse:
        logger.error("remote_call_error_http", message=exc.message, http_status=exc.http_status)
        return ORJSONResponse(status_code=502, content=_body(exc))

    @app.exception_handler(MalformedResponseError)
    async def handle_malformed(request: Request, exc: MalformedResponseError) -> ORJSONResponse:
        logger.error("malformed_response_http", message=exc.message)
        return ORJSONResponse(status_code=502, content=_body(exc))

    @app.exception_handler(ProviderError)
    async def handle_provider(request: Request, exc: ProviderError) -> ORJSONResponse:
        logger.error("provider_error_http", provider=exc.provider, status_code=exc.status_code)
        return ORJSONResponse(status_code=502, content=_body(exc))

    @app.exception_handler(ResilienceError)
    async def handle_resilience(request: Request, exc: ResilienceError) -> ORJSONResponse:
        logger.error("resilience_error_http", code=exc.code, message=exc.message)
        return ORJSONResponse(status_code=500, content=_body(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )
