"""Shared HTTP plumbing for vendor provider adapters.

Vendor adapters are pure request/response mappers; all resilience
(retry, breaker, substitution) lives in the fallback executor.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ProviderError
from voice_agents.ports.outbound import ProviderHandle

logger = structlog.get_logger(__name__)


class HTTPProvider(ProviderHandle):
    """``ProviderHandle`` backed by an ``httpx.AsyncClient``.

    HTTP and transport failures are normalised to ``ProviderError`` with
    the status code attached, so the quota classifier can read it.
    """

    capability: Capability
    default_name: str = ""

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        timeout: float = 60.0,
        provider_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        self.provider_name = provider_name or self.default_name
        self._api_key = api_key
        self._model = model
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def model(self) -> str:
        return self._model

    def _key_looks_valid(self) -> bool:
        return len(self._api_key.strip()) > 10

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=headers, json=json)
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc

        if response.status_code >= 400:
            raise self._http_error(response.status_code, response.text)
        return response

    def _transport_error(self, exc: httpx.TransportError) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            return ProviderError(self.provider_name, f"Request timed out: {exc}")
        return ProviderError(self.provider_name, f"{type(exc).__name__}: {exc}")

    def _http_error(self, status_code: int, body: str) -> ProviderError:
        detail = body[:300]
        logger.debug(
            "provider_http_error",
            provider=self.provider_name,
            status=status_code,
            detail=detail,
        )
        return ProviderError(
            self.provider_name,
            f"HTTP {status_code}: {detail}",
            status_code=status_code,
        )

    async def close(self) -> None:
        await self._client.aclose()
