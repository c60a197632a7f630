"""Outbound ports: interfaces that provider adapters must implement.

The resilience layer depends only on these abstractions, never on
vendor-specific request or response schemas.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Callable

from voice_agents.domain.enums import Capability

ErrorHandler = Callable[[BaseException], None]


class ProviderHandle(ABC):
    """A constructed provider instance for one capability.

    ``invoke`` is mandatory.  ``stream`` and ``subscribe_to_errors`` are
    optional: the defaults raise / store handlers so every provider can be
    treated uniformly by the fallback executor.
    """

    capability: Capability
    provider_name: str

    def __init__(self) -> None:
        self._error_handlers: list[ErrorHandler] = []

    @abstractmethod
    async def invoke(self, request: dict[str, Any]) -> Any:
        """Send one request and return the vendor-neutral response."""
        ...

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[Any]:
        """Yield the response incrementally.

        Errors raised after the first chunk should also go to
        ``_emit_error`` so subscribers learn about them out of band.
        """
        raise NotImplementedError(f"{self.provider_name} does not support streaming")
        yield  # pragma: no cover

    async def probe(self) -> bool:
        """Cheap health check; providers override with a real probe."""
        return True

    def subscribe_to_errors(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def _emit_error(self, error: BaseException) -> None:
        for handler in self._error_handlers:
            handler(error)

    async def close(self) -> None:
        return None
