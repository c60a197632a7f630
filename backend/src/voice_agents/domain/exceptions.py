"""Resilience-layer exception hierarchy.

All exceptions inherit from ``ResilienceError`` so callers can catch the
entire family in one clause while still discriminating on subclass.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from voice_agents.shared.resilience.types import OperationContext


class ResilienceError(Exception):
    """Base class for all resilience-layer errors."""

    def __init__(self, message: str, *, code: str = "RESILIENCE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(ResilienceError):
    """Start-up configuration is unusable (e.g. no API key for a capability)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


# ── Retry / circuit ─────────────────────────────────────────
class RetryExhaustedError(ResilienceError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(
        self,
        last_error: BaseException,
        *,
        attempts: int,
        context: OperationContext | None = None,
    ) -> None:
        self.last_error = last_error
        self.attempts = attempts
        self.context = context
        operation = context.operation if context else "operation"
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}",
            code="RETRY_EXHAUSTED",
        )


RetryExhausted = RetryExhaustedError


class CircuitOpenError(ResilienceError):
    """Raised by a circuit breaker without contacting the dependency."""

    def __init__(self, name: str, *, retry_after_s: float = 0.0) -> None:
        self.name = name
        self.retry_after_s = retry_after_s
        super().__init__(
            f"Circuit {name!r} is open; retry in {retry_after_s:.1f}s",
            code="CIRCUIT_OPEN",
        )


# ── Providers ────────────────────────────────────────────────
class NoHealthyProviderError(ResilienceError):
    def __init__(self, capability: str, *, failed: list[str] | None = None) -> None:
        self.capability = capability
        self.failed = failed or []
        super().__init__(
            f"No healthy {capability} provider available",
            code="NO_HEALTHY_PROVIDER",
        )


class ProviderError(ResilienceError):
    """A vendor call failed; ``status_code`` is the HTTP status when known."""

    def __init__(
        self, provider: str, message: str, *, status_code: int | None = None
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}", code="PROVIDER_ERROR")


# ── Remote RPC ───────────────────────────────────────────────
class RemoteCallError(ResilienceError):
    """Transport failure, JSON-RPC ``error`` field, or ``success: false`` payload.

    ``retryable`` is True only for transport-level failures (network,
    timeout, 5xx); protocol errors are not retried automatically.
    """

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.http_status = http_status
        self.retryable = retryable
        super().__init__(message, code="REMOTE_CALL_ERROR")


class MalformedResponseError(ResilienceError):
    def __init__(self, message: str, *, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message, code="MALFORMED_RESPONSE")


# ── Sessions ─────────────────────────────────────────────────
class SessionNotFoundError(ResilienceError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id!r} not found", code="SESSION_NOT_FOUND")


class SessionAlreadyExistsError(ResilienceError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Session {session_id!r} already exists", code="SESSION_ALREADY_EXISTS"
        )


class SessionExpiredError(ResilienceError):
    """The session was evicted while work on its behalf was in flight."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Session {session_id!r} was evicted; result discarded",
            code="SESSION_EXPIRED",
        )
