"""Core types for the resilience layer."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Generic, TypeVar

from voice_agents.ports.outbound import ProviderHandle

T = TypeVar("T")


def capability_key(capability: Any) -> str:
    """Normalise a ``Capability`` member or plain string to its value."""
    if isinstance(capability, enum.Enum):
        return str(capability.value)
    return str(capability)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings passed per call site.

    Attributes:
        max_retries:        Retries after the first attempt (0 = try once).
        base_delay:         Delay in seconds before the first retry.
        max_delay:          Upper bound for any single delay.
        backoff_multiplier: Growth factor per attempt (>= 1).
        jitter:             Multiply each delay by a uniform factor in [0.5, 1.5].
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass(frozen=True)
class OperationContext:
    """Diagnostic context attached to exhausted operations and log lines."""

    operation: str
    tenant_id: str | None = None
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "tenant_id": self.tenant_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ProviderDescriptor:
    """One registered provider for a capability.

    Identity is ``name``.  ``healthy`` is the only mutable field; the
    descriptor is never removed from the registry, only flagged.
    """

    name: str
    priority: int
    factory: Callable[[], ProviderHandle]
    healthy: bool = True
    failure_marks: int = 0
    last_error: str | None = None
    instance: ProviderHandle | None = field(default=None, repr=False)


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    QUOTA_FAILURE = "quota_failure"
    OTHER_FAILURE = "other_failure"


@dataclass(frozen=True)
class InvocationOutcome(Generic[T]):
    """Result of one guarded provider invocation.

    Substituting a provider is a branch on ``kind``, not an exception handler.
    """

    kind: OutcomeKind
    provider_name: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, provider_name: str, value: T) -> InvocationOutcome[T]:
        return cls(OutcomeKind.SUCCESS, provider_name, value=value)

    @classmethod
    def failure(
        cls, provider_name: str, error: BaseException, *, quota: bool
    ) -> InvocationOutcome[T]:
        kind = OutcomeKind.QUOTA_FAILURE if quota else OutcomeKind.OTHER_FAILURE
        return cls(kind, provider_name, error=error)


@dataclass
class ProviderStatusSnapshot:
    """Read-only view of one provider for admin and shutdown reporting."""

    capability: str
    name: str
    priority: int
    healthy: bool
    failure_marks: int
    last_error: str | None = None
    circuit_state: str = "closed"
    current: bool = False
