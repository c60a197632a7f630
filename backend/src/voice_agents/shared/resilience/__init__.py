"""Resilience layer for outbound provider and RPC calls.

Provides bounded retries, circuit breaking, priority-ordered provider
fallback with health flags, and quota-error classification.
"""

from voice_agents.shared.resilience.types import (
    InvocationOutcome,
    OperationContext,
    OutcomeKind,
    ProviderDescriptor,
    ProviderStatusSnapshot,
    RetryPolicy,
    capability_key,
)
from voice_agents.shared.resilience.classifier import error_status_code, is_quota_error
from voice_agents.shared.resilience.retry import RetryExecutor
from voice_agents.shared.resilience.circuit_breaker import CircuitBreaker, CircuitState
from voice_agents.shared.resilience.registry import ProviderRegistry
from voice_agents.shared.resilience.fallback import FallbackExecutor

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "FallbackExecutor",
    "InvocationOutcome",
    "OperationContext",
    "OutcomeKind",
    "ProviderDescriptor",
    "ProviderRegistry",
    "ProviderStatusSnapshot",
    "RetryExecutor",
    "RetryPolicy",
    "capability_key",
    "error_status_code",
    "is_quota_error",
]
