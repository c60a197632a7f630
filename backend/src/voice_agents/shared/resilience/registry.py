"""Provider registry: ordered provider constructors per capability.

Selection walks providers in ascending priority (ties resolved by
registration order), skipping those flagged unhealthy.  Descriptors are
never removed; health is a flag that failures set and resets clear.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Callable, Iterable

import structlog

from voice_agents.domain.exceptions import NoHealthyProviderError
from voice_agents.ports.outbound import ProviderHandle
from voice_agents.shared.resilience.types import (
    ProviderDescriptor,
    ProviderStatusSnapshot,
    capability_key,
)

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Health-flagged provider descriptors, grouped by capability.

    A single instance is injected into every component that needs it;
    there is no module-level registry.
    """

    def __init__(self) -> None:
        self._providers: dict[str, list[ProviderDescriptor]] = defaultdict(list)
        self._current: dict[str, str] = {}
        self._reset_counts: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    # ── Registration ─────────────────────────────────────────
    def register(
        self,
        capability: str,
        name: str,
        *,
        priority: int,
        factory: Callable[[], ProviderHandle],
    ) -> ProviderDescriptor:
        capability = capability_key(capability)
        with self._lock:
            if any(d.name == name for d in self._providers[capability]):
                raise ValueError(f"Provider {name!r} already registered for {capability!r}")
            descriptor = ProviderDescriptor(name=name, priority=priority, factory=factory)
            self._providers[capability].append(descriptor)
        logger.info(
            "provider_registered",
            capability=capability,
            provider=name,
            priority=priority,
        )
        return descriptor

    def register_all(self, capability: str, descriptors: Iterable[ProviderDescriptor]) -> None:
        for d in descriptors:
            self.register(capability, d.name, priority=d.priority, factory=d.factory)

    # ── Selection ────────────────────────────────────────────
    def get_healthy_provider(
        self,
        capability: str,
        *,
        exclude: set[str] | None = None,
    ) -> ProviderHandle:
        """Return the highest-priority healthy provider, instantiating it on first use.

        A provider whose factory raises is marked unhealthy and skipped.
        Names in ``exclude`` are passed over without being flagged.

        Raises:
            NoHealthyProviderError: no healthy, non-excluded provider remains.
        """
        capability = capability_key(capability)
        exclude = exclude or set()
        while True:
            descriptor = self._next_candidate(capability, exclude)
            if descriptor is None:
                logger.warning(
                    "no_healthy_provider",
                    capability=capability,
                    failed=self.failed_providers(capability),
                    excluded=sorted(exclude),
                )
                raise NoHealthyProviderError(
                    capability, failed=self.failed_providers(capability)
                )
            try:
                handle = self._instantiate(descriptor)
            except Exception as exc:
                logger.warning(
                    "provider_init_failed",
                    capability=capability,
                    provider=descriptor.name,
                    error=f"{type(exc).__name__}: {exc}",
                )
                self.mark_unhealthy(capability, descriptor.name, exc)
                continue

            with self._lock:
                previous = self._current.get(capability)
                self._current[capability] = descriptor.name
            if previous != descriptor.name:
                logger.info(
                    "provider_selected",
                    capability=capability,
                    provider=descriptor.name,
                    previous=previous,
                )
            return handle

    def ordered(self, capability: str) -> list[ProviderDescriptor]:
        """Descriptors in selection order (priority, then registration)."""
        with self._lock:
            return self._ordered_locked(capability_key(capability))

    # ── Health flags ─────────────────────────────────────────
    def mark_unhealthy(
        self, capability: str, name: str, error: BaseException | None = None
    ) -> bool:
        """Flag ``name`` unhealthy.  Returns False if it already was."""
        capability = capability_key(capability)
        with self._lock:
            descriptor = self._find_locked(capability, name)
            if error is not None:
                descriptor.last_error = f"{type(error).__name__}: {error}"
            if not descriptor.healthy:
                return False
            descriptor.healthy = False
            descriptor.failure_marks += 1
        logger.warning(
            "provider_marked_unhealthy",
            capability=capability,
            provider=name,
            error=descriptor.last_error,
        )
        return True

    def reset(self, capability: str) -> None:
        """Clear every health flag for ``capability``."""
        capability = capability_key(capability)
        with self._lock:
            for descriptor in self._providers[capability]:
                descriptor.healthy = True
            self._reset_counts[capability] += 1
        logger.info("provider_health_reset", capability=capability)

    def all_unhealthy(self, capability: str) -> bool:
        with self._lock:
            return not any(d.healthy for d in self._providers[capability_key(capability)])

    def is_healthy(self, capability: str, name: str) -> bool:
        with self._lock:
            return self._find_locked(capability_key(capability), name).healthy

    def reset_count(self, capability: str) -> int:
        return self._reset_counts[capability_key(capability)]

    # ── Introspection ────────────────────────────────────────
    def capabilities(self) -> list[str]:
        with self._lock:
            return [c for c, descriptors in self._providers.items() if descriptors]

    def current_provider_name(self, capability: str) -> str | None:
        return self._current.get(capability_key(capability))

    def available_providers(self, capability: str) -> list[str]:
        return [d.name for d in self.ordered(capability)]

    def failed_providers(self, capability: str) -> list[str]:
        return [d.name for d in self.ordered(capability) if not d.healthy]

    def snapshot(self, capability: str) -> list[ProviderStatusSnapshot]:
        current = self.current_provider_name(capability)
        return [
            ProviderStatusSnapshot(
                capability=capability_key(capability),
                name=d.name,
                priority=d.priority,
                healthy=d.healthy,
                failure_marks=d.failure_marks,
                last_error=d.last_error,
                current=d.name == current,
            )
            for d in self.ordered(capability)
        ]

    async def close_all(self) -> None:
        """Close every instantiated provider (process shutdown)."""
        with self._lock:
            instances = [
                d.instance
                for descriptors in self._providers.values()
                for d in descriptors
                if d.instance is not None
            ]
        for instance in instances:
            try:
                await instance.close()
            except Exception as exc:
                logger.warning(
                    "provider_close_failed",
                    provider=instance.provider_name,
                    error=str(exc),
                )

    def _next_candidate(
        self, capability: str, exclude: set[str]
    ) -> ProviderDescriptor | None:
        with self._lock:
            return next(
                (
                    d
                    for d in self._ordered_locked(capability)
                    if d.healthy and d.name not in exclude
                ),
                None,
            )

    def _instantiate(self, descriptor: ProviderDescriptor) -> ProviderHandle:
        if descriptor.instance is None:
            handle = descriptor.factory()
            handle.provider_name = descriptor.name
            descriptor.instance = handle
        return descriptor.instance

    # ── Internals (caller holds lock) ────────────────────────
    def _ordered_locked(self, capability: str) -> list[ProviderDescriptor]:
        # sorted() is stable, so registration order breaks priority ties
        return sorted(self._providers[capability], key=lambda d: d.priority)

    def _find_locked(self, capability: str, name: str) -> ProviderDescriptor:
        for descriptor in self._providers[capability]:
            if descriptor.name == name:
                return descriptor
        raise KeyError(f"Unknown provider {name!r} for capability {capability!r}")
