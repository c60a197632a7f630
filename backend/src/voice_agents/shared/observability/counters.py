"""In-process usage counters with a synchronous snapshot.

Prometheus holds the same numbers for scraping; these counters exist so
the shutdown hook can flush a summary without touching the global
Prometheus registry, and so each runtime (and each test) owns its own set.
"""

from __future__ import annotations

import threading
from collections import Counter


class UsageCounters:
    """Thread-safe named counters.

    Keys are dotted names, e.g. ``provider.success.llm.openrouter``.
    """

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counts[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
