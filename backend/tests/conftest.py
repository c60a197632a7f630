"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import AsyncIterator
from typing import Any, Callable

import pytest

from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ProviderError
from voice_agents.ports.outbound import ProviderHandle
from voice_agents.shared.resilience.retry import RetryExecutor


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedProvider(ProviderHandle):
    """Provider whose responses are scripted per call.

    Each call consumes the next entry of ``outcomes``; once exhausted,
    ``default`` is used.  Exception entries are raised.
    """

    def __init__(
        self,
        name: str,
        *,
        capability: Capability = Capability.LLM,
        outcomes: list[Any] | None = None,
        default: Any = None,
        probe_ok: bool = True,
    ) -> None:
        super().__init__()
        self.provider_name = name
        self.capability = capability
        self.calls = 0
        self.requests: list[dict[str, Any]] = []
        self.closed = False
        self.probe_ok = probe_ok
        self._outcomes = list(outcomes or [])
        self._default = default if default is not None else {"text": f"hello from {name}", "provider": name}

    async def invoke(self, request: dict[str, Any]) -> Any:
        self.calls += 1
        self.requests.append(request)
        outcome = self._outcomes.pop(0) if self._outcomes else self._default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def probe(self) -> bool:
        return self.probe_ok

    async def close(self) -> None:
        self.closed = True


class StreamingProvider(ScriptedProvider):
    """Scripted provider that also streams ``chunks``.

    ``fail_before`` is raised when a stream opens: a list is consumed one
    entry per stream, a single exception is raised every time.
    ``fail_after`` is reported through the error events and raised once the
    chunks are out, the way a vendor stream reports an in-band error.
    """

    def __init__(
        self,
        name: str,
        *,
        chunks: list[str] | None = None,
        fail_before: list[BaseException] | BaseException | None = None,
        fail_after: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.chunks = ["hello ", f"from {name}"] if chunks is None else chunks
        self.stream_calls = 0
        self.streams_closed = 0
        self._fail_before = fail_before
        self._fail_after = fail_after

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[str]:
        self.stream_calls += 1
        self.requests.append(request)
        if isinstance(self._fail_before, BaseException):
            raise self._fail_before
        if self._fail_before:
            raise self._fail_before.pop(0)
        try:
            for chunk in self.chunks:
                yield chunk
            if self._fail_after is not None:
                self._emit_error(self._fail_after)
                raise self._fail_after
        finally:
            self.streams_closed += 1


def quota_error(provider: str = "alpha") -> ProviderError:
    return ProviderError(provider, "HTTP 429: rate limit exceeded", status_code=429)


def server_error(provider: str = "alpha") -> ProviderError:
    return ProviderError(provider, "HTTP 500: internal error", status_code=500)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_executor(recording_sleep: RecordingSleep) -> RetryExecutor:
    return RetryExecutor(sleep=recording_sleep, rng=random.Random(7))


@pytest.fixture
def make_provider() -> Callable[..., ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def make_streaming_provider() -> Callable[..., StreamingProvider]:
    return StreamingProvider


@pytest.fixture
def make_quota_error() -> Callable[[str], ProviderError]:
    return quota_error


@pytest.fixture
def make_server_error() -> Callable[[str], ProviderError]:
    return server_error
