"""JSON-RPC over HTTP (+SSE) client.

Every call carries a deadline.  Transport failures (network errors,
timeouts, HTTP 408/429/5xx) are retryable and count against the
endpoint's circuit breaker; protocol errors (RPC ``error`` field,
``success: false``, malformed envelopes) surface immediately.
"""

from __future__ import annotations

import itertools
import time
from typing import Any, Callable

import httpx
import structlog

from voice_agents.adapters.outbound.rpc.envelope import (
    extract_sse_data,
    parse_rpc_envelope,
    unwrap_tool_payload,
)
from voice_agents.domain.exceptions import (
    CircuitOpenError,
    RemoteCallError,
    RetryExhaustedError,
)
from voice_agents.shared.observability.counters import UsageCounters
from voice_agents.shared.observability.metrics import CIRCUIT_REJECTIONS, RPC_CALLS, RPC_LATENCY
from voice_agents.shared.resilience.circuit_breaker import CircuitBreaker
from voice_agents.shared.resilience.retry import RetryExecutor
from voice_agents.shared.resilience.types import OperationContext, RetryPolicy

__all__ = [
    "RemoteCallClient",
    "extract_sse_data",
    "is_transient_rpc_error",
    "parse_rpc_envelope",
    "unwrap_tool_payload",
]

logger = structlog.get_logger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429})


def is_transient_rpc_error(exc: BaseException) -> bool:
    return isinstance(exc, RemoteCallError) and exc.retryable


def _counts_against_endpoint(exc: BaseException) -> bool:
    if isinstance(exc, RetryExhaustedError):
        return True
    return is_transient_rpc_error(exc)


class RemoteCallClient:
    """Generic JSON-RPC client with retries and a breaker per endpoint.

    ``unwrap_payload`` enables the second decode stage for tool endpoints
    that double-encode their business response.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        retry_executor: RetryExecutor | None = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        unwrap_payload: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        counters: UsageCounters | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._policy = retry_policy or RetryPolicy(max_retries=3, base_delay=1.0, max_delay=5.0)
        self._retry = retry_executor or RetryExecutor()
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._unwrap_payload = unwrap_payload
        self._counters = counters or UsageCounters()
        self._clock = clock
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._ids = itertools.count(int(time.time() * 1000))

    async def call(
        self,
        endpoint: str,
        method: str,
        params: dict[str, Any],
        headers: dict[str, str] | None = None,
        *,
        context: OperationContext | None = None,
        timeout: float | None = None,
    ) -> Any:
        """POST one JSON-RPC request and return the decoded result.

        Raises:
            RemoteCallError: transport failure after retries, RPC ``error``
                field, or inner ``success: false``.
            MalformedResponseError: the envelope cannot be decoded.
            CircuitOpenError: the endpoint's breaker is open.
        """
        context = context or OperationContext(f"rpc:{method}")
        breaker = self.breaker_for(endpoint)

        async def _send() -> Any:
            return await self._send(endpoint, method, params, headers, timeout)

        async def _with_retry() -> Any:
            return await self._retry.execute_with_retry(
                _send, self._policy, context, retryable=is_transient_rpc_error
            )

        start = time.monotonic()
        status = "error"
        try:
            result = await breaker.call(_with_retry)
            status = "ok"
            return result
        except CircuitOpenError:
            status = "rejected"
            CIRCUIT_REJECTIONS.labels(circuit=breaker.name).inc()
            raise
        except RetryExhaustedError as exc:
            logger.error(
                "rpc_call_exhausted",
                endpoint=endpoint,
                method=method,
                attempts=exc.attempts,
                error=str(exc.last_error),
                **context.as_log_fields(),
            )
            last_error = exc.last_error
        finally:
            RPC_LATENCY.labels(method=method).observe(time.monotonic() - start)
            RPC_CALLS.labels(method=method, status=status).inc()
            self._counters.increment(f"rpc.calls.{method}")
            if status != "ok":
                self._counters.increment(f"rpc.failures.{method}")

        # Outside the handler, so the exhaustion wrapper is not chained
        raise last_error

    async def _send(
        self,
        endpoint: str,
        method: str,
        params: dict[str, Any],
        headers: dict[str, str] | None,
        timeout: float | None,
    ) -> Any:
        request_id = next(self._ids)
        envelope = {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        request_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **(headers or {}),
        }
        try:
            response = await self._client.post(
                endpoint,
                json=envelope,
                headers=request_headers,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise RemoteCallError(f"Timed out calling {method}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise RemoteCallError(
                f"Transport error calling {method}: {type(exc).__name__}: {exc}",
                retryable=True,
            ) from exc

        if response.status_code >= 400:
            status = response.status_code
            raise RemoteCallError(
                f"HTTP {status} {response.reason_phrase} from {method}",
                http_status=status,
                retryable=status >= 500 or status in _RETRYABLE_STATUS,
            )

        logger.debug(
            "rpc_response_received",
            method=method,
            id=request_id,
            status=response.status_code,
            content_type=response.headers.get("content-type"),
        )
        result = parse_rpc_envelope(response.text)
        if self._unwrap_payload:
            return unwrap_tool_payload(result)
        return result

    def breaker_for(self, endpoint: str) -> CircuitBreaker:
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            breaker = CircuitBreaker(
                f"rpc:{endpoint}",
                failure_threshold=self._failure_threshold,
                recovery_timeout=self._recovery_timeout,
                half_open_max_calls=self._half_open_max_calls,
                is_failure=_counts_against_endpoint,
                clock=self._clock,
            )
            self._breakers[endpoint] = breaker
        return breaker

    async def close(self) -> None:
        await self._client.aclose()
