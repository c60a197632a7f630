"""Prometheus metrics for the voice agent resilience layer."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── HTTP metrics (admin surface) ─────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Provider metrics ─────────────────────────────────────────
PROVIDER_INVOCATIONS = Counter(
    "provider_invocations_total",
    "Guarded provider invocations",
    ["capability", "provider", "outcome"],  # success / quota_failure / other_failure
)

PROVIDER_LATENCY = Histogram(
    "provider_latency_seconds",
    "Provider invocation latency including retries",
    ["capability", "provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

PROVIDER_SUBSTITUTIONS = Counter(
    "provider_substitutions_total",
    "Provider substitutions after a quota-classified failure",
    ["capability", "from_provider"],
)

PROVIDER_HEALTH_RESETS = Counter(
    "provider_health_resets_total",
    "Full health-flag resets after every provider failed",
    ["capability"],
)

CIRCUIT_REJECTIONS = Counter(
    "circuit_breaker_rejections_total",
    "Calls rejected by an open circuit",
    ["circuit"],
)

# ── Remote RPC metrics ───────────────────────────────────────
RPC_CALLS = Counter(
    "rpc_calls_total",
    "JSON-RPC calls to remote endpoints",
    ["method", "status"],  # ok / error
)

RPC_LATENCY = Histogram(
    "rpc_latency_seconds",
    "JSON-RPC call latency",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Session metrics ──────────────────────────────────────────
SESSIONS_ACTIVE = Gauge(
    "voice_sessions_active",
    "Conversation sessions currently tracked",
)

SESSIONS_CLOSED = Counter(
    "voice_sessions_closed_total",
    "Sessions removed from the registry",
    ["reason"],  # expired / ended
)
