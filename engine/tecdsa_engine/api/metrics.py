"""Prometheus metrics for the tECDSA engine.

Exposes key operational metrics via a /metrics endpoint.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- Request metrics ---
REQUEST_COUNT = Counter(
    "tecdsa_engine_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "tecdsa_engine_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --- Protocol metrics ---
SESSIONS_STARTED = Counter(
    "tecdsa_engine_sessions_started_total",
    "Protocol sessions opened",
    ["phase"],  # keygen, triples, presign, sign
)

SESSIONS_COMPLETED = Counter(
    "tecdsa_engine_sessions_completed_total",
    "Protocol sessions that reached their last step",
    ["phase"],
)

SESSIONS_FAILED = Counter(
    "tecdsa_engine_sessions_failed_total",
    "Protocol sessions dropped before completion",
    ["phase", "reason"],  # reason: error code, expired, aborted
)

STEP_LATENCY = Histogram(
    "tecdsa_engine_step_latency_seconds",
    "Time spent computing one protocol step",
    ["phase"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

PROTOCOL_ERRORS = Counter(
    "tecdsa_engine_protocol_errors_total",
    "Protocol errors by type",
    ["error"],
)

TRIPLES_GENERATED = Counter(
    "tecdsa_engine_triples_generated_total",
    "Beaver triples produced by completed batches",
)

TRIPLES_DROPPED = Counter(
    "tecdsa_engine_triples_dropped_total",
    "Beaver triples discarded after a failed proof or opening",
)

SIGNATURES_PRODUCED = Counter(
    "tecdsa_engine_signatures_produced_total",
    "Signatures combined and verified",
    ["high_s"],  # true, false
)

CIRCUIT_BREAKER_STATE = Gauge(
    "tecdsa_engine_circuit_breaker_open",
    "Whether a circuit breaker is open (1) or closed (0)",
    ["target"],
)

RATE_LIMIT_REJECTIONS = Counter(
    "tecdsa_engine_rate_limit_rejections_total",
    "Total requests rejected by rate limiter",
)

# --- State metrics ---
ACTIVE_SESSIONS = Gauge(
    "tecdsa_engine_active_sessions",
    "Number of protocol sessions held in the registry",
)

STORED_WALLETS = Gauge(
    "tecdsa_engine_stored_wallets",
    "Number of key shares held by the custodian",
)

UPTIME_SECONDS = Gauge(
    "tecdsa_engine_uptime_seconds",
    "Engine uptime in seconds",
)


def metrics_response() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
