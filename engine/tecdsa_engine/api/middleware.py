"""Rate limiting and request tracing middleware for the engine API."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

log = structlog.get_logger()

_UNTRACKED_PATHS = ("/health", "/health/ready", "/metrics")


# ---------------------------------------------------------------------------
# Request ID Tracing
# ---------------------------------------------------------------------------


_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ``X-Request-ID`` and log it.

    The id is bound to structlog contextvars, so protocol logs for one step
    share it, and the peer client forwards it to the other engine.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            for header, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            path = request.url.path
            if path not in _UNTRACKED_PATHS:
                from tecdsa_engine.api.metrics import REQUEST_COUNT, REQUEST_LATENCY

                duration_s = time.monotonic() - start
                endpoint = request.scope.get("route").path if request.scope.get("route") else path
                REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
                REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration_s)
                log.info(
                    "request",
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    duration_ms=round(duration_s * 1000, 1),
                )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


# ---------------------------------------------------------------------------
# Rate Limiting
# ---------------------------------------------------------------------------


@dataclass
class TokenBucket:
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    def consume(self, n: float = 1.0) -> bool:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now
        if self.tokens >= n:
            self.tokens -= n
            return True
        return False


class RateLimiter:
    """Per-IP token buckets, with optional limits per path prefix.

    Buckets are keyed by client and matched prefix, so every step of a
    protocol phase draws from one bucket.
    """

    _MAX_BUCKETS = 10_000
    _CLEANUP_INTERVAL = 300

    def __init__(self, default_capacity: float = 60, default_rate: float = 10) -> None:
        self._default = (default_capacity, default_rate)
        self._path_limits: dict[str, tuple[float, float]] = {}
        self._buckets: dict[str, TokenBucket] = {}
        self._last_cleanup = time.monotonic()

    def set_path_limit(self, prefix: str, capacity: float, rate: float) -> None:
        self._path_limits[prefix] = (capacity, rate)

    def _limits_for(self, path: str) -> tuple[str, float, float]:
        # longest prefix wins
        for prefix in sorted(self._path_limits, key=len, reverse=True):
            if path.startswith(prefix):
                return (prefix, *self._path_limits[prefix])
        return ("*", *self._default)

    def allow(self, client_ip: str, path: str) -> bool:
        self._maybe_cleanup()
        prefix, capacity, rate = self._limits_for(path)
        key = f"{client_ip}:{prefix}"
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = TokenBucket(capacity=capacity, refill_rate=rate)
        return bucket.consume()

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        force = len(self._buckets) > self._MAX_BUCKETS
        if not force and now - self._last_cleanup < self._CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        stale = [k for k, b in self._buckets.items() if now - b.last_refill > self._CLEANUP_INTERVAL]
        for k in stale:
            del self._buckets[k]
        if force and len(self._buckets) > self._MAX_BUCKETS:
            log.warning("rate_limiter_bucket_overflow", count=len(self._buckets))


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: object, limiter: RateLimiter) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in _UNTRACKED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self._limiter.allow(client_ip, path):
            from tecdsa_engine.api.metrics import RATE_LIMIT_REJECTIONS

            RATE_LIMIT_REJECTIONS.inc()
            log.warning("rate_limited", client_ip=client_ip, path=path)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests", "action": "retry"},
                headers={"Retry-After": "1"},
            )
        return await call_next(request)


def get_cors_origins(env_value: str = "", production: bool = False) -> list[str]:
    """Parse CORS_ORIGINS. Wildcard in dev; nothing cross-origin in production unless listed."""
    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if origins:
        return origins
    if production:
        log.warning("cors_no_origins", msg="CORS_ORIGINS not set; cross-origin requests are refused")
        return []
    log.warning("cors_wildcard", msg="CORS_ORIGINS not set, using wildcard. Set CORS_ORIGINS in production.")
    return ["*"]
