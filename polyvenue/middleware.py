"""HTTP middleware for the REST API.

Rejections made here never reach a route, so they are rendered with the same
OperationResult envelope the exception handlers in polyvenue.api produce.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from polyvenue.auth import client_ip
from polyvenue.errors import OperationResult, PayloadTooLarge, PolyvenueError, RateLimited, ValidationFailure

logger = logging.getLogger("polyvenue.http")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    # JSON and PDF downloads only; nothing here should ever execute.
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


def _reject(exc: PolyvenueError, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=OperationResult.from_error(exc).model_dump(mode="json"),
        headers=headers,
    )


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Refuse bodies whose declared Content-Length exceeds max_bytes."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared is None:
            return await call_next(request)
        if not declared.isdigit():
            return _reject(ValidationFailure.for_field("content-length", "Invalid Content-Length header"))
        if int(declared) > self.max_bytes:
            logger.warning("body too large path=%s bytes=%s", request.url.path, declared)
            return _reject(
                PayloadTooLarge("Request body too large", {"max_bytes": self.max_bytes, "declared": int(declared)})
            )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add SECURITY_HEADERS unless the route already set them."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class SlidingWindowLimiter:
    """Per-key request timestamps over a sliding window.

    Keys whose timestamps have all aged out are swept once per window, so the
    table only holds callers seen within the last two windows.
    """

    def __init__(self, limit: int, window_seconds: float = 60.0):
        self.limit = max(1, limit)
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def _expire(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def sweep(self, now: float) -> None:
        for key in list(self._hits):
            bucket = self._hits[key]
            self._expire(bucket, now)
            if not bucket:
                del self._hits[key]
        self._next_sweep = now + self.window_seconds

    def hit(self, key: str, now: float) -> float | None:
        """Record a request; returns seconds to wait when the key is over its limit."""
        if now >= self._next_sweep:
            self.sweep(now)
        bucket = self._hits.setdefault(key, deque())
        self._expire(bucket, now)
        if len(bucket) >= self.limit:
            return self.window_seconds - (now - bucket[0])
        bucket.append(now)
        return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle by session token, or by client IP for anonymous readers."""

    def __init__(self, app, requests_per_minute: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(app)
        self.limiter = SlidingWindowLimiter(requests_per_minute)
        self.clock = clock

    async def dispatch(self, request: Request, call_next):
        key = request.headers.get("X-Session-Token") or f"ip:{client_ip(request)}"
        wait = self.limiter.hit(key, self.clock())
        if wait is not None:
            retry_after = max(1, int(wait + 0.999))
            return _reject(
                RateLimited("Too many requests", {"retry_after": retry_after}),
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency of every request."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method, request.url.path, response.status_code, elapsed * 1000,
        )
        return response
