from __future__ import annotations

import time
from collections import deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from loguru import logger

from shared.errors import AuthenticationError, error_response
from shared.request_context import REQUEST_ID_HEADER, ensure_request_id

from .settings import RelaySettings

UNLIMITED_PATHS = {"/api/healthz", "/api/readyz", "/api/metrics"}


class SlidingWindowLimiter:
    """In-memory per-key rate limiter. State is per process.

    Keys whose hits have all aged out of the window are dropped, so memory is
    bounded by the number of clients seen within roughly two windows.
    """

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._next_sweep = clock() + window_seconds

    def allow(self, identifier: str) -> bool:
        now = self._clock()
        window_start = now - self.window
        if now >= self._next_sweep:
            self._sweep(window_start)
            self._next_sweep = now + self.window
        bucket = self._buckets.get(identifier, deque())
        while bucket and bucket[0] <= window_start:
            bucket.popleft()
        if len(bucket) >= self.limit:
            if not bucket:
                self._buckets.pop(identifier, None)
            return False
        bucket.append(now)
        self._buckets[identifier] = bucket
        return True

    def _sweep(self, window_start: float) -> None:
        stale = [key for key, bucket in self._buckets.items() if not bucket or bucket[-1] <= window_start]
        for key in stale:
            del self._buckets[key]

    @property
    def tracked_keys(self) -> int:
        return len(self._buckets)


def rate_limit_key(request: Request) -> str:
    """Partition by authenticated user when the bearer token verifies, else by client IP."""
    auth = request.headers.get("authorization")
    components = getattr(request.app.state, "components", None)
    if components is not None and auth and auth.lower().startswith("bearer "):
        try:
            claims = components.token_issuer.verify(auth.split(" ", 1)[1].strip())
        except AuthenticationError:
            claims = None
        if claims is not None:
            return f"user:{claims.user_id}"
    host = request.client.host if request.client else None
    return f"ip:{host or 'unknown'}"


def request_id_middleware() -> Callable:
    async def middleware(request: Request, call_next: Callable) -> Response:
        request_id = ensure_request_id(request)
        start = time.time()
        response = await call_next(request)
        elapsed = (time.time() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.bind(request_id=request_id).info(
            f"{request.method} {request.url.path} {response.status_code} {elapsed:.2f}ms"
        )
        return response

    return middleware


def rate_limit_middleware(limiter: SlidingWindowLimiter) -> Callable:
    async def middleware(request: Request, call_next: Callable) -> Response:
        if request.url.path not in UNLIMITED_PATHS and not limiter.allow(rate_limit_key(request)):
            return error_response(429, error="Too Many Requests", detail=None, request_id=ensure_request_id(request))
        return await call_next(request)

    return middleware


def setup_middleware(app: FastAPI, settings: RelaySettings) -> None:
    limiter = SlidingWindowLimiter(settings.requests_per_minute, window_seconds=settings.rate_limit_window_seconds)
    app.state.rate_limiter = limiter
    # Registered last runs first: request ids exist before the limiter answers.
    app.middleware("http")(rate_limit_middleware(limiter))
    app.middleware("http")(request_id_middleware())
