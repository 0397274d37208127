"""Client for the upstream chat service (Zulip-compatible REST API).

Every call goes through one shared resilience policy: up to ``max_retries``
retries on transient failures with doubling backoff, wrapped around a
process-wide circuit breaker. Retries see the breaker per attempt, so an open
breaker short-circuits the remaining retries.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx
from loguru import logger

from shared.errors import CircuitOpenError, TransientNetworkError, UpstreamError, ValidationError

from ..metrics import TimedCall, upstream_circuit_open
from ..settings import RelaySettings

USER_AGENT = "ChatRelay/0.1"
BAD_EVENT_QUEUE_ID = "BAD_EVENT_QUEUE_ID"


def is_transient_status(status_code: int) -> bool:
    return status_code == 408 or status_code >= 500


@dataclass(frozen=True)
class UpstreamIdentity:
    """Upstream login for one user. The API key is kept out of ``repr``."""

    email: str
    api_key: str = field(repr=False)

    def auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.email, self.api_key)


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures and rejects calls for
    ``reset_timeout`` seconds, then lets exactly one trial call through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.closed
        if self._clock() - self._opened_at >= self.reset_timeout:
            return CircuitState.half_open
        return CircuitState.open

    def before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is the half-open trial."""
        state = self.state
        if state is CircuitState.open or (state is CircuitState.half_open and self._trial_in_flight):
            raise CircuitOpenError("Upstream circuit breaker is open")
        if state is CircuitState.half_open:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Upstream circuit breaker closed after successful trial call")
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False
        upstream_circuit_open.set(0)

    def record_failure(self) -> None:
        self._failures += 1
        if self._trial_in_flight or self._failures >= self.failure_threshold:
            if self._opened_at is None or self._trial_in_flight:
                logger.warning(
                    f"Upstream circuit breaker opened after {self._failures} consecutive failure(s); "
                    f"rejecting calls for {self.reset_timeout:.0f}s"
                )
            self._opened_at = self._clock()
            self._trial_in_flight = False
            upstream_circuit_open.set(1)

    def release_trial(self) -> None:
        """Give the half-open trial slot back when a call ends without an outcome."""
        self._trial_in_flight = False


def build_http_client(settings: RelaySettings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        settings.upstream_connect_timeout_seconds,
        read=settings.upstream_read_timeout_seconds,
    )
    return httpx.AsyncClient(
        base_url=settings.upstream_base_url,
        timeout=timeout,
        headers={"User-Agent": USER_AGENT},
    )


def _error_from_response(response: httpx.Response) -> UpstreamError:
    message = response.reason_phrase or "Upstream request failed"
    code = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("msg") or message
        code = payload.get("code")
    return UpstreamError(message, upstream_status=response.status_code, code=code)


class UpstreamClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        breaker: CircuitBreaker | None = None,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self.breaker = breaker or CircuitBreaker()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return str(self._http.base_url).rstrip("/")

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, method: str, url: str, identity: UpstreamIdentity, **kwargs: Any) -> httpx.Response:
        """Issue one logical call under the retry and circuit-breaker policy.

        Non-transient responses (including 4xx) are returned as-is. Exhausted
        retries raise ``TransientNetworkError`` for transport failures and
        ``UpstreamError`` for transient statuses.
        """
        attempt = 0
        while True:
            trial = self.breaker.before_call()
            failure: httpx.TransportError | httpx.Response
            try:
                with TimedCall(method) as timed:
                    response = await self._http.request(method, url, auth=identity.auth(), **kwargs)
                    timed.status_code = response.status_code
            except httpx.TransportError as exc:
                self.breaker.record_failure()
                failure = exc
            except BaseException:
                # Cancelled or failed outside the transport; no verdict on upstream health.
                if trial:
                    self.breaker.release_trial()
                raise
            else:
                if not is_transient_status(response.status_code):
                    self.breaker.record_success()
                    return response
                self.breaker.record_failure()
                failure = response

            if attempt >= self.max_retries:
                if isinstance(failure, httpx.Response):
                    raise _error_from_response(failure)
                raise TransientNetworkError(f"Upstream unreachable: {failure.__class__.__name__}") from failure

            delay = self.backoff_base * (2 ** attempt)
            attempt += 1
            reason = failure.status_code if isinstance(failure, httpx.Response) else failure.__class__.__name__
            logger.warning(f"Upstream {method} {url} failed ({reason}); retry {attempt}/{self.max_retries} in {delay:.1f}s")
            await self._sleep(delay)

    async def request(
        self,
        method: str,
        path: str,
        identity: UpstreamIdentity,
        *,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self.send(method, path, identity, params=params, data=data)
        if not response.is_success:
            raise _error_from_response(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Upstream returned a non-JSON body", upstream_status=response.status_code) from exc
        if isinstance(payload, dict) and payload.get("result") == "error":
            raise UpstreamError(payload.get("msg") or "Upstream error", upstream_status=response.status_code, code=payload.get("code"))
        return payload

    async def get(self, path: str, identity: UpstreamIdentity, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("GET", path, identity, params=params)

    async def post_form(self, path: str, identity: UpstreamIdentity, form: Mapping[str, Any]) -> dict[str, Any]:
        return await self.request("POST", path, identity, data=form)

    async def register_queue(
        self,
        identity: UpstreamIdentity,
        *,
        event_types: Sequence[str],
        fetch_event_types: Sequence[str] = (),
    ) -> dict[str, Any]:
        form = {"event_types": json.dumps(list(event_types)), "apply_markdown": "true"}
        if fetch_event_types:
            form["fetch_event_types"] = json.dumps(list(fetch_event_types))
        return await self.post_form("/api/v1/register", identity, form)

    async def get_events(self, identity: UpstreamIdentity, queue_id: str, last_event_id: int) -> dict[str, Any]:
        """Long-poll the queue; blocks upstream until events arrive or its heartbeat fires."""
        return await self.get(
            "/api/v1/events",
            identity,
            {"queue_id": queue_id, "last_event_id": str(last_event_id), "dont_block": "false"},
        )

    async def delete_queue(self, identity: UpstreamIdentity, queue_id: str) -> None:
        await self.request("DELETE", "/api/v1/events", identity, params={"queue_id": queue_id})

    async def server_settings(self) -> bool:
        """Unauthenticated reachability probe used by readiness checks."""
        try:
            response = await self._http.get("/api/v1/server_settings")
        except httpx.HTTPError:
            return False
        return response.is_success

    def resolve_media_url(self, url: str) -> str:
        """Turn a relative or absolute media link into a URL on the upstream host.

        Links pointing at any other host are refused so upstream credentials are
        never attached to third-party requests.
        """
        if not url:
            raise ValidationError("Missing url")
        absolute = urljoin(self.base_url + "/", url)
        base, target = urlsplit(self.base_url), urlsplit(absolute)
        if (target.scheme, target.netloc) != (base.scheme, base.netloc):
            raise ValidationError("Only upstream media can be proxied")
        return absolute

    async def fetch_media(self, identity: UpstreamIdentity, url: str) -> httpx.Response:
        response = await self.send("GET", self.resolve_media_url(url), identity)
        if not response.is_success:
            raise _error_from_response(response)
        return response

    async def upload_file(self, identity: UpstreamIdentity, filename: str, content: bytes, content_type: str) -> str:
        """Store a file on the upstream server and return its ``/user_uploads/...`` URI."""
        response = await self.send(
            "POST",
            "/api/v1/user_uploads",
            identity,
            files={"file": (filename, content, content_type)},
        )
        if not response.is_success:
            raise _error_from_response(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Upstream returned a non-JSON body", upstream_status=response.status_code) from exc
        uri = payload.get("uri") if isinstance(payload, dict) else None
        if not uri:
            raise UpstreamError("Upstream upload response has no uri", upstream_status=response.status_code)
        return uri
