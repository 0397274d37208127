import asyncio
import base64

import httpx
import pytest

from shared.errors import CircuitOpenError, TransientNetworkError, UpstreamError, ValidationError
from services.relay_service.app.services.upstream import (
    CircuitBreaker,
    CircuitState,
    UpstreamClient,
    UpstreamIdentity,
)

IDENTITY = UpstreamIdentity(email="bot@example.com", api_key="api-key-123")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedTransport:
    """Replays a list of responses or exceptions, one per request."""

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def _client(transport: ScriptedTransport, *, breaker: CircuitBreaker | None = None, max_retries: int = 3):
    sleeps: list[float] = []

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(transport), base_url="https://chat.example.com")
    client = UpstreamClient(http_client, breaker=breaker, max_retries=max_retries, sleep=record_sleep)
    return client, sleeps


def _ok(payload: dict | None = None) -> httpx.Response:
    return httpx.Response(200, json={"result": "success", **(payload or {})})


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_doubling_backoff():
    transport = ScriptedTransport(httpx.Response(503), httpx.ConnectError("boom"), _ok({"value": 1}))
    client, sleeps = _client(transport)

    payload = await client.get("/api/v1/thing", IDENTITY)

    assert payload["value"] == 1
    assert len(transport.calls) == 3
    assert sleeps == [2.0, 4.0]
    await client.aclose()


@pytest.mark.asyncio
async def test_basic_auth_is_attached():
    transport = ScriptedTransport(_ok())
    client, _ = _client(transport)
    await client.get("/api/v1/thing", IDENTITY)

    expected = base64.b64encode(b"bot@example.com:api-key-123").decode()
    assert transport.calls[0].headers["authorization"] == f"Basic {expected}"
    await client.aclose()


@pytest.mark.asyncio
async def test_exhausted_transport_retries_raise_transient_error():
    transport = ScriptedTransport(httpx.ConnectError("down"))
    client, sleeps = _client(transport, breaker=CircuitBreaker(failure_threshold=10))

    with pytest.raises(TransientNetworkError):
        await client.get("/api/v1/thing", IDENTITY)

    assert len(transport.calls) == 4
    assert sleeps == [2.0, 4.0, 8.0]
    await client.aclose()


@pytest.mark.asyncio
async def test_exhausted_status_retries_raise_upstream_error():
    transport = ScriptedTransport(httpx.Response(502, json={"result": "error", "msg": "bad gateway"}))
    client, _ = _client(transport, breaker=CircuitBreaker(failure_threshold=10))

    with pytest.raises(UpstreamError) as excinfo:
        await client.get("/api/v1/thing", IDENTITY)

    assert excinfo.value.upstream_status == 502
    assert excinfo.value.status_code == 502
    await client.aclose()


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    transport = ScriptedTransport(
        httpx.Response(400, json={"result": "error", "code": "BAD_REQUEST", "msg": "Invalid narrow"})
    )
    client, sleeps = _client(transport)

    with pytest.raises(UpstreamError) as excinfo:
        await client.get("/api/v1/messages", IDENTITY)

    assert len(transport.calls) == 1
    assert sleeps == []
    assert excinfo.value.code == "BAD_REQUEST"
    assert excinfo.value.status_code == 400
    assert client.breaker.state is CircuitState.closed
    await client.aclose()


@pytest.mark.asyncio
async def test_result_error_in_success_body_raises():
    transport = ScriptedTransport(httpx.Response(200, json={"result": "error", "msg": "nope"}))
    client, _ = _client(transport)

    with pytest.raises(UpstreamError):
        await client.get("/api/v1/thing", IDENTITY)
    await client.aclose()


@pytest.mark.asyncio
async def test_breaker_opens_after_five_failures_and_short_circuits():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30.0, clock=clock)
    transport = ScriptedTransport(httpx.ConnectError("down"))
    client, _ = _client(transport, breaker=breaker, max_retries=0)

    for _ in range(5):
        with pytest.raises(TransientNetworkError):
            await client.get("/api/v1/thing", IDENTITY)
    assert breaker.state is CircuitState.open

    with pytest.raises(CircuitOpenError):
        await client.get("/api/v1/thing", IDENTITY)
    assert len(transport.calls) == 5
    await client.aclose()


@pytest.mark.asyncio
async def test_half_open_trial_closes_breaker_on_success():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30.0, clock=clock)
    for _ in range(5):
        breaker.record_failure()
    assert breaker.state is CircuitState.open

    transport = ScriptedTransport(_ok())
    client, _ = _client(transport, breaker=breaker, max_retries=0)

    clock.now += 29
    with pytest.raises(CircuitOpenError):
        await client.get("/api/v1/thing", IDENTITY)

    clock.now += 1
    assert breaker.state is CircuitState.half_open
    await client.get("/api/v1/thing", IDENTITY)
    assert breaker.state is CircuitState.closed
    await client.aclose()


@pytest.mark.asyncio
async def test_cancelled_half_open_trial_frees_the_trial_slot():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
    breaker.record_failure()
    clock.now += 31

    reached = asyncio.Event()
    answer = asyncio.Event()

    async def slow_upstream(request: httpx.Request) -> httpx.Response:
        reached.set()
        await answer.wait()
        return _ok({"events": []})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(slow_upstream), base_url="https://chat.example.com")
    client = UpstreamClient(http_client, breaker=breaker, max_retries=0)

    poll = asyncio.create_task(client.get_events(IDENTITY, "queue-1", 4))
    await asyncio.wait_for(reached.wait(), timeout=1)
    poll.cancel()
    with pytest.raises(asyncio.CancelledError):
        await poll
    assert breaker.state is CircuitState.half_open

    clock.now += 10_000
    answer.set()
    payload = await client.get_events(IDENTITY, "queue-1", 4)

    assert payload["events"] == []
    assert breaker.state is CircuitState.closed
    await client.aclose()


@pytest.mark.asyncio
async def test_unexpected_error_in_half_open_trial_frees_the_trial_slot():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
    breaker.record_failure()
    clock.now += 30

    transport = ScriptedTransport(RuntimeError("encoder blew up"), _ok())
    client, _ = _client(transport, breaker=breaker, max_retries=0)

    with pytest.raises(RuntimeError):
        await client.get("/api/v1/thing", IDENTITY)
    assert breaker.state is CircuitState.half_open

    await client.get("/api/v1/thing", IDENTITY)
    assert breaker.state is CircuitState.closed
    await client.aclose()


def test_failed_half_open_trial_reopens_breaker():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30.0, clock=clock)
    for _ in range(5):
        breaker.record_failure()
    clock.now += 30

    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()
    breaker.record_failure()
    assert breaker.state is CircuitState.open


def test_media_urls_are_restricted_to_the_upstream_host():
    client = UpstreamClient(httpx.AsyncClient(base_url="https://chat.example.com"))

    assert client.resolve_media_url("/user_uploads/1/ab/pic.png") == "https://chat.example.com/user_uploads/1/ab/pic.png"
    assert (
        client.resolve_media_url("https://chat.example.com/user_uploads/x.png")
        == "https://chat.example.com/user_uploads/x.png"
    )
    with pytest.raises(ValidationError):
        client.resolve_media_url("https://evil.example.net/steal.png")
    with pytest.raises(ValidationError):
        client.resolve_media_url("//evil.example.net/steal.png")
