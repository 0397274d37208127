import pytest

from conftest import asgi_client
from services.relay_service.app.middleware import SlidingWindowLimiter
from services.relay_service.app.settings import RelaySettings


@pytest.mark.asyncio
async def test_health_endpoint(test_app) -> None:
    async with asgi_client(test_app) as client:
        response = await client.get("/api/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_checks_database_and_upstream(test_app) -> None:
    async with asgi_client(test_app) as client:
        response = await client.get("/api/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "database": True, "upstream": True}


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_relay_series(test_app) -> None:
    async with asgi_client(test_app) as client:
        response = await client.get("/api/metrics")
    assert response.status_code == 200
    assert "relay_active_connections" in response.text


@pytest.mark.asyncio
async def test_request_id_is_echoed(test_app) -> None:
    async with asgi_client(test_app) as client:
        response = await client.get("/api/healthz", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


@pytest.mark.asyncio
async def test_rate_limit_returns_429(test_app) -> None:
    test_app.state.rate_limiter.limit = 2
    async with asgi_client(test_app) as client:
        codes = [(await client.get("/api/auth/me")).status_code for _ in range(3)]
    assert codes == [401, 401, 429]


def test_sliding_window_limiter_expires_old_hits() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(2, window_seconds=60, clock=lambda: now[0])

    assert limiter.allow("ip:1")
    assert limiter.allow("ip:1")
    assert not limiter.allow("ip:1")
    assert limiter.allow("ip:2")

    now[0] = 61.0
    assert limiter.allow("ip:1")


def test_sliding_window_limiter_forgets_idle_clients() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(2, window_seconds=60, clock=lambda: now[0])

    for n in range(100):
        assert limiter.allow(f"ip:{n}")
    assert limiter.tracked_keys == 100

    # One window later a single request sweeps every client whose hits expired.
    now[0] = 61.0
    assert limiter.allow("ip:returning")
    assert limiter.tracked_keys == 1

    now[0] = 200.0
    assert limiter.allow("ip:returning")
    assert limiter.tracked_keys == 1


def test_zero_limit_rejects_without_tracking() -> None:
    limiter = SlidingWindowLimiter(0, window_seconds=60, clock=lambda: 0.0)
    assert not limiter.allow("ip:1")
    assert limiter.tracked_keys == 0


def test_settings_require_secrets(monkeypatch) -> None:
    monkeypatch.setenv("RELAY_SIGNING_KEY", "too-short")
    with pytest.raises(ValueError):
        RelaySettings()


def test_settings_mask_secrets_for_logging() -> None:
    settings = RelaySettings(upstream_base_url="https://chat.example.com/")
    safe = settings.safe_dict()
    assert settings.upstream_base_url == "https://chat.example.com"
    assert safe["signing_key"] == "***"
    assert safe["encryption_key"] == "***"
    assert safe["upstream_base_url"] == "https://chat.example.com"
