"""HTTP-level tests for rate limit enforcement, headers and admin routes."""

from __future__ import annotations

import hashlib

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.core.app_factory import create_app
from app.core.config import settings
from app.core.errors import StoreUnavailableError, ValidationAppError
from app.core.exception_handlers import setup_exception_handlers
from app.core.rate_limit import hash_identifier, rate_limit
from app.services.rate_limiter import RateLimiter

START_MS = 1_000_000


class DownStore(InMemoryCounterStore):
    """Counter store whose every call fails."""

    def _fail(self, *args, **kwargs):
        raise StoreUnavailableError(code="store_unavailable", message="store down")

    get = _fail
    increment_if_window_valid = _fail
    insert_if_absent = _fail
    replace_if_expired = _fail
    delete = _fail
    delete_expired_before = _fail


def _client_identifier(value: str = "testclient") -> str:
    return "ip:" + hashlib.sha256(value.encode()).hexdigest()[:16]


@pytest.fixture
def fake_now(clock):
    clock.advance(START_MS)
    return clock


@pytest.fixture
def route_limiter(fake_now) -> RateLimiter:
    return RateLimiter(store=InMemoryCounterStore(), clock=fake_now)


@pytest.fixture
def client(route_limiter: RateLimiter):
    app = create_app(limiter=route_limiter, cleanup_interval_seconds=3600)
    with TestClient(app) as test_client:
        yield test_client


def test_consume_until_limit_then_429(client: TestClient) -> None:
    for expected_remaining in range(4, -1, -1):
        resp = client.post("/v1/rate-limit/upload/consume")
        assert resp.status_code == 200
        body = resp.json()
        assert body["allowed"] is True
        assert body["remaining"] == expected_remaining
        assert resp.headers["X-RateLimit-Limit"] == "5"
        assert resp.headers["X-RateLimit-Remaining"] == str(expected_remaining)

    denied = client.post("/v1/rate-limit/upload/consume")

    assert denied.status_code == 429
    assert denied.headers["Retry-After"] == "60"
    assert denied.headers["X-RateLimit-Remaining"] == "0"
    assert denied.headers["X-RateLimit-Reset"] == str((START_MS + 60_000) // 1000)
    assert "X-Request-ID" in denied.headers


def test_window_rolls_over(client: TestClient, fake_now) -> None:
    for _ in range(5):
        client.post("/v1/rate-limit/upload/consume")
    assert client.post("/v1/rate-limit/upload/consume").status_code == 429

    fake_now.advance(60_000)

    resp = client.post("/v1/rate-limit/upload/consume")
    assert resp.status_code == 200
    assert resp.json()["remaining"] == 4


def test_peek_does_not_consume(client: TestClient) -> None:
    client.post("/v1/rate-limit/auth/consume")

    for _ in range(3):
        resp = client.get("/v1/rate-limit/auth")
        assert resp.status_code == 200
        body = resp.json()
        assert body["category"] == "auth"
        assert body["remaining"] == 4
        assert body["reset_at_ms"] == START_MS + 900_000


def test_unknown_category_reports_default_policy(client: TestClient) -> None:
    resp = client.post("/v1/rate-limit/not-a-category/consume")

    assert resp.status_code == 200
    assert resp.json()["category"] == "default"
    assert resp.json()["limit"] == 100
    assert client.get("/v1/rate-limit/default").json()["remaining"] == 99


def test_api_key_gets_its_own_bucket(client: TestClient) -> None:
    for _ in range(5):
        client.post("/v1/rate-limit/upload/consume")
    assert client.post("/v1/rate-limit/upload/consume").status_code == 429

    resp = client.post("/v1/rate-limit/upload/consume", headers={"X-API-Key": "partner-key"})

    assert resp.status_code == 200
    assert resp.json()["remaining"] == 4


def test_forwarded_headers_ignored_unless_trusted(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    client.post("/v1/rate-limit/upload/consume", headers={"X-Forwarded-For": "198.51.100.1"})
    resp = client.post("/v1/rate-limit/upload/consume", headers={"X-Forwarded-For": "198.51.100.2"})
    assert resp.json()["remaining"] == 3

    monkeypatch.setattr(settings.rate_limit, "trust_forwarded_headers", True)
    resp = client.post(
        "/v1/rate-limit/upload/consume", headers={"X-Forwarded-For": "198.51.100.3, 10.0.0.1"}
    )
    assert resp.json()["remaining"] == 4


def test_disabled_limiter_admits_everything(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings.rate_limit, "enabled", False)

    for _ in range(10):
        resp = client.post("/v1/rate-limit/upload/consume")
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False
        assert "X-RateLimit-Remaining" not in resp.headers


def test_headers_can_be_switched_off(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings.rate_limit, "include_headers", False)

    resp = client.post("/v1/rate-limit/upload/consume")

    assert resp.status_code == 200
    assert "X-RateLimit-Limit" not in resp.headers


def test_fail_open_flags_degraded(fake_now) -> None:
    limiter = RateLimiter(store=DownStore(), clock=fake_now, fail_open=True)
    app = create_app(limiter=limiter, cleanup_interval_seconds=3600)

    with TestClient(app) as client:
        resp = client.post("/v1/rate-limit/auth/consume")
        peek = client.get("/v1/rate-limit/auth")

    assert resp.status_code == 200
    assert resp.json()["degraded"] is True
    assert resp.headers["X-RateLimit-Degraded"] == "true"
    assert peek.status_code == 200
    assert peek.json()["remaining"] == 4


def test_fail_closed_returns_503(fake_now) -> None:
    limiter = RateLimiter(store=DownStore(), clock=fake_now, fail_open=False)
    app = create_app(limiter=limiter, cleanup_interval_seconds=3600)

    with TestClient(app) as client:
        resp = client.post("/v1/rate-limit/auth/consume")

    assert resp.status_code == 503
    assert resp.headers["X-RateLimit-Degraded"] == "true"
    assert resp.json()["error"]["code"] == "store_unavailable"


def test_missing_lifespan_reports_unconfigured_limiter() -> None:
    client = TestClient(create_app())

    resp = client.post("/v1/rate-limit/auth/consume")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "rate_limiter_not_configured"


def test_admin_routes_hidden_by_default(client: TestClient) -> None:
    assert client.post("/v1/admin/rate-limit/cleanup").status_code == 404
    assert client.delete(f"/v1/admin/rate-limit/upload/{_client_identifier()}").status_code == 404


def test_admin_reset_and_cleanup(
    client: TestClient, fake_now, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings.rate_limit, "admin_endpoints_enabled", True)
    for _ in range(5):
        client.post("/v1/rate-limit/upload/consume")
    assert client.post("/v1/rate-limit/upload/consume").status_code == 429

    resp = client.delete(f"/v1/admin/rate-limit/upload/{_client_identifier()}")
    assert resp.status_code == 204
    assert client.post("/v1/rate-limit/upload/consume").json()["remaining"] == 4

    fake_now.advance(60_001)
    cleanup = client.post("/v1/admin/rate-limit/cleanup")
    assert cleanup.status_code == 200
    assert cleanup.json() == {"cache_removed": 1, "store_removed": 1, "store_error": None}


def test_admin_reset_accepts_raw_identifier(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings.rate_limit, "admin_endpoints_enabled", True)
    headers = {"X-API-Key": "partner-key"}
    for _ in range(5):
        client.post("/v1/rate-limit/upload/consume", headers=headers)
    assert client.post("/v1/rate-limit/upload/consume", headers=headers).status_code == 429

    resp = client.delete(
        "/v1/admin/rate-limit/upload/api_key:partner-key", params={"hashed": "false"}
    )

    assert resp.status_code == 204
    assert client.post("/v1/rate-limit/upload/consume", headers=headers).status_code == 200


def test_admin_reset_rejects_unknown_identifier_kind(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings.rate_limit, "admin_endpoints_enabled", True)

    resp = client.delete("/v1/admin/rate-limit/upload/user-42", params={"hashed": "false"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "rate_limit_invalid_identifier"


def test_hash_identifier_matches_request_derivation() -> None:
    assert hash_identifier("ip:testclient") == _client_identifier()
    with pytest.raises(ValidationAppError):
        hash_identifier("api_key:")


def test_dependency_factory_guards_custom_route(route_limiter: RateLimiter) -> None:
    app = FastAPI()
    setup_exception_handlers(app)
    app.state.rate_limiter = route_limiter

    @app.post("/login", dependencies=[Depends(rate_limit("api/auth"))])
    async def login() -> dict:
        return {"ok": True}

    client = TestClient(app)
    statuses = [client.post("/login").status_code for _ in range(6)]

    assert statuses == [200, 200, 200, 200, 200, 429]
    assert route_limiter.peek(_client_identifier(), "auth").remaining == 0


def test_readiness_reports_limiter(client: TestClient) -> None:
    resp = client.get("/health/ready")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["rate_limiter"]["store_backend"] == "memory"
    assert body["rate_limiter"]["fail_open"] is True
    assert body["rate_limiter"]["cleanup_running"] is True


def test_readiness_before_startup() -> None:
    client = TestClient(create_app())

    resp = client.get("/health/ready")

    assert resp.json() == {"status": "starting", "rate_limiter": None}
