"""Tests for request id propagation and the access log line."""

from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient

from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.core.app_factory import create_app
from app.core.config import settings
from app.services.rate_limiter import RateLimiter


@pytest.fixture
def client(clock):
    limiter = RateLimiter(store=InMemoryCounterStore(), clock=clock)
    with TestClient(create_app(limiter=limiter, cleanup_interval_seconds=3600)) as test_client:
        yield test_client


def test_echoes_incoming_request_id(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "req-abc-123"})

    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-abc-123"


def test_generates_request_id_and_duration(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")

    assert first.headers["X-Request-ID"]
    assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
    assert float(first.headers["X-Request-Duration-ms"]) >= 0


def test_request_id_header_is_configurable(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings.log, "request_id_header", "X-Correlation-ID")

    resp = client.get("/health", headers={"X-Correlation-ID": "corr-7"})

    assert resp.headers["X-Correlation-ID"] == "corr-7"


def test_denied_requests_keep_request_id(client: TestClient) -> None:
    for _ in range(5):
        client.post("/v1/rate-limit/upload/consume")

    resp = client.post("/v1/rate-limit/upload/consume", headers={"X-Request-ID": "req-429"})

    assert resp.status_code == 429
    assert resp.headers["X-Request-ID"] == "req-429"


def test_access_log_carries_rate_limit_outcome(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="app.core.middleware"):
        client.post("/v1/rate-limit/auth/consume", headers={"X-Request-ID": "req-log"})
        client.get("/health")

    access = [r for r in caplog.records if r.getMessage() == "http.request"]
    assert len(access) == 2
    consume, health = access
    assert consume.request_path == "/v1/rate-limit/auth/consume"
    assert consume.status_code == 200
    assert consume.rate_limit_remaining == 4
    assert consume.rate_limit_degraded is False
    assert not hasattr(health, "rate_limit_remaining")
