"""Retry and circuit-breaker behavior of the ledger HTTP clients."""
import httpx
import pytest

from apps.orders.errors import InsufficientStock, UpstreamUnavailable
from apps.orders.http_adapters import (
    CircuitBreaker,
    CircuitOpen,
    HttpCouponClient,
    HttpInventoryClient,
    _inventory_cb,
)


class R:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}
    def json(self): return self._body


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)


def test_lookup_retries_on_5xx(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return R(500)
        assert headers["X-Retry-Count"] == "1"
        return R(200, {"products": []})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    assert HttpInventoryClient(base_url="http://x").get_products([1]) == {}
    assert calls["n"] == 2


def test_reserve_is_not_retried(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(503)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(UpstreamUnavailable):
        HttpInventoryClient(base_url="http://x").reserve(1, 1)
    assert calls["n"] == 1


def test_usage_increment_is_not_retried(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(UpstreamUnavailable):
        HttpCouponClient(base_url="http://c").increment_usage(1, "k")
    assert calls["n"] == 1


def test_business_rejection_is_not_retried_and_keeps_circuit_closed(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(422, {"detail": {"detail": "INSUFFICIENT_STOCK", "available": 0}})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    for _ in range(10):
        with pytest.raises(InsufficientStock):
            HttpInventoryClient(base_url="http://x").reserve(1, 1)
    assert calls["n"] == 10
    assert _inventory_cb.state == "CLOSED"


def test_open_circuit_short_circuits(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(500)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    client = HttpInventoryClient(base_url="http://x")
    for _ in range(_inventory_cb.fail_threshold):
        with pytest.raises(UpstreamUnavailable):
            client.reserve(1, 1)
    assert _inventory_cb.state == "OPEN"

    with pytest.raises(UpstreamUnavailable) as exc:
        client.reserve(1, 1)
    assert exc.value.context["reason"] == "CIRCUIT_OPEN"
    assert calls["n"] == _inventory_cb.fail_threshold


def test_breaker_half_open_probe(monkeypatch):
    clock = {"t": 100.0}
    monkeypatch.setattr("time.monotonic", lambda: clock["t"])
    cb = CircuitBreaker("t", fail_threshold=1, reset_timeout=5)

    cb.before_call()
    cb.on_failure()
    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpen):
        cb.before_call()

    clock["t"] += 5
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(CircuitOpen):
        cb.before_call()  # single probe at a time
    cb.on_failure()
    assert cb.state == "OPEN"

    clock["t"] += 5
    cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
