"""Unit tests for HTTP adapters to the inventory and coupons services.

These tests verify that the HTTP clients map ledger responses onto domain
values and errors by monkeypatching ``httpx.Client.post`` and asserting the
adapter behavior.
"""
import httpx
import pytest

from apps.orders.domain import CouponType
from apps.orders.errors import (
    CouponExhausted,
    CouponExpired,
    IdempotencyConflict,
    InsufficientStock,
    MinimumAmountNotMet,
    NotFound,
    ProductUnavailable,
    UpstreamUnavailable,
)
from apps.orders.http_adapters import HttpCouponClient, HttpInventoryClient


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict, optional): JSON body to return from ``json()``.
    """
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}
    def json(self): return self._json


def respond(monkeypatch, status_code, body, seen=None):
    def fake_post(self, url, json=None, headers=None, **kw):
        if seen is not None:
            seen.append({"url": url, "json": json, "headers": headers})
        return DummyResp(status_code, body)
    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)


def test_lookup_products(monkeypatch):
    seen = []
    respond(monkeypatch, 200, {"products": [
        {"id": 1, "name": "Case", "price": 50000, "stock_quantity": 3, "is_active": True, "sku": "C-1"},
    ]}, seen)
    products = HttpInventoryClient(base_url="http://inventory:9001").get_products([1, 2])
    assert products[1].price == 50000
    assert 2 not in products
    assert seen[0]["url"] == "http://inventory:9001/products/lookup"
    assert seen[0]["json"] == {"ids": [1, 2]}


def test_reserve_ok(monkeypatch):
    respond(monkeypatch, 200, {"product_id": 1, "stock_quantity": 5})
    assert HttpInventoryClient(base_url="http://x").reserve(1, 2) == 5


def test_reserve_insufficient(monkeypatch):
    respond(monkeypatch, 422, {"detail": {"detail": "INSUFFICIENT_STOCK", "available": 1}})
    with pytest.raises(InsufficientStock) as exc:
        HttpInventoryClient(base_url="http://x").reserve(1, 2)
    assert exc.value.context == {"product_id": 1, "requested": 2, "available": 1}


@pytest.mark.parametrize("status_code,body", [
    (422, {"detail": {"detail": "PRODUCT_INACTIVE"}}),
    (404, {"detail": {"detail": "NOT_FOUND"}}),
])
def test_reserve_unavailable(monkeypatch, status_code, body):
    respond(monkeypatch, status_code, body)
    with pytest.raises(ProductUnavailable):
        HttpInventoryClient(base_url="http://x").reserve(1, 2)


def test_release_unknown_product(monkeypatch):
    respond(monkeypatch, 404, {"detail": {"detail": "NOT_FOUND"}})
    with pytest.raises(NotFound):
        HttpInventoryClient(base_url="http://x").release(9, 1)


def test_validate_coupon(monkeypatch):
    respond(monkeypatch, 200, {
        "coupon": {"id": 4, "code": "SAVE20", "type": "percentage", "value": 20, "maximum_discount": 150000},
        "discount": 150000,
    })
    quote = HttpCouponClient(base_url="http://c").validate_and_price("SAVE20", 1_000_000)
    assert quote.discount == 150000
    assert quote.coupon.type == CouponType.PERCENTAGE
    assert quote.coupon.maximum_discount == 150000


@pytest.mark.parametrize("code,error", [
    ("COUPON_EXPIRED", CouponExpired),
    ("MINIMUM_AMOUNT_NOT_MET", MinimumAmountNotMet),
    ("COUPON_EXHAUSTED", CouponExhausted),
])
def test_validate_coupon_rejections(monkeypatch, code, error):
    respond(monkeypatch, 422, {"detail": {"detail": code}})
    with pytest.raises(error):
        HttpCouponClient(base_url="http://c").validate_and_price("X", 1)


def test_usage_increment_sends_idempotency_key(monkeypatch):
    seen = []
    respond(monkeypatch, 200, {"coupon_id": 4, "used_count": 3}, seen)
    assert HttpCouponClient(base_url="http://c").increment_usage(4, "ORD-1:usage:increment") == 3
    assert seen[0]["url"] == "http://c/coupons/4/usage/increment"
    assert seen[0]["headers"]["Idempotency-Key"] == "ORD-1:usage:increment"


@pytest.mark.parametrize("status_code,body,error", [
    (409, {"detail": {"detail": "COUPON_EXHAUSTED"}}, CouponExhausted),
    (409, {"detail": {"detail": "IDEMPOTENCY_CONFLICT"}}, IdempotencyConflict),
    (404, {"detail": {"detail": "NOT_FOUND"}}, NotFound),
])
def test_usage_errors(monkeypatch, status_code, body, error):
    respond(monkeypatch, status_code, body)
    with pytest.raises(error):
        HttpCouponClient(base_url="http://c").increment_usage(4, "k")


def test_network_error_becomes_upstream_unavailable(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0

    def fake_post(self, url, json=None, headers=None, **kw):
        raise httpx.ConnectError("boom")
    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(UpstreamUnavailable) as exc:
        HttpInventoryClient(base_url="http://x").reserve(1, 1)
    assert exc.value.status_code == 503
    assert isinstance(exc.value.__cause__, httpx.ConnectError)
