"""Tests for the in-process inventory and coupon ledgers.

The stubs back every other web test, so they must honor the same contract
as the ledger services: atomic check-and-decrement, no overselling under
concurrency, coupon checks in a fixed order and idempotent usage changes.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from apps.orders.adapters import CouponStub, InventoryStub
from apps.orders.domain import CouponSnapshot, CouponType, ProductSnapshot
from apps.orders.errors import (
    CouponExhausted,
    CouponExpired,
    CouponInvalid,
    CouponNotYetActive,
    InsufficientStock,
    MinimumAmountNotMet,
    NotFound,
    ProductUnavailable,
)

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def inv():
    s = InventoryStub()
    s.seed(
        ProductSnapshot(id=1, name="Case", price=50_000, stock_quantity=7),
        ProductSnapshot(id=2, name="Cable", price=20_000, stock_quantity=5, is_active=False),
    )
    return s


def coupon(**kw):
    base = dict(
        id=1,
        code="save10",
        type=CouponType.PERCENTAGE,
        value=10,
        starts_at=NOW - timedelta(days=1),
        expires_at=NOW + timedelta(days=1),
    )
    base.update(kw)
    return CouponSnapshot(**base)


def test_reserve_and_release(inv):
    assert inv.reserve(1, 3) == 4
    assert inv.release(1, 3) == 7


def test_reserve_rejects_insufficient_stock(inv):
    with pytest.raises(InsufficientStock) as exc:
        inv.reserve(1, 8)
    assert exc.value.context == {"product_id": 1, "requested": 8, "available": 7}
    assert inv.stock_of(1) == 7


@pytest.mark.parametrize("pid", [2, 404])
def test_reserve_rejects_inactive_or_unknown(inv, pid):
    with pytest.raises(ProductUnavailable):
        inv.reserve(pid, 1)


def test_release_unknown_product(inv):
    with pytest.raises(NotFound):
        inv.release(404, 1)


def test_concurrent_reservations_never_oversell(inv):
    def attempt(_):
        try:
            inv.reserve(1, 2)
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(attempt, range(10)))
    assert results.count(True) == 7 // 2
    assert inv.stock_of(1) == 7 - 2 * (7 // 2)


@pytest.mark.parametrize(
    "kw,subtotal,error",
    [
        ({"is_active": False}, 100_000, CouponInvalid),
        ({"starts_at": NOW + timedelta(hours=1)}, 100_000, CouponNotYetActive),
        ({"expires_at": NOW - timedelta(hours=1)}, 100_000, CouponExpired),
        ({"usage_limit": 3, "used_count": 3}, 100_000, CouponExhausted),
        ({"minimum_amount": 200_000}, 100_000, MinimumAmountNotMet),
    ],
)
def test_coupon_rejections(kw, subtotal, error):
    stub = CouponStub()
    stub.seed(coupon(**kw))
    with pytest.raises(error):
        stub.validate_and_price("SAVE10", subtotal, now=NOW)


def test_unknown_coupon_code():
    with pytest.raises(CouponInvalid):
        CouponStub().validate_and_price("NOPE", 1_000, now=NOW)


def test_coupon_code_is_case_insensitive():
    stub = CouponStub()
    stub.seed(coupon())
    quote = stub.validate_and_price(" Save10 ", 100_000, now=NOW)
    assert quote.discount == 10_000


def test_usage_increment_is_idempotent_per_key():
    stub = CouponStub()
    stub.seed(coupon(usage_limit=5))
    assert stub.increment_usage(1, "ORD-1:usage:increment") == 1
    assert stub.increment_usage(1, "ORD-1:usage:increment") == 1
    assert stub.used_count(1) == 1
    assert stub.decrement_usage(1, "ORD-1:usage:decrement") == 0
    assert stub.decrement_usage(1, "ORD-1:usage:decrement") == 0
    assert stub.decrement_usage(1) == 0


def test_concurrent_usage_increments_respect_limit():
    stub = CouponStub()
    stub.seed(coupon(usage_limit=5))

    def attempt(i):
        try:
            stub.increment_usage(1, f"ORD-{i}:usage:increment")
            return True
        except CouponExhausted:
            return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(attempt, range(10)))
    assert results.count(True) == 5
    assert stub.used_count(1) == 5
