"""Shared fixtures for the orders web tests.

Tests run against the in-process ledgers; they are reset around every test
so stock and coupon counters never leak between cases.
"""

from datetime import timedelta

import pytest
from django.core.cache import cache
from django.utils import timezone

from apps.orders import adapters
from apps.orders.domain import Actor, CouponSnapshot, CouponType, ProductSnapshot, Role
from apps.orders.http_adapters import _coupons_cb, _inventory_cb
from apps.orders.service import OrderService

ADDRESS = {
    "first_name": "Lan",
    "last_name": "Nguyen",
    "address_line_1": "12 Hang Bac",
    "city": "Hanoi",
    "state": "HN",
    "postal_code": "100000",
    "country": "VN",
}


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    adapters.inventory_stub.reset()
    adapters.coupon_stub.reset()
    _inventory_cb.reset()
    _coupons_cb.reset()
    cache.clear()  # throttle counters
    yield
    adapters.inventory_stub.reset()
    adapters.coupon_stub.reset()


@pytest.fixture
def inventory():
    return adapters.inventory_stub


@pytest.fixture
def coupons():
    return adapters.coupon_stub


@pytest.fixture
def service(inventory, coupons):
    return OrderService(inventory, coupons)


@pytest.fixture
def customer():
    return Actor(user_id="user-1")


@pytest.fixture
def other_customer():
    return Actor(user_id="user-2")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def system():
    return Actor(user_id=None, role=Role.SYSTEM)


@pytest.fixture
def products(inventory):
    """Two active products and one inactive one."""
    inventory.seed(
        ProductSnapshot(id=1, name="Phone case", price=50_000, stock_quantity=10, sku="CASE-1"),
        ProductSnapshot(id=2, name="Headphones", price=1_000_000, stock_quantity=5, sku="HEAD-2"),
        ProductSnapshot(id=3, name="Old cable", price=20_000, stock_quantity=10, is_active=False),
    )
    return inventory


@pytest.fixture
def percent_coupon(coupons):
    """20 % off, capped at 150,000, two uses left."""
    now = timezone.now()
    coupon = CouponSnapshot(
        id=10,
        code="SAVE20",
        type=CouponType.PERCENTAGE,
        value=20,
        maximum_discount=150_000,
        usage_limit=2,
        starts_at=now - timedelta(days=1),
        expires_at=now + timedelta(days=30),
    )
    coupons.seed(coupon)
    return coupon


@pytest.fixture
def address():
    return dict(ADDRESS)
