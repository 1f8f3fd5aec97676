"""Service provider helpers for wiring OrderService with ports.

This module exposes a small factory function `get_order_service` that
returns a configured `OrderService` instance. When
settings.USE_HTTP_ADAPTERS is truthy the ledgers are reached over HTTP;
otherwise the process-wide in-memory ledgers are used, which is what tests
and local development run against.
"""

from django.conf import settings

from .adapters import coupon_stub, inventory_stub
from .http_adapters import HttpCouponClient, HttpInventoryClient
from .service import OrderService


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service wired with HTTP ledger clients or with the
        in-memory ledgers, depending on `settings.USE_HTTP_ADAPTERS`.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return OrderService(
            inventory=HttpInventoryClient(),
            coupons=HttpCouponClient(),
        )

    return OrderService(
        inventory=inventory_stub,
        coupons=coupon_stub,
    )
