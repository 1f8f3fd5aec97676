"""In-process ledger adapters for the orders domain ports.

These adapters implement ``InventoryPort`` and ``CouponPort`` without any
network calls. They are intended for unit tests and local development
where deterministic behavior is useful and the ledger services are not
running. State lives in memory behind a lock, so the same atomic
check-and-update guarantees hold for concurrent callers within one process.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .domain import CouponPort, CouponQuote, CouponSnapshot, InventoryPort, ProductSnapshot
from .errors import (
    CouponExhausted,
    CouponExpired,
    CouponInvalid,
    CouponNotYetActive,
    InsufficientStock,
    MinimumAmountNotMet,
    NotFound,
    ProductUnavailable,
)
from .pricing import discount_for


class InventoryStub(InventoryPort):
    """In-memory inventory ledger.

    ``reserve`` performs the availability check and the decrement under the
    same lock, mirroring the conditional ``UPDATE`` of the inventory service.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._products: Dict[int, ProductSnapshot] = {}

    def seed(self, *products: ProductSnapshot) -> None:
        with self._lock:
            for p in products:
                self._products[p.id] = p

    def reset(self) -> None:
        with self._lock:
            self._products.clear()

    def stock_of(self, product_id: int) -> int:
        with self._lock:
            return self._products[product_id].stock_quantity

    def get_products(self, product_ids: Iterable[int]) -> Dict[int, ProductSnapshot]:
        with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    def reserve(self, product_id: int, quantity: int) -> int:
        """Take ``quantity`` units out of stock.

        Returns:
            int: Remaining stock.

        Raises:
            ProductUnavailable: Unknown or inactive product.
            InsufficientStock: Fewer than ``quantity`` units left.
        """
        with self._lock:
            product = self._products.get(product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(product_id=product_id)
            if product.stock_quantity < quantity:
                raise InsufficientStock(
                    product_id=product_id, requested=quantity, available=product.stock_quantity
                )
            product = replace(product, stock_quantity=product.stock_quantity - quantity)
            self._products[product_id] = product
            return product.stock_quantity

    def release(self, product_id: int, quantity: int) -> int:
        with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise NotFound(resource="product", product_id=product_id)
            product = replace(product, stock_quantity=product.stock_quantity + quantity)
            self._products[product_id] = product
            return product.stock_quantity


class CouponStub(CouponPort):
    """In-memory coupon ledger with idempotent usage changes.

    A usage change sent with an idempotency key is applied once; later calls
    with the same key return the recorded counter value.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._coupons: Dict[int, CouponSnapshot] = {}
        self._keys: Dict[str, int] = {}
        self.calls: List[tuple] = []

    def seed(self, *coupons: CouponSnapshot) -> None:
        with self._lock:
            for c in coupons:
                self._coupons[c.id] = replace(c, code=c.code.upper())

    def reset(self) -> None:
        with self._lock:
            self._coupons.clear()
            self._keys.clear()
            self.calls.clear()

    def used_count(self, coupon_id: int) -> int:
        with self._lock:
            return self._coupons[coupon_id].used_count

    def validate_and_price(self, code: str, subtotal: int, now: Optional[datetime] = None) -> CouponQuote:
        now = now or datetime.now(timezone.utc)
        wanted = code.strip().upper()
        with self._lock:
            coupon = next((c for c in self._coupons.values() if c.code == wanted), None)
        if coupon is None or not coupon.is_active:
            raise CouponInvalid(code=wanted)
        if coupon.starts_at is not None and now < coupon.starts_at:
            raise CouponNotYetActive(starts_at=coupon.starts_at.isoformat())
        if coupon.expires_at is not None and now > coupon.expires_at:
            raise CouponExpired(expires_at=coupon.expires_at.isoformat())
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            raise CouponExhausted(usage_limit=coupon.usage_limit)
        if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
            raise MinimumAmountNotMet(minimum_amount=coupon.minimum_amount)
        return CouponQuote(coupon=coupon, discount=discount_for(coupon, subtotal))

    def increment_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        with self._lock:
            self.calls.append(("increment", coupon_id, idempotency_key))
            if idempotency_key and idempotency_key in self._keys:
                return self._keys[idempotency_key]
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                raise NotFound(resource="coupon", coupon_id=coupon_id)
            if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
                raise CouponExhausted(coupon_id=coupon_id, usage_limit=coupon.usage_limit)
            coupon = replace(coupon, used_count=coupon.used_count + 1)
            return self._store(coupon, idempotency_key)

    def decrement_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        with self._lock:
            self.calls.append(("decrement", coupon_id, idempotency_key))
            if idempotency_key and idempotency_key in self._keys:
                return self._keys[idempotency_key]
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                raise NotFound(resource="coupon", coupon_id=coupon_id)
            coupon = replace(coupon, used_count=max(0, coupon.used_count - 1))
            return self._store(coupon, idempotency_key)

    def _store(self, coupon: CouponSnapshot, idempotency_key: Optional[str]) -> int:
        self._coupons[coupon.id] = coupon
        if idempotency_key:
            self._keys[idempotency_key] = coupon.used_count
        return coupon.used_count


# Process-wide ledgers so state survives across requests in tests and dev.
inventory_stub = InventoryStub()
coupon_stub = CouponStub()
