"""Order creation: turn a cart snapshot into a persisted, reserved order.

The checkout runs in two parts:

1. Read-only preparation: resolve the lines (explicit list or the
   customer's persisted cart), load products, pre-check stock, validate the
   coupon and price the order. Nothing is written, so a failure here needs
   no rollback.
2. A ``Saga`` of writes, each with its compensation: persist the order,
   persist its items, reserve stock item by item, consume the coupon slot.
   The first failure compensates the completed steps backward.

Stock is reserved only after the order row exists. A crash between the
two leaves a pending order whose stock was never taken; such orders have no
reservation to release and must be reconciled from the ``order created``
log line that has no matching ``order reserved`` line.
"""

import logging
import secrets
import string
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from django.conf import settings
from django.db import IntegrityError
from django.utils import timezone

from .domain import Actor, CartLine, CouponPort, InventoryPort, Order, OrderItem
from .errors import (
    EmptyCart,
    InsufficientStock,
    NotAuthenticated,
    OrderCreationFailed,
    OrderValidationError,
    ProductUnavailable,
)
from .pricing import PriceBreakdown, compute
from .repository import CartRepository, OrderRepository
from .saga import Saga, SagaStep

logger = logging.getLogger("orders.checkout")

_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now_ms: Optional[int] = None) -> str:
    """``ORD-<epoch-ms>-<6 upper alphanumerics>``."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"ORD-{now_ms}-{suffix}"


@dataclass
class CheckoutRequest:
    """Input of ``CheckoutOrchestrator.place_order``.

    ``items`` may be ``None``, in which case the actor's persisted cart is
    used.
    """

    shipping_address: dict
    billing_address: dict
    shipping_method: str = "standard"
    items: Optional[List[CartLine]] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    tax_amount: int = 0
    shipping_amount: int = 0


@dataclass
class _Draft:
    lines: List[CartLine]
    price: PriceBreakdown
    coupon_id: Optional[int] = None
    coupon_code: Optional[str] = None
    reserved: List[CartLine] = field(default_factory=list)


def merge_lines(lines: List[CartLine]) -> List[CartLine]:
    """Collapse duplicate product lines, keeping first-seen order."""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        if line.quantity < 1:
            raise OrderValidationError("Quantity must be at least 1.", product_id=line.product_id)
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return [CartLine(pid, qty) for pid, qty in merged.items()]


class CheckoutOrchestrator:
    """Creates orders, compensating partial failures.

    Args:
        orders: Order repository.
        carts: Persisted-cart reader used when no item list is supplied.
        inventory: Inventory ledger port.
        coupons: Coupon ledger port.
        clock: Returns the current aware datetime.
        order_numbers: Order number generator (injectable for tests).
    """

    def __init__(
        self,
        orders: OrderRepository,
        carts: CartRepository,
        inventory: InventoryPort,
        coupons: CouponPort,
        clock: Callable = timezone.now,
        order_numbers: Callable[[], str] = generate_order_number,
    ):
        self.orders = orders
        self.carts = carts
        self.inventory = inventory
        self.coupons = coupons
        self.clock = clock
        self.order_numbers = order_numbers

    # ---- read-only preparation ----

    def resolve_lines(self, actor: Actor, items: Optional[List[CartLine]]) -> List[CartLine]:
        lines = items if items else self.carts.lines_for(actor.user_id)
        if not lines:
            raise EmptyCart(user_id=actor.user_id)
        return merge_lines(lines)

    def quote(
        self,
        lines: List[CartLine],
        coupon_code: Optional[str] = None,
        tax_amount: int = 0,
        shipping_amount: int = 0,
        check_stock: bool = True,
    ) -> _Draft:
        """Load products, pre-check stock, validate the coupon and price.

        Raises:
            ProductUnavailable: A product is missing or inactive.
            InsufficientStock: Tagged ``phase="precheck"``.
            CouponInvalid, CouponExpired, CouponNotYetActive,
            CouponExhausted, MinimumAmountNotMet: From the coupon ledger.
        """
        products = self.inventory.get_products([l.product_id for l in lines])
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(product_id=line.product_id)

        if check_stock:
            for line in lines:
                available = products[line.product_id].stock_quantity
                if line.quantity > available:
                    raise InsufficientStock(
                        product_id=line.product_id,
                        requested=line.quantity,
                        available=available,
                        phase="precheck",
                    )

        coupon = None
        if coupon_code:
            subtotal = sum(products[l.product_id].price * l.quantity for l in lines)
            coupon = self.coupons.validate_and_price(coupon_code, subtotal).coupon

        price = compute(lines, products, coupon, tax_amount, shipping_amount)
        return _Draft(
            lines=lines,
            price=price,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
        )

    # ---- saga ----

    def place_order(self, actor: Actor, request: CheckoutRequest) -> Order:
        """Create an order for ``actor``.

        Returns:
            Order: The persisted order with its items, status pending and
            payment status pending.

        Raises:
            OrderError: A business rejection. Reservation-phase failures
                carry ``phase="reservation"`` and leave no order behind.
            OrderCreationFailed: The order or its items could not be
                written.
            CompensationFailure: A rollback step failed.
        """
        if actor.user_id is None:
            raise NotAuthenticated()

        lines = self.resolve_lines(actor, request.items)
        draft = self.quote(lines, request.coupon_code, request.tax_amount, request.shipping_amount)

        ctx = {"draft": draft, "actor": actor, "request": request, "order_id": None}
        steps = [
            SagaStep("persist_order", self._persist_order, self._delete_order, phase="creation"),
            SagaStep("persist_items", self._persist_items, phase="creation"),
        ]
        for line in draft.lines:
            steps.append(
                SagaStep(
                    f"reserve:{line.product_id}",
                    self._reserve(line),
                    self._release(line),
                    phase="reservation",
                )
            )
        if draft.coupon_id is not None:
            steps.append(
                SagaStep("increment_coupon", self._increment_coupon, self._decrement_coupon, phase="reservation")
            )

        Saga("checkout", steps).run(ctx)

        order = self.orders.get(ctx["order_id"])
        logger.info(
            "order reserved",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "total_amount": order.total_amount,
                "coupon_id": order.coupon_id,
            },
        )
        return order

    def _persist_order(self, ctx: dict) -> None:
        draft: _Draft = ctx["draft"]
        request: CheckoutRequest = ctx["request"]
        price = draft.price
        attempts = getattr(settings, "ORDER_NUMBER_MAX_ATTEMPTS", 5)

        for attempt in range(1, attempts + 1):
            order = Order(
                id=None,
                order_number=self.order_numbers(),
                user_id=ctx["actor"].user_id,
                currency=getattr(settings, "ORDER_CURRENCY", "VND"),
                subtotal=price.subtotal,
                discount_amount=price.discount,
                tax_amount=price.tax,
                shipping_amount=price.shipping,
                total_amount=price.total,
                shipping_method=request.shipping_method,
                shipping_address=request.shipping_address,
                billing_address=request.billing_address,
                coupon_id=draft.coupon_id,
                coupon_code=draft.coupon_code,
                notes=request.notes,
            )
            try:
                saved = self.orders.create(order)
            except IntegrityError:
                logger.info("order number collision", extra={"order_number": order.order_number, "attempt": attempt})
                continue
            ctx["order_id"] = saved.id
            ctx["order_number"] = saved.order_number
            logger.info(
                "order created",
                extra={"order_id": str(saved.id), "order_number": saved.order_number, "user_id": saved.user_id},
            )
            return
        raise OrderCreationFailed(reason="ORDER_NUMBER_EXHAUSTED", attempts=attempts)

    def _delete_order(self, ctx: dict) -> None:
        self.orders.delete(ctx["order_id"])
        logger.info("order rolled back", extra={"order_id": str(ctx["order_id"])})

    def _persist_items(self, ctx: dict) -> None:
        items = [
            OrderItem(
                product_id=pl.product.id,
                product_name=pl.product.name,
                product_sku=pl.product.sku,
                quantity=pl.quantity,
                unit_price=pl.unit_price,
                total_price=pl.total_price,
            )
            for pl in ctx["draft"].price.lines
        ]
        try:
            self.orders.add_items(ctx["order_id"], items)
        except Exception as exc:
            logger.error(
                "order items insert failed",
                extra={"order_id": str(ctx["order_id"]), "error": repr(exc)},
            )
            raise OrderCreationFailed(reason="ORDER_ITEMS_FAILED", order_id=str(ctx["order_id"])) from exc

    def _reserve(self, line: CartLine):
        def action(ctx: dict) -> None:
            self.inventory.reserve(line.product_id, line.quantity)
            ctx["draft"].reserved.append(line)
        return action

    def _release(self, line: CartLine):
        def compensation(ctx: dict) -> None:
            self.inventory.release(line.product_id, line.quantity)
            ctx["draft"].reserved.remove(line)
        return compensation

    def _increment_coupon(self, ctx: dict) -> None:
        self.coupons.increment_usage(ctx["draft"].coupon_id, f"{ctx['order_number']}:usage:increment")

    def _decrement_coupon(self, ctx: dict) -> None:
        self.coupons.decrement_usage(ctx["draft"].coupon_id, f"{ctx['order_number']}:usage:decrement")
