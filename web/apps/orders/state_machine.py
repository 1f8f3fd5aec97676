"""Order and payment state machines.

The transition tables are the single source of truth for legal status
changes. Planning a transition is pure: the ``plan_*`` functions validate
the move and return the field updates plus the cross-aggregate side
effects (stock releases, coupon decrements) as data. Applying them is the
job of ``lifecycle.OrderLifecycle``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from .domain import Order, OrderPaymentStatus, OrderStatus, Payment, PaymentStatus
from .errors import IllegalTransition, OrderValidationError

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# statuses an owner may cancel from without admin rights
CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# money already collected; later attempts no longer move the order's payment status
SETTLED = frozenset({OrderPaymentStatus.PAID, OrderPaymentStatus.REFUNDED})


@dataclass(frozen=True)
class StockRelease:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class CouponRelease:
    coupon_id: int
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class Effects:
    """Outcome of planning a transition.

    Attributes:
        order_updates: Order fields to write (``status`` included).
        inventory_effects: Stock to hand back to the inventory ledger.
        coupon_effects: Coupon usage slots to hand back.
    """

    order_updates: dict = field(default_factory=dict)
    inventory_effects: tuple = ()
    coupon_effects: tuple = ()

    def then(self, other: "Effects") -> "Effects":
        """Combine with a later plan; later field updates win."""
        return Effects(
            order_updates={**self.order_updates, **other.order_updates},
            inventory_effects=self.inventory_effects + other.inventory_effects,
            coupon_effects=self.coupon_effects + other.coupon_effects,
        )


@dataclass(frozen=True)
class PaymentPlan:
    payment_updates: dict
    order_effects: Effects


def check_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS[current]:
        raise IllegalTransition(current, target)


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[current]:
        raise IllegalTransition(current, target)


def release_effects(order: Order) -> tuple:
    return tuple(StockRelease(i.product_id, i.quantity) for i in order.items)


def cancellation_effects(order: Order) -> Effects:
    """Stock and coupon side effects of cancelling ``order``."""
    coupons = ()
    if order.coupon_id is not None:
        coupons = (CouponRelease(order.coupon_id, f"{order.order_number}:usage:decrement"),)
    return Effects(inventory_effects=release_effects(order), coupon_effects=coupons)


def plan_order_transition(
    order: Order,
    target: OrderStatus,
    now: datetime,
    notes: Optional[str] = None,
    tracking_number: Optional[str] = None,
) -> Effects:
    """Validate ``order.status -> target`` and describe what it changes.

    Raises:
        IllegalTransition: If the pair is not in ``ORDER_TRANSITIONS``.
    """
    check_order_transition(order.status, target)

    effects = Effects(order_updates={"status": target})
    if target == OrderStatus.CANCELLED:
        effects = effects.then(cancellation_effects(order))
    elif target == OrderStatus.SHIPPED:
        effects.order_updates["shipped_at"] = now
        if tracking_number:
            effects.order_updates["tracking_number"] = tracking_number
    elif target == OrderStatus.DELIVERED:
        effects.order_updates["delivered_at"] = now

    if notes:
        effects.order_updates["admin_notes"] = notes
    return effects


def plan_order_path(order: Order, path, now: datetime, **kwargs) -> Effects:
    """Plan several consecutive transitions as one write.

    Each hop is validated against the table from the status the previous
    hop reached.
    """
    effects = Effects()
    current = order
    for target in path:
        step = plan_order_transition(current, target, now, **kwargs)
        effects = effects.then(step)
        current = replace(current, status=target)
    return effects


def plan_payment_transition(
    payment: Payment,
    order: Order,
    target: PaymentStatus,
    now: datetime,
    transaction_id: Optional[str] = None,
    gateway_response: Optional[dict] = None,
    failure_reason: Optional[str] = None,
) -> PaymentPlan:
    """Validate ``payment.status -> target`` and project it onto ``order``.

    Projection rules:

    - processing: order ``payment_status`` becomes processing.
    - completed: ``processed_at`` is set, order becomes paid and a pending
      order is confirmed. The order table is not consulted for that move.
    - failed: needs a non-empty ``failure_reason``, order becomes failed.
    - cancelled: order payment becomes cancelled; a pending order is
      cancelled too, with the usual stock and coupon side effects.
    - refunded: payment only, the refund engine owns the order side.

    Once the order is paid or refunded no transition is projected onto it;
    only the payment row moves.

    Raises:
        IllegalTransition: If the pair is not in ``PAYMENT_TRANSITIONS``.
        OrderValidationError: ``FAILURE_REASON_REQUIRED`` for a failed
            transition without a reason.
    """
    check_payment_transition(payment.status, target)

    response = dict(payment.gateway_response or {})
    if gateway_response:
        response.update(gateway_response)

    payment_updates = {"status": target}
    order_effects = Effects()

    if target == PaymentStatus.PROCESSING:
        order_effects = Effects(order_updates={"payment_status": OrderPaymentStatus.PROCESSING})
    elif target == PaymentStatus.COMPLETED:
        payment_updates["processed_at"] = now
        updates = {"payment_status": OrderPaymentStatus.PAID}
        if order.status == OrderStatus.PENDING:
            updates["status"] = OrderStatus.CONFIRMED
        order_effects = Effects(order_updates=updates)
    elif target == PaymentStatus.FAILED:
        if not failure_reason or not failure_reason.strip():
            raise OrderValidationError("A failure reason is required.", code="FAILURE_REASON_REQUIRED")
        response["failure_reason"] = failure_reason.strip()
        order_effects = Effects(order_updates={"payment_status": OrderPaymentStatus.FAILED})
    elif target == PaymentStatus.CANCELLED:
        order_effects = Effects(order_updates={"payment_status": OrderPaymentStatus.CANCELLED})
        if order.status == OrderStatus.PENDING:
            order_effects = order_effects.then(plan_order_transition(order, OrderStatus.CANCELLED, now))

    if order.payment_status in SETTLED:
        order_effects = Effects()

    if transaction_id:
        payment_updates["transaction_id"] = transaction_id
    if response != (payment.gateway_response or {}):
        payment_updates["gateway_response"] = response
    return PaymentPlan(payment_updates=payment_updates, order_effects=order_effects)
