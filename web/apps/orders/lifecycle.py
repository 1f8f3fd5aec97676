"""Order and payment lifecycle operations.

``OrderLifecycle`` authorizes the caller, asks ``state_machine`` for a plan
and applies it: the order (or payment) row is written first with an
optimistic status guard, then the stock and coupon side effects are
executed. Side effects are attempted one by one; a failing effect is logged
at ERROR and reported in ``failed_effects`` without undoing the status
change or skipping the remaining effects.

Because the guarded write happens before any effect, only one of two racing
cancellations can win, so stock and coupon slots are handed back at most
once per order.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from django.utils import timezone

from .domain import (
    Actor,
    CouponPort,
    InventoryPort,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from .errors import (
    AddressNotUpdatable,
    CompensationFailure,
    IllegalTransition,
    NotAuthenticated,
    OrderAlreadyPaid,
    OrderError,
    OrderNotPayable,
    OrderValidationError,
    PaymentAlreadyInProgress,
    PaymentAmountMismatch,
    PermissionDenied,
)
from .repository import OrderRepository, PaymentRepository
from .state_machine import (
    CUSTOMER_CANCELLABLE,
    Effects,
    plan_order_path,
    plan_order_transition,
    plan_payment_transition,
)

logger = logging.getLogger("orders.lifecycle")

PAYMENT_PROVIDERS = {
    PaymentMethod.ONLINE_GATEWAY_A: "gateway_a",
    PaymentMethod.ONLINE_GATEWAY_B: "gateway_b",
    PaymentMethod.CASH_ON_DELIVERY: "manual",
    PaymentMethod.BANK_TRANSFER: "manual",
}

TRACKABLE = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED})
PAYABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


@dataclass
class TransitionResult:
    order: Order
    failed_effects: List[dict] = field(default_factory=list)


@dataclass
class PaymentResult:
    payment: Payment
    order: Order
    failed_effects: List[dict] = field(default_factory=list)


def transaction_id_for(prefix: str, order_number: str) -> str:
    """``<PREFIX>-<order number>-<last 8 digits of epoch ms>-<6 alnum>``."""
    ts = str(int(time.time() * 1000))[-8:]
    rand = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"{prefix}-{order_number}-{ts}-{rand}"


def apply_effects(order: Order, effects: Effects, inventory: InventoryPort, coupons: CouponPort) -> List[dict]:
    """Run stock and coupon effects, continuing past failures.

    Returns:
        list[dict]: One entry per effect that failed, with the error code.
    """
    failed = []
    for eff in effects.inventory_effects:
        try:
            inventory.release(eff.product_id, eff.quantity)
        except Exception as exc:
            logger.error(
                "stock release failed",
                extra={
                    "order_id": str(order.id),
                    "product_id": eff.product_id,
                    "quantity": eff.quantity,
                    "error": repr(exc),
                },
            )
            failed.append({
                "effect": "release_stock",
                "product_id": eff.product_id,
                "quantity": eff.quantity,
                "error": str(exc),
            })
    for eff in effects.coupon_effects:
        try:
            coupons.decrement_usage(eff.coupon_id, eff.idempotency_key)
        except Exception as exc:
            logger.error(
                "coupon decrement failed",
                extra={"order_id": str(order.id), "coupon_id": eff.coupon_id, "error": repr(exc)},
            )
            failed.append({"effect": "decrement_coupon", "coupon_id": eff.coupon_id, "error": str(exc)})
    return failed


class OrderLifecycle:
    """Status changes, cancellations, tracking and payments for existing orders."""

    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        inventory: InventoryPort,
        coupons: CouponPort,
        clock: Callable = timezone.now,
    ):
        self.orders = orders
        self.payments = payments
        self.inventory = inventory
        self.coupons = coupons
        self.clock = clock

    # ---- helpers ----

    def _require_privileged(self, actor: Actor) -> None:
        if not actor.is_privileged:
            raise PermissionDenied(role=str(actor.role))

    def _load_for(self, actor: Actor, order_id) -> Order:
        if actor.user_id is None and not actor.is_privileged:
            raise NotAuthenticated()
        order = self.orders.get(order_id)
        if not actor.can_access(order):
            raise PermissionDenied(order_id=str(order_id))
        return order

    def _apply(self, order: Order, effects: Effects, expected_payment_status=None) -> TransitionResult:
        updated = self.orders.update(
            order.id,
            expected_status=order.status,
            expected_payment_status=expected_payment_status,
            **effects.order_updates,
        )
        failed = apply_effects(order, effects, self.inventory, self.coupons)
        logger.info(
            "order updated",
            extra={
                "order_id": str(order.id),
                "from": str(order.status),
                "to": str(updated.status),
                "payment_status": str(updated.payment_status),
                "failed_effects": len(failed),
            },
        )
        return TransitionResult(order=updated, failed_effects=failed)

    # ---- order status ----

    def update_status(
        self,
        actor: Actor,
        order_id,
        target: OrderStatus,
        notes: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> TransitionResult:
        """Admin transition along the order table.

        Raises:
            PermissionDenied: Caller is not admin/system.
            IllegalTransition: Pair not in the table.
            ConcurrentModification: Status moved since it was read.
        """
        self._require_privileged(actor)
        order = self.orders.get(order_id)
        if notes:
            notes = _append_note(order.admin_notes, notes)
        effects = plan_order_transition(order, target, self.clock(), notes=notes, tracking_number=tracking_number)
        return self._apply(order, effects)

    def cancel_order(self, actor: Actor, order_id, reason: Optional[str] = None) -> TransitionResult:
        """Cancel an order, releasing stock and the coupon slot.

        Owners may cancel while the order is pending or confirmed; admins
        may cancel whenever the order table allows it.
        """
        order = self._load_for(actor, order_id)
        if not actor.is_privileged and order.status not in CUSTOMER_CANCELLABLE:
            raise IllegalTransition(order.status, OrderStatus.CANCELLED, reason="NOT_CANCELLABLE_BY_CUSTOMER")

        note = None
        if reason:
            who = "admin" if actor.is_privileged else "customer"
            note = _append_note(order.admin_notes, f"Cancelled by {who}: {reason}")
        effects = plan_order_transition(order, OrderStatus.CANCELLED, self.clock(), notes=note)
        return self._apply(order, effects)

    def add_tracking(self, actor: Actor, order_id, tracking_number: str) -> TransitionResult:
        """Set the tracking number, shipping the order if it is not shipped yet.

        A confirmed order goes through processing on the way, so every hop
        stays inside the order table.
        """
        self._require_privileged(actor)
        if not tracking_number or not tracking_number.strip():
            raise OrderValidationError("A tracking number is required.", code="TRACKING_NUMBER_REQUIRED")
        tracking_number = tracking_number.strip()

        order = self.orders.get(order_id)
        if order.status not in TRACKABLE:
            raise IllegalTransition(order.status, OrderStatus.SHIPPED)

        if order.status == OrderStatus.SHIPPED:
            effects = Effects(order_updates={"tracking_number": tracking_number})
        elif order.status == OrderStatus.CONFIRMED:
            effects = plan_order_path(
                order, [OrderStatus.PROCESSING, OrderStatus.SHIPPED], self.clock(), tracking_number=tracking_number
            )
        else:
            effects = plan_order_transition(order, OrderStatus.SHIPPED, self.clock(), tracking_number=tracking_number)
        return self._apply(order, effects)

    def update_shipping_address(self, actor: Actor, order_id, address: dict) -> Order:
        """Replace the shipping address of an order that has not started processing.

        Raises:
            AddressNotUpdatable: Order is past confirmed.
            ConcurrentModification: Status moved since it was read.
        """
        order = self._load_for(actor, order_id)
        if order.status not in CUSTOMER_CANCELLABLE:
            raise AddressNotUpdatable(order_id=str(order.id), status=str(order.status))
        updated = self.orders.update(order.id, expected_status=order.status, shipping_address=address)
        logger.info(
            "shipping address updated",
            extra={"order_id": str(order.id), "status": str(order.status)},
        )
        return updated

    # ---- payments ----

    def create_payment(
        self,
        actor: Actor,
        order_id,
        method: PaymentMethod,
        amount: int,
        transaction_id: Optional[str] = None,
    ) -> PaymentResult:
        """Open a pending payment attempt for an order.

        Raises:
            OrderNotPayable: Order is not pending or confirmed.
            OrderAlreadyPaid: Order payment status is paid.
            PaymentAmountMismatch: ``amount`` differs from the order total.
            PaymentAlreadyInProgress: Another attempt is pending/processing.
        """
        order = self._load_for(actor, order_id)
        if order.payment_status == OrderPaymentStatus.PAID:
            raise OrderAlreadyPaid(order_id=str(order.id))
        if order.status not in PAYABLE:
            raise OrderNotPayable(order_id=str(order.id), status=str(order.status))
        if amount != order.total_amount:
            raise PaymentAmountMismatch(expected=order.total_amount, received=amount)
        if self.payments.has_in_flight(order.id):
            raise PaymentAlreadyInProgress(order_id=str(order.id))

        payment = self.payments.create(
            Payment(
                id=None,
                order_id=order.id,
                transaction_id=transaction_id
                or transaction_id_for(method.value.upper().replace("-", "_"), order.order_number),
                payment_method=method,
                payment_provider=PAYMENT_PROVIDERS[method],
                amount=amount,
                currency=order.currency,
                status=PaymentStatus.PENDING,
                gateway_response={"created_by": str(actor.role)},
            )
        )

        if order.payment_status != OrderPaymentStatus.PENDING:
            order = self.orders.update(
                order.id,
                expected_status=order.status,
                expected_payment_status=order.payment_status,
                payment_status=OrderPaymentStatus.PENDING,
            )
        logger.info(
            "payment created",
            extra={
                "order_id": str(order.id),
                "payment_id": str(payment.id),
                "transaction_id": payment.transaction_id,
                "method": method.value,
                "amount": amount,
            },
        )
        return PaymentResult(payment=payment, order=order)

    def process_payment(
        self,
        actor: Actor,
        payment_id,
        target: PaymentStatus,
        transaction_id: Optional[str] = None,
        gateway_response: Optional[dict] = None,
        failure_reason: Optional[str] = None,
    ) -> PaymentResult:
        """Move a payment along its table and project it onto the order.

        Gateways and admins may apply any legal transition; the order owner
        may only cancel a payment. Retrying a failed attempt is refused while
        another attempt for the order is pending or processing.

        If the order projection loses a race, the payment row is put back
        to its previous state before the error is re-raised.

        Raises:
            PermissionDenied: Owner asking for anything but cancelled.
            IllegalTransition: Pair not in the payment table.
            OrderValidationError: Failed transition without a reason.
            PaymentAlreadyInProgress: Retry while another attempt is in flight.
            ConcurrentModification: Payment or order moved concurrently.
            CompensationFailure: The payment could not be put back.
        """
        payment = self.payments.get(payment_id)
        order = self._load_for(actor, payment.order_id)
        if not actor.is_privileged and target != PaymentStatus.CANCELLED:
            raise PermissionDenied(payment_id=str(payment_id), status=str(target))
        retrying = payment.status == PaymentStatus.FAILED and target == PaymentStatus.PROCESSING
        if retrying and self.payments.has_in_flight(order.id):
            raise PaymentAlreadyInProgress(order_id=str(order.id))

        plan = plan_payment_transition(
            payment,
            order,
            target,
            self.clock(),
            transaction_id=transaction_id,
            gateway_response=gateway_response,
            failure_reason=failure_reason,
        )
        updated_payment = self.payments.update(payment.id, expected_status=payment.status, **plan.payment_updates)
        logger.info(
            "payment updated",
            extra={
                "payment_id": str(payment.id),
                "order_id": str(order.id),
                "from": str(payment.status),
                "to": str(target),
            },
        )

        if not plan.order_effects.order_updates:
            return PaymentResult(payment=updated_payment, order=order)

        try:
            result = self._apply(order, plan.order_effects, expected_payment_status=order.payment_status)
        except OrderError as exc:
            logger.error(
                "order projection failed after payment update",
                extra={"payment_id": str(payment.id), "order_id": str(order.id), "to": str(target)},
            )
            self._revert_payment(payment, target, exc)
            raise
        return PaymentResult(payment=updated_payment, order=result.order, failed_effects=result.failed_effects)

    def _revert_payment(self, payment: Payment, moved_to: PaymentStatus, cause: Exception) -> None:
        try:
            self.payments.update(
                payment.id,
                expected_status=moved_to,
                status=payment.status,
                transaction_id=payment.transaction_id,
                gateway_response=payment.gateway_response,
                processed_at=payment.processed_at,
            )
        except Exception as exc:
            logger.critical(
                "payment compensation failed",
                extra={
                    "order_id": str(payment.order_id),
                    "payment_id": str(payment.id),
                    "cause": repr(exc),
                    "trigger": repr(cause),
                },
            )
            raise CompensationFailure(
                step="revert_payment_status",
                order_id=payment.order_id,
                cause=repr(exc),
                payment_id=str(payment.id),
            ) from exc
        logger.error(
            "payment update rolled back",
            extra={"payment_id": str(payment.id), "from": str(moved_to), "to": str(payment.status)},
        )

    # ---- reads ----

    def get_order(self, actor: Actor, order_id) -> Order:
        return self._load_for(actor, order_id)

    def get_payment_by_transaction(self, actor: Actor, transaction_id: str) -> Payment:
        payment = self.payments.get_by_transaction_id(transaction_id)
        self._load_for(actor, payment.order_id)
        return payment


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note
