"""Refund engine.

A refund is recorded as a completed ``Payment`` row whose transaction id
starts with ``REFUND_TRANSACTION_PREFIX``. The order keeps a running
``refunded_amount`` that doubles as the optimistic guard: the order update
only succeeds if nobody recorded another refund in between, so two racing
refunds cannot both pass the remaining-amount check.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from django.conf import settings
from django.utils import timezone

from .domain import (
    Actor,
    InventoryPort,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundMethod,
)
from .errors import (
    CompensationFailure,
    ConcurrentModification,
    OrderValidationError,
    PaymentNotCompleted,
    PermissionDenied,
    RefundExceedsOrderTotal,
    RefundExceedsRemaining,
    RefundFailed,
)
from .lifecycle import apply_effects, transaction_id_for
from .repository import OrderRepository, PaymentRepository
from .state_machine import Effects, release_effects

logger = logging.getLogger("orders.refunds")

REASON_MAX_LENGTH = 500


@dataclass
class RefundResult:
    refund: Payment
    order: Order
    total_refunded: int
    is_full_refund: bool
    failed_effects: List[dict] = field(default_factory=list)


class RefundEngine:
    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        inventory: InventoryPort,
        clock: Callable = timezone.now,
    ):
        self.orders = orders
        self.payments = payments
        self.inventory = inventory
        self.clock = clock

    def refund(
        self,
        actor: Actor,
        order_id,
        amount: int,
        reason: str,
        method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT,
    ) -> RefundResult:
        """Record a refund against a paid order.

        Args:
            actor: Must be admin or system.
            order_id: Order to refund.
            amount: Positive amount in minor units.
            reason: Operator-facing reason, 1 to 500 characters.
            method: How the money goes back to the customer.

        Returns:
            RefundResult: The refund record and the updated order. On a full
            refund the order is ``refunded``/``refunded`` and its stock has
            been released, unless the order had already been cancelled.

        Raises:
            PaymentNotCompleted: The order is not paid.
            RefundExceedsOrderTotal: ``amount`` is above the order total.
            RefundExceedsRemaining: Prior refunds plus ``amount`` exceed the
                total.
            RefundFailed: The order could not be updated; the refund record
                was removed again.
            ConcurrentModification: Another refund or status change won the
                race; the refund record was removed again.
            CompensationFailure: The refund record could not be removed.
        """
        if not actor.is_privileged:
            raise PermissionDenied(role=str(actor.role))
        if amount is None or amount <= 0:
            raise OrderValidationError("Refund amount must be positive.", code="INVALID_AMOUNT")
        reason = (reason or "").strip()
        if not reason or len(reason) > REASON_MAX_LENGTH:
            raise OrderValidationError("A refund reason of 1 to 500 characters is required.", code="INVALID_REASON")

        order = self.orders.get(order_id)
        if order.payment_status != OrderPaymentStatus.PAID:
            raise PaymentNotCompleted(order_id=str(order.id), payment_status=str(order.payment_status))
        if amount > order.total_amount:
            raise RefundExceedsOrderTotal(amount=amount, total_amount=order.total_amount)

        refunded = self.payments.total_refunded(order.id)
        if refunded + amount > order.total_amount:
            raise RefundExceedsRemaining(
                amount=amount, total_refunded=refunded, remaining=order.total_amount - refunded
            )

        now = self.clock()
        refund = self.payments.create(self._refund_payment(order, amount, reason, method, now))
        total = refunded + amount
        is_full = total >= order.total_amount

        updates = {
            "refunded_amount": total,
            "admin_notes": _note(order.admin_notes, f"Refund {amount} {order.currency} ({method.value}): {reason}"),
        }
        if is_full:
            updates["status"] = OrderStatus.REFUNDED
            updates["payment_status"] = OrderPaymentStatus.REFUNDED

        try:
            updated = self.orders.update(
                order.id,
                expected_status=order.status,
                expected_payment_status=order.payment_status,
                expected_refunded_amount=order.refunded_amount,
                **updates,
            )
        except Exception as exc:
            self._undo(refund, order, exc)
            if isinstance(exc, ConcurrentModification):
                raise
            raise RefundFailed(order_id=str(order.id)) from exc

        failed = []
        if is_full and order.status != OrderStatus.CANCELLED:
            # cancellation already handed the stock back
            failed = apply_effects(order, Effects(inventory_effects=release_effects(order)), self.inventory, None)

        logger.info(
            "refund recorded",
            extra={
                "order_id": str(order.id),
                "refund_id": str(refund.id),
                "transaction_id": refund.transaction_id,
                "amount": amount,
                "total_refunded": total,
                "full": is_full,
                "failed_effects": len(failed),
            },
        )
        return RefundResult(
            refund=refund, order=updated, total_refunded=total, is_full_refund=is_full, failed_effects=failed
        )

    def _refund_payment(self, order: Order, amount: int, reason: str, method: RefundMethod, now) -> Payment:
        original = self.payments.last_completed(order.id)
        if method == RefundMethod.BANK_TRANSFER:
            payment_method = PaymentMethod.BANK_TRANSFER
        elif method == RefundMethod.CASH:
            payment_method = PaymentMethod.CASH_ON_DELIVERY
        elif original is not None:
            payment_method = original.payment_method
        else:
            payment_method = PaymentMethod.BANK_TRANSFER

        prefix = getattr(settings, "REFUND_TRANSACTION_PREFIX", "REFUND")
        return Payment(
            id=None,
            order_id=order.id,
            transaction_id=transaction_id_for(prefix, order.order_number),
            payment_method=payment_method,
            payment_provider=original.payment_provider if original and method == RefundMethod.ORIGINAL_PAYMENT else "manual",
            amount=amount,
            currency=order.currency,
            status=PaymentStatus.COMPLETED,
            processed_at=now,
            is_refund=True,
            gateway_response={
                "refund_method": method.value,
                "reason": reason,
                "original_transaction_id": original.transaction_id if original else None,
            },
        )

    def _undo(self, refund: Payment, order: Order, cause: Exception) -> None:
        try:
            self.payments.delete(refund.id)
        except Exception as exc:
            logger.critical(
                "refund compensation failed",
                extra={
                    "order_id": str(order.id),
                    "refund_id": str(refund.id),
                    "cause": repr(exc),
                    "trigger": repr(cause),
                },
            )
            raise CompensationFailure(
                step="delete_refund_payment",
                order_id=order.id,
                cause=repr(exc),
                refund_id=str(refund.id),
            ) from exc
        logger.error(
            "refund rolled back",
            extra={"order_id": str(order.id), "refund_id": str(refund.id), "error": repr(cause)},
        )


def _note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note
