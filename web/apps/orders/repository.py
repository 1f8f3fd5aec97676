"""Repository layer for persisting orders, payments and reading carts.

This module contains the repository abstractions the engine uses to reach
the database. They keep a thin interface and hand back domain dataclasses so
the engine is not coupled to Django ORM details.

Status writes are optimistic: an ``UPDATE ... WHERE id = :id AND status =
:expected`` that touches zero rows means somebody else moved the record
first, and ``ConcurrentModification`` is raised instead of overwriting it.
"""

from typing import Iterable, List, Optional, Tuple

from django.core.paginator import Paginator
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from .domain import (
    CartLine,
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from .errors import ConcurrentModification, NotFound
from .models import CartItemModel, OrderItemModel, OrderModel, PaymentModel

_ORDER_FIELDS = (
    "order_number",
    "user_id",
    "currency",
    "subtotal",
    "discount_amount",
    "tax_amount",
    "shipping_amount",
    "total_amount",
    "refunded_amount",
    "shipping_method",
    "shipping_address",
    "billing_address",
    "coupon_id",
    "coupon_code",
    "notes",
    "admin_notes",
    "tracking_number",
    "created_at",
    "updated_at",
    "shipped_at",
    "delivered_at",
)


def _to_item(m: OrderItemModel) -> OrderItem:
    return OrderItem(
        id=m.id,
        product_id=m.product_id,
        product_name=m.product_name,
        product_sku=m.product_sku,
        quantity=m.quantity,
        unit_price=m.unit_price,
        total_price=m.total_price,
    )


def _to_order(m: OrderModel, items: Optional[Iterable[OrderItemModel]] = None) -> Order:
    order = Order(
        id=m.id,
        status=OrderStatus(m.status),
        payment_status=OrderPaymentStatus(m.payment_status),
        **{f: getattr(m, f) for f in _ORDER_FIELDS},
    )
    if items is not None:
        order.items = [_to_item(i) for i in items]
    return order


def _to_payment(m: PaymentModel) -> Payment:
    return Payment(
        id=m.id,
        order_id=m.order_id,
        transaction_id=m.transaction_id,
        payment_method=PaymentMethod(m.payment_method),
        payment_provider=m.payment_provider,
        amount=m.amount,
        currency=m.currency,
        status=PaymentStatus(m.status),
        gateway_response=dict(m.gateway_response or {}),
        processed_at=m.processed_at,
        created_at=m.created_at,
        updated_at=m.updated_at,
        is_refund=m.is_refund,
    )


def _db_value(v):
    # enums are stored by value
    return v.value if hasattr(v, "value") else v


class OrderRepository:
    """Repository that persists Order aggregates using Django ORM."""

    def create(self, order: Order) -> Order:
        """Insert the order row (without items).

        Raises:
            django.db.IntegrityError: On an ``order_number`` collision; the
                caller decides whether to retry with a new number.
        """
        with transaction.atomic():
            obj = OrderModel.objects.create(
                status=_db_value(order.status),
                payment_status=_db_value(order.payment_status),
                **{f: getattr(order, f) for f in _ORDER_FIELDS if f not in ("created_at", "updated_at")},
            )
        return _to_order(obj, items=[])

    def add_items(self, order_id, items: List[OrderItem]) -> List[OrderItem]:
        """Insert all items of an order, all or nothing."""
        with transaction.atomic():
            created = [
                OrderItemModel.objects.create(
                    order_id=order_id,
                    product_id=i.product_id,
                    product_name=i.product_name,
                    product_sku=i.product_sku,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                    total_price=i.total_price,
                )
                for i in items
            ]
        return [_to_item(m) for m in created]

    def delete(self, order_id) -> None:
        """Delete an order and, through the FK cascade, its items."""
        OrderModel.objects.filter(id=order_id).delete()

    def get(self, order_id, with_items: bool = True) -> Order:
        try:
            obj = OrderModel.objects.get(id=order_id)
        except OrderModel.DoesNotExist:
            raise NotFound(resource="order", order_id=str(order_id))
        items = list(obj.items.all()) if with_items else None
        return _to_order(obj, items)

    def list(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[int, int, List[Order]]:
        """Return ``(count, page_number, orders)`` for the filtered page."""
        qs = OrderModel.objects.order_by("-created_at").prefetch_related("items")
        if user_id:
            qs = qs.filter(user_id=user_id)
        if status:
            qs = qs.filter(status=status)
        if payment_status:
            qs = qs.filter(payment_status=payment_status)
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return p.count, page_obj.number, [_to_order(o, o.items.all()) for o in page_obj.object_list]

    def update(
        self,
        order_id,
        *,
        expected_status: OrderStatus,
        expected_payment_status: Optional[OrderPaymentStatus] = None,
        expected_refunded_amount: Optional[int] = None,
        **fields,
    ) -> Order:
        """Write ``fields`` if the order is still in the expected state.

        Raises:
            ConcurrentModification: If the status (or payment status) moved
                since it was read.
            NotFound: If the order no longer exists.
        """
        qs = OrderModel.objects.filter(id=order_id, status=_db_value(expected_status))
        if expected_payment_status is not None:
            qs = qs.filter(payment_status=_db_value(expected_payment_status))
        if expected_refunded_amount is not None:
            qs = qs.filter(refunded_amount=expected_refunded_amount)
        values = {k: _db_value(v) for k, v in fields.items()}
        values["updated_at"] = timezone.now()
        if qs.update(**values) != 1:
            current = self.get(order_id, with_items=False)
            raise ConcurrentModification(
                resource="order",
                order_id=str(order_id),
                expected=str(expected_status),
                actual=str(current.status),
            )
        return self.get(order_id)


class PaymentRepository:
    """Repository that persists Payment records using Django ORM."""

    def create(self, payment: Payment) -> Payment:
        with transaction.atomic():
            obj = PaymentModel.objects.create(
                order_id=payment.order_id,
                transaction_id=payment.transaction_id,
                payment_method=_db_value(payment.payment_method),
                payment_provider=payment.payment_provider,
                amount=payment.amount,
                currency=payment.currency,
                status=_db_value(payment.status),
                gateway_response=payment.gateway_response,
                processed_at=payment.processed_at,
                is_refund=payment.is_refund,
            )
        return _to_payment(obj)

    def get(self, payment_id) -> Payment:
        try:
            return _to_payment(PaymentModel.objects.get(id=payment_id))
        except PaymentModel.DoesNotExist:
            raise NotFound(resource="payment", payment_id=str(payment_id))

    def get_by_transaction_id(self, transaction_id: str) -> Payment:
        try:
            return _to_payment(PaymentModel.objects.get(transaction_id=transaction_id))
        except PaymentModel.DoesNotExist:
            raise NotFound(resource="payment", transaction_id=transaction_id)

    def for_order(self, order_id) -> List[Payment]:
        return [_to_payment(m) for m in PaymentModel.objects.filter(order_id=order_id)]

    def has_in_flight(self, order_id) -> bool:
        """True when a non-refund payment is pending or processing."""
        return PaymentModel.objects.filter(
            order_id=order_id,
            is_refund=False,
            status__in=[PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value],
        ).exists()

    def last_completed(self, order_id) -> Optional[Payment]:
        obj = (
            PaymentModel.objects.filter(order_id=order_id, is_refund=False, status=PaymentStatus.COMPLETED.value)
            .order_by("-processed_at", "-created_at")
            .first()
        )
        return _to_payment(obj) if obj else None

    def total_refunded(self, order_id) -> int:
        """Sum of completed refund records for the order."""
        agg = PaymentModel.objects.filter(
            order_id=order_id, is_refund=True, status=PaymentStatus.COMPLETED.value
        ).aggregate(total=Sum("amount"))
        return agg["total"] or 0

    def update(self, payment_id, *, expected_status: PaymentStatus, **fields) -> Payment:
        """Optimistic status write, see ``OrderRepository.update``."""
        values = {k: _db_value(v) for k, v in fields.items()}
        values["updated_at"] = timezone.now()
        updated = PaymentModel.objects.filter(id=payment_id, status=_db_value(expected_status)).update(**values)
        if updated != 1:
            current = self.get(payment_id)
            raise ConcurrentModification(
                resource="payment",
                payment_id=str(payment_id),
                expected=str(expected_status),
                actual=str(current.status),
            )
        return self.get(payment_id)

    def delete(self, payment_id) -> None:
        PaymentModel.objects.filter(id=payment_id).delete()


class CartRepository:
    """Read access to the customer's persisted cart."""

    def lines_for(self, user_id: str) -> List[CartLine]:
        return [
            CartLine(product_id=c.product_id, quantity=c.quantity)
            for c in CartItemModel.objects.filter(user_id=user_id)
        ]
