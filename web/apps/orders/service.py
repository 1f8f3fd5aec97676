"""Domain service facade for the orders engine.

``OrderService`` groups the checkout saga, the lifecycle operations and the
refund engine behind one object built from two ports (inventory, coupons)
and the repositories. Views only talk to this facade.
"""

from typing import Callable, List, Optional

from django.utils import timezone

from .checkout import CheckoutOrchestrator, CheckoutRequest, merge_lines
from .domain import (
    Actor,
    CartLine,
    CouponPort,
    InventoryPort,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundMethod,
)
from .errors import NotAuthenticated
from .lifecycle import OrderLifecycle, PaymentResult, TransitionResult
from .pricing import PriceBreakdown
from .refunds import RefundEngine, RefundResult
from .repository import CartRepository, OrderRepository, PaymentRepository


class OrderService:
    def __init__(
        self,
        inventory: InventoryPort,
        coupons: CouponPort,
        orders: Optional[OrderRepository] = None,
        payments: Optional[PaymentRepository] = None,
        carts: Optional[CartRepository] = None,
        clock: Callable = timezone.now,
    ):
        self.inventory = inventory
        self.coupons = coupons
        self.orders = orders or OrderRepository()
        self.payments = payments or PaymentRepository()
        self.carts = carts or CartRepository()
        self.checkout = CheckoutOrchestrator(self.orders, self.carts, inventory, coupons, clock=clock)
        self.lifecycle = OrderLifecycle(self.orders, self.payments, inventory, coupons, clock=clock)
        self.refunds = RefundEngine(self.orders, self.payments, inventory, clock=clock)

    def place_order(self, actor: Actor, request: CheckoutRequest) -> Order:
        return self.checkout.place_order(actor, request)

    def preview_price(
        self,
        lines: List[CartLine],
        coupon_code: Optional[str] = None,
        tax_amount: int = 0,
        shipping_amount: int = 0,
    ) -> PriceBreakdown:
        """Price lines without reserving stock or consuming a coupon slot."""
        draft = self.checkout.quote(
            merge_lines(lines), coupon_code, tax_amount, shipping_amount, check_stock=False
        )
        return draft.price

    def update_status(self, actor: Actor, order_id, target: OrderStatus, **kwargs) -> TransitionResult:
        return self.lifecycle.update_status(actor, order_id, target, **kwargs)

    def cancel_order(self, actor: Actor, order_id, reason: Optional[str] = None) -> TransitionResult:
        return self.lifecycle.cancel_order(actor, order_id, reason)

    def add_tracking(self, actor: Actor, order_id, tracking_number: str) -> TransitionResult:
        return self.lifecycle.add_tracking(actor, order_id, tracking_number)

    def update_shipping_address(self, actor: Actor, order_id, address: dict) -> Order:
        return self.lifecycle.update_shipping_address(actor, order_id, address)

    def create_payment(self, actor: Actor, order_id, method: PaymentMethod, amount: int, **kwargs) -> PaymentResult:
        return self.lifecycle.create_payment(actor, order_id, method, amount, **kwargs)

    def process_payment(self, actor: Actor, payment_id, target: PaymentStatus, **kwargs) -> PaymentResult:
        return self.lifecycle.process_payment(actor, payment_id, target, **kwargs)

    def refund(self, actor: Actor, order_id, amount: int, reason: str, method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT) -> RefundResult:
        return self.refunds.refund(actor, order_id, amount, reason, method)

    def get_order(self, actor: Actor, order_id) -> Order:
        return self.lifecycle.get_order(actor, order_id)

    def payments_for(self, order: Order) -> List[Payment]:
        return self.payments.for_order(order.id)

    def get_payment_by_transaction(self, actor: Actor, transaction_id: str) -> Payment:
        return self.lifecycle.get_payment_by_transaction(actor, transaction_id)

    def list_orders(self, actor: Actor, *, user_id=None, status=None, payment_status=None, page=1, page_size=20):
        """Filtered page of orders; customers only ever see their own."""
        if not actor.is_privileged:
            if actor.user_id is None:
                raise NotAuthenticated()
            user_id = actor.user_id
        return self.orders.list(
            user_id=user_id, status=status, payment_status=payment_status, page=page, page_size=page_size
        )
