"""Domain models and ports for orders.

This module contains the dataclasses the engine passes around (orders,
items, payments, catalog and coupon snapshots, the calling actor), the
status enums, and the protocol definitions (ports) for the two external
ledgers the engine writes to: inventory and coupons.

All money values are integers in minor currency units.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Mapping, Optional, Protocol, Sequence


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    def __str__(self) -> str:
        return self.value


class OrderPaymentStatus(str, Enum):
    """Payment status as projected onto the order."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    def __str__(self) -> str:
        return self.value


class PaymentStatus(str, Enum):
    """Status of a single payment attempt (or refund record)."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    def __str__(self) -> str:
        return self.value


class PaymentMethod(str, Enum):
    ONLINE_GATEWAY_A = "online-gateway-a"
    ONLINE_GATEWAY_B = "online-gateway-b"
    CASH_ON_DELIVERY = "cash-on-delivery"
    BANK_TRANSFER = "bank-transfer"

    def __str__(self) -> str:
        return self.value


class RefundMethod(str, Enum):
    ORIGINAL_PAYMENT = "original_payment"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"

    def __str__(self) -> str:
        return self.value


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"

    def __str__(self) -> str:
        return self.value


class Role(str, Enum):
    """Role asserted by the upstream auth gateway.

    ``system`` is used by payment-gateway callbacks and internal jobs.
    """

    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Actor:
    """The caller of an engine operation.

    Authorization is decided from this value only; the engine never looks
    up a "current user" on its own.

    Attributes:
        user_id: Identifier of the calling user, ``None`` for anonymous
            callers.
        role: Role granted by the auth gateway.
    """

    user_id: Optional[str]
    role: Role = Role.CUSTOMER

    @property
    def is_privileged(self) -> bool:
        return self.role in (Role.ADMIN, Role.SYSTEM)

    def owns(self, order: "Order") -> bool:
        return self.user_id is not None and order.user_id == self.user_id

    def can_access(self, order: "Order") -> bool:
        return self.is_privileged or self.owns(order)


@dataclass(frozen=True)
class CartLine:
    """A requested product and quantity, before pricing."""

    product_id: int
    quantity: int


@dataclass(frozen=True)
class ProductSnapshot:
    """Catalog fields read from the inventory ledger."""

    id: int
    name: str
    price: int
    stock_quantity: int
    is_active: bool = True
    sku: Optional[str] = None


@dataclass(frozen=True)
class CouponSnapshot:
    """Eligibility fields read from the coupon ledger."""

    id: int
    code: str
    type: CouponType
    value: int
    minimum_amount: Optional[int] = None
    maximum_discount: Optional[int] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CouponQuote:
    """A validated coupon and the discount it grants on a given subtotal."""

    coupon: CouponSnapshot
    discount: int


@dataclass(frozen=True)
class OrderItem:
    """A single line item of an order.

    Name and SKU are snapshotted when the order is placed so later catalog
    edits never change a past order. The dataclass is frozen because items
    are immutable once created.
    """

    product_id: int
    product_name: str
    quantity: int
    unit_price: int
    total_price: int
    product_sku: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier (UUID), or None if not yet saved.
        order_number: Human-facing unique number ``ORD-<ms>-<suffix>``.
        user_id: Owner of the order.
        status: Fulfillment status.
        payment_status: Payment status projected from the payments.
        subtotal, discount_amount, tax_amount, shipping_amount,
        total_amount: Totals in minor units; ``total_amount`` is
            ``subtotal + tax + shipping - discount`` clamped at zero.
        refunded_amount: Sum of completed refunds so far.
        items: The order's line items (may be empty when loaded without
            them).
    """

    id: Optional[object]
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    currency: str = "VND"
    subtotal: int = 0
    discount_amount: int = 0
    tax_amount: int = 0
    shipping_amount: int = 0
    total_amount: int = 0
    refunded_amount: int = 0
    shipping_method: str = "standard"
    shipping_address: dict = field(default_factory=dict)
    billing_address: dict = field(default_factory=dict)
    coupon_id: Optional[int] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: List[OrderItem] = field(default_factory=list)


@dataclass
class Payment:
    """A payment attempt or a refund record linked to an order."""

    id: Optional[object]
    order_id: object
    transaction_id: str
    payment_method: PaymentMethod
    amount: int
    payment_provider: str = "manual"
    currency: str = "VND"
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_response: dict = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_refund: bool = False


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the inventory ledger operations used by the engine."""

    def get_products(self, product_ids: Sequence[int]) -> Mapping[int, ProductSnapshot]:
        """Return snapshots for the known ids; unknown ids are omitted."""
        raise NotImplementedError()

    def reserve(self, product_id: int, quantity: int) -> int:
        """Atomically take ``quantity`` units out of stock.

        Returns:
            int: Stock left after the reservation.

        Raises:
            InsufficientStock: If fewer than ``quantity`` units are left.
            ProductUnavailable: If the product is missing or inactive.
        """
        raise NotImplementedError()

    def release(self, product_id: int, quantity: int) -> int:
        """Return ``quantity`` units to stock and report the new level."""
        raise NotImplementedError()


class CouponPort(Protocol):
    """Port describing the coupon ledger operations used by the engine."""

    def validate_and_price(self, code: str, subtotal: int) -> CouponQuote:
        """Check a code for a subtotal and price its discount.

        Raises:
            CouponInvalid, CouponExpired, CouponNotYetActive,
            CouponExhausted, MinimumAmountNotMet: The first failing check.
        """
        raise NotImplementedError()

    def increment_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        """Consume one usage slot; ``CouponExhausted`` when the cap is hit."""
        raise NotImplementedError()

    def decrement_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        """Return one usage slot; never goes below zero."""
        raise NotImplementedError()
