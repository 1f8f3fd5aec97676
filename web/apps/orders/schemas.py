"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API
and the read DTOs the views serialize domain objects with.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Order, OrderPaymentStatus, OrderStatus, Payment, PaymentMethod, PaymentStatus, RefundMethod

SHIPPING_METHODS = {"standard", "express", "same_day", "pickup"}


# ---- input ----

class OrderItemIn(BaseModel):
    """Input schema for a single order line.

    Attributes:
        product_id: Catalog id of the product (positive).
        quantity: Units requested, 1 to 100.
    """

    product_id: int = Field(gt=0)
    quantity: int = Field(ge=1, le=100)


class AddressIn(BaseModel):
    """Structured shipping or billing address."""

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    company: Optional[str] = Field(default=None, max_length=200)
    address_line_1: str = Field(min_length=1, max_length=255)
    address_line_2: Optional[str] = Field(default=None, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        items: Lines to order; omitted or empty means "use my cart".
        shipping_address, billing_address: Structured addresses.
        shipping_method: One of ``SHIPPING_METHODS``.
        coupon_code: Optional discount code, normalized to upper case.
        notes: Optional customer notes.
    """

    items: Optional[list[OrderItemIn]] = Field(default=None, max_length=100)
    shipping_address: AddressIn
    billing_address: AddressIn
    shipping_method: str = "standard"
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("shipping_method")
    @classmethod
    def validate_shipping_method(cls, v: str) -> str:
        v2 = v.strip().lower()
        if v2 not in SHIPPING_METHODS:
            raise ValueError("Unsupported shipping method")
        return v2

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v2 = v.strip().upper()
        return v2 or None


class PricingPreviewDTO(BaseModel):
    items: list[OrderItemIn] = Field(min_length=1, max_length=100)
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    tax_amount: int = Field(default=0, ge=0)
    shipping_amount: int = Field(default=0, ge=0)


class StatusUpdateDTO(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=1000)
    tracking_number: Optional[str] = Field(default=None, max_length=100)


class CancelOrderDTO(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class TrackingDTO(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=100)


class ShippingAddressDTO(BaseModel):
    address: AddressIn


class CreatePaymentDTO(BaseModel):
    payment_method: PaymentMethod
    amount: int = Field(gt=0)
    transaction_id: Optional[str] = Field(default=None, min_length=1, max_length=100)


class PaymentStatusDTO(BaseModel):
    """Gateway callback / admin request moving a payment.

    ``failure_reason`` is mandatory when ``status`` is ``failed``; that rule
    lives in the state machine so every caller gets it.
    """

    status: PaymentStatus
    transaction_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    gateway_response: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = Field(default=None, max_length=500)


class RefundDTO(BaseModel):
    amount: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT


# ---- output ----

class OrderItemReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    product_id: int
    product_name: str
    product_sku: Optional[str] = None
    quantity: int
    unit_price: int
    total_price: int


class PaymentReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    transaction_id: str
    payment_method: PaymentMethod
    payment_provider: str
    amount: int
    currency: str
    status: PaymentStatus
    gateway_response: dict[str, Any] = Field(default_factory=dict)
    is_refund: bool = False
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, payment: Payment) -> dict:
        return cls.model_validate(payment).model_dump(mode="json")


class OrderReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: str
    status: OrderStatus
    payment_status: OrderPaymentStatus
    currency: str
    subtotal: int
    discount_amount: int
    tax_amount: int
    shipping_amount: int
    total_amount: int
    refunded_amount: int = 0
    coupon_id: Optional[int] = None
    coupon_code: Optional[str] = None
    shipping_method: str
    shipping_address: dict[str, Any]
    billing_address: dict[str, Any]
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: list[OrderItemReadDTO] = Field(default_factory=list)
    payments: Optional[list[PaymentReadDTO]] = None

    @classmethod
    def from_domain(cls, order: Order, payments: Optional[list[Payment]] = None, admin: bool = False) -> dict:
        """Serialize an order for the API; ``admin_notes`` only for admins."""
        dto = cls.model_validate(order)
        if payments is not None:
            dto.payments = [PaymentReadDTO.model_validate(p) for p in payments]
        exclude = None if admin else {"admin_notes"}
        return dto.model_dump(mode="json", exclude=exclude, exclude_none=False)
