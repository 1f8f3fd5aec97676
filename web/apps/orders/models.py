import uuid
from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=40, unique=True)
    user_id = models.CharField(max_length=64, db_index=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        PAID = "paid"
        FAILED = "failed"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    currency = models.CharField(max_length=3, default="VND")

    # money in minor units
    subtotal = models.BigIntegerField(default=0)
    discount_amount = models.BigIntegerField(default=0)
    tax_amount = models.BigIntegerField(default=0)
    shipping_amount = models.BigIntegerField(default=0)
    total_amount = models.BigIntegerField(default=0)
    refunded_amount = models.BigIntegerField(default=0)

    coupon_id = models.IntegerField(null=True, blank=True)
    coupon_code = models.CharField(max_length=64, null=True, blank=True)
    shipping_method = models.CharField(max_length=32, default="standard")
    shipping_address = models.JSONField(default=dict)
    billing_address = models.JSONField(default=dict)
    notes = models.TextField(null=True, blank=True)
    admin_notes = models.TextField(null=True, blank=True)
    tracking_number = models.CharField(max_length=100, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        app_label = "orders"
        db_table = "orders"
        ordering = ["-created_at"]


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.IntegerField()
    # snapshot taken when the order is placed
    product_name = models.CharField(max_length=255)
    product_sku = models.CharField(max_length=64, null=True, blank=True)
    quantity = models.PositiveIntegerField()
    unit_price = models.BigIntegerField()
    total_price = models.BigIntegerField()

    class Meta:
        app_label = "orders"
        db_table = "order_items"
        ordering = ["id"]


class PaymentModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="payments")
    transaction_id = models.CharField(max_length=100, unique=True)

    class Method(models.TextChoices):
        ONLINE_GATEWAY_A = "online-gateway-a"
        ONLINE_GATEWAY_B = "online-gateway-b"
        CASH_ON_DELIVERY = "cash-on-delivery"
        BANK_TRANSFER = "bank-transfer"

    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    payment_method = models.CharField(max_length=32, choices=Method.choices)
    payment_provider = models.CharField(max_length=32, default="manual")
    amount = models.BigIntegerField()
    currency = models.CharField(max_length=3, default="VND")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    gateway_response = models.JSONField(default=dict)
    is_refund = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = "orders"
        db_table = "payments"
        ordering = ["created_at"]


class CartItemModel(models.Model):
    """Persisted cart owned by the cart service; read-only here."""

    user_id = models.CharField(max_length=64, db_index=True)
    product_id = models.IntegerField()
    quantity = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = "orders"
        db_table = "cart_items"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(fields=["user_id", "product_id"], name="uniq_cart_user_product"),
        ]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.IntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = "orders"
        db_table = "idempotency_keys"
