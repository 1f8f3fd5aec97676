"""HTTP views for the orders app.

This module contains the DRF API views of the orders engine. Views are
kept intentionally small: they validate requests (via Pydantic), map them
to domain calls on the ``OrderService`` returned by ``get_order_service()``
and translate the outcome into an HTTP response.

``get_order_service()`` returns a service wired with HTTP ledger clients
(``HttpInventoryClient``, ``HttpCouponClient``) or with the in-process
ledgers (``InventoryStub``, ``CouponStub``) depending on runtime settings.
This allows tests and local development to swap implementations without
changing view logic.

Every business failure is an ``OrderError`` and is answered with its own
status code and ``{"detail": code, "message": ..., **context}``. A failed
rollback (``CompensationFailure``) is answered with 500 and the step that
could not be undone.

Idempotency: when an ``Idempotency-Key`` header is provided, the create
endpoint ensures idempotent processing. The first request creates a record
and, upon completion, stores the response. Retries with the same payload
return the stored response with the ``Idempotent-Replay`` header. If the
same key is reused with a different payload, the endpoint returns HTTP 409.
"""

from functools import wraps

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .checkout import CheckoutRequest
from .domain import CartLine
from .errors import CompensationFailure, OrderError
from .idempotency import finalize, get_or_create_idempotent
from .schemas import (
    CancelOrderDTO,
    CreateOrderDTO,
    CreatePaymentDTO,
    OrderReadDTO,
    PaymentReadDTO,
    PaymentStatusDTO,
    PricingPreviewDTO,
    RefundDTO,
    ShippingAddressDTO,
    StatusUpdateDTO,
    TrackingDTO,
)

MAX_PAGE_SIZE = 100


def _validation_response(e: ValidationError) -> Response:
    return Response(
        {"detail": "VALIDATION_ERROR", "errors": e.errors(include_url=False, include_context=False)},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _error_response(e) -> Response:
    return Response(e.to_dict(), status=e.status_code)


def domain_errors(view_method):
    """Translate pydantic and engine errors raised by a view into responses."""

    @wraps(view_method)
    def wrapper(self, request, *args, **kwargs):
        try:
            return view_method(self, request, *args, **kwargs)
        except ValidationError as e:
            return _validation_response(e)
        except (OrderError, CompensationFailure) as e:
            return _error_response(e)

    return wrapper


def _transition_body(result, admin: bool) -> dict:
    body = OrderReadDTO.from_domain(result.order, admin=admin)
    body["failed_effects"] = result.failed_effects
    return body


class ScopedAPIView(APIView):
    throttle_classes = [ScopedRateThrottle]


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module.

    This view returns a minimal JSON payload used by liveness/health
    checks and by automated smoke-tests.
    """

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(ScopedAPIView):
    """List orders, or create one through the checkout saga.

    Creation supports idempotency via the ``Idempotency-Key`` header: the
    first request is processed and its response cached; retries with the
    same key and identical payload return the cached response. Reusing the
    same key with a different payload returns HTTP 409.
    """

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    @domain_errors
    def get(self, request):
        page = max(1, _int(request.GET.get("page"), 1))
        page_size = min(MAX_PAGE_SIZE, max(1, _int(request.GET.get("page_size"), 20)))
        actor = request.actor
        count, number, orders = providers.get_order_service().list_orders(
            actor,
            user_id=request.GET.get("user_id"),
            status=request.GET.get("status"),
            payment_status=request.GET.get("payment_status"),
            page=page,
            page_size=page_size,
        )
        return Response(
            {
                "count": count,
                "page": number,
                "page_size": page_size,
                "results": [OrderReadDTO.from_domain(o, admin=actor.is_privileged) for o in orders],
            },
            status=200,
        )

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with the created order and its items.
            - the stored status and body, with ``Idempotent-Replay: true``,
              when the same idempotency key and payload are retried.
            - 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused with a
              different payload.
            - 400 for DTO validation errors.
            - 422 ``EMPTY_CART``, ``PRODUCT_UNAVAILABLE``,
              ``INSUFFICIENT_STOCK`` or one of the coupon rejections.
            - 500 ``ORDER_CREATION_FAILED`` or ``COMPENSATION_FAILURE``.
            - 503 ``UPSTREAM_UNAVAILABLE`` when a ledger is unreachable.
        """
        idem_key = request.headers.get("Idempotency-Key")
        actor = request.actor

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_response(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(
                    idem_key, {"user_id": actor.user_id, "body": request.data}
                )
            except OrderError as e:
                return _error_response(e)
            if existing:
                status_code = rec.response_status or status.HTTP_200_OK
                resp = Response(rec.response_body, status=status_code)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        checkout = CheckoutRequest(
            items=[CartLine(i.product_id, i.quantity) for i in dto.items] if dto.items else None,
            shipping_address=dto.shipping_address.model_dump(),
            billing_address=dto.billing_address.model_dump(),
            shipping_method=dto.shipping_method,
            coupon_code=dto.coupon_code,
            notes=dto.notes,
        )
        try:
            order = providers.get_order_service().place_order(actor, checkout)
        except (OrderError, CompensationFailure) as e:
            body = e.to_dict()
            if rec:
                finalize(rec, e.status_code, body)
            return Response(body, status=e.status_code)

        # 4) Response
        body = OrderReadDTO.from_domain(order, admin=actor.is_privileged)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"

    @domain_errors
    def get(self, request, oid):
        service = providers.get_order_service()
        order = service.get_order(request.actor, oid)
        body = OrderReadDTO.from_domain(order, service.payments_for(order), admin=request.actor.is_privileged)
        return Response(body, status=200)


class OrderStatusView(ScopedAPIView):
    throttle_scope = "orders_admin"

    @domain_errors
    def post(self, request, oid):
        dto = StatusUpdateDTO.model_validate(request.data)
        result = providers.get_order_service().update_status(
            request.actor, oid, dto.status, notes=dto.notes, tracking_number=dto.tracking_number
        )
        return Response(_transition_body(result, admin=True), status=200)


class CancelOrderView(ScopedAPIView):
    throttle_scope = "orders_cancel"

    @domain_errors
    def post(self, request, oid):
        dto = CancelOrderDTO.model_validate(request.data or {})
        result = providers.get_order_service().cancel_order(request.actor, oid, dto.reason)
        return Response(_transition_body(result, admin=request.actor.is_privileged), status=200)


class TrackingView(ScopedAPIView):
    throttle_scope = "orders_admin"

    @domain_errors
    def post(self, request, oid):
        dto = TrackingDTO.model_validate(request.data)
        result = providers.get_order_service().add_tracking(request.actor, oid, dto.tracking_number)
        return Response(_transition_body(result, admin=True), status=200)


class ShippingAddressView(ScopedAPIView):
    throttle_scope = "orders_cancel"

    @domain_errors
    def post(self, request, oid):
        dto = ShippingAddressDTO.model_validate(request.data)
        order = providers.get_order_service().update_shipping_address(
            request.actor, oid, dto.address.model_dump()
        )
        return Response(OrderReadDTO.from_domain(order, admin=request.actor.is_privileged), status=200)


class OrderPaymentsView(ScopedAPIView):
    throttle_scope = "payments"

    @domain_errors
    def post(self, request, oid):
        dto = CreatePaymentDTO.model_validate(request.data)
        result = providers.get_order_service().create_payment(
            request.actor, oid, dto.payment_method, dto.amount, transaction_id=dto.transaction_id
        )
        return Response(
            {
                "payment": PaymentReadDTO.from_domain(result.payment),
                "order": OrderReadDTO.from_domain(result.order, admin=request.actor.is_privileged),
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentStatusView(ScopedAPIView):
    throttle_scope = "payments"

    @domain_errors
    def post(self, request, pid):
        dto = PaymentStatusDTO.model_validate(request.data)
        result = providers.get_order_service().process_payment(
            request.actor,
            pid,
            dto.status,
            transaction_id=dto.transaction_id,
            gateway_response=dto.gateway_response,
            failure_reason=dto.failure_reason,
        )
        return Response(
            {
                "payment": PaymentReadDTO.from_domain(result.payment),
                "order": OrderReadDTO.from_domain(result.order, admin=request.actor.is_privileged),
                "failed_effects": result.failed_effects,
            },
            status=200,
        )


class PaymentByTransactionView(ScopedAPIView):
    throttle_scope = "payments"

    @domain_errors
    def get(self, request, tx):
        payment = providers.get_order_service().get_payment_by_transaction(request.actor, tx)
        return Response(PaymentReadDTO.from_domain(payment), status=200)


class RefundView(ScopedAPIView):
    throttle_scope = "orders_admin"

    @domain_errors
    def post(self, request, oid):
        dto = RefundDTO.model_validate(request.data)
        result = providers.get_order_service().refund(
            request.actor, oid, dto.amount, dto.reason, dto.refund_method
        )
        body = {
            "refund": PaymentReadDTO.from_domain(result.refund),
            "order": OrderReadDTO.from_domain(result.order, admin=True),
            "total_refunded": result.total_refunded,
            "is_full_refund": result.is_full_refund,
            "failed_effects": result.failed_effects,
        }
        return Response(body, status=status.HTTP_201_CREATED)


class PricingPreviewView(ScopedAPIView):
    throttle_scope = "pricing"

    @domain_errors
    def post(self, request):
        dto = PricingPreviewDTO.model_validate(request.data)
        price = providers.get_order_service().preview_price(
            [CartLine(i.product_id, i.quantity) for i in dto.items],
            dto.coupon_code,
            dto.tax_amount,
            dto.shipping_amount,
        )
        return Response(
            {
                "lines": [
                    {
                        "product_id": pl.product.id,
                        "product_name": pl.product.name,
                        "quantity": pl.quantity,
                        "unit_price": pl.unit_price,
                        "total_price": pl.total_price,
                    }
                    for pl in price.lines
                ],
                "subtotal": price.subtotal,
                "discount_amount": price.discount,
                "tax_amount": price.tax,
                "shipping_amount": price.shipping,
                "total_amount": price.total,
            },
            status=200,
        )


def _int(raw, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default
