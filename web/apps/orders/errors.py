"""Typed business errors for the orders domain.

Every expected rejection raised by the engine derives from ``OrderError``.
The exception's ``str()`` is the stable error code; the class also
carries the HTTP status the API answers with and a small, JSON-serializable
context (ids, amounts, the attempted transition, the saga phase).

``CompensationFailure`` is not an ``OrderError``: it is a
``RuntimeError`` signalling that a rollback step failed and that manual
reconciliation is needed.
"""

from typing import Optional


class OrderError(ValueError):
    """Base class for expected, caller-visible business failures."""

    code = "ORDER_ERROR"
    status_code = 400
    message = "The request could not be processed."

    def __init__(self, message: Optional[str] = None, **context):
        super().__init__(self.code)
        if message:
            self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.code

    def to_dict(self) -> dict:
        """Body returned by the API: ``{"detail": code, "message": ..., **context}``."""
        return {"detail": self.code, "message": self.message, **self.context}


class OrderValidationError(OrderError):
    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Malformed input."

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **context):
        super().__init__(message, **context)
        if code:
            self.code = code


class NotAuthenticated(OrderError):
    code = "UNAUTHENTICATED"
    status_code = 401
    message = "A user id is required for this operation."


class PermissionDenied(OrderError):
    code = "FORBIDDEN"
    status_code = 403
    message = "The caller is not allowed to perform this operation."


class NotFound(OrderError):
    code = "NOT_FOUND"
    status_code = 404
    message = "The referenced resource does not exist."


class EmptyCart(OrderError):
    code = "EMPTY_CART"
    status_code = 422
    message = "There are no items to order."


class ProductUnavailable(OrderError):
    code = "PRODUCT_UNAVAILABLE"
    status_code = 422
    message = "A product is missing or no longer for sale."


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    status_code = 422
    message = "Not enough stock for the requested quantity."


class CouponInvalid(OrderError):
    code = "COUPON_INVALID"
    status_code = 422
    message = "The coupon code is unknown or disabled."


class CouponExpired(OrderError):
    code = "COUPON_EXPIRED"
    status_code = 422
    message = "The coupon has expired."


class CouponNotYetActive(OrderError):
    code = "COUPON_NOT_YET_ACTIVE"
    status_code = 422
    message = "The coupon is not active yet."


class CouponExhausted(OrderError):
    code = "COUPON_EXHAUSTED"
    status_code = 422
    message = "The coupon has no usages left."


class MinimumAmountNotMet(OrderError):
    code = "MINIMUM_AMOUNT_NOT_MET"
    status_code = 422
    message = "The order subtotal is below the coupon minimum."


class IllegalTransition(OrderError):
    code = "ILLEGAL_TRANSITION"
    status_code = 409
    message = "The status change is not allowed from the current state."

    def __init__(self, from_status, to_status, message: Optional[str] = None, **context):
        super().__init__(message, **{"from": str(from_status), "to": str(to_status)}, **context)
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentModification(OrderError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    message = "The resource was modified concurrently; reload and retry."


class OrderNotPayable(OrderError):
    code = "ORDER_NOT_PAYABLE"
    status_code = 409
    message = "Payments can only be created for pending or confirmed orders."


class OrderAlreadyPaid(OrderError):
    code = "ORDER_ALREADY_PAID"
    status_code = 409
    message = "The order has already been paid."


class AddressNotUpdatable(OrderError):
    code = "ADDRESS_NOT_UPDATABLE"
    status_code = 409
    message = "The shipping address can only change while the order is pending or confirmed."


class PaymentAlreadyInProgress(OrderError):
    code = "PAYMENT_IN_PROGRESS"
    status_code = 409
    message = "Another payment for this order is pending or processing."


class PaymentAmountMismatch(OrderError):
    code = "PAYMENT_AMOUNT_MISMATCH"
    status_code = 422
    message = "The payment amount must equal the order total."


class PaymentNotCompleted(OrderError):
    code = "PAYMENT_NOT_COMPLETED"
    status_code = 409
    message = "Only paid orders can be refunded."


class RefundExceedsOrderTotal(OrderError):
    code = "REFUND_EXCEEDS_ORDER_TOTAL"
    status_code = 422
    message = "The refund amount is larger than the order total."


class RefundExceedsRemaining(OrderError):
    code = "REFUND_EXCEEDS_REMAINING"
    status_code = 422
    message = "The refund amount is larger than what is left to refund."


class OrderCreationFailed(OrderError):
    code = "ORDER_CREATION_FAILED"
    status_code = 500
    message = "The order could not be created."


class RefundFailed(OrderError):
    code = "REFUND_FAILED"
    status_code = 500
    message = "The refund could not be recorded."


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409
    message = "The idempotency key was already used with another payload."


class UpstreamUnavailable(OrderError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    message = "A downstream ledger is unavailable."


class CompensationFailure(RuntimeError):
    """A rollback step failed and left state that needs manual reconciliation."""

    code = "COMPENSATION_FAILURE"
    status_code = 500

    def __init__(self, step: str, order_id=None, cause: Optional[str] = None, **context):
        super().__init__(self.code)
        self.step = step
        self.order_id = order_id
        self.cause = cause
        self.context = context

    def __str__(self) -> str:
        return self.code

    def to_dict(self) -> dict:
        return {
            "detail": self.code,
            "message": "A rollback step failed; the order needs manual reconciliation.",
            "step": self.step,
            "order_id": str(self.order_id) if self.order_id is not None else None,
            **self.context,
        }


COUPON_ERRORS = {
    cls.code: cls
    for cls in (CouponInvalid, CouponExpired, CouponNotYetActive, CouponExhausted, MinimumAmountNotMet)
}
