"""Lifecycle tests: admin transitions, cancellation, tracking and payments.

Orders are created through the checkout so every test starts from a real,
reserved order; assertions then cover both the order row and the ledgers.
"""
import re

import pytest

from apps.orders.checkout import CheckoutRequest
from apps.orders.domain import (
    CartLine,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from apps.orders.errors import (
    AddressNotUpdatable,
    CompensationFailure,
    ConcurrentModification,
    IllegalTransition,
    NotFound,
    OrderAlreadyPaid,
    OrderNotPayable,
    OrderValidationError,
    PaymentAlreadyInProgress,
    PaymentAmountMismatch,
    PermissionDenied,
)


@pytest.fixture
def place(service, customer, products, address):
    def _place(lines=((1, 2),), actor=None, coupon_code=None):
        req = CheckoutRequest(
            shipping_address=address,
            billing_address=address,
            items=[CartLine(pid, qty) for pid, qty in lines],
            coupon_code=coupon_code,
        )
        return service.place_order(actor or customer, req)
    return _place


def advance(service, admin, order, *statuses):
    for s in statuses:
        order = service.update_status(admin, order.id, s).order
    return order


# ---- admin status updates ----

@pytest.mark.django_db
def test_admin_walks_the_happy_path(service, admin, place):
    order = place()
    order = advance(service, admin, order, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    assert order.shipped_at is not None
    order = advance(service, admin, order, OrderStatus.DELIVERED)
    assert order.status == OrderStatus.DELIVERED
    assert order.delivered_at is not None


@pytest.mark.django_db
@pytest.mark.parametrize("target", [OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.PENDING])
def test_skips_are_rejected(service, admin, place, target):
    order = place()
    with pytest.raises(IllegalTransition):
        service.update_status(admin, order.id, target)
    assert service.get_order(admin, order.id).status == OrderStatus.PENDING


@pytest.mark.django_db
def test_reversal_is_rejected(service, admin, place):
    order = advance(service, admin, place(), OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
    with pytest.raises(IllegalTransition):
        service.update_status(admin, order.id, OrderStatus.CONFIRMED)


@pytest.mark.django_db
def test_customer_cannot_update_status(service, customer, place):
    order = place()
    with pytest.raises(PermissionDenied):
        service.update_status(customer, order.id, OrderStatus.CONFIRMED)


@pytest.mark.django_db
def test_admin_notes_are_appended(service, admin, place):
    order = place()
    order = service.update_status(admin, order.id, OrderStatus.CONFIRMED, notes="called customer").order
    order = service.update_status(admin, order.id, OrderStatus.PROCESSING, notes="picked").order
    assert order.admin_notes == "called customer\npicked"


@pytest.mark.django_db
def test_unknown_order(service, admin):
    with pytest.raises(NotFound):
        service.update_status(admin, "00000000-0000-0000-0000-000000000000", OrderStatus.CONFIRMED)


@pytest.mark.django_db
def test_stale_write_raises_concurrent_modification(service, admin, place):
    order = place()
    service.update_status(admin, order.id, OrderStatus.CONFIRMED)
    with pytest.raises(ConcurrentModification):
        service.orders.update(order.id, expected_status=OrderStatus.PENDING, status=OrderStatus.CANCELLED)


# ---- cancellation ----

@pytest.mark.django_db
def test_cancel_restores_stock_and_coupon(service, customer, products, coupons, percent_coupon, place):
    order = place(coupon_code="SAVE20")
    assert products.stock_of(1) == 8
    assert coupons.used_count(percent_coupon.id) == 1

    result = service.cancel_order(customer, order.id, "changed my mind")

    assert result.order.status == OrderStatus.CANCELLED
    assert result.failed_effects == []
    assert products.stock_of(1) == 10
    assert coupons.used_count(percent_coupon.id) == 0
    assert ("decrement", percent_coupon.id, f"{order.order_number}:usage:decrement") in coupons.calls
    assert "Cancelled by customer: changed my mind" in result.order.admin_notes


@pytest.mark.django_db
def test_second_cancel_releases_nothing(service, customer, products, place):
    order = place()
    service.cancel_order(customer, order.id)
    with pytest.raises(IllegalTransition):
        service.cancel_order(customer, order.id)
    assert products.stock_of(1) == 10


@pytest.mark.django_db
def test_owner_cannot_cancel_after_processing(service, customer, admin, place):
    order = advance(service, admin, place(), OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
    with pytest.raises(IllegalTransition) as exc:
        service.cancel_order(customer, order.id)
    assert exc.value.context["reason"] == "NOT_CANCELLABLE_BY_CUSTOMER"

    result = service.cancel_order(admin, order.id, "warehouse damage")
    assert result.order.status == OrderStatus.CANCELLED


@pytest.mark.django_db
def test_shipped_order_cannot_be_cancelled(service, admin, place):
    order = advance(service, admin, place(), OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    with pytest.raises(IllegalTransition):
        service.cancel_order(admin, order.id)


@pytest.mark.django_db
def test_other_customer_cannot_cancel(service, other_customer, place):
    order = place()
    with pytest.raises(PermissionDenied):
        service.cancel_order(other_customer, order.id)


@pytest.mark.django_db
def test_failed_release_is_reported_not_rolled_back(service, customer, products, place, monkeypatch, caplog):
    order = place(lines=((1, 2), (2, 1)))

    def release(pid, qty):
        if pid == 1:
            raise RuntimeError("inventory down")
        return 0

    monkeypatch.setattr(products, "release", release)
    with caplog.at_level("ERROR", logger="orders.lifecycle"):
        result = service.cancel_order(customer, order.id)

    assert result.order.status == OrderStatus.CANCELLED
    assert [f["product_id"] for f in result.failed_effects] == [1]
    assert any(r.getMessage() == "stock release failed" for r in caplog.records)


# ---- tracking ----

@pytest.mark.django_db
def test_tracking_ships_confirmed_order_through_processing(service, admin, place):
    order = advance(service, admin, place(), OrderStatus.CONFIRMED)
    result = service.add_tracking(admin, order.id, " VN123 ")
    assert result.order.status == OrderStatus.SHIPPED
    assert result.order.tracking_number == "VN123"
    assert result.order.shipped_at is not None


@pytest.mark.django_db
def test_tracking_on_shipped_order_only_updates_number(service, admin, place):
    order = advance(service, admin, place(), OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
    first = service.add_tracking(admin, order.id, "VN1").order
    second = service.add_tracking(admin, order.id, "VN2").order
    assert second.status == OrderStatus.SHIPPED
    assert second.tracking_number == "VN2"
    assert second.shipped_at == first.shipped_at


@pytest.mark.django_db
def test_tracking_rejected_for_pending_order(service, admin, place):
    with pytest.raises(IllegalTransition):
        service.add_tracking(admin, place().id, "VN1")


@pytest.mark.django_db
def test_tracking_number_required(service, admin, place):
    with pytest.raises(OrderValidationError) as exc:
        service.add_tracking(admin, place().id, "  ")
    assert str(exc.value) == "TRACKING_NUMBER_REQUIRED"


# ---- payments ----

@pytest.mark.django_db
def test_payment_completion_confirms_and_pays_order(service, customer, system, place):
    order = place()
    created = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount)
    payment = created.payment
    assert payment.status == PaymentStatus.PENDING
    assert payment.payment_provider == "gateway_a"
    assert re.fullmatch(rf"ONLINE_GATEWAY_A-{order.order_number}-\d{{8}}-[A-Z0-9]{{6}}", payment.transaction_id)

    processing = service.process_payment(system, payment.id, PaymentStatus.PROCESSING)
    assert processing.order.payment_status == OrderPaymentStatus.PROCESSING

    done = service.process_payment(system, payment.id, PaymentStatus.COMPLETED, gateway_response={"auth": "ok"})
    assert done.payment.status == PaymentStatus.COMPLETED
    assert done.payment.processed_at is not None
    assert done.payment.gateway_response["auth"] == "ok"
    assert done.order.status == OrderStatus.CONFIRMED
    assert done.order.payment_status == OrderPaymentStatus.PAID


@pytest.mark.django_db
def test_payment_amount_must_match_total(service, customer, place):
    order = place()
    with pytest.raises(PaymentAmountMismatch) as exc:
        service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount - 1)
    assert exc.value.context == {"expected": order.total_amount, "received": order.total_amount - 1}


@pytest.mark.django_db
def test_only_one_payment_in_flight(service, customer, place):
    order = place()
    service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount)
    with pytest.raises(PaymentAlreadyInProgress):
        service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount)


@pytest.mark.django_db
def test_paid_order_rejects_new_payment(service, customer, system, place):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_B, order.total_amount).payment
    service.process_payment(system, p.id, PaymentStatus.PROCESSING)
    service.process_payment(system, p.id, PaymentStatus.COMPLETED)
    with pytest.raises(OrderAlreadyPaid):
        service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_B, order.total_amount)


@pytest.mark.django_db
def test_cancelled_order_is_not_payable(service, customer, place):
    order = place()
    service.cancel_order(customer, order.id)
    with pytest.raises(OrderNotPayable):
        service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount)


@pytest.mark.django_db
def test_failed_payment_needs_reason_then_allows_retry(service, customer, system, place):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount).payment

    with pytest.raises(OrderValidationError):
        service.process_payment(system, p.id, PaymentStatus.FAILED)

    failed = service.process_payment(system, p.id, PaymentStatus.FAILED, failure_reason="card declined")
    assert failed.payment.gateway_response["failure_reason"] == "card declined"
    assert failed.order.payment_status == OrderPaymentStatus.FAILED

    retry = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount)
    assert retry.order.payment_status == OrderPaymentStatus.PENDING


@pytest.mark.django_db
def test_owner_may_only_cancel_a_payment(service, customer, products, place):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount).payment

    with pytest.raises(PermissionDenied):
        service.process_payment(customer, p.id, PaymentStatus.COMPLETED)

    result = service.process_payment(customer, p.id, PaymentStatus.CANCELLED)
    assert result.payment.status == PaymentStatus.CANCELLED
    assert result.order.status == OrderStatus.CANCELLED
    assert result.order.payment_status == OrderPaymentStatus.CANCELLED
    assert products.stock_of(1) == 10


@pytest.mark.django_db
def test_illegal_payment_transition(service, customer, system, place):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount).payment
    with pytest.raises(IllegalTransition):
        service.process_payment(system, p.id, PaymentStatus.COMPLETED)


@pytest.mark.django_db
def test_payment_lookup_by_transaction_respects_ownership(service, customer, other_customer, place):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.BANK_TRANSFER, order.total_amount).payment
    assert service.get_payment_by_transaction(customer, p.transaction_id).id == p.id
    with pytest.raises(PermissionDenied):
        service.get_payment_by_transaction(other_customer, p.transaction_id)


@pytest.mark.django_db
def test_failed_attempt_cannot_resume_while_another_is_open(service, customer, system, place):
    order = place()
    first = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount).payment
    service.process_payment(system, first.id, PaymentStatus.FAILED, failure_reason="timeout")
    service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_B, order.total_amount)

    with pytest.raises(PaymentAlreadyInProgress):
        service.process_payment(system, first.id, PaymentStatus.PROCESSING)
    assert service.payments.get(first.id).status == PaymentStatus.FAILED


@pytest.mark.django_db
def test_later_attempts_do_not_unpay_a_paid_order(service, customer, system, place):
    order = place()
    first = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount).payment
    service.process_payment(system, first.id, PaymentStatus.FAILED, failure_reason="timeout")
    second = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_B, order.total_amount).payment
    service.process_payment(system, second.id, PaymentStatus.FAILED, failure_reason="declined")

    service.process_payment(system, first.id, PaymentStatus.PROCESSING)
    paid = service.process_payment(system, first.id, PaymentStatus.COMPLETED).order
    assert paid.payment_status == OrderPaymentStatus.PAID

    late = service.process_payment(system, second.id, PaymentStatus.PROCESSING)
    assert late.payment.status == PaymentStatus.PROCESSING
    assert late.order.payment_status == OrderPaymentStatus.PAID
    late = service.process_payment(system, second.id, PaymentStatus.FAILED, failure_reason="declined again")
    assert late.payment.status == PaymentStatus.FAILED

    order = service.get_order(customer, order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == OrderPaymentStatus.PAID


@pytest.mark.django_db
def test_lost_order_race_puts_payment_back(service, customer, system, place, monkeypatch):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount).payment
    service.process_payment(system, p.id, PaymentStatus.PROCESSING, transaction_id="GW-1")

    def raced(order_id, **kwargs):
        raise ConcurrentModification(resource="order", order_id=str(order_id))

    monkeypatch.setattr(service.orders, "update", raced)
    with pytest.raises(ConcurrentModification):
        service.process_payment(
            system, p.id, PaymentStatus.COMPLETED, transaction_id="GW-2", gateway_response={"auth": "ok"}
        )

    payment = service.payments.get(p.id)
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.transaction_id == "GW-1"
    assert payment.processed_at is None
    assert "auth" not in payment.gateway_response
    assert service.get_order(customer, order.id).payment_status == OrderPaymentStatus.PROCESSING


@pytest.mark.django_db
def test_failed_payment_revert_raises_compensation_failure(service, customer, system, place, monkeypatch, caplog):
    order = place()
    p = service.create_payment(customer, order.id, PaymentMethod.ONLINE_GATEWAY_A, order.total_amount).payment
    service.process_payment(system, p.id, PaymentStatus.PROCESSING)

    def raced(order_id, **kwargs):
        raise ConcurrentModification(resource="order", order_id=str(order_id))

    forward = service.payments.update
    calls = {"n": 0}

    def flaky_update(payment_id, **kwargs):
        calls["n"] += 1
        if calls["n"] > 1:
            raise RuntimeError("db gone")
        return forward(payment_id, **kwargs)

    monkeypatch.setattr(service.orders, "update", raced)
    monkeypatch.setattr(service.payments, "update", flaky_update)
    with caplog.at_level("CRITICAL", logger="orders.lifecycle"):
        with pytest.raises(CompensationFailure) as exc:
            service.process_payment(system, p.id, PaymentStatus.COMPLETED)
    assert exc.value.step == "revert_payment_status"
    assert exc.value.context["payment_id"] == str(p.id)
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


# ---- shipping address ----

NEW_ADDRESS = {
    "first_name": "Minh",
    "last_name": "Tran",
    "address_line_1": "5 Le Loi",
    "city": "Hue",
    "state": "TTH",
    "postal_code": "530000",
    "country": "VN",
}


@pytest.mark.django_db
@pytest.mark.parametrize("statuses", [(), (OrderStatus.CONFIRMED,)])
def test_owner_updates_address_before_processing(service, customer, admin, place, address, statuses):
    order = advance(service, admin, place(), *statuses)
    updated = service.update_shipping_address(customer, order.id, NEW_ADDRESS)
    assert updated.shipping_address == NEW_ADDRESS
    assert updated.billing_address == address
    assert updated.status == order.status


@pytest.mark.django_db
@pytest.mark.parametrize("statuses", [
    (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
    (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED),
    (OrderStatus.CANCELLED,),
])
def test_address_frozen_once_processing(service, customer, admin, place, address, statuses):
    order = advance(service, admin, place(), *statuses)
    with pytest.raises(AddressNotUpdatable):
        service.update_shipping_address(customer, order.id, NEW_ADDRESS)
    with pytest.raises(AddressNotUpdatable):
        service.update_shipping_address(admin, order.id, NEW_ADDRESS)
    assert service.get_order(customer, order.id).shipping_address == address


@pytest.mark.django_db
def test_address_update_respects_ownership(service, customer, other_customer, admin, place):
    order = place()
    with pytest.raises(PermissionDenied):
        service.update_shipping_address(other_customer, order.id, NEW_ADDRESS)
    assert service.update_shipping_address(admin, order.id, NEW_ADDRESS).shipping_address == NEW_ADDRESS


# ---- listing ----

@pytest.mark.django_db
def test_customers_only_list_their_own_orders(service, customer, other_customer, admin, place):
    place()
    place(actor=other_customer)

    count, _, orders = service.list_orders(customer, user_id="user-2")
    assert count == 1
    assert orders[0].user_id == "user-1"

    count, _, _ = service.list_orders(admin)
    assert count == 2
    count, _, _ = service.list_orders(admin, status="cancelled")
    assert count == 0
