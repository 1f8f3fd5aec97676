from django.urls import path
from .views import OrdersPingView, OrdersCollectionView, RetrieveOrderView
from .views import CancelOrderView, OrderPaymentsView, OrderStatusView, RefundView, ShippingAddressView, TrackingView
from .views import PaymentByTransactionView, PaymentStatusView, PricingPreviewView
app_name = "orders"

urlpatterns = [
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("orders/<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("orders/<uuid:oid>/tracking/", TrackingView.as_view(), name="orders-tracking"),
    path("orders/<uuid:oid>/shipping-address/", ShippingAddressView.as_view(), name="orders-shipping-address"),
    path("orders/<uuid:oid>/payments/", OrderPaymentsView.as_view(), name="orders-payments"),
    path("orders/<uuid:oid>/refunds/", RefundView.as_view(), name="orders-refunds"),
    path("payments/<uuid:pid>/status/", PaymentStatusView.as_view(), name="payments-status"),
    path("payments/by-transaction/<str:tx>/", PaymentByTransactionView.as_view(), name="payments-by-transaction"),
    path("pricing/preview/", PricingPreviewView.as_view(), name="pricing-preview"),
]
