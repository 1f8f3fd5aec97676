"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the ledger ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (inventory, coupons) to avoid
    hammering unhealthy dependencies, with HALF_OPEN probing after a timeout.
- Retry with exponential backoff for transport errors and 5xx, applied only
    to reads (product lookup, coupon validation). Reservations, releases and
    usage changes are sent exactly once: retrying them blindly could take
    stock or a coupon slot twice.
- Coupon idempotency: usage changes carry an ``Idempotency-Key`` header so
    the coupons service can de-duplicate them.

Business rejections from the ledgers are mapped onto the domain errors;
transport failures and an open circuit surface as ``UpstreamUnavailable``.
"""

import logging
import threading
import time
from typing import Dict, Optional, Sequence

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import CouponPort, CouponQuote, CouponSnapshot, CouponType, InventoryPort, ProductSnapshot
from .errors import (
    COUPON_ERRORS,
    CouponExhausted,
    IdempotencyConflict,
    InsufficientStock,
    NotFound,
    ProductUnavailable,
    UpstreamUnavailable,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")
logger = logging.getLogger("orders.http")


# ---------------- Circuit Breaker ---------------- #

class CircuitOpen(RuntimeError):
    pass


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpen: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpen("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                # allow only one concurrent probe
                if self._half_open_probe_in_flight:
                    raise CircuitOpen("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False

    def reset(self):
        self.on_success()


# Per-service instances
_inventory_cb = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_coupons_cb = CircuitBreaker(
    "coupons",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


def circuit_states() -> Dict[str, str]:
    """Breaker state per downstream service, for the health endpoint."""
    return {cb.name: cb.state for cb in (_inventory_cb, _coupons_cb)}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Reads the request id from the ContextVar populated by middleware and
    adds it as ``X-Request-ID`` when present.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _body(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _detail(resp) -> dict:
    """Unwrap FastAPI's ``{"detail": {...}}`` envelope when present."""
    data = _body(resp)
    inner = data.get("detail")
    if isinstance(inner, dict):
        return inner
    return data


class _LedgerClient:
    """Shared request loop for the ledger clients."""

    breaker: CircuitBreaker
    business_statuses = frozenset({404, 409, 422})

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 2.0)

    def _post(self, path: str, payload: dict, *, retry: bool, extra_headers: Optional[dict] = None):
        """POST ``payload`` and return the response for 2xx and business statuses.

        Args:
            path: Path below ``base_url``.
            payload: JSON body.
            retry: Whether transport errors and 5xx may be retried.
            extra_headers: Headers added to the request-id header.

        Raises:
            UpstreamUnavailable: Circuit open, transport failure or an
                unexpected status after the allowed attempts.
        """
        max_retries, backoff = _retry_policy()
        attempts = 1 + (max_retries if retry else 0)
        tries = 0

        try:
            state = self.breaker.before_call()
        except CircuitOpen as e:
            raise UpstreamUnavailable(service=self.breaker.name, reason=str(e)) from e

        headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(extra_headers or {})})
        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.post(f"{self.base_url}{path}", json=payload, headers=headers)
                        if 200 <= resp.status_code < 300 or resp.status_code in self.business_statuses:
                            # business rejections are not circuit failures
                            self.breaker.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= attempts or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        logger.error(
                            "ledger call failed",
                            extra={
                                "service": self.breaker.name,
                                "path": path,
                                "tries": tries,
                                "status": getattr(resp, "status_code", None),
                                "error": repr(exc) if exc else None,
                            },
                        )
                        raise UpstreamUnavailable(
                            service=self.breaker.name,
                            status=getattr(resp, "status_code", None),
                        ) from exc

                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    time.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(_LedgerClient, InventoryPort):
    """HTTP client for the inventory service with retry and circuit breaker."""

    breaker = _inventory_cb

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(base_url or settings.INVENTORY_BASE_URL, timeout)

    def get_products(self, product_ids: Sequence[int]) -> Dict[int, ProductSnapshot]:
        resp = self._post("/products/lookup", {"ids": list(product_ids)}, retry=True)
        products = {}
        for p in _body(resp).get("products", []):
            products[p["id"]] = ProductSnapshot(
                id=p["id"],
                name=p["name"],
                price=p["price"],
                stock_quantity=p["stock_quantity"],
                is_active=p["is_active"],
                sku=p.get("sku"),
            )
        return products

    def reserve(self, product_id: int, quantity: int) -> int:
        """Reserve stock; the request is sent once.

        Maps 422 ``INSUFFICIENT_STOCK`` to ``InsufficientStock`` and 422
        ``PRODUCT_INACTIVE`` or 404 to ``ProductUnavailable``.
        """
        resp = self._post("/reserve", {"product_id": product_id, "quantity": quantity}, retry=False)
        if resp.status_code == 200:
            return _body(resp)["stock_quantity"]
        detail = _detail(resp)
        if resp.status_code == 422 and detail.get("detail") == "INSUFFICIENT_STOCK":
            raise InsufficientStock(
                product_id=product_id, requested=quantity, available=detail.get("available")
            )
        raise ProductUnavailable(product_id=product_id)

    def release(self, product_id: int, quantity: int) -> int:
        resp = self._post("/release", {"product_id": product_id, "quantity": quantity}, retry=False)
        if resp.status_code == 200:
            return _body(resp)["stock_quantity"]
        raise NotFound(resource="product", product_id=product_id)


# ---------------- Coupons Adapter ---------------- #

class HttpCouponClient(_LedgerClient, CouponPort):
    """HTTP client for the coupons service with retry and circuit breaker."""

    breaker = _coupons_cb

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(base_url or settings.COUPONS_BASE_URL, timeout)

    def validate_and_price(self, code: str, subtotal: int) -> CouponQuote:
        resp = self._post("/coupons/validate", {"code": code, "subtotal": subtotal}, retry=True)
        if resp.status_code == 200:
            data = _body(resp)
            c = data["coupon"]
            coupon = CouponSnapshot(
                id=c["id"],
                code=c["code"],
                type=CouponType(c["type"]),
                value=c["value"],
                minimum_amount=c.get("minimum_amount"),
                maximum_discount=c.get("maximum_discount"),
                usage_limit=c.get("usage_limit"),
                used_count=c.get("used_count", 0),
                is_active=c.get("is_active", True),
            )
            return CouponQuote(coupon=coupon, discount=data["discount"])
        detail = dict(_detail(resp))
        code_ = detail.pop("detail", "COUPON_INVALID")
        raise COUPON_ERRORS.get(code_, COUPON_ERRORS["COUPON_INVALID"])(**detail)

    def increment_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        return self._usage(coupon_id, "increment", idempotency_key)

    def decrement_usage(self, coupon_id: int, idempotency_key: Optional[str] = None) -> int:
        return self._usage(coupon_id, "decrement", idempotency_key)

    def _usage(self, coupon_id: int, op: str, idempotency_key: Optional[str]) -> int:
        extras = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = self._post(f"/coupons/{coupon_id}/usage/{op}", {}, retry=False, extra_headers=extras)
        if resp.status_code == 200:
            return _body(resp)["used_count"]
        detail = _detail(resp)
        if resp.status_code == 404:
            raise NotFound(resource="coupon", coupon_id=coupon_id)
        if detail.get("detail") == "IDEMPOTENCY_CONFLICT":
            raise IdempotencyConflict(coupon_id=coupon_id)
        raise CouponExhausted(coupon_id=coupon_id, usage_limit=detail.get("usage_limit"))
