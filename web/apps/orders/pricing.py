"""Order pricing.

Pure functions: no I/O, no ledger calls. ``compute`` is used both by the
checkout saga and by the price-preview endpoint.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .domain import CartLine, CouponSnapshot, CouponType, ProductSnapshot
from .errors import OrderValidationError, ProductUnavailable


@dataclass(frozen=True)
class PricedLine:
    product: ProductSnapshot
    quantity: int
    unit_price: int
    total_price: int


@dataclass(frozen=True)
class PriceBreakdown:
    lines: tuple
    subtotal: int
    discount: int
    tax: int
    shipping: int
    total: int


def discount_for(coupon: CouponSnapshot, subtotal: int) -> int:
    """Discount granted by ``coupon`` on ``subtotal``.

    Percentage coupons round down to the minor unit and are capped at
    ``maximum_discount`` when one is set; fixed-amount coupons never exceed
    the subtotal.
    """
    if coupon.type == CouponType.PERCENTAGE:
        discount = subtotal * coupon.value // 100
        if coupon.maximum_discount is not None and discount > coupon.maximum_discount:
            discount = coupon.maximum_discount
        return discount
    return min(coupon.value, subtotal)


def compute(
    lines: Sequence[CartLine],
    products: Mapping[int, ProductSnapshot],
    coupon: Optional[CouponSnapshot] = None,
    tax_amount: int = 0,
    shipping_amount: int = 0,
) -> PriceBreakdown:
    """Price ``lines`` against catalog ``products``.

    Args:
        lines: Requested product ids and quantities.
        products: Catalog snapshots keyed by product id.
        coupon: Optional validated coupon.
        tax_amount: Externally supplied tax, added as is.
        shipping_amount: Externally supplied shipping fee, added as is.

    Returns:
        PriceBreakdown: Per-line prices and the order totals. ``total`` is
        ``subtotal + tax + shipping - discount`` clamped at zero.

    Raises:
        ProductUnavailable: If any referenced product is missing or
            inactive; nothing is priced in that case.
        OrderValidationError: On non-positive quantities or negative fees.
    """
    if tax_amount < 0 or shipping_amount < 0:
        raise OrderValidationError("Tax and shipping must not be negative.")

    priced = []
    subtotal = 0
    for line in lines:
        if line.quantity < 1:
            raise OrderValidationError("Quantity must be at least 1.", product_id=line.product_id)
        product = products.get(line.product_id)
        if product is None or not product.is_active:
            raise ProductUnavailable(product_id=line.product_id)
        total_price = line.quantity * product.price
        priced.append(PricedLine(product, line.quantity, product.price, total_price))
        subtotal += total_price

    discount = discount_for(coupon, subtotal) if coupon is not None else 0
    total = max(0, subtotal + tax_amount + shipping_amount - discount)
    return PriceBreakdown(
        lines=tuple(priced),
        subtotal=subtotal,
        discount=discount,
        tax=tax_amount,
        shipping=shipping_amount,
        total=total,
    )
