"""Promotion-aware line pricing.

Every function here is pure: given a product, its promotion, a quantity and
the moment the price is evaluated, it returns the amount charged for the line
before any loyalty discount. Promotions outside their validity window are
inert rather than errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Tuple

from . import log
from .models import (
    BuyXGetYPromotion,
    CartLine,
    FixedPromotion,
    PercentagePromotion,
    Product,
    Promotion,
    SaleLine,
    to_money,
)


HUNDRED = Decimal("100")


def payable_units(quantity: int, promotion: BuyXGetYPromotion) -> int:
    """Return how many of ``quantity`` units are charged under buy X get Y.

    Complete groups of ``buy + free`` units charge ``buy`` units each. In the
    trailing partial group the customer pays for up to ``buy`` units and the
    rest is free.
    """

    group = promotion.buy_quantity + promotion.get_free_quantity
    sets, remainder = divmod(quantity, group)
    return sets * promotion.buy_quantity + min(remainder, promotion.buy_quantity)


def line_amount(
    product: Product,
    promotion: Optional[Promotion],
    quantity: int,
    as_of: datetime,
) -> Decimal:
    """Compute the amount charged for ``quantity`` units of ``product``.

    Args:
        product (Product): Catalog product supplying the unit price.
        promotion (Promotion | None): Promotion to apply, usually
            ``product.promotion``.
        quantity (int): Number of units on the line.
        as_of (datetime): Moment used to evaluate the promotion window.

    Returns:
        Decimal: Non-negative amount quantized to cents.
    """

    full_price = product.unit_price * quantity
    if promotion is None or not promotion.is_active(as_of):
        return to_money(full_price)

    if isinstance(promotion, PercentagePromotion):
        amount = full_price * (Decimal("1") - promotion.value / HUNDRED)
    elif isinstance(promotion, FixedPromotion):
        amount = max(Decimal("0"), product.unit_price - promotion.value) * quantity
    elif isinstance(promotion, BuyXGetYPromotion):
        amount = payable_units(quantity, promotion) * product.unit_price
    else:
        raise TypeError(f"Unsupported promotion type: {type(promotion).__name__}")

    log.debug(
        "Applied %s promotion to '%s' x%d: %s -> %s",
        promotion.kind.value,
        product.product_id,
        quantity,
        full_price,
        amount,
    )
    return to_money(amount)


def price_lines(
    lines: Iterable[CartLine],
    products: Mapping[str, Product],
    as_of: datetime,
) -> Tuple[SaleLine, ...]:
    """Resolve every cart line into a priced :class:`SaleLine` snapshot."""

    priced = []
    for line in lines:
        product = products[line.product_ref]
        promotion = product.promotion
        active = promotion is not None and promotion.is_active(as_of)
        priced.append(
            SaleLine(
                product_ref=product.product_id,
                product_name=product.name,
                quantity=line.quantity,
                unit_price=product.unit_price,
                line_amount=line_amount(product, promotion, line.quantity, as_of),
                promotion_kind=promotion.kind if active else None,
            )
        )
    return tuple(priced)


def subtotal(lines: Iterable[SaleLine]) -> Decimal:
    """Sum line amounts; the result is the pre-loyalty subtotal."""

    return to_money(sum((line.line_amount for line in lines), Decimal("0")))


@dataclass(frozen=True)
class Quote:
    """Priced cart before persistence."""

    lines: Tuple[SaleLine, ...]
    subtotal: Decimal
    discount_rate: Decimal
    total: Decimal


def apply_discount(amount: Decimal, discount_rate: Decimal) -> Decimal:
    """Return ``amount * (1 - discount_rate)`` quantized to cents."""

    return to_money(amount * (Decimal("1") - discount_rate))
