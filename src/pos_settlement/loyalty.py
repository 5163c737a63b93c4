"""Loyalty discount and points rules."""

from __future__ import annotations

from dataclasses import replace
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Sequence

from . import log
from .errors import ValidationError
from .models import LoyaltyCard, LoyaltyTier


DEFAULT_TIERS: tuple[LoyaltyTier, ...] = (
    LoyaltyTier("bronze", 0, Decimal("5"), Decimal("1")),
    LoyaltyTier("silver", 1000, Decimal("10"), Decimal("1.2")),
    LoyaltyTier("gold", 3000, Decimal("15"), Decimal("1.5")),
    LoyaltyTier("platinum", 5000, Decimal("20"), Decimal("2")),
)


def ordered_tiers(tiers: Sequence[LoyaltyTier]) -> list[LoyaltyTier]:
    """Return ``tiers`` sorted by ascending ``minimum_points``."""

    return sorted(tiers, key=lambda tier: tier.minimum_points)


def find_tier(tiers: Sequence[LoyaltyTier], name: str) -> Optional[LoyaltyTier]:
    for tier in tiers:
        if tier.name == name:
            return tier
    return None


def tier_for_points(tiers: Sequence[LoyaltyTier], points: int) -> LoyaltyTier:
    """Evaluate the points-to-tier step function.

    Raises:
        ValidationError: If ``tiers`` is empty.
    """

    ordered = ordered_tiers(tiers)
    if not ordered:
        raise ValidationError("Loyalty tier table is empty")
    selected = ordered[0]
    for tier in ordered:
        if points >= tier.minimum_points:
            selected = tier
    return selected


def discount_rate(tiers: Sequence[LoyaltyTier], card: Optional[LoyaltyCard]) -> Decimal:
    """Return the loyalty discount as a fraction in ``[0, 1)``.

    No card means no discount. A card whose tier name is not in ``tiers`` also
    yields zero; the mismatch is logged instead of raised.
    """

    if card is None:
        return Decimal("0")
    tier = find_tier(tiers, card.tier)
    if tier is None:
        log.warning("Loyalty card '%s' references unknown tier '%s'", card.card_id, card.tier)
        return Decimal("0")
    rate = tier.discount_percentage / Decimal("100")
    if not Decimal("0") <= rate < Decimal("1"):
        log.warning("Loyalty tier '%s' has out-of-range discount %s%%", tier.name, tier.discount_percentage)
        return Decimal("0")
    return rate


def points_earned(
    final_total: Decimal,
    card: Optional[LoyaltyCard],
    *,
    tiers: Sequence[LoyaltyTier] = (),
    apply_multiplier: bool = False,
) -> int:
    """Return whole points earned for a sale charged ``final_total``.

    Points are ``floor(final_total)``. The tier multiplier is only applied when
    ``apply_multiplier`` is set; by default it is ignored.
    """

    if card is None:
        return 0
    base = Decimal(final_total)
    if apply_multiplier:
        tier = find_tier(tiers, card.tier)
        if tier is not None:
            base = base * tier.points_multiplier
    return max(0, int(base.to_integral_value(rounding=ROUND_FLOOR)))


def new_card(card_id: str, tiers: Sequence[LoyaltyTier], *, customer_name: str = "") -> LoyaltyCard:
    """Create a card on the lowest tier with zero points."""

    lowest = ordered_tiers(tiers)[0] if tiers else None
    if lowest is None:
        raise ValidationError("Cannot issue a loyalty card without a tier table")
    return LoyaltyCard(card_id=card_id, tier=lowest.name, points=0, customer_name=customer_name)


def accrue_points(
    card: LoyaltyCard,
    points: int,
    *,
    tiers: Sequence[LoyaltyTier] = (),
    reevaluate_tier: bool = False,
) -> LoyaltyCard:
    """Return a copy of ``card`` credited with ``points``.

    The tier is left untouched unless ``reevaluate_tier`` is set.
    """

    if points < 0:
        raise ValidationError(f"Cannot accrue negative points: {points}")
    total_points = card.points + points
    tier = card.tier
    if reevaluate_tier:
        tier = tier_for_points(tiers, total_points).name
        if tier != card.tier:
            log.info("Loyalty card '%s' moved from tier '%s' to '%s'", card.card_id, card.tier, tier)
    return replace(card, points=total_points, tier=tier)
