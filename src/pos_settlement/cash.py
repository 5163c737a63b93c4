"""Cash change computation in integer cents."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, Tuple

from . import log
from .constants import EURO_DENOMINATIONS
from .errors import ValidationError
from .models import to_money


@dataclass(frozen=True)
class DenominationCount:
    denomination: Decimal
    count: int


@dataclass(frozen=True)
class CashBreakdown:
    """Change owed to the customer and the notes/coins that make it up."""

    change: Decimal
    counts: Tuple[DenominationCount, ...]

    @property
    def pieces(self) -> int:
        return sum(entry.count for entry in self.counts)


def to_cents(amount: Decimal) -> int:
    """Convert a monetary amount into integer minor units."""

    return int(to_money(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return to_money(Decimal(cents) / 100)


def require_sufficient_tender(due: Decimal, tendered: Decimal) -> None:
    """Raise :class:`ValidationError` when ``tendered`` does not cover ``due``."""

    if to_cents(tendered) < to_cents(due):
        log.warning("Cash tender %s does not cover amount due %s", tendered, due)
        raise ValidationError(f"Amount tendered ({tendered}) is below amount due ({due})")


def breakdown(
    due: Decimal,
    tendered: Decimal,
    denominations: Sequence[Decimal] = EURO_DENOMINATIONS,
) -> CashBreakdown:
    """Compute change for a cash payment using the greedy algorithm.

    Denominations are visited largest first and only those actually used are
    reported. All arithmetic runs in cents so the counts always sum exactly to
    the change.

    Args:
        due (Decimal): Amount the customer owes.
        tendered (Decimal): Cash handed over.
        denominations (Sequence[Decimal]): Available notes and coins, in any
            order.

    Returns:
        CashBreakdown: Change amount and per-denomination counts.

    Raises:
        ValidationError: If ``tendered`` is below ``due`` or a denomination is
            not a positive whole number of cents.
    """

    require_sufficient_tender(due, tendered)
    values = [Decimal(str(value)) for value in denominations]
    if any(to_cents(value) != value * 100 for value in values):
        raise ValidationError("Denominations must be whole cents")
    denomination_cents = sorted({to_cents(value) for value in values}, reverse=True)
    if not denomination_cents or denomination_cents[-1] <= 0:
        raise ValidationError("Denominations must be positive amounts")

    change_cents = to_cents(tendered) - to_cents(due)
    remaining = change_cents
    counts = []
    for value in denomination_cents:
        count, remaining = divmod(remaining, value)
        if count:
            counts.append(DenominationCount(denomination=from_cents(value), count=count))

    if remaining:
        # Only reachable when the smallest denomination is above one cent.
        log.warning("Change of %s cannot be paid exactly; %d cents left over", from_cents(change_cents), remaining)
    return CashBreakdown(change=from_cents(change_cents), counts=tuple(counts))
