"""Value types shared by the pricing, loyalty, ledger and checkout layers.

Everything persisted by the engine is modelled as a frozen dataclass so that a
``Sale`` or ``StockMovement`` cannot be edited once it has been handed to a
store. The only mutable type is :class:`CheckoutSession`, which the caller owns
and passes by reference into the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import ClassVar, Dict, List, Optional, Tuple, Union

from . import log
from .constants import CheckoutState, MovementKind, OutboxStatus, PaymentMethod, PromotionKind
from .errors import CheckoutStateError, ValidationError


CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    """Quantize ``value`` to cents using commercial rounding."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _promotion_amount(value: object, label: str) -> Decimal:
    """Convert a promotion value to a finite :class:`Decimal`."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"Promotion {label} is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Promotion {label} is not a finite number: {value!r}")
    return amount


def _promotion_count(value: object, label: str) -> int:
    amount = _promotion_amount(value, label)
    if amount != amount.to_integral_value():
        raise ValidationError(f"Promotion {label} must be a whole number: {value!r}")
    return int(amount)


class _TimedPromotion:
    """Mixin providing the inclusive validity window shared by all promotions."""

    start_time: datetime
    end_time: datetime

    def _require_window(self) -> None:
        if self.end_time < self.start_time:
            raise ValidationError(
                f"Promotion window ends ({self.end_time.isoformat()}) before it starts "
                f"({self.start_time.isoformat()})"
            )

    def is_active(self, as_of: datetime) -> bool:
        """Return whether ``as_of`` falls inside ``[start_time, end_time]``."""

        return self.start_time <= as_of <= self.end_time


@dataclass(frozen=True)
class PercentagePromotion(_TimedPromotion):
    """Percentage off the line, ``value`` in ``[0, 100]``."""

    value: Decimal
    start_time: datetime
    end_time: datetime
    promotion_id: str = ""
    description: str = ""
    kind: ClassVar[PromotionKind] = PromotionKind.PERCENTAGE

    def __post_init__(self) -> None:
        self._require_window()
        object.__setattr__(self, "value", _promotion_amount(self.value, "value"))
        if not Decimal("0") <= self.value <= Decimal("100"):
            raise ValidationError(f"Percentage promotion value out of range: {self.value}")


@dataclass(frozen=True)
class FixedPromotion(_TimedPromotion):
    """Fixed amount taken off every unit."""

    value: Decimal
    start_time: datetime
    end_time: datetime
    promotion_id: str = ""
    description: str = ""
    kind: ClassVar[PromotionKind] = PromotionKind.FIXED

    def __post_init__(self) -> None:
        self._require_window()
        object.__setattr__(self, "value", _promotion_amount(self.value, "value"))
        if self.value < Decimal("0"):
            raise ValidationError(f"Fixed promotion value must not be negative: {self.value}")


@dataclass(frozen=True)
class BuyXGetYPromotion(_TimedPromotion):
    """Buy ``buy_quantity`` units and receive ``get_free_quantity`` more free."""

    buy_quantity: int
    get_free_quantity: int
    start_time: datetime
    end_time: datetime
    promotion_id: str = ""
    description: str = ""
    kind: ClassVar[PromotionKind] = PromotionKind.BUY_X_GET_Y

    def __post_init__(self) -> None:
        self._require_window()
        object.__setattr__(self, "buy_quantity", _promotion_count(self.buy_quantity, "buy quantity"))
        object.__setattr__(self, "get_free_quantity", _promotion_count(self.get_free_quantity, "free quantity"))
        if self.buy_quantity <= 0 or self.get_free_quantity <= 0:
            raise ValidationError(
                "Buy X get Y promotion requires positive quantities "
                f"(buy={self.buy_quantity}, free={self.get_free_quantity})"
            )


Promotion = Union[PercentagePromotion, FixedPromotion, BuyXGetYPromotion]


@dataclass(frozen=True)
class Product:
    """Catalog view of a product as read by the engine."""

    product_id: str
    name: str
    unit_price: Decimal
    stock_on_hand: int
    low_stock_threshold: int = 0
    promotion: Optional[Promotion] = None

    def __post_init__(self) -> None:
        if self.unit_price < Decimal("0"):
            raise ValidationError(f"Unit price must be zero or positive for '{self.product_id}'")

    @property
    def is_low_on_stock(self) -> bool:
        return self.stock_on_hand <= self.low_stock_threshold


@dataclass(frozen=True)
class CartLine:
    """A product reference and the number of units requested."""

    product_ref: str
    quantity: int

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValidationError(f"Cart line quantity must be positive: {self.quantity}")


@dataclass(frozen=True)
class LoyaltyTier:
    """One step of the points-to-tier step function."""

    name: str
    minimum_points: int
    discount_percentage: Decimal
    points_multiplier: Decimal = Decimal("1")


@dataclass(frozen=True)
class LoyaltyCard:
    """Customer loyalty card; ``tier`` names one of the configured tiers."""

    card_id: str
    tier: str
    points: int = 0
    customer_name: str = ""

    def __post_init__(self) -> None:
        if self.points < 0:
            raise ValidationError(f"Loyalty points must not be negative: {self.points}")


_ALLOWED_TRANSITIONS: Dict[CheckoutState, Tuple[CheckoutState, ...]] = {
    CheckoutState.OPEN: (CheckoutState.VALIDATING,),
    CheckoutState.VALIDATING: (CheckoutState.PRICING, CheckoutState.ABORTED),
    CheckoutState.PRICING: (CheckoutState.PERSISTING,),
    CheckoutState.PERSISTING: (CheckoutState.SETTLING_STOCK, CheckoutState.ABORTED),
    CheckoutState.SETTLING_STOCK: (CheckoutState.COMPLETE,),
    CheckoutState.COMPLETE: (CheckoutState.OPEN,),
    CheckoutState.ABORTED: (CheckoutState.OPEN,),
}

_ABANDONABLE = (
    CheckoutState.OPEN,
    CheckoutState.VALIDATING,
    CheckoutState.PRICING,
    CheckoutState.ABORTED,
)


@dataclass
class CheckoutSession:
    """Cart plus loyalty selection owned by the caller for one checkout.

    Lines keep insertion order. Setting a quantity to zero or below removes the
    line, so a non-positive quantity is never handed to the orchestrator.
    """

    lines: List[CartLine] = field(default_factory=list)
    loyalty_card: Optional[LoyaltyCard] = None
    state: CheckoutState = CheckoutState.OPEN

    def _require_editable(self) -> None:
        if self.state not in (CheckoutState.OPEN, CheckoutState.ABORTED):
            raise CheckoutStateError(f"Cart cannot be edited while checkout is {self.state.value}")

    def _index_of(self, product_ref: str) -> Optional[int]:
        for index, line in enumerate(self.lines):
            if line.product_ref == product_ref:
                return index
        return None

    def add_item(self, product_ref: str, quantity: int = 1) -> None:
        index = self._index_of(product_ref)
        current = self.lines[index].quantity if index is not None else 0
        self.set_quantity(product_ref, current + quantity)

    def set_quantity(self, product_ref: str, quantity: int) -> None:
        self._require_editable()
        index = self._index_of(product_ref)
        if quantity <= 0:
            if index is not None:
                del self.lines[index]
            return
        line = CartLine(product_ref=product_ref, quantity=quantity)
        if index is None:
            self.lines.append(line)
        else:
            self.lines[index] = line

    def remove_item(self, product_ref: str) -> None:
        self.set_quantity(product_ref, 0)

    def select_loyalty_card(self, card: Optional[LoyaltyCard]) -> None:
        self._require_editable()
        self.loyalty_card = card

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def transition(self, target: CheckoutState) -> None:
        """Move to ``target`` or raise :class:`CheckoutStateError`."""

        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise CheckoutStateError(
                f"Checkout cannot move from '{self.state.value}' to '{target.value}'"
            )
        log.debug("Checkout session %s -> %s", self.state.value, target.value)
        self.state = target

    def clear(self) -> None:
        """Empty the cart and loyalty selection after a completed checkout."""

        if self.state == CheckoutState.COMPLETE:
            self.transition(CheckoutState.OPEN)
        self._require_editable()
        self.lines.clear()
        self.loyalty_card = None

    def abandon(self) -> None:
        """Drop the checkout attempt; only legal before the Sale is persisted."""

        if self.state not in _ABANDONABLE:
            raise CheckoutStateError(
                f"Checkout cannot be abandoned once it is {self.state.value}"
            )
        self.lines.clear()
        self.loyalty_card = None
        self.state = CheckoutState.OPEN


@dataclass(frozen=True)
class SaleLine:
    """Snapshot of a cart line with its resolved price."""

    product_ref: str
    product_name: str
    quantity: int
    unit_price: Decimal
    line_amount: Decimal
    promotion_kind: Optional[PromotionKind] = None


@dataclass(frozen=True)
class Sale:
    """Immutable record of a settled checkout; ``sale_id`` is the receipt number."""

    sale_id: str
    timestamp: datetime
    lines: Tuple[SaleLine, ...]
    subtotal: Decimal
    discount_rate: Decimal
    total: Decimal
    payment_method: PaymentMethod
    amount_tendered: Decimal
    change_given: Decimal
    employee_id: str
    loyalty_card_ref: Optional[str] = None
    points_earned: Optional[int] = None


@dataclass(frozen=True)
class MovementRequest:
    """Instruction handed to the catalog store to append one movement."""

    product_ref: str
    quantity_delta: int
    kind: MovementKind
    reason: str
    attributed_to: str
    prior_stock: int
    reference: Optional[str] = None

    @property
    def resulting_stock(self) -> int:
        return self.prior_stock + self.quantity_delta


@dataclass(frozen=True)
class StockMovement:
    """Append-only record of one inventory quantity change."""

    movement_id: str
    timestamp: datetime
    product_ref: str
    quantity_delta: int
    kind: MovementKind
    reason: str
    attributed_to: str
    prior_stock: int
    resulting_stock: int
    reference: Optional[str] = None


@dataclass(frozen=True)
class MovementIntent:
    """Outbox entry describing a stock decrement owed by a committed Sale."""

    sale_id: str
    product_ref: str
    quantity_delta: int
    expected_stock: int
    attributed_to: str
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.sale_id, self.product_ref)


@dataclass(frozen=True)
class Receipt:
    """Receipt data handed downstream for rendering."""

    sale: Sale
    business_name: str
    address: str
    phone: str
    email: str
    vat_number: str
    business_id: str


__all__ = [
    "CENT",
    "to_money",
    "PercentagePromotion",
    "FixedPromotion",
    "BuyXGetYPromotion",
    "Promotion",
    "Product",
    "CartLine",
    "LoyaltyTier",
    "LoyaltyCard",
    "CheckoutSession",
    "SaleLine",
    "Sale",
    "MovementRequest",
    "StockMovement",
    "MovementIntent",
    "Receipt",
]
