"""Enumerations shared across the settlement engine.

Centralises domain constants so that the workbook data layer, the pricing and
checkout rules, and the CLI rely on a single source of truth for identifiers
that end up persisted in the master workbook.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

DEFAULT_RECEIPT_PREFIX = "BE"

# Euro cash series, largest first.
EURO_DENOMINATIONS: tuple[Decimal, ...] = tuple(
    Decimal(value)
    for value in (
        "500", "200", "100", "50", "20", "10", "5", "2", "1",
        "0.50", "0.20", "0.10", "0.05", "0.02", "0.01",
    )
)


class PromotionKind(str, Enum):
    """Enumerate the promotion variants understood by the pricing engine."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    BUY_X_GET_Y = "buyXgetY"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for a checkout."""

    CASH = "cash"
    CARD = "card"


class MovementKind(str, Enum):
    """Enumerate the kinds of stock movement recorded in the ledger."""

    SALE_DECREMENT = "sale-decrement"
    MANUAL_ADJUSTMENT = "manual-adjustment"
    LOSS = "loss"
    INVENTORY_COUNT = "inventory-count"


class CheckoutState(str, Enum):
    """Enumerate the phases a checkout attempt moves through."""

    OPEN = "open"
    VALIDATING = "validating"
    PRICING = "pricing"
    PERSISTING = "persisting"
    SETTLING_STOCK = "settling-stock"
    COMPLETE = "complete"
    ABORTED = "aborted"


class OutboxStatus(str, Enum):
    """Enumerate the lifecycle of a pending stock movement intent."""

    PENDING = "pending"
    APPLIED = "applied"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    PROMOTIONS = "Promotions"
    LOYALTY_TIERS = "LoyaltyTiers"
    LOYALTY_CARDS = "LoyaltyCards"
    SALES = "Sales"
    SALE_LINES = "SaleLines"
    STOCK_MOVEMENTS = "StockMovements"
    OUTBOX = "Outbox"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_RECEIPT_PREFIX",
    "EURO_DENOMINATIONS",
    "PromotionKind",
    "PaymentMethod",
    "MovementKind",
    "CheckoutState",
    "OutboxStatus",
    "SheetName",
]
