"""Store contracts consumed by the engine and their workbook implementations.

The engine only talks to stores through the protocols below. Writes follow a
"``None`` on failure" contract: a store logs what went wrong and returns
``None`` so callers can tell a failed write from a successful one without
catching storage-specific exceptions.

The workbook stores operate on an in-memory ``openpyxl`` workbook; saving it
to disk is the caller's responsibility (see :func:`core_logic.persist_context`).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import OutboxStatus, SheetName
from .models import LoyaltyCard, LoyaltyTier, MovementIntent, MovementRequest, Product, Sale, StockMovement


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class CatalogStore(Protocol):
    """Read products and append stock movements."""

    async def get_product(self, product_id: str) -> Optional[Product]: ...

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]: ...

    async def adjust_stock(self, request: MovementRequest) -> Optional[StockMovement]: ...

    async def find_movement(self, product_ref: str, reference: str) -> Optional[StockMovement]: ...

    async def list_movements(self, product_ref: Optional[str] = None) -> List[StockMovement]: ...


class SaleStore(Protocol):
    """Persist sales together with their pending stock movement intents."""

    async def add_sale(self, draft: Sale, intents: Sequence[MovementIntent]) -> Optional[Sale]: ...

    async def pending_intents(self, sale_id: Optional[str] = None) -> List[MovementIntent]: ...

    async def update_intent(self, intent: MovementIntent) -> Optional[MovementIntent]: ...


class LoyaltyStore(Protocol):
    """Read the tier table and persist loyalty card balances."""

    async def list_tiers(self) -> List[LoyaltyTier]: ...

    async def get_card(self, card_id: str) -> Optional[LoyaltyCard]: ...

    async def save_card(self, card: LoyaltyCard) -> Optional[LoyaltyCard]: ...


def generate_movement_id(*, prefix: str = "M", when: Optional[datetime] = None) -> str:
    """Generate a sortable movement identifier.

    The timestamp part keeps identifiers in chronological order; a short random
    suffix separates movements written within the same microsecond.
    """

    when = when or utc_now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"


class WorkbookCatalogStore:
    """:class:`CatalogStore` backed by the ``Products`` and ``StockMovements`` sheets."""

    def __init__(self, workbook: Workbook, *, clock: Clock = utc_now) -> None:
        self._workbook = workbook
        self._clock = clock

    async def get_product(self, product_id: str) -> Optional[Product]:
        for product in data_manager.iter_products(self._workbook):
            if product.product_id == product_id:
                return product
        log.debug("Product '%s' not found in workbook", product_id)
        return None

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        wanted = set(product_ids)
        return {
            product.product_id: product
            for product in data_manager.iter_products(self._workbook)
            if product.product_id in wanted
        }

    async def adjust_stock(self, request: MovementRequest) -> Optional[StockMovement]:
        timestamp = self._clock()
        movement = StockMovement(
            movement_id=generate_movement_id(when=timestamp),
            timestamp=timestamp,
            product_ref=request.product_ref,
            quantity_delta=request.quantity_delta,
            kind=request.kind,
            reason=request.reason,
            attributed_to=request.attributed_to,
            prior_stock=request.prior_stock,
            resulting_stock=request.resulting_stock,
            reference=request.reference,
        )
        try:
            row_index = data_manager.locate_row(
                self._workbook, SheetName.PRODUCTS.value, "ProductID", request.product_ref
            )
            if row_index is None:
                raise KeyError(f"Product not found: {request.product_ref}")
            data_manager.update_cells(
                self._workbook,
                SheetName.PRODUCTS.value,
                row_index,
                {"StockOnHand": movement.resulting_stock},
            )
            data_manager.append_movement(self._workbook, movement)
        except (KeyError, ValueError, TypeError) as exc:
            log.error("Unable to write stock movement for '%s': %s", request.product_ref, exc)
            return None
        return movement

    async def find_movement(self, product_ref: str, reference: str) -> Optional[StockMovement]:
        for movement in data_manager.iter_movements(self._workbook):
            if movement.product_ref == product_ref and movement.reference == reference:
                return movement
        return None

    async def list_movements(self, product_ref: Optional[str] = None) -> List[StockMovement]:
        return [
            movement
            for movement in data_manager.iter_movements(self._workbook)
            if product_ref is None or movement.product_ref == product_ref
        ]


class WorkbookSaleStore:
    """:class:`SaleStore` backed by the ``Sales``, ``SaleLines`` and ``Outbox`` sheets."""

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook

    async def add_sale(self, draft: Sale, intents: Sequence[MovementIntent]) -> Optional[Sale]:
        """Append the Sale, its lines and its outbox intents in one step."""

        try:
            if data_manager.locate_row(self._workbook, SheetName.SALES.value, "SaleID", draft.sale_id) is not None:
                raise ValueError(f"Sale '{draft.sale_id}' already exists")
            # Serialise everything first so a bad value leaves no partial rows.
            header = data_manager.serialize_sale(draft)
            line_rows = [data_manager.serialize_sale_line(draft.sale_id, line) for line in draft.lines]
            intent_rows = [data_manager.serialize_intent(intent) for intent in intents]
            self._workbook[SheetName.SALES.value].append(header)
            for row in line_rows:
                self._workbook[SheetName.SALE_LINES.value].append(row)
            for row in intent_rows:
                self._workbook[SheetName.OUTBOX.value].append(row)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            log.error("Unable to persist sale '%s': %s", draft.sale_id, exc)
            return None
        return draft

    async def pending_intents(self, sale_id: Optional[str] = None) -> List[MovementIntent]:
        return [
            intent
            for _, intent in data_manager.iter_intents(self._workbook)
            if intent.status == OutboxStatus.PENDING and (sale_id is None or intent.sale_id == sale_id)
        ]

    async def update_intent(self, intent: MovementIntent) -> Optional[MovementIntent]:
        try:
            for row_index, stored in data_manager.iter_intents(self._workbook):
                if stored.key == intent.key:
                    data_manager.update_cells(
                        self._workbook,
                        SheetName.OUTBOX.value,
                        row_index,
                        {
                            "ExpectedStock": intent.expected_stock,
                            "Status": intent.status.value,
                            "Attempts": intent.attempts,
                            "LastError": intent.last_error,
                        },
                    )
                    return intent
        except (KeyError, ValueError) as exc:
            log.error("Unable to update outbox entry %s: %s", intent.key, exc)
            return None
        log.error("Outbox entry %s not found", intent.key)
        return None

    async def list_sales(self) -> List[Sale]:
        return list(data_manager.iter_sales(self._workbook))


class WorkbookLoyaltyStore:
    """:class:`LoyaltyStore` backed by the ``LoyaltyTiers`` and ``LoyaltyCards`` sheets."""

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook

    async def list_tiers(self) -> List[LoyaltyTier]:
        return data_manager.iter_loyalty_tiers(self._workbook)

    async def get_card(self, card_id: str) -> Optional[LoyaltyCard]:
        for card in data_manager.iter_loyalty_cards(self._workbook):
            if card.card_id == card_id:
                return card
        return None

    async def save_card(self, card: LoyaltyCard) -> Optional[LoyaltyCard]:
        """Insert or update ``card``."""

        try:
            row_index = data_manager.locate_row(
                self._workbook, SheetName.LOYALTY_CARDS.value, "CardID", card.card_id
            )
            if row_index is None:
                self._workbook[SheetName.LOYALTY_CARDS.value].append(data_manager.serialize_loyalty_card(card))
            else:
                data_manager.update_cells(
                    self._workbook,
                    SheetName.LOYALTY_CARDS.value,
                    row_index,
                    {"CustomerName": card.customer_name, "Tier": card.tier, "Points": card.points},
                )
        except (KeyError, ValueError) as exc:
            log.error("Unable to save loyalty card '%s': %s", card.card_id, exc)
            return None
        return card
