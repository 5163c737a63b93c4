"""Append-only inventory ledger.

The ledger is the single entry point for stock changes. It never edits a
movement; corrections are new movements. Writes for the same product are
serialised with an :class:`asyncio.Lock`, and callers may pass the stock level
they last observed so a concurrent change surfaces as :class:`StaleStockError`
instead of being silently overwritten.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from . import log
from .constants import MovementKind
from .errors import MissingReferenceError, MovementWriteError, StaleStockError, ValidationError
from .models import MovementRequest, StockMovement
from .stores import CatalogStore


def derive_stock(opening_stock: int, movements: Iterable[StockMovement]) -> int:
    """Replay ``movements`` on top of ``opening_stock``."""

    stock = opening_stock
    for movement in movements:
        stock += movement.quantity_delta
    return stock


class StockLedger:
    """Record stock movements through a :class:`CatalogStore`."""

    def __init__(self, catalog: CatalogStore) -> None:
        self._catalog = catalog
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, product_ref: str) -> asyncio.Lock:
        lock = self._locks.get(product_ref)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_ref] = lock
        return lock

    async def adjust_stock(
        self,
        product_ref: str,
        delta: int,
        kind: MovementKind,
        reason: str,
        attributed_to: str,
        reference: Optional[str] = None,
        *,
        expected_stock: Optional[int] = None,
    ) -> StockMovement:
        """Append a movement of ``delta`` units for ``product_ref``.

        Args:
            product_ref (str): Product whose stock changes.
            delta (int): Signed quantity change.
            kind (MovementKind): Category of the movement.
            reason (str): Free text stored with the movement.
            attributed_to (str): Employee responsible for the change.
            reference (str | None): External reference such as a sale id.
                Sale decrements are idempotent on ``(product_ref, reference)``.
            expected_stock (int | None): Stock level the caller last observed.
                When given, the write only happens if the product still holds
                exactly that quantity.

        Returns:
            StockMovement: The appended movement, or the existing one when a
                sale decrement with the same reference was already recorded.

        Raises:
            MissingReferenceError: If the product is unknown.
            StaleStockError: If ``expected_stock`` no longer matches.
            MovementWriteError: If the store reports the write failed.
        """

        async with self._lock_for(product_ref):
            if kind == MovementKind.SALE_DECREMENT and reference is not None:
                existing = await self._catalog.find_movement(product_ref, reference)
                if existing is not None:
                    log.info(
                        "Movement for '%s' with reference '%s' already recorded as '%s'",
                        product_ref,
                        reference,
                        existing.movement_id,
                    )
                    return existing

            product = await self._catalog.get_product(product_ref)
            if product is None:
                log.warning("Stock adjustment requested for unknown product '%s'", product_ref)
                raise MissingReferenceError(f"Unknown product id: {product_ref}")
            if expected_stock is not None and product.stock_on_hand != expected_stock:
                raise StaleStockError(product_ref, expected_stock, product.stock_on_hand)

            request = MovementRequest(
                product_ref=product_ref,
                quantity_delta=delta,
                kind=kind,
                reason=reason,
                attributed_to=attributed_to,
                prior_stock=product.stock_on_hand,
                reference=reference,
            )
            movement = await self._catalog.adjust_stock(request)
            if movement is None:
                log.error("Store rejected %s movement for '%s' (delta=%d)", kind.value, product_ref, delta)
                raise MovementWriteError(product_ref, f"Failed to record movement for '{product_ref}'")

        if movement.resulting_stock < 0:
            log.warning(
                "Stock for '%s' is negative after %s movement '%s': %d",
                product_ref,
                kind.value,
                movement.movement_id,
                movement.resulting_stock,
            )
        log.info(
            "Recorded %s movement '%s' for '%s' (%d -> %d)",
            kind.value,
            movement.movement_id,
            product_ref,
            movement.prior_stock,
            movement.resulting_stock,
        )
        return movement

    async def record_count(
        self,
        product_ref: str,
        counted: int,
        reason: str,
        attributed_to: str,
        reference: Optional[str] = None,
    ) -> StockMovement:
        """Append an inventory-count movement that brings stock to ``counted``."""

        if counted < 0:
            raise ValidationError(f"Counted quantity must be zero or positive: {counted}")
        product = await self._catalog.get_product(product_ref)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {product_ref}")
        return await self.adjust_stock(
            product_ref,
            counted - product.stock_on_hand,
            MovementKind.INVENTORY_COUNT,
            reason,
            attributed_to,
            reference,
            expected_stock=product.stock_on_hand,
        )

    async def movements(self, product_ref: Optional[str] = None) -> List[StockMovement]:
        """Return recorded movements, optionally filtered to one product."""

        return await self._catalog.list_movements(product_ref)
