"""Checkout orchestration: turning a cart into a committed Sale.

A checkout attempt walks ``Open -> Validating -> Pricing -> Persisting ->
SettlingStock -> Complete`` on the caller's :class:`CheckoutSession`. Nothing
is written before Persisting, so any failure up to that point leaves the cart
untouched and the attempt can be retried or abandoned.

The Sale write is the definitive commit. It carries one outbox intent per
line; once the Sale is stored the intents are drained concurrently through the
:class:`StockLedger`. An intent that still fails after the configured number
of attempts stays pending in the outbox and never turns a committed checkout
into a failed one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Sequence, Tuple

from . import cash, log, loyalty, pricing
from .constants import (
    DEFAULT_RECEIPT_PREFIX,
    EURO_DENOMINATIONS,
    CheckoutState,
    MovementKind,
    OutboxStatus,
    PaymentMethod,
)
from .data_manager import BusinessProfile
from .errors import MissingReferenceError, MovementWriteError, SalePersistenceError, StaleStockError, ValidationError
from .models import (
    CheckoutSession,
    LoyaltyCard,
    LoyaltyTier,
    MovementIntent,
    Product,
    Receipt,
    Sale,
    StockMovement,
    to_money,
)
from .stock_ledger import StockLedger
from .stores import CatalogStore, LoyaltyStore, SaleStore


@dataclass(frozen=True)
class CheckoutPolicy:
    """Tunables for a :class:`CheckoutOrchestrator`."""

    receipt_prefix: str = DEFAULT_RECEIPT_PREFIX
    movement_retry_limit: int = 3
    retry_delay_seconds: float = 0.0
    apply_points_multiplier: bool = False
    reevaluate_tier: bool = False
    denominations: Tuple[Decimal, ...] = EURO_DENOMINATIONS


@dataclass(frozen=True)
class StockSettlement:
    """Outcome of draining a batch of outbox intents."""

    movements: Tuple[StockMovement, ...]
    pending: Tuple[MovementIntent, ...]

    @property
    def complete(self) -> bool:
        return not self.pending


@dataclass(frozen=True)
class CheckoutResult:
    """Everything the caller needs after a successful checkout."""

    sale: Sale
    receipt: Receipt
    stock: StockSettlement
    cash: Optional[cash.CashBreakdown] = None
    loyalty_card: Optional[LoyaltyCard] = None
    low_stock: Tuple[str, ...] = ()


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_receipt_number(*, prefix: str = DEFAULT_RECEIPT_PREFIX, when: Optional[datetime] = None) -> str:
    """Generate a sortable receipt number ``{prefix}{YYMMDDHHMMSSffffff}``."""

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%y%m%d%H%M%S%f')}"


class CheckoutOrchestrator:
    """Compose pricing, loyalty, cash and stock rules into a checkout."""

    def __init__(
        self,
        catalog: CatalogStore,
        sales: SaleStore,
        ledger: StockLedger,
        *,
        tiers: Sequence[LoyaltyTier],
        business: BusinessProfile,
        loyalty_store: Optional[LoyaltyStore] = None,
        policy: CheckoutPolicy = CheckoutPolicy(),
    ) -> None:
        self._catalog = catalog
        self._sales = sales
        self._ledger = ledger
        self._tiers = list(tiers)
        self._business = business
        self._loyalty_store = loyalty_store
        self._policy = policy

    # ------------------------------------------------------------------
    # Validation and pricing
    # ------------------------------------------------------------------

    async def _load_products(self, session: CheckoutSession) -> Dict[str, Product]:
        if session.is_empty:
            raise ValidationError("Cannot check out an empty cart")
        refs = [line.product_ref for line in session.lines]
        products = await self._catalog.get_products(refs)
        missing = [ref for ref in refs if ref not in products]
        if missing:
            raise MissingReferenceError(f"Unknown product id(s): {', '.join(missing)}")
        return products

    @staticmethod
    def _check_stock(session: CheckoutSession, products: Mapping[str, Product]) -> None:
        short = []
        for line in session.lines:
            product = products[line.product_ref]
            if line.quantity > product.stock_on_hand:
                short.append(f"{line.product_ref} (requested {line.quantity}, available {product.stock_on_hand})")
        if short:
            raise ValidationError(f"Insufficient stock for: {'; '.join(short)}")

    def price(
        self,
        session: CheckoutSession,
        products: Mapping[str, Product],
        card: Optional[LoyaltyCard],
        as_of: datetime,
    ) -> pricing.Quote:
        """Price the cart; pure with respect to its inputs."""

        lines = pricing.price_lines(session.lines, products, as_of)
        subtotal = pricing.subtotal(lines)
        rate = loyalty.discount_rate(self._tiers, card)
        return pricing.Quote(
            lines=lines,
            subtotal=subtotal,
            discount_rate=rate,
            total=pricing.apply_discount(subtotal, rate),
        )

    async def quote(
        self,
        session: CheckoutSession,
        *,
        loyalty_card: Optional[LoyaltyCard] = None,
        as_of: Optional[datetime] = None,
    ) -> pricing.Quote:
        """Return the current totals for ``session`` without touching its state."""

        products = await self._load_products(session)
        card = loyalty_card if loyalty_card is not None else session.loyalty_card
        return self.price(session, products, card, _resolve_timestamp(as_of))

    def _settle_tender(
        self,
        payment_method: PaymentMethod,
        due: Decimal,
        tendered: Optional[Decimal],
    ) -> Tuple[Decimal, Decimal, Optional[cash.CashBreakdown]]:
        if payment_method == PaymentMethod.CASH:
            if tendered is None:
                raise ValidationError("Cash payments require an amount tendered")
            change = cash.breakdown(due, tendered, self._policy.denominations)
            return to_money(tendered), change.change, change
        if payment_method == PaymentMethod.CARD:
            return due, Decimal("0.00"), None
        raise ValidationError(f"Unsupported payment method: {payment_method}")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(
        self,
        session: CheckoutSession,
        payment_method: PaymentMethod,
        *,
        employee_id: str,
        tendered: Optional[Decimal] = None,
        loyalty_card: Optional[LoyaltyCard] = None,
        as_of: Optional[datetime] = None,
    ) -> CheckoutResult:
        """Finalize ``session`` into a persisted Sale.

        Args:
            session (CheckoutSession): Cart owned by the caller. It is left
                in ``COMPLETE`` on success and in ``ABORTED`` when the attempt
                fails before the Sale is committed.
            payment_method (PaymentMethod): Cash or card.
            employee_id (str): Employee the sale and movements are attributed
                to.
            tendered (Decimal | None): Cash handed over; required for cash.
            loyalty_card (LoyaltyCard | None): Overrides the card selected on
                the session.
            as_of (datetime | None): Moment used for promotion windows and the
                Sale timestamp. Defaults to now (UTC).

        Returns:
            CheckoutResult: Persisted sale, receipt and stock outcome.

        Raises:
            ValidationError: Empty cart, unknown product, insufficient stock
                or insufficient tender. Nothing has been written.
            SalePersistenceError: The Sale store rejected the write. Nothing
                has been written and the cart is unchanged.
        """

        if session.state == CheckoutState.ABORTED:
            session.transition(CheckoutState.OPEN)
        card = loyalty_card if loyalty_card is not None else session.loyalty_card
        timestamp = _resolve_timestamp(as_of)

        session.transition(CheckoutState.VALIDATING)
        try:
            products = await self._load_products(session)
            self._check_stock(session, products)
            quote = self.price(session, products, card, timestamp)
            amount_tendered, change_given, change = self._settle_tender(payment_method, quote.total, tendered)
        except ValidationError as exc:
            log.warning("Checkout rejected during validation: %s", exc)
            session.transition(CheckoutState.ABORTED)
            raise
        except Exception as exc:
            log.error("Checkout failed during validation: %s", exc)
            session.transition(CheckoutState.ABORTED)
            raise

        session.transition(CheckoutState.PRICING)
        points = None
        if card is not None:
            points = loyalty.points_earned(
                quote.total,
                card,
                tiers=self._tiers,
                apply_multiplier=self._policy.apply_points_multiplier,
            )
        draft = Sale(
            sale_id=generate_receipt_number(prefix=self._policy.receipt_prefix, when=timestamp),
            timestamp=timestamp,
            lines=quote.lines,
            subtotal=quote.subtotal,
            discount_rate=quote.discount_rate,
            total=quote.total,
            payment_method=payment_method,
            amount_tendered=amount_tendered,
            change_given=change_given,
            employee_id=employee_id,
            loyalty_card_ref=card.card_id if card is not None else None,
            points_earned=points,
        )
        intents = [
            MovementIntent(
                sale_id=draft.sale_id,
                product_ref=line.product_ref,
                quantity_delta=-line.quantity,
                expected_stock=products[line.product_ref].stock_on_hand,
                attributed_to=employee_id,
            )
            for line in session.lines
        ]

        session.transition(CheckoutState.PERSISTING)
        try:
            sale = await self._sales.add_sale(draft, intents)
        except Exception as exc:
            session.transition(CheckoutState.ABORTED)
            log.error("Sale store raised while persisting '%s': %s", draft.sale_id, exc)
            raise SalePersistenceError(f"Sale '{draft.sale_id}' could not be saved") from exc
        if sale is None:
            session.transition(CheckoutState.ABORTED)
            log.error("Sale '%s' was not persisted; cart kept for retry", draft.sale_id)
            raise SalePersistenceError(f"Sale '{draft.sale_id}' could not be saved")
        log.info(
            "Persisted sale '%s' (%d lines, subtotal=%s, total=%s, %s)",
            sale.sale_id,
            len(sale.lines),
            sale.subtotal,
            sale.total,
            sale.payment_method.value,
        )

        session.transition(CheckoutState.SETTLING_STOCK)
        stock = await self.settle_stock(intents)
        updated_card = await self._accrue_points(card, sale)
        session.transition(CheckoutState.COMPLETE)

        low_stock = tuple(
            movement.product_ref
            for movement in stock.movements
            if movement.resulting_stock <= products[movement.product_ref].low_stock_threshold
        )
        if low_stock:
            log.warning("Low stock after sale '%s': %s", sale.sale_id, ", ".join(low_stock))

        return CheckoutResult(
            sale=sale,
            receipt=self.build_receipt(sale),
            stock=stock,
            cash=change,
            loyalty_card=updated_card,
            low_stock=low_stock,
        )

    def build_receipt(self, sale: Sale) -> Receipt:
        return Receipt(
            sale=sale,
            business_name=self._business.name,
            address=self._business.address,
            phone=self._business.phone,
            email=self._business.email,
            vat_number=self._business.vat_number,
            business_id=self._business.business_id,
        )

    async def _accrue_points(self, card: Optional[LoyaltyCard], sale: Sale) -> Optional[LoyaltyCard]:
        if card is None or not sale.points_earned:
            return card
        updated = loyalty.accrue_points(
            card,
            sale.points_earned,
            tiers=self._tiers,
            reevaluate_tier=self._policy.reevaluate_tier,
        )
        if self._loyalty_store is None:
            return updated
        try:
            saved = await self._loyalty_store.save_card(updated)
        except Exception as exc:
            log.error("Saving card '%s' raised: %r", card.card_id, exc)
            saved = None
        if saved is None:
            log.error(
                "Points for sale '%s' were not credited to card '%s'",
                sale.sale_id,
                card.card_id,
            )
            return card
        return saved

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    async def settle_stock(self, intents: Sequence[MovementIntent]) -> StockSettlement:
        """Apply ``intents`` concurrently; failures stay pending in the outbox."""

        outcomes = await asyncio.gather(*(self._apply_intent(intent) for intent in intents))
        movements = tuple(movement for movement, _ in outcomes if movement is not None)
        pending = tuple(intent for movement, intent in outcomes if movement is None)
        return StockSettlement(movements=movements, pending=pending)

    async def drain_outbox(self, sale_id: Optional[str] = None) -> StockSettlement:
        """Retry every pending intent, optionally only those of ``sale_id``."""

        intents = await self._sales.pending_intents(sale_id)
        log.info("Draining %d pending stock movement(s)", len(intents))
        return await self.settle_stock(intents)

    async def _apply_intent(self, intent: MovementIntent) -> Tuple[Optional[StockMovement], MovementIntent]:
        expected = intent.expected_stock
        attempts = intent.attempts
        last_error: Optional[str] = None
        for attempt in range(self._policy.movement_retry_limit):
            if attempt and self._policy.retry_delay_seconds:
                await asyncio.sleep(self._policy.retry_delay_seconds)
            attempts += 1
            try:
                movement = await self._ledger.adjust_stock(
                    intent.product_ref,
                    intent.quantity_delta,
                    MovementKind.SALE_DECREMENT,
                    f"sale:{intent.sale_id}",
                    intent.attributed_to,
                    intent.sale_id,
                    expected_stock=expected,
                )
            except StaleStockError as exc:
                log.warning("Retrying decrement for sale '%s': %s", intent.sale_id, exc)
                last_error = str(exc)
                if exc.actual is not None:
                    expected = exc.actual
            except (MovementWriteError, MissingReferenceError) as exc:
                log.error(
                    "Attempt %d to decrement '%s' for sale '%s' failed: %s",
                    attempts,
                    intent.product_ref,
                    intent.sale_id,
                    exc,
                )
                last_error = str(exc)
            except Exception as exc:
                log.error(
                    "Attempt %d to decrement '%s' for sale '%s' raised: %r",
                    attempts,
                    intent.product_ref,
                    intent.sale_id,
                    exc,
                )
                last_error = repr(exc)
            else:
                await self._record_intent(
                    replace(intent, status=OutboxStatus.APPLIED, attempts=attempts, last_error=None)
                )
                return movement, intent

        pending = replace(intent, expected_stock=expected, attempts=attempts, last_error=last_error)
        await self._record_intent(pending)
        log.error(
            "Stock decrement for '%s' (sale '%s') left pending after %d attempt(s)",
            intent.product_ref,
            intent.sale_id,
            attempts,
        )
        return None, pending

    async def _record_intent(self, intent: MovementIntent) -> None:
        try:
            updated = await self._sales.update_intent(intent)
        except Exception as exc:
            log.error("Outbox entry %s could not be updated to %s: %r", intent.key, intent.status.value, exc)
            return
        if updated is None:
            log.error("Outbox entry %s could not be updated to %s", intent.key, intent.status.value)

