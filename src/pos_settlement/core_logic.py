"""Application layer for the settlement engine.

This module wires configuration, the workbook and the store implementations
into the objects the engine needs. It also hosts the synchronous read-side
queries (stock levels, low-stock alerts, movement history and ledger
reconciliation) used by the CLI and by other tooling.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import cash, data_manager, log, loyalty
from .checkout import CheckoutOrchestrator, CheckoutPolicy, CheckoutResult, StockSettlement
from .constants import EXPECTED_SCHEMA_VERSION, MovementKind, PaymentMethod
from .errors import MissingReferenceError, ValidationError
from .models import CheckoutSession, LoyaltyCard, LoyaltyTier, Product, StockMovement
from .stock_ledger import StockLedger, derive_stock
from .stores import WorkbookCatalogStore, WorkbookLoyaltyStore, WorkbookSaleStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the live workbook."""

    settings: data_manager.ConfigSettings
    workbook: Workbook


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the engine.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook laid out for another schema version.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def build_policy(settings: data_manager.ConfigSettings) -> CheckoutPolicy:
    return CheckoutPolicy(
        receipt_prefix=settings.receipt_prefix,
        movement_retry_limit=settings.movement_retry_limit,
        retry_delay_seconds=settings.retry_delay_seconds,
        apply_points_multiplier=settings.apply_points_multiplier,
        reevaluate_tier=settings.reevaluate_tier,
        denominations=settings.denominations,
    )


def list_tiers(context: RuntimeContext) -> List[LoyaltyTier]:
    """Return the configured tier table, falling back to the built-in tiers."""
    tiers = data_manager.iter_loyalty_tiers(context.workbook)
    if not tiers:
        log.info("No loyalty tiers in workbook; using defaults")
        return list(loyalty.DEFAULT_TIERS)
    return tiers


def build_ledger(context: RuntimeContext) -> StockLedger:
    return StockLedger(WorkbookCatalogStore(context.workbook))


def build_orchestrator(context: RuntimeContext, ledger: Optional[StockLedger] = None) -> CheckoutOrchestrator:
    """Assemble a :class:`CheckoutOrchestrator` over the context's workbook.

    A ledger may be passed in so several orchestrators share its per-product
    locks.
    """
    if ledger is None:
        ledger = build_ledger(context)
    return CheckoutOrchestrator(
        WorkbookCatalogStore(context.workbook),
        WorkbookSaleStore(context.workbook),
        ledger,
        tiers=list_tiers(context),
        business=context.settings.business,
        loyalty_store=WorkbookLoyaltyStore(context.workbook),
        policy=build_policy(context.settings),
    )


def build_session(items: Iterable[Tuple[str, int]], loyalty_card: Optional[LoyaltyCard] = None) -> CheckoutSession:
    """Create a cart from ``(product_id, quantity)`` pairs; repeats accumulate."""
    session = CheckoutSession()
    for product_id, quantity in items:
        session.add_item(product_id, quantity)
    session.select_loyalty_card(loyalty_card)
    return session


def list_products(context: RuntimeContext) -> List[Product]:
    return list(data_manager.iter_products(context.workbook))


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Return the product identified by ``product_id``.

    Raises:
        MissingReferenceError: If the product does not exist.
    """
    for product in data_manager.iter_products(context.workbook):
        if product.product_id == product_id:
            return product
    log.error("Product '%s' not found", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def get_loyalty_card(context: RuntimeContext, card_id: str) -> LoyaltyCard:
    """Return the loyalty card identified by ``card_id``.

    Raises:
        MissingReferenceError: If the card does not exist.
    """
    for card in data_manager.iter_loyalty_cards(context.workbook):
        if card.card_id == card_id:
            return card
    log.error("Loyalty card '%s' not found", card_id)
    raise MissingReferenceError(f"Unknown loyalty card id: {card_id}")


def calculate_inventory(context: RuntimeContext) -> Dict[str, int]:
    """Return the stock on hand recorded for every product."""
    inventory = {product.product_id: product.stock_on_hand for product in list_products(context)}
    log.debug("Calculated inventory balances for %d products", len(inventory))
    return inventory


def low_stock_report(context: RuntimeContext) -> List[Product]:
    """Return products whose stock is at or below their low-stock threshold."""
    flagged = [product for product in list_products(context) if product.is_low_on_stock]
    if flagged:
        log.warning("%d product(s) at or below their low-stock threshold", len(flagged))
    return flagged


def list_movements(context: RuntimeContext, product_id: Optional[str] = None) -> List[StockMovement]:
    """Return recorded stock movements ordered by timestamp."""
    movements = [
        movement
        for movement in data_manager.iter_movements(context.workbook)
        if product_id is None or movement.product_ref == product_id
    ]
    return sorted(movements, key=lambda movement: movement.timestamp)


def reconcile_stock(context: RuntimeContext) -> Dict[str, Tuple[int, int]]:
    """Compare recorded stock with the stock derived from the movement log.

    For every product with at least one movement, the log is replayed from the
    prior stock of its first movement. Products whose recorded stock differs
    from the replayed value are returned as ``{product_id: (recorded,
    derived)}``.
    """
    grouped: Dict[str, List[StockMovement]] = {}
    for movement in list_movements(context):
        grouped.setdefault(movement.product_ref, []).append(movement)

    mismatches: Dict[str, Tuple[int, int]] = {}
    for product in list_products(context):
        history: Sequence[StockMovement] = grouped.get(product.product_id, [])
        if not history:
            continue
        derived = derive_stock(history[0].prior_stock, history)
        if derived != product.stock_on_hand:
            log.warning(
                "Stock for '%s' is %d but its movements add up to %d",
                product.product_id,
                product.stock_on_hand,
                derived,
            )
            mismatches[product.product_id] = (product.stock_on_hand, derived)
    return mismatches


# ---------------------------------------------------------------------------
# Write workflows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckoutCommand:
    """User intent for checking out a cart."""

    items: Tuple[Tuple[str, int], ...]
    payment_method: PaymentMethod
    employee_id: str
    tendered: Optional[Decimal] = None
    loyalty_card_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AdjustmentCommand:
    """User intent for a manual stock adjustment or a recorded loss."""

    product_id: str
    quantity_delta: int
    kind: MovementKind
    reason: str
    employee_id: str
    reference: Optional[str] = None


@dataclass(frozen=True)
class CountCommand:
    """User intent for recording a physical inventory count."""

    product_id: str
    counted: int
    reason: str
    employee_id: str


def record_checkout(context: RuntimeContext, command: CheckoutCommand) -> CheckoutResult:
    """Settle a cart against the workbook.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (CheckoutCommand): Items, payment details and attribution.

    Returns:
        CheckoutResult: The committed sale, its receipt and stock outcome.

    Raises:
        ValidationError: When the cart, the loyalty card or the tender is
            invalid. The workbook is left untouched.
        SalePersistenceError: When the Sale rows could not be written.
    """
    card = get_loyalty_card(context, command.loyalty_card_id) if command.loyalty_card_id else None
    session = build_session(command.items, card)
    orchestrator = build_orchestrator(context)
    return asyncio.run(
        orchestrator.settle(
            session,
            command.payment_method,
            employee_id=command.employee_id,
            tendered=command.tendered,
            as_of=command.timestamp,
        )
    )


def record_adjustment(context: RuntimeContext, command: AdjustmentCommand) -> StockMovement:
    """Append a manual adjustment or loss movement.

    Sale decrements and inventory counts have dedicated workflows and are
    rejected here. A loss must decrease stock.

    Raises:
        ValidationError: If the kind or delta is not acceptable.
        MissingReferenceError: If the product is unknown.
    """
    if command.kind not in (MovementKind.MANUAL_ADJUSTMENT, MovementKind.LOSS):
        raise ValidationError(f"Movements of kind '{command.kind.value}' cannot be recorded manually")
    if command.quantity_delta == 0:
        raise ValidationError("Adjustment quantity must not be zero")
    if command.kind == MovementKind.LOSS and command.quantity_delta > 0:
        raise ValidationError("A loss must decrease stock")
    ledger = build_ledger(context)
    return asyncio.run(
        ledger.adjust_stock(
            command.product_id,
            command.quantity_delta,
            command.kind,
            command.reason,
            command.employee_id,
            command.reference,
        )
    )


def record_count(context: RuntimeContext, command: CountCommand) -> StockMovement:
    """Bring a product's stock to the physically counted quantity."""
    ledger = build_ledger(context)
    return asyncio.run(
        ledger.record_count(command.product_id, command.counted, command.reason, command.employee_id)
    )


def drain_outbox(context: RuntimeContext, sale_id: Optional[str] = None) -> StockSettlement:
    """Retry stock decrements left pending by earlier checkouts."""
    settlement = asyncio.run(build_orchestrator(context).drain_outbox(sale_id))
    if not settlement.complete:
        log.warning("%d stock movement(s) still pending", len(settlement.pending))
    return settlement


def calculate_change(context: RuntimeContext, due: Decimal, tendered: Decimal) -> cash.CashBreakdown:
    """Break the change for a cash payment into the configured denominations."""
    return cash.breakdown(due, tendered, context.settings.denominations)
