"""Tests for the application layer wiring and reports."""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal

import pytest

from pos_settlement import core_logic, data_manager, loyalty
from pos_settlement.constants import MovementKind, PaymentMethod, SheetName
from pos_settlement.errors import MissingReferenceError, ValidationError


def test_load_runtime_context_reads_settings(config_file):
    """The runtime context bundles parsed settings and the live workbook."""

    context = core_logic.load_runtime_context(config_file)

    assert context.settings.business.name == "Boutique Test"
    assert SheetName.OUTBOX.value in context.workbook.sheetnames


def test_ensure_schema_version_rejects_mismatch(config_factory):
    """A workbook declared for another schema version is refused."""

    bundle = config_factory(schema_version="1.0.0")
    context = core_logic.load_runtime_context(bundle.config_path)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(context)


def test_build_policy_mirrors_settings(runtime_context):
    """Checkout policy values come straight from the configuration."""

    settings = replace(runtime_context.settings, receipt_prefix="TK", movement_retry_limit=7)
    policy = core_logic.build_policy(settings)

    assert policy.receipt_prefix == "TK"
    assert policy.movement_retry_limit == 7
    assert policy.denominations == settings.denominations


def test_list_tiers_falls_back_to_defaults(runtime_context):
    """An empty tier sheet means the built-in tier table."""

    runtime_context.workbook[SheetName.LOYALTY_TIERS.value].delete_rows(2, 10)
    assert core_logic.list_tiers(runtime_context) == list(loyalty.DEFAULT_TIERS)


def test_get_product_and_card_raise_for_unknown_ids(stocked_context):
    """Lookups distinguish unknown references."""

    assert core_logic.get_product(stocked_context, "P-COLA").name == "Cola"
    assert core_logic.get_loyalty_card(stocked_context, "C-100").tier == "silver"
    with pytest.raises(MissingReferenceError):
        core_logic.get_product(stocked_context, "P-GHOST")
    with pytest.raises(MissingReferenceError):
        core_logic.get_loyalty_card(stocked_context, "C-GHOST")


def test_build_session_accumulates_repeated_items():
    """Repeated product ids are merged into one cart line."""

    session = core_logic.build_session([("P-COLA", 1), ("P-SOAP", 2), ("P-COLA", 3)])
    assert [(line.product_ref, line.quantity) for line in session.lines] == [("P-COLA", 4), ("P-SOAP", 2)]


def test_record_checkout_persists_sale_and_decrements_stock(stocked_context):
    """A full checkout against the workbook writes sale, lines, outbox and movements."""

    command = core_logic.CheckoutCommand(
        items=(("P-COLA", 4),),
        payment_method=PaymentMethod.CASH,
        employee_id="E-1",
        tendered=Decimal("20.00"),
        loyalty_card_id="C-100",
    )
    result = core_logic.record_checkout(stocked_context, command)

    assert result.sale.total == Decimal("9.00")
    assert result.sale.change_given == Decimal("11.00")
    assert core_logic.calculate_inventory(stocked_context)["P-COLA"] == 16
    (movement,) = core_logic.list_movements(stocked_context, "P-COLA")
    assert movement.reference == result.sale.sale_id
    assert core_logic.get_loyalty_card(stocked_context, "C-100").points == 1209
    assert [s.sale_id for s in data_manager.iter_sales(stocked_context.workbook)] == [result.sale.sale_id]


def test_record_checkout_with_unknown_card_writes_nothing(stocked_context):
    """An unknown loyalty card is rejected before the checkout starts."""

    command = core_logic.CheckoutCommand(
        items=(("P-COLA", 1),),
        payment_method=PaymentMethod.CARD,
        employee_id="E-1",
        loyalty_card_id="C-GHOST",
    )
    with pytest.raises(MissingReferenceError):
        core_logic.record_checkout(stocked_context, command)
    assert list(data_manager.iter_sales(stocked_context.workbook)) == []


def test_record_adjustment_validates_kind_and_sign(stocked_context):
    """Only manual adjustments and losses are accepted; a loss must decrease stock."""

    def command(kind, delta):
        return core_logic.AdjustmentCommand("P-COLA", delta, kind, "test", "E-1")

    with pytest.raises(ValidationError):
        core_logic.record_adjustment(stocked_context, command(MovementKind.SALE_DECREMENT, -1))
    with pytest.raises(ValidationError):
        core_logic.record_adjustment(stocked_context, command(MovementKind.LOSS, 2))
    with pytest.raises(ValidationError):
        core_logic.record_adjustment(stocked_context, command(MovementKind.MANUAL_ADJUSTMENT, 0))

    movement = core_logic.record_adjustment(stocked_context, command(MovementKind.LOSS, -2))
    assert movement.resulting_stock == 18


def test_record_count_and_reconcile(stocked_context):
    """Counts keep the ledger consistent with recorded stock."""

    core_logic.record_count(stocked_context, core_logic.CountCommand("P-SOAP", 6, "Count", "E-1"))

    assert core_logic.calculate_inventory(stocked_context)["P-SOAP"] == 6
    assert core_logic.reconcile_stock(stocked_context) == {}


def test_reconcile_reports_drift(stocked_context, caplog):
    """Editing StockOnHand outside the ledger shows up as a mismatch."""

    core_logic.record_adjustment(
        stocked_context,
        core_logic.AdjustmentCommand("P-COLA", 5, MovementKind.MANUAL_ADJUSTMENT, "Delivery", "E-1"),
    )
    row = data_manager.locate_row(stocked_context.workbook, SheetName.PRODUCTS.value, "ProductID", "P-COLA")
    data_manager.update_cells(stocked_context.workbook, SheetName.PRODUCTS.value, row, {"StockOnHand": 30})

    with caplog.at_level(logging.WARNING, logger="pos_settlement"):
        assert core_logic.reconcile_stock(stocked_context) == {"P-COLA": (30, 25)}
    assert "add up to" in caplog.text


def test_low_stock_report(stocked_context):
    """Products at or below their threshold are listed."""

    core_logic.record_adjustment(
        stocked_context,
        core_logic.AdjustmentCommand("P-TEA", -1, MovementKind.LOSS, "Broken", "E-1"),
    )
    assert [p.product_id for p in core_logic.low_stock_report(stocked_context)] == ["P-TEA"]


def test_drain_outbox_without_pending_intents(stocked_context):
    """Draining an empty outbox is a no-op."""

    settlement = core_logic.drain_outbox(stocked_context)
    assert settlement.complete
    assert settlement.movements == ()


def test_calculate_change_uses_configured_denominations(runtime_context):
    """The change helper honours the configured cash series."""

    context = replace(
        runtime_context,
        settings=replace(runtime_context.settings, denominations=(Decimal("5"), Decimal("1"))),
    )
    change = core_logic.calculate_change(context, Decimal("3"), Decimal("10"))
    assert [(e.denomination, e.count) for e in change.counts] == [(Decimal("5"), 1), (Decimal("1"), 2)]


def test_persist_and_refresh_round_trip(stocked_context):
    """Saved changes survive a reload while unsaved ones are discarded."""

    core_logic.record_adjustment(
        stocked_context,
        core_logic.AdjustmentCommand("P-COLA", -1, MovementKind.LOSS, "Spill", "E-1"),
    )
    core_logic.persist_context(stocked_context)
    core_logic.record_adjustment(
        stocked_context,
        core_logic.AdjustmentCommand("P-COLA", -1, MovementKind.LOSS, "Spill", "E-1"),
    )

    reloaded = core_logic.refresh_context(stocked_context)
    assert core_logic.calculate_inventory(reloaded)["P-COLA"] == 19
