"""Tests for the openpyxl-backed store implementations."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

import pytest

from conftest import NOW, sample_products
from pos_settlement import data_manager
from pos_settlement.constants import MovementKind, OutboxStatus, PaymentMethod, SheetName
from pos_settlement.models import LoyaltyCard, MovementIntent, MovementRequest, Sale, SaleLine
from pos_settlement.stores import (
    WorkbookCatalogStore,
    WorkbookLoyaltyStore,
    WorkbookSaleStore,
    generate_movement_id,
)


@pytest.fixture
def workbook(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for product in sample_products():
        data_manager.append_product(workbook, product)
    return workbook


def _sale(sale_id: str = "BE240601120000000000") -> Sale:
    line = SaleLine("P-COLA", "Cola", 2, Decimal("2.50"), Decimal("5.00"))
    return Sale(
        sale_id=sale_id,
        timestamp=NOW,
        lines=(line,),
        subtotal=Decimal("5.00"),
        discount_rate=Decimal("0"),
        total=Decimal("5.00"),
        payment_method=PaymentMethod.CARD,
        amount_tendered=Decimal("5.00"),
        change_given=Decimal("0.00"),
        employee_id="E-1",
    )


def test_generate_movement_id_is_sortable():
    """Identifiers start with the prefix and timestamp."""

    movement_id = generate_movement_id(when=NOW)
    assert movement_id.startswith("M20240601120000000000")
    assert len(movement_id) == len("M20240601120000000000") + 6


def test_catalog_store_reads_products(workbook):
    """Products are looked up individually or in bulk."""

    store = WorkbookCatalogStore(workbook)

    async def scenario():
        return await store.get_product("P-TEA"), await store.get_products(["P-COLA", "P-GHOST"])

    tea, bulk = asyncio.run(scenario())
    assert tea.stock_on_hand == 3
    assert set(bulk) == {"P-COLA"}


def test_catalog_store_adjust_stock_updates_row_and_appends_movement(workbook):
    """A movement both updates StockOnHand and lands in the ledger sheet."""

    store = WorkbookCatalogStore(workbook, clock=lambda: NOW)
    request = MovementRequest("P-COLA", -2, MovementKind.SALE_DECREMENT, "sale:S1", "E-1", 20, "S1")

    movement = asyncio.run(store.adjust_stock(request))

    assert movement.timestamp == NOW
    assert movement.resulting_stock == 18
    products = {p.product_id: p for p in data_manager.iter_products(workbook)}
    assert products["P-COLA"].stock_on_hand == 18
    assert asyncio.run(store.find_movement("P-COLA", "S1")) == movement
    assert asyncio.run(store.list_movements("P-TEA")) == []


def test_catalog_store_returns_none_for_unknown_product(workbook, caplog):
    """Write failures are logged and reported as None."""

    store = WorkbookCatalogStore(workbook)
    request = MovementRequest("P-GHOST", -1, MovementKind.LOSS, "Lost", "E-1", 0)

    with caplog.at_level(logging.ERROR, logger="pos_settlement"):
        assert asyncio.run(store.adjust_stock(request)) is None
    assert "P-GHOST" in caplog.text
    assert list(data_manager.iter_movements(workbook)) == []


def test_sale_store_writes_sale_lines_and_outbox(workbook):
    """add_sale writes the sale, its lines and its intents together."""

    store = WorkbookSaleStore(workbook)
    sale = _sale()
    intent = MovementIntent(sale.sale_id, "P-COLA", -2, 20, "E-1")

    assert asyncio.run(store.add_sale(sale, [intent])) == sale
    assert asyncio.run(store.list_sales()) == [sale]
    assert asyncio.run(store.pending_intents()) == [intent]
    assert asyncio.run(store.pending_intents("OTHER")) == []


def test_sale_store_rejects_duplicate_sale_ids(workbook, caplog):
    """A sale id can only be written once."""

    store = WorkbookSaleStore(workbook)
    asyncio.run(store.add_sale(_sale(), []))

    with caplog.at_level(logging.ERROR, logger="pos_settlement"):
        assert asyncio.run(store.add_sale(_sale(), [])) is None
    assert workbook[SheetName.SALES.value].max_row == 2


def test_sale_store_updates_intents_in_place(workbook):
    """Applied intents disappear from the pending list."""

    store = WorkbookSaleStore(workbook)
    sale = _sale()
    intent = MovementIntent(sale.sale_id, "P-COLA", -2, 20, "E-1")
    asyncio.run(store.add_sale(sale, [intent]))

    applied = MovementIntent(sale.sale_id, "P-COLA", -2, 20, "E-1", status=OutboxStatus.APPLIED, attempts=1)
    assert asyncio.run(store.update_intent(applied)) == applied
    assert asyncio.run(store.pending_intents()) == []
    ((_, stored),) = list(data_manager.iter_intents(workbook))
    assert stored.attempts == 1


def test_sale_store_update_of_unknown_intent_returns_none(workbook):
    """Updating an intent that was never written fails softly."""

    store = WorkbookSaleStore(workbook)
    assert asyncio.run(store.update_intent(MovementIntent("X", "P-COLA", -1, 1, "E"))) is None


def test_loyalty_store_inserts_then_updates_cards(workbook):
    """save_card upserts by card id."""

    store = WorkbookLoyaltyStore(workbook)
    card = LoyaltyCard("C-1", "bronze", 10, "Ada")

    async def scenario():
        await store.save_card(card)
        await store.save_card(LoyaltyCard("C-1", "silver", 1010, "Ada"))
        return await store.get_card("C-1"), await store.get_card("C-2"), await store.list_tiers()

    stored, missing, tiers = asyncio.run(scenario())
    assert (stored.tier, stored.points) == ("silver", 1010)
    assert missing is None
    assert len(tiers) == 4
    assert workbook[SheetName.LOYALTY_CARDS.value].max_row == 2
