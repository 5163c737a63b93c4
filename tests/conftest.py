"""Shared pytest fixtures and utilities for settlement engine tests."""

from __future__ import annotations

import argparse
import itertools
import sys
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_settlement import cli, constants, core_logic, data_manager, loyalty  # noqa: E402
from pos_settlement.checkout import CheckoutOrchestrator, CheckoutPolicy  # noqa: E402
from pos_settlement.models import (  # noqa: E402
    BuyXGetYPromotion,
    FixedPromotion,
    LoyaltyCard,
    LoyaltyTier,
    MovementIntent,
    MovementRequest,
    PercentagePromotion,
    Product,
    Sale,
    StockMovement,
)
from pos_settlement.setup_excel import create_master_workbook  # noqa: E402
from pos_settlement.stock_ledger import StockLedger  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_EMPLOYEE_ID = "E-COUNTER"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
PROMO_START = NOW - timedelta(days=1)
PROMO_END = NOW + timedelta(days=1)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Business]\n"
    "Name = {business_name}\n"
    "Address = 1 Rue de l'Exemple\n"
    "VatNumber = BE0123456789\n\n"
    "[Defaults]\n"
    "DefaultEmployee = {default_employee_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_employee_id: str
    schema_version: str
    business_name: str


def sample_products() -> List[Product]:
    """Catalog used across the engine tests, one product per promotion kind."""

    return [
        Product("P-COLA", "Cola", Decimal("2.50"), 20, low_stock_threshold=5),
        Product(
            "P-CHIPS",
            "Chips",
            Decimal("10.00"),
            30,
            promotion=BuyXGetYPromotion(2, 1, PROMO_START, PROMO_END, promotion_id="PR-1"),
        ),
        Product(
            "P-SOAP",
            "Soap",
            Decimal("10.00"),
            10,
            promotion=PercentagePromotion(Decimal("20"), PROMO_START, PROMO_END, promotion_id="PR-2"),
        ),
        Product(
            "P-TEA",
            "Tea",
            Decimal("10.00"),
            3,
            low_stock_threshold=2,
            promotion=FixedPromotion(Decimal("3"), PROMO_START, PROMO_END, promotion_id="PR-3"),
        ),
    ]


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryCatalogStore:
    """Catalog store keeping products and movements in dictionaries."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self.products: Dict[str, Product] = {product.product_id: product for product in products}
        self.movements: List[StockMovement] = []
        self.failing_products: set[str] = set()
        self.failures_before_success: Dict[str, int] = {}
        self._ids = itertools.count(1)

    async def get_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        return {pid: self.products[pid] for pid in product_ids if pid in self.products}

    async def adjust_stock(self, request: MovementRequest) -> Optional[StockMovement]:
        if request.product_ref in self.failing_products:
            return None
        remaining = self.failures_before_success.get(request.product_ref, 0)
        if remaining:
            self.failures_before_success[request.product_ref] = remaining - 1
            return None
        movement = StockMovement(
            movement_id=f"M{next(self._ids):04d}",
            timestamp=NOW,
            product_ref=request.product_ref,
            quantity_delta=request.quantity_delta,
            kind=request.kind,
            reason=request.reason,
            attributed_to=request.attributed_to,
            prior_stock=request.prior_stock,
            resulting_stock=request.resulting_stock,
            reference=request.reference,
        )
        product = self.products[request.product_ref]
        self.products[request.product_ref] = replace(product, stock_on_hand=movement.resulting_stock)
        self.movements.append(movement)
        return movement

    async def find_movement(self, product_ref: str, reference: str) -> Optional[StockMovement]:
        for movement in self.movements:
            if movement.product_ref == product_ref and movement.reference == reference:
                return movement
        return None

    async def list_movements(self, product_ref: Optional[str] = None) -> List[StockMovement]:
        return [m for m in self.movements if product_ref is None or m.product_ref == product_ref]


class InMemorySaleStore:
    """Sale store recording sales and outbox intents."""

    def __init__(self) -> None:
        self.sales: Dict[str, Sale] = {}
        self.intents: Dict[tuple, MovementIntent] = {}
        self.reject_writes = False
        self.raise_on_write: Optional[Exception] = None

    async def add_sale(self, draft: Sale, intents: Sequence[MovementIntent]) -> Optional[Sale]:
        if self.raise_on_write is not None:
            raise self.raise_on_write
        if self.reject_writes or draft.sale_id in self.sales:
            return None
        self.sales[draft.sale_id] = draft
        for intent in intents:
            self.intents[intent.key] = intent
        return draft

    async def pending_intents(self, sale_id: Optional[str] = None) -> List[MovementIntent]:
        return [
            intent
            for intent in self.intents.values()
            if intent.status == constants.OutboxStatus.PENDING and (sale_id is None or intent.sale_id == sale_id)
        ]

    async def update_intent(self, intent: MovementIntent) -> Optional[MovementIntent]:
        if intent.key not in self.intents:
            return None
        self.intents[intent.key] = intent
        return intent


class InMemoryLoyaltyStore:
    """Loyalty store holding the tier table and card balances."""

    def __init__(self, tiers: Sequence[LoyaltyTier] = loyalty.DEFAULT_TIERS, cards: Iterable[LoyaltyCard] = ()) -> None:
        self.tiers = list(tiers)
        self.cards: Dict[str, LoyaltyCard] = {card.card_id: card for card in cards}
        self.reject_writes = False

    async def list_tiers(self) -> List[LoyaltyTier]:
        return list(self.tiers)

    async def get_card(self, card_id: str) -> Optional[LoyaltyCard]:
        return self.cards.get(card_id)

    async def save_card(self, card: LoyaltyCard) -> Optional[LoyaltyCard]:
        if self.reject_writes:
            return None
        self.cards[card.card_id] = card
        return card


@pytest.fixture
def catalog() -> InMemoryCatalogStore:
    """Return an in-memory catalog seeded with :func:`sample_products`."""

    return InMemoryCatalogStore(sample_products())


@pytest.fixture
def sale_store() -> InMemorySaleStore:
    return InMemorySaleStore()


@pytest.fixture
def silver_card() -> LoyaltyCard:
    return LoyaltyCard(card_id="C-100", tier="silver", points=1200, customer_name="Ada")


@pytest.fixture
def loyalty_store(silver_card: LoyaltyCard) -> InMemoryLoyaltyStore:
    return InMemoryLoyaltyStore(cards=[silver_card])


@pytest.fixture
def ledger(catalog: InMemoryCatalogStore) -> StockLedger:
    return StockLedger(catalog)


@pytest.fixture
def business() -> data_manager.BusinessProfile:
    return data_manager.BusinessProfile(
        name="Boutique Test",
        address="1 Rue de l'Exemple",
        phone="+32 2 000 00 00",
        email="shop@example.com",
        vat_number="BE0123456789",
        business_id="0123.456.789",
    )


@pytest.fixture
def orchestrator_factory(
    catalog: InMemoryCatalogStore,
    sale_store: InMemorySaleStore,
    ledger: StockLedger,
    loyalty_store: InMemoryLoyaltyStore,
    business: data_manager.BusinessProfile,
) -> Callable[..., CheckoutOrchestrator]:
    """Build orchestrators over the shared in-memory stores."""

    def _build(**policy_overrides: object) -> CheckoutOrchestrator:
        return CheckoutOrchestrator(
            catalog,
            sale_store,
            ledger,
            tiers=loyalty.DEFAULT_TIERS,
            business=business,
            loyalty_store=loyalty_store,
            policy=CheckoutPolicy(**policy_overrides),
        )

    return _build


@pytest.fixture
def orchestrator(orchestrator_factory: Callable[..., CheckoutOrchestrator]) -> CheckoutOrchestrator:
    return orchestrator_factory()


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Boutique Test",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_employee_id: str = DEFAULT_EMPLOYEE_ID,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                business_name=business_name,
                default_employee_id=default_employee_id,
            )
            + extra
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_employee_id=default_employee_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def stocked_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context whose workbook holds :func:`sample_products` and a silver card."""

    for product in sample_products():
        data_manager.append_product(runtime_context.workbook, product)
    runtime_context.workbook[constants.SheetName.LOYALTY_CARDS.value].append(
        data_manager.serialize_loyalty_card(LoyaltyCard("C-100", "silver", 1200, "Ada"))
    )
    core_logic.persist_context(runtime_context)
    return runtime_context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="settle-cli", description="Settlement CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
