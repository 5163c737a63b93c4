"""Data access layer for the settlement engine.

This module provides low-level helpers that read from and write to the master
workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: converting rows to and from the engine's value types,
   appending rows and updating individual cells.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_RECEIPT_PREFIX,
    EURO_DENOMINATIONS,
    MovementKind,
    OutboxStatus,
    PaymentMethod,
    PromotionKind,
    SheetName,
)
from .errors import ValidationError
from .models import (
    BuyXGetYPromotion,
    FixedPromotion,
    LoyaltyCard,
    LoyaltyTier,
    MovementIntent,
    PercentagePromotion,
    Product,
    Promotion,
    Sale,
    SaleLine,
    StockMovement,
)


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class BusinessProfile:
    """Business details printed on every receipt."""

    name: str
    address: str = ""
    phone: str = ""
    email: str = ""
    vat_number: str = ""
    business_id: str = ""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    default_employee_id: str
    business: BusinessProfile
    receipt_prefix: str = DEFAULT_RECEIPT_PREFIX
    movement_retry_limit: int = 3
    retry_delay_seconds: float = 0.0
    apply_points_multiplier: bool = False
    reevaluate_tier: bool = False
    denominations: Tuple[Decimal, ...] = EURO_DENOMINATIONS


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_denominations(raw: str) -> Tuple[Decimal, ...]:
    """Parse a comma separated denomination list, largest first."""

    try:
        values = [Decimal(part.strip()) for part in raw.split(",") if part.strip()]
    except InvalidOperation as exc:
        raise ValueError(f"Invalid denomination list: {raw!r}") from exc
    if not values or any(value <= 0 for value in values):
        raise ValueError(f"Denominations must be positive: {raw!r}")
    return tuple(sorted(values, reverse=True))


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required entries are ``[System] DataFile``, ``[System] SchemaVersion``,
    ``[Business] Name`` and ``[Defaults] DefaultEmployee``. Everything under
    ``[Checkout]``, ``[Loyalty]`` and ``[Cash]`` is optional. Relative data
    file paths are expanded against ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional entry holds an unparsable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
        business_name = parser.get("Business", "Name")
        default_employee = parser.get("Defaults", "DefaultEmployee")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    business = BusinessProfile(
        name=business_name,
        address=parser.get("Business", "Address", fallback=""),
        phone=parser.get("Business", "Phone", fallback=""),
        email=parser.get("Business", "Email", fallback=""),
        vat_number=parser.get("Business", "VatNumber", fallback=""),
        business_id=parser.get("Business", "BusinessId", fallback=""),
    )

    denominations_raw = parser.get("Cash", "Denominations", fallback=None)
    denominations = parse_denominations(denominations_raw) if denominations_raw else EURO_DENOMINATIONS

    retry_limit = parser.getint("Checkout", "MovementRetryLimit", fallback=3)
    if retry_limit < 1:
        raise ValueError(f"MovementRetryLimit must be at least 1, got {retry_limit}")

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        default_employee_id=default_employee,
        business=business,
        receipt_prefix=parser.get("Checkout", "ReceiptPrefix", fallback=DEFAULT_RECEIPT_PREFIX),
        movement_retry_limit=retry_limit,
        retry_delay_seconds=parser.getfloat("Checkout", "RetryDelaySeconds", fallback=0.0),
        apply_points_multiplier=parser.getboolean("Loyalty", "ApplyPointsMultiplier", fallback=False),
        reevaluate_tier=parser.getboolean("Loyalty", "ReevaluateTier", fallback=False),
        denominations=denominations,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet: SheetName) -> Iterable[Tuple[object, ...]]:
    """Yield non-empty data rows of ``sheet`` (the header row is skipped)."""

    for raw in workbook[sheet.value].iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == key_value:
            return row_idx

    return None


def update_cells(workbook: Workbook, sheet_name: str, row_index: int, field_values: Dict[str, Any]) -> None:
    """Write ``field_values`` (keyed by header title) into ``row_index``.

    Raises:
        KeyError: If any referenced column is missing.
    """

    header_map = _header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


# ---------------------------------------------------------------------------
# Scalar coercion helpers
# ---------------------------------------------------------------------------


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _int(raw: object, default: int = 0) -> int:
    if raw is None:
        return default
    value = Decimal(str(raw))
    if value != value.to_integral_value():
        raise ValueError(f"Expected a whole number, found {raw!r}")
    return int(value)


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def parse_timestamp(raw: object) -> datetime:
    """Read a timestamp cell stored either as ISO text or a native datetime.

    Naive values are interpreted as UTC.
    """

    if isinstance(raw, datetime):
        moment = raw
    elif raw is None:
        raise ValueError("Missing timestamp")
    else:
        moment = datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


# ---------------------------------------------------------------------------
# Promotions and products
# ---------------------------------------------------------------------------


def serialize_promotion(product_id: str, promotion: Promotion) -> list[object]:
    """Convert a promotion into ``Promotions`` sheet column order."""

    value = None
    buy_quantity = None
    free_quantity = None
    if isinstance(promotion, BuyXGetYPromotion):
        buy_quantity = promotion.buy_quantity
        free_quantity = promotion.get_free_quantity
    else:
        value = promotion.value
    return [
        promotion.promotion_id,
        product_id,
        promotion.kind.value,
        value,
        buy_quantity,
        free_quantity,
        promotion.start_time.isoformat(),
        promotion.end_time.isoformat(),
        promotion.description,
    ]


def deserialize_promotion(raw_row: Sequence[object]) -> Tuple[str, Optional[Promotion]]:
    """Convert a ``Promotions`` row into ``(product_id, promotion)``.

    Only the fields meaningful for the row's kind are read. A row that cannot
    be turned into a valid promotion (unknown kind, non-numeric or out-of-range
    values, broken dates) is reported as an anomaly and yields ``None`` so the
    product is sold at full price.
    """

    (
        promotion_id,
        product_id,
        kind_raw,
        value_raw,
        buy_raw,
        free_raw,
        start_raw,
        end_raw,
        description,
    ) = raw_row[:9]

    try:
        kind = PromotionKind(str(kind_raw))
        window = {
            "start_time": parse_timestamp(start_raw),
            "end_time": parse_timestamp(end_raw),
            "promotion_id": str(promotion_id or ""),
            "description": str(description or ""),
        }
        if kind == PromotionKind.PERCENTAGE:
            promotion: Promotion = PercentagePromotion(value=_decimal(value_raw), **window)
        elif kind == PromotionKind.FIXED:
            promotion = FixedPromotion(value=_decimal(value_raw), **window)
        else:
            promotion = BuyXGetYPromotion(
                buy_quantity=_int(buy_raw),
                get_free_quantity=_int(free_raw),
                **window,
            )
    except (ValidationError, InvalidOperation, ValueError, TypeError) as exc:
        log.warning(
            "Ignoring malformed promotion '%s' for product '%s': %s",
            promotion_id,
            product_id,
            exc,
        )
        return str(product_id), None
    return str(product_id), promotion


def iter_promotions(workbook: Workbook) -> Dict[str, Promotion]:
    """Return the current promotion per product; later rows win."""

    promotions: Dict[str, Promotion] = {}
    for raw in _iter_rows(workbook, SheetName.PROMOTIONS):
        product_id, promotion = deserialize_promotion(raw)
        if promotion is None:
            promotions.pop(product_id, None)
        else:
            promotions[product_id] = promotion
    return promotions


def serialize_product(record: Product) -> list[object]:
    """Values arranged as ``[ProductID, ProductName, UnitPrice, StockOnHand,
    LowStockThreshold]``."""

    return [
        record.product_id,
        record.name,
        record.unit_price,
        record.stock_on_hand,
        record.low_stock_threshold,
    ]


def deserialize_product(raw_row: Sequence[object], promotion: Optional[Promotion] = None) -> Product:
    """Convert a raw ``Products`` row into a :class:`Product`."""

    product_id, product_name, price_raw, stock_raw, threshold_raw = raw_row[:5]
    return Product(
        product_id=str(product_id),
        name=str(product_name) if product_name is not None else "",
        unit_price=_decimal(price_raw, "0.00"),
        stock_on_hand=_int(stock_raw),
        low_stock_threshold=_int(threshold_raw),
        promotion=promotion,
    )


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Iterate over products with their current promotion attached."""

    promotions = iter_promotions(workbook)
    for raw in _iter_rows(workbook, SheetName.PRODUCTS):
        yield deserialize_product(raw, promotions.get(str(raw[0])))


def append_product(workbook: Workbook, record: Product) -> None:
    workbook[SheetName.PRODUCTS.value].append(serialize_product(record))
    if record.promotion is not None:
        append_promotion(workbook, record.product_id, record.promotion)


def append_promotion(workbook: Workbook, product_id: str, promotion: Promotion) -> None:
    workbook[SheetName.PROMOTIONS.value].append(serialize_promotion(product_id, promotion))


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------


def serialize_loyalty_tier(record: LoyaltyTier) -> list[object]:
    return [record.name, record.minimum_points, record.discount_percentage, record.points_multiplier]


def deserialize_loyalty_tier(raw_row: Sequence[object]) -> LoyaltyTier:
    name, minimum_raw, discount_raw, multiplier_raw = raw_row[:4]
    return LoyaltyTier(
        name=str(name),
        minimum_points=_int(minimum_raw),
        discount_percentage=_decimal(discount_raw),
        points_multiplier=_decimal(multiplier_raw, "1"),
    )


def iter_loyalty_tiers(workbook: Workbook) -> List[LoyaltyTier]:
    """Return the tier table ordered by ascending minimum points."""

    tiers = [deserialize_loyalty_tier(raw) for raw in _iter_rows(workbook, SheetName.LOYALTY_TIERS)]
    return sorted(tiers, key=lambda tier: tier.minimum_points)


def serialize_loyalty_card(record: LoyaltyCard) -> list[object]:
    return [record.card_id, record.customer_name, record.tier, record.points]


def deserialize_loyalty_card(raw_row: Sequence[object]) -> LoyaltyCard:
    card_id, customer_name, tier, points_raw = raw_row[:4]
    return LoyaltyCard(
        card_id=str(card_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        tier=str(tier),
        points=_int(points_raw),
    )


def iter_loyalty_cards(workbook: Workbook) -> Iterable[LoyaltyCard]:
    for raw in _iter_rows(workbook, SheetName.LOYALTY_CARDS):
        yield deserialize_loyalty_card(raw)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def serialize_sale(record: Sale) -> list[object]:
    return [
        record.sale_id,
        record.timestamp.isoformat(),
        record.employee_id,
        record.payment_method.value,
        record.subtotal,
        record.discount_rate,
        record.total,
        record.amount_tendered,
        record.change_given,
        record.loyalty_card_ref,
        record.points_earned,
    ]


def serialize_sale_line(sale_id: str, record: SaleLine) -> list[object]:
    return [
        sale_id,
        record.product_ref,
        record.product_name,
        record.quantity,
        record.unit_price,
        record.line_amount,
        record.promotion_kind.value if record.promotion_kind is not None else None,
    ]


def deserialize_sale_line(raw_row: Sequence[object]) -> Tuple[str, SaleLine]:
    sale_id, product_id, product_name, quantity_raw, price_raw, amount_raw, kind_raw = raw_row[:7]
    return str(sale_id), SaleLine(
        product_ref=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=_int(quantity_raw),
        unit_price=_decimal(price_raw, "0.00"),
        line_amount=_decimal(amount_raw, "0.00"),
        promotion_kind=PromotionKind(str(kind_raw)) if kind_raw is not None else None,
    )


def deserialize_sale(raw_row: Sequence[object], lines: Sequence[SaleLine]) -> Sale:
    (
        sale_id,
        timestamp_raw,
        employee_id,
        payment_raw,
        subtotal_raw,
        rate_raw,
        total_raw,
        tendered_raw,
        change_raw,
        card_raw,
        points_raw,
    ) = raw_row[:11]
    return Sale(
        sale_id=str(sale_id),
        timestamp=parse_timestamp(timestamp_raw),
        lines=tuple(lines),
        subtotal=_decimal(subtotal_raw, "0.00"),
        discount_rate=_decimal(rate_raw),
        total=_decimal(total_raw, "0.00"),
        payment_method=PaymentMethod(str(payment_raw)),
        amount_tendered=_decimal(tendered_raw, "0.00"),
        change_given=_decimal(change_raw, "0.00"),
        employee_id=str(employee_id) if employee_id is not None else "",
        loyalty_card_ref=_optional_str(card_raw),
        points_earned=_int(points_raw) if points_raw is not None else None,
    )


def iter_sales(workbook: Workbook) -> Iterable[Sale]:
    """Yield persisted sales with their line snapshots attached."""

    lines_by_sale: Dict[str, List[SaleLine]] = {}
    for raw in _iter_rows(workbook, SheetName.SALE_LINES):
        sale_id, line = deserialize_sale_line(raw)
        lines_by_sale.setdefault(sale_id, []).append(line)
    for raw in _iter_rows(workbook, SheetName.SALES):
        yield deserialize_sale(raw, lines_by_sale.get(str(raw[0]), []))


# ---------------------------------------------------------------------------
# Stock movements and outbox
# ---------------------------------------------------------------------------


def serialize_movement(record: StockMovement) -> list[object]:
    return [
        record.movement_id,
        record.timestamp.isoformat(),
        record.product_ref,
        record.kind.value,
        record.quantity_delta,
        record.prior_stock,
        record.resulting_stock,
        record.reason,
        record.attributed_to,
        record.reference,
    ]


def deserialize_movement(raw_row: Sequence[object]) -> StockMovement:
    (
        movement_id,
        timestamp_raw,
        product_id,
        kind_raw,
        delta_raw,
        prior_raw,
        resulting_raw,
        reason,
        employee_id,
        reference,
    ) = raw_row[:10]
    return StockMovement(
        movement_id=str(movement_id),
        timestamp=parse_timestamp(timestamp_raw),
        product_ref=str(product_id),
        kind=MovementKind(str(kind_raw)),
        quantity_delta=_int(delta_raw),
        prior_stock=_int(prior_raw),
        resulting_stock=_int(resulting_raw),
        reason=str(reason) if reason is not None else "",
        attributed_to=str(employee_id) if employee_id is not None else "",
        reference=_optional_str(reference),
    )


def iter_movements(workbook: Workbook) -> Iterable[StockMovement]:
    for raw in _iter_rows(workbook, SheetName.STOCK_MOVEMENTS):
        yield deserialize_movement(raw)


def append_movement(workbook: Workbook, record: StockMovement) -> None:
    workbook[SheetName.STOCK_MOVEMENTS.value].append(serialize_movement(record))


def serialize_intent(record: MovementIntent) -> list[object]:
    return [
        record.sale_id,
        record.product_ref,
        record.quantity_delta,
        record.expected_stock,
        record.attributed_to,
        record.status.value,
        record.attempts,
        record.last_error,
    ]


def deserialize_intent(raw_row: Sequence[object]) -> MovementIntent:
    (
        sale_id,
        product_id,
        delta_raw,
        expected_raw,
        employee_id,
        status_raw,
        attempts_raw,
        last_error,
    ) = raw_row[:8]
    return MovementIntent(
        sale_id=str(sale_id),
        product_ref=str(product_id),
        quantity_delta=_int(delta_raw),
        expected_stock=_int(expected_raw),
        attributed_to=str(employee_id) if employee_id is not None else "",
        status=OutboxStatus(str(status_raw)),
        attempts=_int(attempts_raw),
        last_error=_optional_str(last_error),
    )


def iter_intents(workbook: Workbook) -> Iterable[Tuple[int, MovementIntent]]:
    """Yield ``(row_index, intent)`` pairs from the ``Outbox`` sheet."""

    sheet = workbook[SheetName.OUTBOX.value]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            yield row_idx, deserialize_intent(raw)
