"""Utility for initializing the settlement master workbook.

The module doubles as a script (``python -m pos_settlement.setup_excel``) and
as a library used by tests or other tooling.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log, loyalty
from .constants import SheetName
from .models import LoyaltyTier


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "UnitPrice",
        "StockOnHand",
        "LowStockThreshold",
    ],
    SheetName.PROMOTIONS.value: [
        "PromotionID",
        "ProductID",
        "Kind",
        "Value",
        "BuyQuantity",
        "GetFreeQuantity",
        "StartTime",
        "EndTime",
        "Description",
    ],
    SheetName.LOYALTY_TIERS.value: [
        "Name",
        "MinimumPoints",
        "DiscountPercentage",
        "PointsMultiplier",
    ],
    SheetName.LOYALTY_CARDS.value: [
        "CardID",
        "CustomerName",
        "Tier",
        "Points",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "Timestamp",
        "EmployeeID",
        "PaymentMethod",
        "Subtotal",
        "DiscountRate",
        "Total",
        "AmountTendered",
        "ChangeGiven",
        "LoyaltyCardID",
        "PointsEarned",
    ],
    SheetName.SALE_LINES.value: [
        "SaleID",
        "ProductID",
        "ProductName",
        "Quantity",
        "UnitPrice",
        "LineAmount",
        "PromotionKind",
    ],
    SheetName.STOCK_MOVEMENTS.value: [
        "MovementID",
        "Timestamp",
        "ProductID",
        "Kind",
        "QuantityDelta",
        "PriorStock",
        "ResultingStock",
        "Reason",
        "EmployeeID",
        "Reference",
    ],
    SheetName.OUTBOX.value: [
        "SaleID",
        "ProductID",
        "QuantityDelta",
        "ExpectedStock",
        "EmployeeID",
        "Status",
        "Attempts",
        "LastError",
    ],
}

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values needed to bootstrap the workbook."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    tiers: Sequence[LoyaltyTier] = loyalty.DEFAULT_TIERS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination`` seeded with ``tiers``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    tiers_sheet = workbook[SheetName.LOYALTY_TIERS.value]
    for tier in loyalty.ordered_tiers(tiers):
        tiers_sheet.append(data_manager.serialize_loyalty_tier(tier))

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d loyalty tier(s)", destination, len(tiers))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the settlement data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Settlement Workbook Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
