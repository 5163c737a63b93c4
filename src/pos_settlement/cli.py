"""Command-line entry points for the settlement engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by
:mod:`pos_settlement.core_logic`. Read commands print plain-text reports;
write commands persist the workbook once they succeed.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .checkout import CheckoutResult
from .constants import MovementKind, PaymentMethod
from .errors import ValidationError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="settle-cli",
        description="Command-line tools for the point-of-sale settlement workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to an upward search from the current directory).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkouts and stock adjustments."""
    specs = {
        "checkout": register_checkout_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "count": register_count_command(subparsers),
        "drain-outbox": register_drain_outbox_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "change": register_change_command(subparsers),
        "stock": register_stock_command(subparsers),
        "movements": register_movements_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(raw: str) -> Tuple[str, int]:
    """Parse a ``PRODUCT_ID=QUANTITY`` cart item (quantity defaults to 1)."""
    product_id, separator, quantity_raw = raw.partition("=")
    product_id = product_id.strip()
    if not product_id:
        raise argparse.ArgumentTypeError(f"Missing product id in item {raw!r}")
    if not separator:
        return product_id, 1
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in item {raw!r}") from exc
    if quantity <= 0:
        raise argparse.ArgumentTypeError(f"Quantity must be positive in item {raw!r}")
    return product_id, quantity


def parse_money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw!r}") from exc


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Settle a cart into a sale and decrement stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="Cart item as PRODUCT_ID=QUANTITY; repeat for several items.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--tendered", type=parse_money, default=None, help="Cash handed over.")
        parser.add_argument("--card-id", default=None, help="Loyalty card to apply.")
        parser.add_argument("--employee-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout, writes=True)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Record a manual stock adjustment or a loss."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--delta", type=int, required=True, help="Signed quantity change.")
        parser.add_argument(
            "--kind",
            choices=[MovementKind.MANUAL_ADJUSTMENT.value, MovementKind.LOSS.value],
            default=MovementKind.MANUAL_ADJUSTMENT.value,
        )
        parser.add_argument("--reason", required=True)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--employee-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock, writes=True)


def register_count_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``count``."""
    name = "count"
    help_text = "Record a physical inventory count."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--counted", type=int, required=True)
        parser.add_argument("--reason", default="Inventory count")
        parser.add_argument("--employee-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_count, writes=True)


def register_drain_outbox_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``drain-outbox``."""
    name = "drain-outbox"
    help_text = "Retry stock decrements left pending by earlier sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", default=None, help="Only retry intents of this sale.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_drain_outbox, writes=True)


def register_change_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``change``."""
    name = "change"
    help_text = "Break down the change owed for a cash payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--due", type=parse_money, required=True)
        parser.add_argument("--tendered", type=parse_money, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_change)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "Display the stock movement ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products at or below their low-stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Compare stock levels with the movement ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _employee(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "employee_id", None) or context.settings.default_employee_id


def translate_checkout(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.CheckoutCommand:
    """Translate CLI args into a checkout command object."""
    payment = PaymentMethod(args.payment_method)
    if payment == PaymentMethod.CASH and args.tendered is None:
        raise ValidationError("--tendered is required for cash payments")
    return core_logic.CheckoutCommand(
        items=tuple(args.items),
        payment_method=payment,
        employee_id=_employee(context, args),
        tendered=args.tendered,
        loyalty_card_id=args.card_id,
    )


def translate_adjust_stock(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.AdjustmentCommand:
    """Translate CLI args into a stock adjustment command object."""
    return core_logic.AdjustmentCommand(
        product_id=args.product_id,
        quantity_delta=args.delta,
        kind=MovementKind(args.kind),
        reason=args.reason,
        employee_id=_employee(context, args),
        reference=args.reference,
    )


def translate_count(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.CountCommand:
    """Translate CLI args into an inventory count command object."""
    return core_logic.CountCommand(
        product_id=args.product_id,
        counted=args.counted,
        reason=args.reason,
        employee_id=_employee(context, args),
    )


def format_receipt(result: CheckoutResult) -> str:
    """Render a checkout result as a plain-text receipt."""
    receipt = result.receipt
    sale = receipt.sale
    lines = [receipt.business_name]
    lines.extend(value for value in (receipt.address, receipt.phone, receipt.email) if value)
    if receipt.vat_number:
        lines.append(f"VAT: {receipt.vat_number}")
    if receipt.business_id:
        lines.append(f"ID: {receipt.business_id}")
    lines.append(f"Receipt {sale.sale_id}  {sale.timestamp:%Y-%m-%d %H:%M:%S}")
    for line in sale.lines:
        promo = f" ({line.promotion_kind.value})" if line.promotion_kind is not None else ""
        lines.append(f"  {line.quantity} x {line.product_name} @ {line.unit_price} = {line.line_amount}{promo}")
    lines.append(f"Subtotal: {sale.subtotal}")
    if sale.discount_rate:
        lines.append(f"Loyalty discount: {sale.discount_rate * 100:.0f}%")
    lines.append(f"Total: {sale.total}")
    lines.append(f"Paid ({sale.payment_method.value}): {sale.amount_tendered}")
    lines.append(f"Change: {sale.change_given}")
    if result.cash is not None:
        for entry in result.cash.counts:
            lines.append(f"  {entry.count} x {entry.denomination}")
    if sale.points_earned is not None:
        lines.append(f"Points earned: {sale.points_earned}")
    return "\n".join(lines)


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow."""
    command = translate_checkout(context, args)
    result = core_logic.record_checkout(context, command)
    print(format_receipt(result))
    for intent in result.stock.pending:
        print(f"Pending stock decrement: {intent.product_ref} ({intent.quantity_delta})")
    for product_id in result.low_stock:
        print(f"Low stock: {product_id}")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock adjustment workflow."""
    movement = core_logic.record_adjustment(context, translate_adjust_stock(context, args))
    print(f"{movement.movement_id}: {movement.product_ref} {movement.prior_stock} -> {movement.resulting_stock}")
    return 0


def run_count(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory count workflow."""
    movement = core_logic.record_count(context, translate_count(context, args))
    print(f"{movement.movement_id}: {movement.product_ref} {movement.prior_stock} -> {movement.resulting_stock}")
    return 0


def run_drain_outbox(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outbox draining workflow."""
    settlement = core_logic.drain_outbox(context, args.sale_id)
    print(f"Applied {len(settlement.movements)} movement(s); {len(settlement.pending)} still pending.")
    return 0


def run_change(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the change breakdown workflow."""
    change = core_logic.calculate_change(context, args.due, args.tendered)
    print(f"Change: {change.change}")
    for entry in change.counts:
        print(f"  {entry.count} x {entry.denomination}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for product_id, quantity in sorted(core_logic.calculate_inventory(context).items()):
        print(f"{product_id}\t{quantity}")
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the movement ledger reporting workflow."""
    for movement in core_logic.list_movements(context, args.product_id):
        print(
            f"{movement.timestamp.isoformat()}\t{movement.product_ref}\t{movement.kind.value}\t"
            f"{movement.quantity_delta:+d}\t{movement.prior_stock} -> {movement.resulting_stock}\t{movement.reason}"
        )
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low-stock reporting workflow."""
    for product in core_logic.low_stock_report(context):
        print(f"{product.product_id}\t{product.stock_on_hand}\t(threshold {product.low_stock_threshold})")
    return 0


def run_reconcile_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger reconciliation workflow."""
    mismatches = core_logic.reconcile_stock(context)
    for product_id, (recorded, derived) in sorted(mismatches.items()):
        print(f"{product_id}\trecorded {recorded}\tledger {derived}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
