"""Command-line entry points for the line-item engine.

The parser only maps arguments onto the runtime helpers of
:mod:`lineitem_erp.core_logic`; each sub-command is a :class:`CommandSpec`
pairing an argparse registrar with an executor. Commands that need no
workbook (unit conversion, number normalisation) run without a config file.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, inventory_ledger, log
from .constants import MANUAL_SOURCES, MovementSource, VoucherType
from .errors import BusinessRuleViolation
from .numeric import format_numeric_for_input, normalize_numeric_string
from .units import convert_quantity, parse_unit


@dataclass(frozen=True)
class CommandSpec:
    """Parser registrar and executor of one sub-command."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    requires_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Top-level parser carrying the global ``--config`` option."""
    parser = argparse.ArgumentParser(
        prog="lineitem-cli",
        description="Command-line tools for the line-item workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Register every sub-command on ``parser`` and return them by name."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change the workbook."""
    specs = {
        "add-movement": register_add_movement_command(subparsers),
        "edit-movement": register_edit_movement_command(subparsers),
        "delete-movement": register_delete_movement_command(subparsers),
        "sync-stock": register_sync_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands and standalone helpers."""
    specs = {
        "convert": register_convert_command(subparsers),
        "normalize": register_normalize_command(subparsers),
        "stock": register_stock_command(subparsers),
        "movements": register_movements_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_movement_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument(
        "--voucher-type",
        choices=[member.value for member in VoucherType],
        required=required,
    )
    parser.add_argument(
        "--source",
        choices=sorted(MANUAL_SOURCES),
        default=MovementSource.OPENING_BALANCE.value if required else None,
    )
    parser.add_argument("--quantity", required=required, help="Quantity in the product's main unit.")
    parser.add_argument("--sub-quantity", default=None, help="Override the derived sub-unit quantity.")
    parser.add_argument("--from-shelf", dest="from_shelf", default=None)
    parser.add_argument("--to-shelf", dest="to_shelf", default=None)


def register_add_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-movement``."""
    name = "add-movement"
    help_text = "Record a manual stock movement for a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_movement_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_movement)


def register_edit_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-movement``."""
    name = "edit-movement"
    help_text = "Change a manual stock movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--movement-id", required=True)
        _add_movement_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_movement)


def register_delete_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-movement``."""
    name = "delete-movement"
    help_text = "Delete a manual stock movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--movement-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_movement)


def register_sync_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync-stock``."""
    name = "sync-stock"
    help_text = "Recompute product stock totals from shelf balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", dest="product_ids", action="append", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync_stock)


def register_convert_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``convert``."""
    name = "convert"
    help_text = "Convert a quantity between units."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("value")
        parser.add_argument("--from-unit", required=True)
        parser.add_argument("--to-unit", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_convert, requires_context=False
    )


def register_normalize_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``normalize``."""
    name = "normalize"
    help_text = "Normalise a localised number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("value")
        parser.add_argument("--display", action="store_true", help="Render grouped Persian digits instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_normalize, requires_context=False
    )


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display the shelf balances of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "List the stock movements of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the change log of a record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--module", required=True)
        parser.add_argument("--record-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Load and schema-check the context named by ``--config`` (or ./config.ini)."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Run the executor registered for ``args.command``."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Index ``specs`` by name, rejecting duplicates."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_movement(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into movement field values; unset options are omitted."""
    values = {
        "voucher_type": getattr(args, "voucher_type", None),
        "source": getattr(args, "source", None),
        "main_quantity": getattr(args, "quantity", None),
        "sub_quantity": getattr(args, "sub_quantity", None),
        "from_shelf_id": getattr(args, "from_shelf", None),
        "to_shelf_id": getattr(args, "to_shelf", None),
    }
    return {key: value for key, value in values.items() if value is not None}


def _print_rows(rows: Iterable[Mapping[str, Any]]) -> None:
    for row in rows:
        print(json.dumps(dict(row), ensure_ascii=False, default=str))


def run_add_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Append a movement through the product's movement editor."""
    core_logic.record_movement(context, args.product_id, **translate_movement(args))
    return 0


def run_edit_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.edit_movement(context, args.product_id, args.movement_id, **translate_movement(args))
    return 0


def run_delete_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_movement(context, args.product_id, args.movement_id)
    return 0


def run_sync_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    totals = inventory_ledger.sync_product_stock(context.store, args.product_ids)
    for product_id, total in totals.items():
        print(f"{product_id}\t{total}")
    return 0


def run_convert(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Print ``value`` converted between two units."""
    parse_unit(args.from_unit)
    parse_unit(args.to_unit)
    print(convert_quantity(args.value, args.from_unit, args.to_unit))
    return 0


def run_normalize(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    if args.display:
        print(format_numeric_for_input(args.value, with_grouping=True))
    else:
        print(normalize_numeric_string(args.value))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for shelf_id, stock in core_logic.stock_by_shelf(context, args.product_id).items():
        print(f"{shelf_id}\t{stock}")
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(core_logic.list_movements(context, args.product_id))
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(core_logic.change_history(context, args.module, args.record_id))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Log ``error`` and map it to an exit code: 2 business rule, 3 missing file, 1 other."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Save the workbook, reporting a locked file as RuntimeError."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of ``lineitem-cli``; returns the process exit code."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table.get(args.command)
        context = None
        if spec is None or spec.requires_context:
            context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and context is not None:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
