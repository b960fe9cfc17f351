"""Command-line entry points for the bullion ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing plain-text summaries of a reconciliation.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import TransactionKind


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def decimal_argument(raw: str) -> Decimal:
    """argparse ``type`` converting text into a :class:`Decimal`."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="bullion-cli",
        description="Command-line tools for the Bullion FIFO ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
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
    """Declare commands that write to the ledger or the offline cache."""
    specs = {
        "purchase": register_purchase_command(subparsers),
        "sale": register_sale_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "lots": register_lots_command(subparsers),
        "profit": register_profit_command(subparsers),
        "log": register_log_command(subparsers),
        "status": register_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _make_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    add_arguments: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    """Bundle a sub-command's parser setup and executor into a :class:`CommandSpec`."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        command_parser = action.add_parser(name, help=help_text, description=help_text)
        if add_arguments is not None:
            add_arguments(command_parser)
        command_parser.set_defaults(command=name)
        return command_parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _add_entry_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--party", dest="party_name", required=True, help="Supplier or customer name.")
    parser.add_argument("--grams", dest="quantity", type=decimal_argument, required=True)
    parser.add_argument("--rate", dest="rate_per_gram", type=decimal_argument, required=True, help="Price per gram.")
    parser.add_argument(
        "--tax-rate",
        type=decimal_argument,
        default=None,
        help="GST percentage (defaults to the configured rate).",
    )
    parser.add_argument(
        "--date",
        dest="business_date",
        type=date.fromisoformat,
        default=None,
        help="Business date as YYYY-MM-DD (defaults to today, UTC).",
    )


def _add_lots_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--open-only", action="store_true", help="Hide fully consumed lots.")


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    return _make_spec("purchase", "Record a purchase of gold from a supplier.", run_purchase, _add_entry_arguments)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    return _make_spec("sale", "Record a sale of gold to a customer.", run_sale, _add_entry_arguments)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _make_spec("sync", "Upload offline entries to the remote ledger.", run_sync)


def register_lots_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _make_spec("lots", "Display inventory lots and the FIFO stock value.", run_lots_report, _add_lots_arguments)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _make_spec("profit", "Display revenue, COGS, and realized profit.", run_profit_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _make_spec("log", "Display transactions with their FIFO consumption trail.", run_log_report)


def register_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _make_spec("status", "Display data source health and stock position.", run_status_report)


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


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        party_name=args.party_name,
        quantity=args.quantity,
        rate_per_gram=args.rate_per_gram,
        tax_rate=args.tax_rate,
        business_date=args.business_date,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        party_name=args.party_name,
        quantity=args.quantity,
        rate_per_gram=args.rate_per_gram,
        tax_rate=args.tax_rate,
        business_date=args.business_date,
    )


def _print_outcome(outcome: core_logic.RecordOutcome) -> None:
    row = outcome.transaction
    where = "offline cache (run 'sync' when the ledger is reachable)" if outcome.offline else "ledger"
    print(
        f"Recorded {row.kind} {row.transaction_id}: {row.quantity_grams}g @ {row.rate_per_gram}/g, "
        f"total {row.total_amount} -> {where}"
    )


def _print_flags(result: core_logic.ReconcileResult) -> None:
    if result.degraded:
        print("WARNING: remote ledger unavailable, figures come from the offline cache only.")
    if result.needs_sync:
        print(f"NOTICE: {len(result.unsynced_ids)} offline entries need sync.")


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    outcome = core_logic.record_transaction(context, translate_purchase(args))
    _print_outcome(outcome)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    outcome = core_logic.record_transaction(context, translate_sale(args))
    _print_outcome(outcome)
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Push offline entries to the remote ledger."""
    appended = core_logic.sync_unsynced(context)
    result = core_logic.get_reconciliation(context)
    _print_flags(result)
    print(f"Synced {appended} transaction(s).")
    return 0


def run_lots_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every lot followed by the stock summary."""
    result = core_logic.get_reconciliation(context)
    _print_flags(result)
    open_only = getattr(args, "open_only", False)
    for lot in result.lots:
        if open_only and lot.is_closed:
            continue
        closed = lot.closed_date.isoformat() if lot.closed_date else "open"
        print(
            f"{lot.lot_id:<24} {lot.opened_date.isoformat()} {lot.remaining_quantity:>12.4f}/"
            f"{lot.original_quantity:.4f}g @ {lot.unit_cost:.2f} [{closed}]"
        )
    summary = core_logic.summarize_inventory(result)
    print(
        f"Stock: {summary['current_stock']:.4f}g  FIFO value: {summary['fifo_value']:.2f}  "
        f"open lots: {summary['open_lots']}  closed lots: {summary['closed_lots']}"
    )
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print revenue, COGS, and profit totals."""
    result = core_logic.get_reconciliation(context)
    _print_flags(result)
    summary = core_logic.calculate_profit_summary(result)
    print(f"Sales: {summary['sale_count']} (stockouts: {summary['stockout_count']})")
    print(f"Revenue (ex-tax): {summary['revenue']:.2f}")
    print(f"COGS: {summary['cogs']:.2f}")
    print(f"Profit: {summary['profit']:.2f}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print transactions newest first with their consumption trail."""
    result = core_logic.get_reconciliation(context)
    _print_flags(result)
    for row in core_logic.list_transactions(result):
        line = (
            f"{row.business_date.isoformat()} {row.kind:<8} {row.transaction_id:<24} "
            f"{row.party_name:<20} {row.quantity_grams:>12.4f}g @ {row.rate_per_gram:.2f}"
        )
        if row.kind == TransactionKind.SALE.value:
            line += f"  cogs {row.cogs:.2f}  profit {row.profit:.2f}"
        print(line)
        for note in row.consumption_log:
            print(f"    {note}")
    return 0


def run_status_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print source health flags and the stock position."""
    result = core_logic.get_reconciliation(context)
    print(f"Remote ledger: {'unavailable' if result.degraded else 'ok'}")
    print(f"Pending sync: {len(result.unsynced_ids)}")
    for transaction_id in result.unsynced_ids:
        print(f"    {transaction_id}")
    summary = core_logic.summarize_inventory(result)
    print(f"Transactions: {len(result.transactions)}  lots: {len(result.lots)}")
    print(f"Stock: {summary['current_stock']:.4f}g  FIFO value: {summary['fifo_value']:.2f}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
