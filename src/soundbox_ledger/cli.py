"""Command-line entry points for the Soundbox Ledger toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import random
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import assistants, core_logic, log, reports
from .constants import PaymentChannel, SourceMethod
from .errors import BusinessRuleViolation, InputError
from .reconciliation import ReconciliationSession, SessionView, to_amount


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="soundbox-cli",
        description="Reconcile soundbox payments against the Soundbox Ledger shop workbook.",
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
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as catalog edits and reconciliations."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "set-stock": register_set_stock_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
        "transcribe": register_transcribe_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "suggest": register_suggest_command(subparsers),
        "stock": register_stock_command(subparsers),
        "alerts": register_alerts_command(subparsers),
        "sales": register_sales_command(subparsers),
        "log": register_log_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_assignment(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID=QUANTITY`` for ``--set``."""
    product_id, separator, quantity = raw.rpartition("=")
    if not separator or not product_id:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID=QUANTITY, got '{raw}'")
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be an integer in '{raw}'") from exc


def _add_session_edit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--set",
        dest="assignments",
        type=parse_assignment,
        action="append",
        default=[],
        metavar="PRODUCT_ID=QTY",
        help="Set a line quantity; repeatable. Unknown lines are added from the catalog.",
    )
    parser.add_argument("--toggle", action="append", default=[], metavar="PRODUCT_ID", help="Toggle a line's selection.")
    parser.add_argument("--show-all", action="store_true", help="Offer every active catalog product as a line.")
    parser.add_argument("--dry-run", action="store_true", help="Print the reconciliation without recording it.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--initial-stock", type=int, default=0)
        parser.add_argument("--reorder-threshold", type=int, default=None)
        parser.add_argument("--image-ref", default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a product's name, price, or active flag."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", default=None)
        parser.add_argument("--unit-price", default=None)
        status = parser.add_mutually_exclusive_group()
        status.add_argument("--activate", dest="is_active", action="store_const", const=True, default=None)
        status.add_argument("--deactivate", dest="is_active", action="store_const", const=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Edit a product's stock quantity, reorder threshold, or expiry date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, default=None)
        parser.add_argument("--reorder-threshold", type=int, default=None)
        expiry = parser.add_mutually_exclusive_group()
        expiry.add_argument("--expiry-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        expiry.add_argument("--clear-expiry", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Reconcile a payment amount against the catalog and record it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--source", choices=["manual", "audio"], default="manual")
        parser.add_argument("--transcription", default=None)
        parser.add_argument("--language", default=None)
        parser.add_argument("--payer", default=None)
        _add_session_edit_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


def register_transcribe_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transcribe``."""
    name = "transcribe"
    help_text = "Transcribe a soundbox announcement and reconcile the detected amount."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--audio", type=Path, default=None, help="Recorded announcement file.")
        parser.add_argument("--seed", type=int, default=None, help="Seed for the mock announcement generator.")
        _add_session_edit_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transcribe)


def register_suggest_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``suggest``."""
    name = "suggest"
    help_text = "List ranked product combinations for an amount."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_suggest)


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


def register_alerts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``alerts``."""
    name = "alerts"
    help_text = "Display low-stock, expiring, and expired items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--today", type=date.fromisoformat, default=None, help="Override today's date.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_alerts_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display today's total, the top product, and recent revenue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=7)
        parser.add_argument("--today", type=date.fromisoformat, default=None, help="Override today's date.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export the sales log as CSV or XLSX."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="Only this day (YYYY-MM-DD).")
        parser.add_argument("--channel", choices=[member.value for member in PaymentChannel], default=None)
        parser.add_argument("--format", dest="export_format", choices=["csv", "xlsx"], default="csv")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into add-product keyword arguments."""
    return {
        "product_id": args.product_id,
        "product_name": args.product_name,
        "unit_price": to_amount(args.unit_price),
        "initial_stock": args.initial_stock,
        "reorder_threshold": args.reorder_threshold,
        "image_ref": args.image_ref,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into update-product keyword arguments."""
    return {
        "product_name": args.product_name,
        "unit_price": to_amount(args.unit_price) if args.unit_price is not None else None,
        "is_active": args.is_active,
    }


def translate_set_stock(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into stock-edit keyword arguments."""
    payload: Dict[str, Any] = {
        "quantity": args.quantity,
        "reorder_threshold": args.reorder_threshold,
    }
    if args.clear_expiry:
        payload["expiry_date"] = None
    elif args.expiry_date is not None:
        payload["expiry_date"] = args.expiry_date
    return payload


def translate_reconcile(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into session metadata for a typed-in amount."""
    amount = to_amount(args.amount)
    audio = args.source == "audio"
    return {
        "amount": amount,
        "source_method": SourceMethod.AUDIO_CAPTURE if audio else SourceMethod.MANUAL_ENTRY,
        "transcription_text": args.transcription or (None if audio else f"Manual entry: ₹{amount}"),
        "detected_language": args.language or (None if audio else "manual"),
        "payer_info": args.payer,
    }


def translate_export_filter(args: argparse.Namespace) -> reports.TransactionFilter:
    channel = PaymentChannel(args.channel) if args.channel else None
    return reports.TransactionFilter(day=args.date, channel=channel)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_session(view: SessionView) -> List[str]:
    """Render a session view as printable lines."""
    rendered = []
    for line in view.lines:
        marker = "[x]" if line.selected else "[ ]"
        rendered.append(
            f"{marker} {line.product_id:<10} {line.product_name:<20} {line.quantity:>3} x {line.unit_price}"
            f" = {line.line_total}"
        )
    rendered.append(f"Miscellaneous: {view.misc_amount}")
    for suggestion in view.misc_explanation:
        rendered.append(
            f"  could be {suggestion.extra_quantity}x {suggestion.product_name} ({suggestion.extra_value})"
        )
    return rendered


def _print_lines(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added {product.product_id}: {product.product_name} at {product.unit_price}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, **translate_update_product(args))
    print(f"Updated {product.product_id}: {product.product_name} at {product.unit_price}")
    return 0


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a manual stock edit in the BLL."""
    item = core_logic.update_stock_item(context, args.product_id, **translate_set_stock(args))
    print(f"Stock for {item.product_id}: {item.quantity} (reorder at {item.reorder_threshold})")
    return 0


def apply_session_edits(
    context: core_logic.RuntimeContext,
    session: ReconciliationSession,
    args: argparse.Namespace,
) -> SessionView:
    """Apply ``--show-all``, ``--toggle`` and ``--set`` edits in that order."""
    view = session.view()
    if args.show_all:
        view = session.add_candidate_lines(core_logic.list_products(context))
    present = {line.product_id for line in session.lines}
    for product_id in args.toggle:
        if product_id not in present:
            session.add_candidate_lines([core_logic.get_product(context, product_id)])
            present.add(product_id)
        view = session.toggle_selection(product_id)
        if not view.accepted:
            print(f"Cannot select {product_id}: it would exceed {session.target_amount}")
    for product_id, quantity in args.assignments:
        if product_id not in present:
            session.add_candidate_lines([core_logic.get_product(context, product_id)])
            present.add(product_id)
        view = session.set_quantity(product_id, quantity)
        if not view.accepted:
            print(f"Cannot set {product_id} to {quantity}: it would exceed {session.target_amount}")
    return view


def finish_session(
    context: core_logic.RuntimeContext,
    session: ReconciliationSession,
    args: argparse.Namespace,
) -> int:
    """Apply edits, print the breakdown, then confirm or cancel."""
    view = apply_session_edits(context, session, args)
    _print_lines(format_session(view))
    if args.dry_run:
        session.cancel()
        print("Dry run: nothing recorded.")
        return 0
    transaction = core_logic.confirm_session(context, session)
    print(f"Recorded {transaction.transaction_id} for {transaction.amount}")
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation workflow for a typed-in amount."""
    payload = dict(translate_reconcile(args))
    amount = payload.pop("amount")
    session = core_logic.start_session(context, amount, **payload)
    return finish_session(context, session, args)


def run_transcribe(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Transcribe an announcement (mock backend) and reconcile its amount."""
    audio = args.audio.read_bytes() if args.audio is not None else b""
    rng = random.Random(args.seed) if args.seed is not None else None
    result = assistants.transcribe_payment(audio, transcriber=None, rng=rng)
    print(f"Heard: {result.text} ({result.language}) -> {result.amount}")
    session = core_logic.start_session(
        context,
        result.amount,
        source_method=SourceMethod.AUDIO_CAPTURE,
        transcription_text=result.text,
        detected_language=result.language,
        payer_info=result.payer_info,
    )
    return finish_session(context, session, args)


def run_suggest(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print ranked combinations for an amount."""
    amount = to_amount(args.amount)
    ranked = core_logic.search_candidates(context, amount)
    if not ranked:
        print(f"No product fits within {amount}; the whole amount is miscellaneous.")
        return 0
    for rank, candidate in enumerate(ranked, start=1):
        items = " + ".join(f"{item.quantity}x {item.product.product_name}" for item in candidate.items)
        status = "exact" if candidate.is_exact(amount) else f"misc {amount - candidate.total}"
        print(f"{rank}. {items} = {candidate.total} ({status}, confidence {candidate.confidence:.2f})")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print current stock levels."""
    names = {product.product_id: product.product_name for product in core_logic.list_products(context, include_inactive=True)}
    for item in core_logic.list_stock(context):
        expiry = item.expiry_date.isoformat() if item.expiry_date else "-"
        print(f"{item.product_id:<10} {names.get(item.product_id, '?'):<20} {item.quantity:>5} "
              f"(reorder at {item.reorder_threshold}, expires {expiry})")
    return 0


def run_alerts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print low-stock and expiry alerts."""
    stock = core_logic.list_stock(context)
    sections = (
        ("Low stock", reports.low_stock(stock)),
        ("Expiring today", reports.expiring(stock, args.today)),
        ("Expired", reports.expired(stock, args.today)),
    )
    for title, items in sections:
        print(f"{title}: {', '.join(item.product_id for item in items) or 'none'}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print today's total, top product, and the revenue series."""
    transactions = core_logic.list_transactions(context)
    today = args.today or reports.today_utc()
    print(f"Today's sales: {reports.total_for_day(transactions, today)}")
    print(f"Top product: {reports.top_product(transactions)}")
    for day, revenue in reports.revenue_series(transactions, days=args.days, today=today):
        print(f"  {day.isoformat()}: {revenue}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction history."""
    for transaction in core_logic.list_transactions(context):
        row = reports.export_row(transaction)
        print(" | ".join(str(value) for value in row))
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the filtered sales log to ``--output``."""
    transactions = core_logic.list_transactions(context)
    filters = translate_export_filter(args)
    if args.export_format == "xlsx":
        payload = reports.export_transactions_xlsx(transactions, filters)
    else:
        payload = reports.export_transactions_csv(transactions, filters)
    args.output.expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(payload)
    print(f"Exported to {args.output}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (BusinessRuleViolation, InputError)):
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
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
