"""Business logic layer for Soundbox Ledger.

This module owns the in-memory shop state (catalog, stock ledger, transaction
history) and every mutation applied to it. All I/O goes through the
:class:`~soundbox_ledger.data_manager.DocumentStore` carried by the
:class:`RuntimeContext`; the in-memory state is authoritative and persistence
failures are logged rather than propagated.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import apply_logging_settings, data_manager, log
from .combination_search import CandidateSet, SearchLimits, search
from .constants import EXPECTED_SCHEMA_VERSION, SourceMethod, StoreKey
from .data_manager import ConfigSettings, DocumentStore, ProductRow, StockRow, TransactionRow
from .errors import BusinessRuleViolation, InputError, MissingReferenceError, PersistenceFailure
from .reconciliation import ReconciliationSession, to_amount


_UNSET = object()


@dataclass
class ShopState:
    """Mutable in-memory model of the shop; swapped wholesale on each mutation."""

    products: List[ProductRow] = field(default_factory=list)
    stock: Dict[str, StockRow] = field(default_factory=dict)
    transactions: List[TransactionRow] = field(default_factory=list)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the document store, and live shop state."""

    settings: ConfigSettings
    store: DocumentStore
    state: ShopState = field(default_factory=ShopState, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context whose state mirrors the workbook contents.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    apply_logging_settings(settings.log_level, settings.log_dir)
    store = data_manager.WorkbookStore.open(settings.data_file)
    context = open_context(settings, store)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def open_context(settings: ConfigSettings, store: DocumentStore) -> RuntimeContext:
    """Build a context by reading every document from ``store``.

    Missing documents start empty. Stock items are derived for any product
    that lacks one so the ledger always covers the whole catalog.
    """
    products = list(store.get(StoreKey.PRODUCTS.value) or [])
    stored_stock = {item.product_id: item for item in store.get(StoreKey.INVENTORY.value) or []}
    transactions = list(store.get(StoreKey.TRANSACTIONS.value) or [])
    stock = sync_stock_with_catalog(products, stored_stock, settings.default_reorder_threshold)
    state = ShopState(products=products, stock=stock, transactions=transactions)
    log.debug(
        "Opened context with %d products, %d stock items, %d transactions",
        len(products),
        len(stock),
        len(transactions),
    )
    return RuntimeContext(settings=settings, store=store, state=state)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Rebuild a context from whatever the store currently holds."""
    return open_context(context.settings, context.store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

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


def _persist(context: RuntimeContext, key: StoreKey, value: Sequence[object]) -> bool:
    """Write one document, logging instead of raising on failure."""
    try:
        context.store.put(key.value, value)
    except (PersistenceFailure, OSError) as exc:
        log.error("Persistence failure for '%s'; in-memory state kept: %s", key.value, exc)
        return False
    return True


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[ProductRow]:
    """Return catalog products in insertion order, active ones only by default."""
    products = context.state.products
    if include_inactive:
        return list(products)
    return [product for product in products if product.is_active]


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the catalog.
    """
    for product in context.state.products:
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    unit_price: Union[Decimal, int, str],
    initial_stock: int = 0,
    reorder_threshold: Optional[int] = None,
    image_ref: Optional[str] = None,
    is_active: bool = True,
) -> ProductRow:
    """Register a product and derive its stock item.

    Raises:
        BusinessRuleViolation: If ``product_id`` is already in the catalog.
        InputError: If the id or name is blank, the price is not positive, or
            a stock figure is negative.
    """
    if not product_id or not str(product_id).strip():
        raise InputError("Product id must not be empty")
    if not product_name or not product_name.strip():
        raise InputError("Product name must not be empty")
    price = require_positive_price(unit_price)
    require_nonnegative_count(initial_stock, "Initial stock")
    threshold = context.settings.default_reorder_threshold if reorder_threshold is None else reorder_threshold
    require_nonnegative_count(threshold, "Reorder threshold")

    product = ProductRow(
        product_id=str(product_id),
        product_name=product_name.strip(),
        unit_price=price,
        image_ref=image_ref,
        is_active=is_active,
    )
    with context._lock:
        if any(existing.product_id == product.product_id for existing in context.state.products):
            log.warning("Attempted to add duplicate product '%s'", product.product_id)
            raise BusinessRuleViolation(f"Product '{product.product_id}' already exists")
        products = [*context.state.products, product]
        stock = dict(context.state.stock)
        stock[product.product_id] = StockRow(
            product_id=product.product_id,
            quantity=initial_stock,
            reorder_threshold=threshold,
        )
        context.state.products = products
        context.state.stock = stock
        _persist(context, StoreKey.PRODUCTS, products)
        _persist(context, StoreKey.INVENTORY, list(stock.values()))

    log.info("Added product '%s' (%s at %s)", product.product_id, product.product_name, product.unit_price)
    return product


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    product_name: Optional[str] = None,
    unit_price: Optional[Union[Decimal, int, str]] = None,
    is_active: Optional[bool] = None,
) -> ProductRow:
    """Edit a product's name, price, or active flag.

    Historical transactions keep their own snapshots and are never touched.
    """
    changes: Dict[str, object] = {}
    if product_name is not None:
        if not product_name.strip():
            raise InputError("Product name must not be empty")
        changes["product_name"] = product_name.strip()
    if unit_price is not None:
        changes["unit_price"] = require_positive_price(unit_price)
    if is_active is not None:
        changes["is_active"] = bool(is_active)

    with context._lock:
        current = get_product(context, product_id)
        updated = replace(current, **changes)
        products = [updated if product.product_id == product_id else product for product in context.state.products]
        context.state.products = products
        _persist(context, StoreKey.PRODUCTS, products)

    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(changes)) or "no changes")
    return updated


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------


def sync_stock_with_catalog(
    products: Iterable[ProductRow],
    stock: Mapping[str, StockRow],
    default_threshold: int,
) -> Dict[str, StockRow]:
    """Return one stock item per product, in catalog order.

    Existing items are kept as-is; products without one get an empty item with
    ``default_threshold``. Items whose product left the catalog are dropped.
    """
    synced: Dict[str, StockRow] = {}
    for product in products:
        existing = stock.get(product.product_id)
        if existing is None:
            existing = StockRow(product_id=product.product_id, quantity=0, reorder_threshold=default_threshold)
        synced[product.product_id] = existing
    return synced


def list_stock(context: RuntimeContext) -> List[StockRow]:
    return list(context.state.stock.values())


def get_stock_item(context: RuntimeContext, product_id: str) -> StockRow:
    try:
        return context.state.stock[product_id]
    except KeyError as exc:
        log.warning("Stock lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"No stock item for product id: {product_id}") from exc


def update_stock_item(
    context: RuntimeContext,
    product_id: str,
    *,
    quantity: Optional[int] = None,
    reorder_threshold: Optional[int] = None,
    expiry_date: object = _UNSET,
) -> StockRow:
    """Apply a manual inventory edit.

    ``expiry_date`` accepts a :class:`~datetime.date` or ``None`` (clears the
    date); leaving it out keeps the current value.
    """
    changes: Dict[str, object] = {}
    if quantity is not None:
        require_nonnegative_count(quantity, "Quantity")
        changes["quantity"] = quantity
    if reorder_threshold is not None:
        require_nonnegative_count(reorder_threshold, "Reorder threshold")
        changes["reorder_threshold"] = reorder_threshold
    if expiry_date is not _UNSET:
        if expiry_date is not None and not isinstance(expiry_date, date):
            raise InputError(f"Expiry date must be a date, got {expiry_date!r}")
        changes["expiry_date"] = expiry_date

    with context._lock:
        updated = replace(get_stock_item(context, product_id), **changes)
        stock = dict(context.state.stock)
        stock[product_id] = updated
        context.state.stock = stock
        _persist(context, StoreKey.INVENTORY, list(stock.values()))

    log.info("Updated stock for '%s': %s", product_id, ", ".join(sorted(changes)) or "no changes")
    return updated


# ---------------------------------------------------------------------------
# Transaction history
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext) -> List[TransactionRow]:
    """Return the history, newest first."""
    return list(context.state.transactions)


def get_transaction(context: RuntimeContext, transaction_id: str) -> TransactionRow:
    for transaction in context.state.transactions:
        if transaction.transaction_id == transaction_id:
            return transaction
    log.warning("Transaction lookup failed for id '%s'", transaction_id)
    raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")


# ---------------------------------------------------------------------------
# Reconciliation workflow
# ---------------------------------------------------------------------------


def search_limits(context: RuntimeContext) -> SearchLimits:
    return SearchLimits.from_settings(context.settings)


def search_candidates(context: RuntimeContext, amount: Union[Decimal, int, str, float]) -> List[CandidateSet]:
    """Run the combination search over the active catalog."""
    return search(to_amount(amount), list_products(context), search_limits(context))


def start_session(
    context: RuntimeContext,
    amount: Union[Decimal, int, str, float],
    *,
    candidates: Optional[Sequence[CandidateSet]] = None,
    source_method: SourceMethod = SourceMethod.MANUAL_ENTRY,
    transcription_text: Optional[str] = None,
    detected_language: Optional[str] = None,
    payer_info: Optional[str] = None,
) -> ReconciliationSession:
    """Open a session seeded with the top-ranked candidate.

    ``candidates`` lets callers supply an externally ranked list; otherwise
    the local combination search runs. An empty ranking leaves the whole
    amount as miscellaneous.
    """
    target = to_amount(amount)
    ranked = list(candidates) if candidates is not None else search_candidates(context, target)
    seed = ranked[0] if ranked else None
    if seed is not None and seed.total > target:
        log.warning("Top candidate total %s exceeds amount %s; starting unseeded", seed.total, target)
        seed = None
    if seed is None:
        log.info("No candidate fits %s; whole amount is miscellaneous", target)
    return ReconciliationSession.start(
        target,
        seed,
        source_method=source_method,
        transcription_text=transcription_text,
        detected_language=detected_language,
        payer_info=payer_info,
    )


def commit_transaction(context: RuntimeContext, transaction: TransactionRow) -> TransactionRow:
    """Prepend ``transaction`` to the history and deduct its lines from stock.

    Both changes are computed first and then swapped into the state together,
    so callers never observe one without the other. Stock never goes below
    zero; overselling is clamped silently. Persistence happens afterwards as
    independent writes whose failures are only logged.

    Raises:
        BusinessRuleViolation: If the transaction id is already recorded or
            its lines and miscellaneous amount do not add up to the amount.
    """
    validate_transaction(transaction)
    with context._lock:
        state = context.state
        if any(existing.transaction_id == transaction.transaction_id for existing in state.transactions):
            log.error("Duplicate transaction id '%s'", transaction.transaction_id)
            raise BusinessRuleViolation(f"Transaction '{transaction.transaction_id}' already recorded")

        stock = dict(state.stock)
        for line in transaction.lines:
            item = stock.get(line.product_id)
            if item is None:
                log.warning(
                    "Transaction '%s' sold unknown stock item '%s'; ledger unchanged for it",
                    transaction.transaction_id,
                    line.product_id,
                )
                continue
            if line.quantity > item.quantity:
                log.info(
                    "Oversold '%s': sold %d with %d on hand, clamping to zero",
                    line.product_id,
                    line.quantity,
                    item.quantity,
                )
            stock[line.product_id] = replace(item, quantity=max(0, item.quantity - line.quantity))
        history = [transaction, *state.transactions]

        state.stock = stock
        state.transactions = history

        _persist(context, StoreKey.TRANSACTIONS, history)
        _persist(context, StoreKey.INVENTORY, list(stock.values()))

    log.info(
        "Recorded transaction '%s' (amount=%s, lines=%d, misc=%s)",
        transaction.transaction_id,
        transaction.amount,
        len(transaction.lines),
        transaction.misc_amount,
    )
    return transaction


def confirm_session(context: RuntimeContext, session: ReconciliationSession) -> TransactionRow:
    """Commit the transaction built from ``session``, then close the session.

    A rejected commit leaves the session open so the user can adjust it and
    try again.
    """
    transaction = commit_transaction(context, session.build_transaction())
    session.mark_committed(transaction)
    return transaction


def validate_transaction(transaction: TransactionRow) -> None:
    """Check the arithmetic of a transaction before it reaches the ledger.

    Raises:
        BusinessRuleViolation: If quantities are not positive, the
            miscellaneous amount is negative, or the totals do not balance.
    """
    if transaction.amount <= 0:
        raise BusinessRuleViolation("Transaction amount must be positive")
    if transaction.misc_amount < 0:
        raise BusinessRuleViolation("Miscellaneous amount must not be negative")
    if any(line.quantity < 1 for line in transaction.lines):
        raise BusinessRuleViolation("Transaction lines must sell at least one unit")
    lines_total = sum((line.line_total for line in transaction.lines), Decimal("0"))
    if lines_total + transaction.misc_amount != transaction.amount:
        log.error(
            "Transaction '%s' does not balance: lines=%s misc=%s amount=%s",
            transaction.transaction_id,
            lines_total,
            transaction.misc_amount,
            transaction.amount,
        )
        raise BusinessRuleViolation("Transaction lines and miscellaneous amount must add up to the amount")


def require_positive_price(value: Union[Decimal, int, str, float]) -> Decimal:
    """Coerce and validate a unit price.

    Raises:
        InputError: If ``value`` is not a positive number.
    """
    try:
        return to_amount(value)
    except InputError:
        log.error("Price validation failed: %s", value)
        raise


def require_nonnegative_count(value: int, label: str) -> None:
    """Validate an integer stock figure.

    Raises:
        InputError: If ``value`` is not an integer or is negative.
    """
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.error("%s validation failed: %r", label, value)
        raise InputError(f"{label} must be a non-negative integer")
