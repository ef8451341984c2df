"""Unit tests verifying the business logic layer against an in-memory store."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

import soundbox_ledger
from soundbox_ledger import constants, core_logic, data_manager, log
from soundbox_ledger.combination_search import CandidateItem, CandidateSet
from soundbox_ledger.constants import SourceMethod, StoreKey
from soundbox_ledger.errors import (
    BusinessRuleViolation,
    InputError,
    MissingReferenceError,
    PersistenceFailure,
)


class FailingStore(data_manager.InMemoryStore):
    """Store whose writes always fail."""

    def put(self, key, value):
        raise PersistenceFailure(f"disk full while writing {key}")


def _transaction(transaction_id, amount, lines, misc, *, source=SourceMethod.MANUAL_ENTRY, when=None):
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        timestamp=when or datetime(2024, 5, 1, 9, 0, tzinfo=UTC),
        amount=Decimal(amount),
        lines=tuple(lines),
        misc_amount=Decimal(misc),
        source_method=source,
    )


def _line(product_id, name, price, quantity):
    return data_manager.TransactionLineRow(product_id, name, Decimal(price), quantity)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and store into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "shop.xlsx",
        shop_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    store = data_manager.InMemoryStore()

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_store = Mock(return_value=store)
    apply_logging = Mock()

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager.WorkbookStore, "open", open_store)
    monkeypatch.setattr(core_logic, "apply_logging_settings", apply_logging)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.store is store
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_store.assert_called_once_with(parsed_settings.data_file)
    apply_logging.assert_called_once_with("INFO", None)


@pytest.fixture
def package_logger(monkeypatch):
    """Let a test reconfigure the package logger and restore it afterwards."""

    original_handlers = list(log.handlers)
    original_level = log.level
    monkeypatch.setattr(log, "handlers", list(original_handlers))
    yield log
    for handler in log.handlers:
        if handler not in original_handlers:
            handler.close()
    log.setLevel(original_level)


def test_apply_logging_settings_moves_log_file(package_logger, tmp_path):
    log_dir = tmp_path / "logs"

    soundbox_ledger.apply_logging_settings("debug", log_dir)
    package_logger.debug("ledger ready")
    for handler in package_logger.handlers:
        handler.flush()

    assert package_logger.level == logging.DEBUG
    assert "ledger ready" in (log_dir / soundbox_ledger.LOG_FILE_NAME).read_text(encoding="utf-8")


def test_apply_logging_settings_rejects_unknown_level(package_logger):
    with pytest.raises(KeyError):
        soundbox_ledger.apply_logging_settings("chatty")


def test_load_runtime_context_applies_logging_section(config_factory, package_logger):
    """The [Logging] section of config.ini drives the package logger."""

    bundle = config_factory()
    with bundle.config_path.open("a", encoding="utf-8") as handle:
        handle.write("\n[Logging]\nLevel = WARNING\nDirectory = logs\n")

    core_logic.load_runtime_context(bundle.config_path)

    assert package_logger.level == logging.WARNING
    assert (bundle.directory / "logs" / soundbox_ledger.LOG_FILE_NAME).exists()


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = core_logic.RuntimeContext(
        settings=replace(context.settings, schema_version="0.9"),
        store=context.store,
    )
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_open_context_derives_missing_stock_items(settings, catalog):
    """Products without a stored stock item get an empty one at the default threshold."""

    store = data_manager.InMemoryStore({StoreKey.PRODUCTS.value: catalog})

    context = core_logic.open_context(replace(settings, default_reorder_threshold=3), store)

    assert [(item.product_id, item.quantity, item.reorder_threshold) for item in core_logic.list_stock(context)] == [
        ("P-TEA", 0, 3),
        ("P-SAM", 0, 3),
    ]
    assert core_logic.list_transactions(context) == []


def test_sync_stock_with_catalog_drops_orphans(tea):
    """Stock items whose product left the catalog are not carried over."""

    stock = {
        "P-TEA": data_manager.StockRow("P-TEA", 7, 2),
        "P-GONE": data_manager.StockRow("P-GONE", 1, 2),
    }

    synced = core_logic.sync_stock_with_catalog([tea], stock, 5)

    assert synced == {"P-TEA": data_manager.StockRow("P-TEA", 7, 2)}


def test_refresh_context_reads_store_again(context):
    """A refreshed context reflects writes that went through the store."""

    core_logic.add_product(context, product_id="P-CHAI", product_name="Chai", unit_price="12")

    refreshed = core_logic.refresh_context(context)

    assert [product.product_id for product in core_logic.list_products(refreshed)] == ["P-TEA", "P-SAM", "P-CHAI"]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def test_list_products_excludes_inactive_by_default(settings, tea):
    """list_products should hide inactive rows unless explicitly requested."""

    retired = data_manager.ProductRow("P-OLD", "Old", Decimal("5"), is_active=False)
    context = core_logic.open_context(settings, data_manager.InMemoryStore({StoreKey.PRODUCTS.value: [tea, retired]}))

    assert [row.product_id for row in core_logic.list_products(context)] == ["P-TEA"]
    assert [row.product_id for row in core_logic.list_products(context, include_inactive=True)] == ["P-TEA", "P-OLD"]


def test_get_product_missing_raises(context):
    """Unknown ids raise MissingReferenceError, a business rule violation."""

    with pytest.raises(MissingReferenceError):
        core_logic.get_product(context, "P-NOPE")
    with pytest.raises(BusinessRuleViolation):
        core_logic.get_product(context, "P-NOPE")


def test_add_product_persists_catalog_and_stock(context, memory_store):
    """Adding a product writes both the catalog and its stock item."""

    product = core_logic.add_product(
        context,
        product_id="P-CHAI",
        product_name="  Chai ",
        unit_price="12.50",
        initial_stock=8,
        reorder_threshold=2,
    )

    assert product == data_manager.ProductRow("P-CHAI", "Chai", Decimal("12.50"))
    assert core_logic.get_stock_item(context, "P-CHAI") == data_manager.StockRow("P-CHAI", 8, 2)
    assert memory_store.get(StoreKey.PRODUCTS.value)[-1] == product
    assert [item.product_id for item in memory_store.get(StoreKey.INVENTORY.value)] == ["P-TEA", "P-SAM", "P-CHAI"]


def test_add_product_uses_default_threshold(context):
    core_logic.add_product(context, product_id="P-CHAI", product_name="Chai", unit_price=12)

    assert core_logic.get_stock_item(context, "P-CHAI").reorder_threshold == constants.DEFAULT_REORDER_THRESHOLD


def test_add_product_rejects_duplicate_id(context):
    """Duplicate product ids are refused and leave the catalog untouched."""

    with pytest.raises(BusinessRuleViolation):
        core_logic.add_product(context, product_id="P-TEA", product_name="Tea Again", unit_price="11")

    assert len(core_logic.list_products(context)) == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"unit_price": "0"},
        {"unit_price": "-3"},
        {"unit_price": "free"},
        {"initial_stock": -1},
        {"reorder_threshold": -1},
        {"product_name": "   "},
        {"product_id": ""},
    ],
)
def test_add_product_validates_input(context, overrides):
    """Malformed product fields raise InputError."""

    payload = {"product_id": "P-NEW", "product_name": "New", "unit_price": "5"}
    payload.update(overrides)

    with pytest.raises(InputError):
        core_logic.add_product(context, **payload)


def test_update_product_changes_fields_but_not_history(context):
    """Price edits affect future reconciliations only."""

    session = core_logic.start_session(context, "40")
    recorded = core_logic.confirm_session(context, session)

    updated = core_logic.update_product(context, "P-TEA", unit_price="12", is_active=False)

    assert updated.unit_price == Decimal("12")
    assert updated.is_active is False
    assert core_logic.get_transaction(context, recorded.transaction_id).lines[0].unit_price == Decimal("10")
    assert [product.product_id for product in core_logic.list_products(context)] == ["P-SAM"]


def test_update_product_unknown_id_raises(context):
    with pytest.raises(MissingReferenceError):
        core_logic.update_product(context, "P-NOPE", product_name="Ghost")


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------


def test_update_stock_item_sets_and_clears_expiry(context, memory_store):
    """Expiry dates can be set and later cleared with None."""

    item = core_logic.update_stock_item(context, "P-SAM", quantity=12, expiry_date=date(2024, 6, 1))
    assert (item.quantity, item.expiry_date) == (12, date(2024, 6, 1))

    item = core_logic.update_stock_item(context, "P-SAM", reorder_threshold=1)
    assert item.expiry_date == date(2024, 6, 1)

    item = core_logic.update_stock_item(context, "P-SAM", expiry_date=None)
    assert item.expiry_date is None
    assert memory_store.get(StoreKey.INVENTORY.value)[1] == item


@pytest.mark.parametrize(
    "changes",
    [{"quantity": -1}, {"quantity": 1.5}, {"reorder_threshold": -2}, {"expiry_date": "2024-06-01"}],
)
def test_update_stock_item_validates_input(context, changes):
    with pytest.raises(InputError):
        core_logic.update_stock_item(context, "P-TEA", **changes)


def test_update_stock_item_unknown_id_raises(context):
    with pytest.raises(MissingReferenceError):
        core_logic.update_stock_item(context, "P-NOPE", quantity=1)


# ---------------------------------------------------------------------------
# Reconciliation workflow
# ---------------------------------------------------------------------------


def test_search_candidates_honours_configured_top_k(settings, memory_store):
    context = core_logic.open_context(replace(settings, top_k=2), memory_store)

    assert len(core_logic.search_candidates(context, "40")) == 2


def test_start_session_seeds_top_candidate(context):
    """A session for 40 starts with 4x Tea selected."""

    session = core_logic.start_session(context, Decimal("40"), source_method=SourceMethod.AUDIO_CAPTURE)

    assert [(line.product_id, line.quantity) for line in session.lines] == [("P-TEA", 4)]
    assert session.source_method is SourceMethod.AUDIO_CAPTURE
    assert session.misc_amount == Decimal("0")


def test_start_session_without_candidates_is_all_miscellaneous(context):
    session = core_logic.start_session(context, "5")

    assert session.lines == ()
    assert session.misc_amount == Decimal("5")


def test_start_session_ignores_overshooting_external_candidate(context, samosa):
    """A supplied top candidate above the amount is not used as a seed."""

    too_big = CandidateSet(items=(CandidateItem(samosa, 3, 0.9),))

    session = core_logic.start_session(context, "40", candidates=[too_big])

    assert session.lines == ()
    assert session.misc_amount == Decimal("40")


def test_confirm_session_records_transaction_and_deducts_stock(context, memory_store):
    """Selling 4x Tea takes exactly four units out of stock and logs the sale."""

    before = {item.product_id: item.quantity for item in core_logic.list_stock(context)}

    session = core_logic.start_session(context, "40")
    transaction = core_logic.confirm_session(context, session)

    after = {item.product_id: item.quantity for item in core_logic.list_stock(context)}
    assert before["P-TEA"] - after["P-TEA"] == 4
    assert after["P-SAM"] == before["P-SAM"]
    assert core_logic.list_transactions(context) == [transaction]
    assert memory_store.get(StoreKey.TRANSACTIONS.value) == [transaction]
    assert not session.is_open


def test_commit_clamps_oversold_stock_to_zero(context):
    """Selling 3 units with only 2 on hand leaves zero, never a negative count."""

    core_logic.add_product(context, product_id="P-W", product_name="Widget", unit_price="10", initial_stock=2)
    session = core_logic.start_session(context, "30")
    session.add_candidate_lines([core_logic.get_product(context, "P-W")])
    for line in session.lines:
        session.set_quantity(line.product_id, 0)
    session.set_quantity("P-W", 3)

    core_logic.confirm_session(context, session)

    assert core_logic.get_stock_item(context, "P-W").quantity == 0


def test_commit_prepends_newest_transaction(context):
    first = core_logic.commit_transaction(context, _transaction("T1", "10", [_line("P-TEA", "Tea", "10", 1)], "0"))
    second = core_logic.commit_transaction(context, _transaction("T2", "20", [], "20"))

    assert core_logic.list_transactions(context) == [second, first]


def test_commit_rejects_duplicate_transaction_id(context):
    """Re-committing an id is refused and leaves stock and history untouched."""

    core_logic.commit_transaction(context, _transaction("T1", "10", [_line("P-TEA", "Tea", "10", 1)], "0"))
    stock_before = core_logic.list_stock(context)

    with pytest.raises(BusinessRuleViolation):
        core_logic.commit_transaction(context, _transaction("T1", "10", [_line("P-TEA", "Tea", "10", 1)], "0"))

    assert core_logic.list_stock(context) == stock_before
    assert len(core_logic.list_transactions(context)) == 1


@pytest.mark.parametrize(
    "transaction",
    [
        _transaction("T-BAD", "40", [_line("P-TEA", "Tea", "10", 2)], "5"),
        _transaction("T-NEG", "40", [_line("P-TEA", "Tea", "10", 5)], "-10"),
        _transaction("T-ZERO", "10", [_line("P-TEA", "Tea", "10", 0)], "10"),
    ],
)
def test_commit_rejects_unbalanced_transactions(context, transaction):
    """Lines plus miscellaneous must equal the amount with positive quantities."""

    with pytest.raises(BusinessRuleViolation):
        core_logic.commit_transaction(context, transaction)

    assert core_logic.list_transactions(context) == []


def test_commit_skips_unknown_stock_items(context, caplog):
    """Lines for products without a stock item are recorded but leave the ledger alone."""

    transaction = _transaction("T1", "9", [_line("P-GHOST", "Ghost", "9", 1)], "0")

    core_logic.commit_transaction(context, transaction)

    assert core_logic.list_transactions(context) == [transaction]
    assert "P-GHOST" not in {item.product_id for item in core_logic.list_stock(context)}
    assert any("unknown stock item" in record.getMessage() for record in caplog.records)


def test_commit_keeps_state_when_persistence_fails(settings, catalog, caplog):
    """Write failures are logged; the in-memory commit still stands."""

    store = FailingStore({StoreKey.PRODUCTS.value: catalog})
    context = core_logic.open_context(settings, store)
    core_logic.update_stock_item(context, "P-TEA", quantity=10)

    session = core_logic.start_session(context, "40")
    transaction = core_logic.confirm_session(context, session)

    assert core_logic.list_transactions(context) == [transaction]
    assert core_logic.get_stock_item(context, "P-TEA").quantity == 6
    assert any("Persistence failure" in record.getMessage() for record in caplog.records)


def test_get_transaction_unknown_raises(context):
    with pytest.raises(MissingReferenceError):
        core_logic.get_transaction(context, "T-NOPE")


def test_sessions_confirmed_in_the_same_instant_are_both_recorded(context, set_fixed_datetime):
    """Identical timestamps still produce distinct transaction ids."""

    set_fixed_datetime(datetime(2024, 5, 7, 12, 0, tzinfo=UTC))

    first = core_logic.confirm_session(context, core_logic.start_session(context, "40"))
    second = core_logic.confirm_session(context, core_logic.start_session(context, "40"))

    assert first.timestamp == second.timestamp
    assert first.transaction_id != second.transaction_id
    assert core_logic.list_transactions(context) == [second, first]


def test_rejected_commit_leaves_session_open(context, monkeypatch):
    """A session whose commit fails can be retried."""

    session = core_logic.start_session(context, "40")
    monkeypatch.setattr(core_logic, "validate_transaction", Mock(side_effect=BusinessRuleViolation("nope")))

    with pytest.raises(BusinessRuleViolation):
        core_logic.confirm_session(context, session)

    assert session.is_open
    assert core_logic.list_transactions(context) == []

    monkeypatch.undo()
    transaction = core_logic.confirm_session(context, session)

    assert not session.is_open
    assert core_logic.list_transactions(context) == [transaction]
