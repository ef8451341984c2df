"""Data access layer for Soundbox Ledger.

This module provides low-level helpers that read from and write to the shop
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Document storage: a key-value store whose keys (``products``,
   ``inventory``, ``transactions``) map onto one or more worksheets, plus a
   dictionary-backed variant with the same contract.
"""


from __future__ import annotations

import configparser
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_MAX_PAIR_QUANTITY,
    DEFAULT_MAX_SINGLE_MULTIPLE,
    DEFAULT_REORDER_THRESHOLD,
    DEFAULT_TOP_K,
    PaymentChannel,
    SheetName,
    SourceMethod,
    StoreKey,
)
from .errors import InputError, PersistenceFailure


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
INVENTORY_SHEET = SheetName.INVENTORY.value
TRANSACTION_LOG_SHEET = SheetName.TRANSACTION_LOG.value
TRANSACTION_LINES_SHEET = SheetName.TRANSACTION_LINES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: ["ProductID", "ProductName", "UnitPrice", "ImageRef", "IsActive"],
    INVENTORY_SHEET: ["ProductID", "Quantity", "ReorderThreshold", "ExpiryDate"],
    TRANSACTION_LOG_SHEET: [
        "TransactionID",
        "Timestamp",
        "Amount",
        "MiscAmount",
        "SourceMethod",
        "Transcription",
        "Language",
        "PayerInfo",
    ],
    TRANSACTION_LINES_SHEET: [
        "TransactionID",
        "LineNumber",
        "ProductID",
        "ProductName",
        "UnitPrice",
        "Quantity",
    ],
}

# Sheets written together for each store key.
KEY_SHEETS: Mapping[str, Sequence[str]] = {
    StoreKey.PRODUCTS.value: (PRODUCTS_SHEET,),
    StoreKey.INVENTORY.value: (INVENTORY_SHEET,),
    StoreKey.TRANSACTIONS.value: (TRANSACTION_LOG_SHEET, TRANSACTION_LINES_SHEET),
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    max_single_multiple: int = DEFAULT_MAX_SINGLE_MULTIPLE
    max_pair_quantity: int = DEFAULT_MAX_PAIR_QUANTITY
    top_k: int = DEFAULT_TOP_K
    default_reorder_threshold: int = DEFAULT_REORDER_THRESHOLD
    log_level: str = "INFO"
    log_dir: Optional[Path] = None


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit_price: Decimal
    image_ref: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class StockRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    product_id: str
    quantity: int
    reorder_threshold: int = DEFAULT_REORDER_THRESHOLD
    expiry_date: Optional[date] = None


@dataclass(frozen=True)
class TransactionLineRow:
    """Snapshot of one sold product inside a transaction."""

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class TransactionRow:
    """Immutable record of a confirmed reconciliation."""

    transaction_id: str
    timestamp: datetime
    amount: Decimal
    lines: tuple[TransactionLineRow, ...]
    misc_amount: Decimal
    source_method: SourceMethod
    transcription_text: Optional[str] = None
    detected_language: Optional[str] = None
    payer_info: Optional[str] = None

    @property
    def payment_channel(self) -> PaymentChannel:
        """Soundbox announcements are UPI payments; manual entries are cash."""
        if self.source_method is SourceMethod.AUDIO_CAPTURE:
            return PaymentChannel.UPI
        return PaymentChannel.CASH


class DocumentStore(Protocol):
    """Key-value persistence consumed by the business logic layer.

    Each ``put`` is an independent write; no multi-key transaction is implied.
    """

    def get(self, key: str) -> Optional[List[Any]]:
        ...

    def put(self, key: str, value: Sequence[Any]) -> None:
        ...


class InMemoryStore:
    """Dictionary-backed :class:`DocumentStore` used for scratch sessions and tests."""

    def __init__(self, initial: Optional[Mapping[str, Sequence[Any]]] = None) -> None:
        self._documents: Dict[str, List[Any]] = {}
        for key, value in (initial or {}).items():
            self._documents[key] = list(value)

    def get(self, key: str) -> Optional[List[Any]]:
        value = self._documents.get(key)
        return list(value) if value is not None else None

    def put(self, key: str, value: Sequence[Any]) -> None:
        self._documents[key] = list(value)


class WorkbookStore:
    """:class:`DocumentStore` persisting each key into worksheets of one workbook.

    The workbook stays open for the lifetime of the store. Every ``put``
    rewrites the sheets owned by the key and saves the file so that a crash
    after a commit loses at most the key being written.
    """

    def __init__(self, workbook: Workbook, data_file: Path) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)

    @classmethod
    def open(cls, data_file: Path) -> "WorkbookStore":
        """Open ``data_file`` and wrap it in a store."""
        return cls(open_workbook(data_file), data_file)

    def get(self, key: str) -> Optional[List[Any]]:
        sheets = _sheets_for_key(key)
        if any(name not in self.workbook.sheetnames for name in sheets):
            log.debug("Store key '%s' has no backing sheet yet", key)
            return None
        if key == StoreKey.PRODUCTS.value:
            return list(iter_products(self.workbook))
        if key == StoreKey.INVENTORY.value:
            return list(iter_stock(self.workbook))
        return list(iter_transactions(self.workbook))

    def put(self, key: str, value: Sequence[Any]) -> None:
        """Rewrite the sheets owned by ``key`` and save the workbook.

        Rows are serialized and cleaned before any sheet is touched. If the
        rewrite or the save fails, the workbook is reloaded from disk so a
        half-written sheet is never saved by a later ``put``.

        Raises:
            KeyError: If ``key`` is not a known store key.
            PersistenceFailure: If the rows cannot be written or saved.
        """
        _sheets_for_key(key)
        records = list(value)
        try:
            sheet_rows = _serialize_key(key, records)
        except Exception as exc:
            raise PersistenceFailure(f"Unable to serialize '{key}': {exc}") from exc

        try:
            for sheet_name, rows in sheet_rows.items():
                replace_rows(self.workbook, sheet_name, rows)
            save_workbook(self.workbook, self.data_file)
        except Exception as exc:
            self._reload()
            raise PersistenceFailure(f"Unable to save '{self.data_file}': {exc}") from exc
        log.debug("Persisted store key '%s' (%d records)", key, len(records))

    def _reload(self) -> None:
        try:
            self.workbook = open_workbook(self.data_file)
        except Exception as exc:
            log.error("Unable to reload workbook '%s' after a failed write: %s", self.data_file, exc)
            return
        log.warning("Reloaded workbook '%s' after a failed write", self.data_file)


def _serialize_key(key: str, records: Sequence[Any]) -> Dict[str, List[List[object]]]:
    """Serialize ``records`` into cleaned rows for every sheet owned by ``key``."""

    if key == StoreKey.PRODUCTS.value:
        rows = {PRODUCTS_SHEET: [serialize_product(row) for row in records]}
    elif key == StoreKey.INVENTORY.value:
        rows = {INVENTORY_SHEET: [serialize_stock(row) for row in records]}
    elif key == StoreKey.TRANSACTIONS.value:
        rows = {
            TRANSACTION_LOG_SHEET: [serialize_transaction(row) for row in records],
            TRANSACTION_LINES_SHEET: [line for row in records for line in serialize_transaction_lines(row)],
        }
    else:
        raise ValueError(f"Unknown store key: {key}")
    return {sheet_name: [clean_row(row) for row in sheet] for sheet_name, sheet in rows.items()}


def clean_row(row: Sequence[object]) -> List[object]:
    """Strip control characters that Excel cannot store from text cells."""

    return [ILLEGAL_CHARACTERS_RE.sub("", cell) if isinstance(cell, str) else cell for cell in row]


def _sheets_for_key(key: str) -> Sequence[str]:
    try:
        return KEY_SHEETS[key]
    except KeyError as exc:
        raise KeyError(f"Unknown store key: {key}") from exc


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Search]``, ``[Inventory]`` and
    ``[Logging]`` sections are optional and fall back to the package defaults.
    Relative ``DataFile`` and ``[Logging] Directory`` paths are expanded against
    ``base_path`` when provided, or the current working directory otherwise.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory anchoring relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required option is missing, a numeric option cannot
            be parsed as a positive integer, or the logging level is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_single_multiple = _get_positive_int(parser, "Search", "MaxSingleMultiple", DEFAULT_MAX_SINGLE_MULTIPLE)
    max_pair_quantity = _get_positive_int(parser, "Search", "MaxPairQuantity", DEFAULT_MAX_PAIR_QUANTITY)
    top_k = _get_positive_int(parser, "Search", "TopK", DEFAULT_TOP_K)
    reorder_threshold = _get_positive_int(
        parser,
        "Inventory",
        "DefaultReorderThreshold",
        DEFAULT_REORDER_THRESHOLD,
        allow_zero=True,
    )

    log_level = parser.get("Logging", "Level", fallback="INFO").strip().upper()
    if log_level not in logging.getLevelNamesMapping():
        raise KeyError(f"Unknown logging level in [Logging] Level: {log_level}")
    log_dir_raw = parser.get("Logging", "Directory", fallback="").strip()

    if base_path is None:
        base_path = Path.cwd()
    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (base_path / data_file_path).resolve()
    log_dir = None
    if log_dir_raw:
        log_dir = Path(log_dir_raw).expanduser()
        if not log_dir.is_absolute():
            log_dir = (base_path / log_dir).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        max_single_multiple=max_single_multiple,
        max_pair_quantity=max_pair_quantity,
        top_k=top_k,
        default_reorder_threshold=reorder_threshold,
        log_level=log_level,
        log_dir=log_dir,
    )


def _get_positive_int(
    parser: configparser.ConfigParser,
    section: str,
    option: str,
    default: int,
    *,
    allow_zero: bool = False,
) -> int:
    try:
        value = parser.getint(section, option, fallback=default)
    except ValueError as exc:
        raise KeyError(f"Invalid integer for [{section}] {option}: {exc}") from exc
    floor = 0 if allow_zero else 1
    if value < floor:
        raise KeyError(f"[{section}] {option} must be >= {floor}, got {value}")
    return value


def open_workbook(data_file: Path) -> Workbook:
    """Open the shop workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def ensure_sheet(workbook: Workbook, sheet_name: str):
    """Return ``sheet_name``, creating it with its header row when missing."""

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]
    sheet = workbook.create_sheet(title=sheet_name)
    sheet.append(list(SHEET_COLUMNS[sheet_name]))
    return sheet


def replace_rows(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> None:
    """Overwrite every data row of ``sheet_name`` while keeping the header."""

    sheet = ensure_sheet(workbook, sheet_name)
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row in rows:
        sheet.append(list(row))


def _iter_data_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_data_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_stock(workbook: Workbook) -> Iterable[StockRow]:
    """Iterate over stock records stored on the ``Inventory`` worksheet."""

    for raw in _iter_data_rows(workbook, INVENTORY_SHEET):
        yield deserialize_stock(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transactions joined with their line snapshots.

    Lines are grouped by ``TransactionID`` and ordered by ``LineNumber``; the
    transaction order follows the ``TransactionLog`` sheet, which stores the
    newest entry first.
    """

    lines_by_id: Dict[str, List[tuple[int, TransactionLineRow]]] = {}
    for raw in _iter_data_rows(workbook, TRANSACTION_LINES_SHEET):
        transaction_id, line_number, line = deserialize_transaction_line(raw)
        lines_by_id.setdefault(transaction_id, []).append((line_number, line))

    for raw in _iter_data_rows(workbook, TRANSACTION_LOG_SHEET):
        transaction_id = str(raw[0])
        numbered = sorted(lines_by_id.get(transaction_id, []), key=lambda item: item[0])
        yield deserialize_transaction(raw, tuple(line for _, line in numbered))


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductID, ProductName, UnitPrice, ImageRef, IsActive]``."""

    return [record.product_id, record.product_name, record.unit_price, record.image_ref, record.is_active]


def serialize_stock(record: StockRow) -> list[object]:
    """Arrange a stock item as ``[ProductID, Quantity, ReorderThreshold, ExpiryDate]``."""

    expiry = record.expiry_date.isoformat() if record.expiry_date is not None else None
    return [record.product_id, record.quantity, record.reorder_threshold, expiry]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction into the ``TransactionLog`` column order."""

    return [
        record.transaction_id,
        record.timestamp.isoformat(),
        record.amount,
        record.misc_amount,
        record.source_method.value,
        record.transcription_text,
        record.detected_language,
        record.payer_info,
    ]


def serialize_transaction_lines(record: TransactionRow) -> list[list[object]]:
    """Convert the line snapshots of ``record`` into ``TransactionLines`` rows."""

    return [
        [record.transaction_id, index, line.product_id, line.product_name, line.unit_price, line.quantity]
        for index, line in enumerate(record.lines, start=1)
    ]


def to_amount(value: Union[Decimal, int, str, float]) -> Decimal:
    """Coerce ``value`` to a positive :class:`Decimal` payment amount.

    Floats go through ``str`` so that ``12.5`` becomes ``Decimal("12.5")``
    rather than its binary expansion.

    Raises:
        InputError: If the value is not a finite number greater than zero.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InputError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise InputError(f"Amount must be a positive number, got {value!r}")
    return amount


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _to_date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Excel may hand back numeric ids or float prices, so ids and names are
    coerced to ``str`` and prices go through ``str`` before becoming
    :class:`~decimal.Decimal` instances.
    """

    product_id, product_name, price_raw, image_ref, is_active = raw_row[:5]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        unit_price=_to_decimal(price_raw),
        image_ref=_to_optional_str(image_ref),
        is_active=True if is_active is None else bool(is_active),
    )


def deserialize_stock(raw_row: Sequence[object]) -> StockRow:
    """Convert a raw worksheet row into a strongly typed stock record."""

    product_id, quantity, threshold, expiry = raw_row[:4]
    return StockRow(
        product_id=str(product_id),
        quantity=int(quantity or 0),
        reorder_threshold=int(threshold) if threshold is not None else DEFAULT_REORDER_THRESHOLD,
        expiry_date=_to_date(expiry),
    )


def deserialize_transaction_line(raw_row: Sequence[object]) -> tuple[str, int, TransactionLineRow]:
    """Convert a ``TransactionLines`` row into ``(transaction_id, line_number, line)``."""

    transaction_id, line_number, product_id, product_name, price_raw, quantity = raw_row[:6]
    line = TransactionLineRow(
        product_id=str(product_id),
        product_name=str(product_name),
        unit_price=_to_decimal(price_raw),
        quantity=int(quantity or 0),
    )
    return str(transaction_id), int(line_number or 0), line


def deserialize_transaction(raw_row: Sequence[object], lines: tuple[TransactionLineRow, ...]) -> TransactionRow:
    """Convert a ``TransactionLog`` row plus its lines into a transaction record."""

    (
        transaction_id,
        timestamp_iso,
        amount_raw,
        misc_raw,
        source_method,
        transcription,
        language,
        payer_info,
    ) = raw_row[:8]

    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp=datetime.fromisoformat(str(timestamp_iso)),
        amount=_to_decimal(amount_raw),
        lines=lines,
        misc_amount=_to_decimal(misc_raw),
        source_method=SourceMethod(str(source_method)) if source_method else SourceMethod.MANUAL_ENTRY,
        transcription_text=_to_optional_str(transcription),
        detected_language=_to_optional_str(language),
        payer_info=_to_optional_str(payer_info),
    )
