"""Read-only sales views derived from the transaction history and stock ledger.

Everything here is recomputed on demand from the sequences it is handed, so
there is no cache to invalidate. Calendar days are taken from each
transaction's own timestamp; "today" defaults to the current UTC date.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import openpyxl

from . import log
from .constants import NO_SALES_YET, PaymentChannel
from .data_manager import StockRow, TransactionRow


EXPORT_COLUMNS = ("Date", "Time", "Amount", "Type", "Method", "Products", "Transcription")


@dataclass(frozen=True)
class TransactionFilter:
    """Optional filters applied before exporting or summarising."""

    day: Optional[date] = None
    channel: Optional[PaymentChannel] = None

    def matches(self, transaction: TransactionRow) -> bool:
        if self.day is not None and transaction_day(transaction) != self.day:
            return False
        if self.channel is not None and transaction.payment_channel is not self.channel:
            return False
        return True


def today_utc() -> date:
    return datetime.now(UTC).date()


def transaction_day(transaction: TransactionRow) -> date:
    return transaction.timestamp.date()


def filter_transactions(
    transactions: Iterable[TransactionRow],
    filters: Optional[TransactionFilter] = None,
) -> List[TransactionRow]:
    if filters is None:
        return list(transactions)
    return [transaction for transaction in transactions if filters.matches(transaction)]


def total_for_day(transactions: Iterable[TransactionRow], day: date) -> Decimal:
    """Sum of amounts over transactions dated ``day``."""
    return sum(
        (transaction.amount for transaction in transactions if transaction_day(transaction) == day),
        Decimal("0"),
    )


def totals_by_channel(transactions: Iterable[TransactionRow]) -> Dict[PaymentChannel, Decimal]:
    """Split revenue between UPI (soundbox) and cash (manual) payments."""
    totals = {channel: Decimal("0") for channel in PaymentChannel}
    for transaction in transactions:
        totals[transaction.payment_channel] += transaction.amount
    return totals


def top_product(transactions: Iterable[TransactionRow]) -> str:
    """Name of the product with the highest total quantity sold.

    Quantities are summed per recorded product name. Ties go to the name
    encountered first while walking the history in its stored order.
    """
    quantities: Dict[str, int] = {}
    for transaction in transactions:
        for line in transaction.lines:
            quantities[line.product_name] = quantities.get(line.product_name, 0) + line.quantity

    best_name: Optional[str] = None
    best_quantity = 0
    for name, quantity in quantities.items():
        if best_name is None or quantity > best_quantity:
            best_name, best_quantity = name, quantity
    return best_name if best_name is not None else NO_SALES_YET


def revenue_series(
    transactions: Sequence[TransactionRow],
    days: int = 7,
    today: Optional[date] = None,
) -> List[Tuple[date, Decimal]]:
    """Daily revenue for the last ``days`` calendar days, oldest first."""
    if days < 1:
        raise ValueError("days must be at least 1")
    today = today or today_utc()
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    revenue = {day: Decimal("0") for day in window}
    for transaction in transactions:
        day = transaction_day(transaction)
        if day in revenue:
            revenue[day] += transaction.amount
    return [(day, revenue[day]) for day in window]


def low_stock(stock: Iterable[StockRow]) -> List[StockRow]:
    return [item for item in stock if item.quantity <= item.reorder_threshold]


def out_of_stock(stock: Iterable[StockRow]) -> List[StockRow]:
    return [item for item in stock if item.quantity == 0]


def expiring(stock: Iterable[StockRow], today: Optional[date] = None) -> List[StockRow]:
    """Items whose expiry date is today."""
    today = today or today_utc()
    return [item for item in stock if item.expiry_date is not None and item.expiry_date == today]


def expired(stock: Iterable[StockRow], today: Optional[date] = None) -> List[StockRow]:
    """Items whose expiry date is strictly before today."""
    today = today or today_utc()
    return [item for item in stock if item.expiry_date is not None and item.expiry_date < today]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_row(transaction: TransactionRow) -> List[object]:
    """Flatten one transaction into the export column order."""
    products = "; ".join(f"{line.quantity}x {line.product_name}" for line in transaction.lines) or "N/A"
    return [
        transaction.timestamp.date().isoformat(),
        transaction.timestamp.strftime("%H:%M:%S"),
        transaction.amount,
        transaction.payment_channel.value,
        transaction.source_method.value,
        products,
        transaction.transcription_text or "N/A",
    ]


def export_transactions_csv(
    transactions: Iterable[TransactionRow],
    filters: Optional[TransactionFilter] = None,
) -> bytes:
    """Render the filtered history as UTF-8 CSV bytes with a header row."""
    selected = filter_transactions(transactions, filters)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for transaction in selected:
        writer.writerow(export_row(transaction))
    log.info("Exported %d transactions as CSV", len(selected))
    return buffer.getvalue().encode("utf-8")


def export_transactions_xlsx(
    transactions: Iterable[TransactionRow],
    filters: Optional[TransactionFilter] = None,
) -> bytes:
    """Render the filtered history as a single-sheet ``.xlsx`` workbook."""
    selected = filter_transactions(transactions, filters)
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "SalesLog"
    sheet.append(list(EXPORT_COLUMNS))
    for transaction in selected:
        sheet.append(export_row(transaction))
    buffer = io.BytesIO()
    workbook.save(buffer)
    log.info("Exported %d transactions as XLSX", len(selected))
    return buffer.getvalue()
