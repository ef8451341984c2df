"""Enumerations and tunables shared across Soundbox Ledger modules.

Centralises domain constants so that the persistence layer, the reconciliation
engine, and the CLI rely on a single source of truth for identifiers such as
sheet names, store keys, and the confidence scores attached to search results.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_REORDER_THRESHOLD = 5

# Search caps; overridable through the ``[Search]`` section of config.ini.
DEFAULT_MAX_SINGLE_MULTIPLE = 10
DEFAULT_MAX_PAIR_QUANTITY = 5
DEFAULT_TOP_K = 5

# Confidence attached to each tier of the combination search.
CONFIDENCE_EXACT_SINGLE = 0.95
CONFIDENCE_EXACT_MULTIPLE = 0.90
CONFIDENCE_EXACT_PAIR = 0.80
CONFIDENCE_FLOOR_FALLBACK = 0.60

MAX_MISC_SUGGESTIONS = 3
RECENT_TRANSACTIONS_IN_SNAPSHOT = 5

NO_SALES_YET = "No sales yet"


class SourceMethod(str, Enum):
    """Enumerate how the payment amount entered the system."""

    AUDIO_CAPTURE = "Audio Capture"
    MANUAL_ENTRY = "Manual Entry"


class PaymentChannel(str, Enum):
    """Enumerate the payment channels shown in sales reports."""

    UPI = "UPI"
    CASH = "Cash"


class StoreKey(str, Enum):
    """Enumerate the document keys persisted through the store."""

    PRODUCTS = "products"
    INVENTORY = "inventory"
    TRANSACTIONS = "transactions"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the workbook store."""

    PRODUCTS = "Products"
    INVENTORY = "Inventory"
    TRANSACTION_LOG = "TransactionLog"
    TRANSACTION_LINES = "TransactionLines"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_REORDER_THRESHOLD",
    "DEFAULT_MAX_SINGLE_MULTIPLE",
    "DEFAULT_MAX_PAIR_QUANTITY",
    "DEFAULT_TOP_K",
    "CONFIDENCE_EXACT_SINGLE",
    "CONFIDENCE_EXACT_MULTIPLE",
    "CONFIDENCE_EXACT_PAIR",
    "CONFIDENCE_FLOOR_FALLBACK",
    "MAX_MISC_SUGGESTIONS",
    "RECENT_TRANSACTIONS_IN_SNAPSHOT",
    "NO_SALES_YET",
    "SourceMethod",
    "PaymentChannel",
    "StoreKey",
    "SheetName",
]
