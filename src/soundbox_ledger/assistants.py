"""Seams for the external collaborators and the local fallbacks behind them.

Transcription, external product suggestions, and chat are provided by
backends outside this package. Each is described by a small protocol; the
helpers in this module call the configured backend and degrade to a local
answer (a canned announcement, the combination search, or an apology) when
the backend is missing or raises :class:`~soundbox_ledger.errors.BackendUnavailable`.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Protocol, Sequence

from . import core_logic, log
from .combination_search import CandidateSet, SearchLimits, search
from .constants import RECENT_TRANSACTIONS_IN_SNAPSHOT
from .data_manager import ProductRow, TransactionRow
from .errors import BackendUnavailable, InputError
from .reconciliation import to_amount
from .reports import today_utc, total_for_day


CHAT_UNCONFIGURED_MESSAGE = (
    "Sorry, I need an assistant backend to be configured to help you. "
    "Please add its credentials to your configuration."
)
CHAT_ERROR_MESSAGE = "Sorry, I'm having trouble processing your request right now. Please try again."

MOCK_ANNOUNCEMENTS: tuple[tuple[str, Decimal], ...] = (
    ("You have received ₹35 via PhonePe", Decimal("35")),
    ("Payment of ₹50 received", Decimal("50")),
    ("₹25 received via UPI", Decimal("25")),
    ("Transaction of ₹100 successful", Decimal("100")),
    ("आपको PhonePe के माध्यम से ₹40 प्राप्त हुए", Decimal("40")),
)
MOCK_LANGUAGE = "hindi"

_CURRENCY_AMOUNT = re.compile(r"(?:₹|Rs\.?|INR)\s*(\d[\d,]*(?:\.\d{1,2})?)", re.IGNORECASE)
_BARE_AMOUNT = re.compile(r"(\d[\d,]*(?:\.\d{1,2})?)")


@dataclass(frozen=True)
class TranscriptionResult:
    """Amount and context extracted from a payment announcement."""

    amount: Optional[Decimal]
    text: str
    language: str
    payer_info: Optional[str] = None


@dataclass(frozen=True)
class StockLine:
    product_name: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class ShopSnapshot:
    """Read-only digest of shop data handed to the chat backend."""

    shop_name: str
    stock: tuple[StockLine, ...]
    recent_transactions: tuple[TransactionRow, ...]
    todays_total: Decimal


class Transcriber(Protocol):
    def transcribe(self, audio: bytes) -> TranscriptionResult:
        ...


class SuggestionSource(Protocol):
    def suggest(
        self,
        amount: Decimal,
        catalog: Sequence[ProductRow],
        history: Sequence[TransactionRow],
    ) -> Sequence[CandidateSet]:
        ...


class ChatBackend(Protocol):
    def chat(self, question: str, snapshot: ShopSnapshot) -> str:
        ...


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


def extract_amount(text: str) -> Optional[Decimal]:
    """Pull the payment amount out of free announcement text.

    Currency-marked figures (``₹40``, ``Rs. 40``, ``INR 40``) win over bare
    numbers; thousands separators are ignored. Returns ``None`` when the text
    holds no positive number.
    """
    if not text:
        return None
    match = _CURRENCY_AMOUNT.search(text) or _BARE_AMOUNT.search(text)
    if match is None:
        return None
    try:
        amount = Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


def mock_transcription(amount=None, rng: Optional[random.Random] = None) -> TranscriptionResult:
    """Return a canned announcement, optionally forcing its amount."""
    rng = rng or random.Random()
    text, default_amount = rng.choice(MOCK_ANNOUNCEMENTS)
    return TranscriptionResult(
        amount=to_amount(amount) if amount is not None else default_amount,
        text=text,
        language=MOCK_LANGUAGE,
        payer_info=None,
    )


def transcribe_payment(
    audio: bytes,
    transcriber: Optional[Transcriber] = None,
    *,
    rng: Optional[random.Random] = None,
) -> TranscriptionResult:
    """Transcribe ``audio`` with ``transcriber``, falling back to a mock result.

    A result without a usable amount is repaired from its text when possible;
    otherwise the mock generator takes over as for an unavailable backend.
    """
    if transcriber is None:
        log.warning("No transcription backend configured; using mock transcription")
        return mock_transcription(rng=rng)

    try:
        result = transcriber.transcribe(audio)
    except BackendUnavailable as exc:
        log.warning("Transcription backend unavailable (%s); using mock transcription", exc)
        return mock_transcription(rng=rng)
    except Exception:
        log.exception("Transcription backend failed; using mock transcription")
        return mock_transcription(rng=rng)

    if result.amount is not None and result.amount > 0:
        return result

    recovered = extract_amount(result.text)
    if recovered is not None:
        log.info("Recovered amount %s from transcription text", recovered)
        return TranscriptionResult(
            amount=recovered,
            text=result.text,
            language=result.language,
            payer_info=result.payer_info,
        )

    log.warning("Transcription returned no usable amount; using mock transcription")
    return mock_transcription(rng=rng)


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


def suggest_combinations(
    amount,
    catalog: Sequence[ProductRow],
    history: Sequence[TransactionRow] = (),
    source: Optional[SuggestionSource] = None,
    limits: SearchLimits = SearchLimits(),
) -> List[CandidateSet]:
    """Rank candidate sets from ``source`` or, failing that, the local search.

    External candidates that overshoot the amount are discarded; if none
    survive, the local search answers instead.
    """
    target = to_amount(amount)
    if source is not None:
        try:
            proposed = list(source.suggest(target, catalog, history))
        except BackendUnavailable as exc:
            log.warning("Suggestion source unavailable (%s); using local search", exc)
        except Exception:
            log.exception("Suggestion source failed; using local search")
        else:
            usable = [candidate for candidate in proposed if candidate.total <= target]
            if len(usable) < len(proposed):
                log.warning("Dropped %d external candidates exceeding %s", len(proposed) - len(usable), target)
            if usable:
                return usable[: limits.top_k]
            log.warning("Suggestion source returned nothing usable; using local search")
    return search(target, catalog, limits)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


def build_shop_snapshot(context: core_logic.RuntimeContext, today: Optional[date] = None) -> ShopSnapshot:
    """Collect the shop digest the chat backend answers from."""
    names = {product.product_id: product for product in core_logic.list_products(context, include_inactive=True)}
    stock_lines = []
    for item in core_logic.list_stock(context):
        product = names.get(item.product_id)
        if product is None:
            continue
        stock_lines.append(StockLine(product.product_name, item.quantity, product.unit_price))
    transactions = core_logic.list_transactions(context)
    return ShopSnapshot(
        shop_name=context.settings.shop_name,
        stock=tuple(stock_lines),
        recent_transactions=tuple(transactions[:RECENT_TRANSACTIONS_IN_SNAPSHOT]),
        todays_total=total_for_day(transactions, today or today_utc()),
    )


def render_snapshot(snapshot: ShopSnapshot) -> str:
    """Plain-text rendering of a snapshot for prompt-based backends."""
    stock = "\n".join(
        f"{line.product_name}: {line.quantity} units (₹{line.unit_price} each)" for line in snapshot.stock
    )
    recent = "\n".join(
        "₹{amount} - {items} ({when})".format(
            amount=transaction.amount,
            items=", ".join(f"{line.quantity}x {line.product_name}" for line in transaction.lines) or "Unknown",
            when=transaction.timestamp.strftime("%Y-%m-%d %H:%M"),
        )
        for transaction in snapshot.recent_transactions
    )
    return (
        f"Shop: {snapshot.shop_name}\n"
        f"Current inventory:\n{stock or 'None'}\n"
        f"Recent transactions:\n{recent or 'None'}\n"
        f"Today's sales: ₹{snapshot.todays_total}"
    )


def ask_assistant(question: str, snapshot: ShopSnapshot, backend: Optional[ChatBackend] = None) -> str:
    """Answer ``question`` about the shop, or apologise when no backend can.

    Raises:
        InputError: If ``question`` is blank.
    """
    if not question or not question.strip():
        raise InputError("Question must not be empty")
    if backend is None:
        log.warning("Chat requested without a configured backend")
        return CHAT_UNCONFIGURED_MESSAGE
    try:
        return backend.chat(question.strip(), snapshot)
    except BackendUnavailable as exc:
        log.warning("Chat backend unavailable: %s", exc)
        return CHAT_ERROR_MESSAGE
    except Exception:
        log.exception("Chat backend failed")
        return CHAT_ERROR_MESSAGE
