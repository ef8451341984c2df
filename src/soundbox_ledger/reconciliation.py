"""Interactive reconciliation of a payment amount against candidate lines.

A :class:`ReconciliationSession` holds the target amount and an ordered tuple
of immutable :class:`CandidateLine` values. Every edit computes the projected
selected total first and only swaps in the new tuple when the projection stays
within the target, so a rejected edit leaves the session exactly as it was.
The miscellaneous remainder is always derived, never stored, which keeps
``misc_amount + selected_total == target_amount`` exact under Decimal
arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Union
from uuid import uuid4

from . import log
from .combination_search import CandidateSet
from .constants import MAX_MISC_SUGGESTIONS, SourceMethod
from .data_manager import ProductRow, TransactionLineRow, TransactionRow, to_amount
from .errors import InputError, SessionClosedError


class SessionState(str, Enum):
    """Lifecycle of a reconciliation session."""

    OPEN = "Open"
    COMMITTED = "Committed"
    DISCARDED = "Discarded"


@dataclass(frozen=True)
class CandidateLine:
    """A product line the user can select and size within a session."""

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    selected: bool
    confidence: float

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class MiscSuggestion:
    """What the miscellaneous remainder could still buy of one product."""

    product_id: str
    product_name: str
    extra_quantity: int
    extra_value: Decimal


@dataclass(frozen=True)
class SessionView:
    """Snapshot handed back to the presentation layer after each operation."""

    lines: tuple[CandidateLine, ...]
    misc_amount: Decimal
    misc_explanation: tuple[MiscSuggestion, ...]
    accepted: bool = True


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable transaction identifier using UTC timestamps.

    A short random suffix keeps identifiers distinct when two transactions
    share a timestamp.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{6 hex digits}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid4().hex[:6]}"


def line_from_product(product: ProductRow, *, quantity: int = 0, confidence: float = 0.0) -> CandidateLine:
    return CandidateLine(
        product_id=product.product_id,
        product_name=product.product_name,
        unit_price=product.unit_price,
        quantity=quantity,
        selected=quantity > 0,
        confidence=confidence,
    )


class ReconciliationSession:
    """Stateful controller for reconciling one payment.

    Invariants held after every public call:

    * the selected-line total never exceeds ``target_amount``;
    * ``misc_amount == target_amount - selected_total`` and is never negative.

    Over-budget edits are rejected as no-ops and reported through
    ``SessionView.accepted``; malformed input raises :class:`InputError`.
    """

    def __init__(
        self,
        target_amount: Union[Decimal, int, str, float],
        lines: Iterable[CandidateLine] = (),
        *,
        source_method: SourceMethod = SourceMethod.MANUAL_ENTRY,
        transcription_text: Optional[str] = None,
        detected_language: Optional[str] = None,
        payer_info: Optional[str] = None,
    ) -> None:
        self.target_amount = to_amount(target_amount)
        self.source_method = source_method
        self.transcription_text = transcription_text
        self.detected_language = detected_language
        self.payer_info = payer_info
        self.state = SessionState.OPEN

        lines = tuple(lines)
        seen: set[str] = set()
        for line in lines:
            if line.product_id in seen:
                raise InputError(f"Duplicate candidate line for product '{line.product_id}'")
            if line.unit_price <= 0:
                raise InputError(f"Product '{line.product_id}' has a non-positive price")
            seen.add(line.product_id)
        self._lines = lines

        if self.selected_total > self.target_amount:
            log.error(
                "Seed total %s exceeds target amount %s",
                self.selected_total,
                self.target_amount,
            )
            raise InputError(
                f"Seed total {self.selected_total} exceeds target amount {self.target_amount}"
            )

    @classmethod
    def start(
        cls,
        target_amount: Union[Decimal, int, str, float],
        seed: Optional[CandidateSet],
        **metadata,
    ) -> "ReconciliationSession":
        """Open a session whose lines are all selected items of ``seed``.

        A ``None`` seed opens an empty session where the whole amount is
        miscellaneous.
        """
        lines: List[CandidateLine] = []
        if seed is not None:
            for item in seed.items:
                lines.append(line_from_product(item.product, quantity=item.quantity, confidence=item.confidence))
        session = cls(target_amount, lines, **metadata)
        log.info(
            "Opened reconciliation session for %s with %d seeded lines (misc=%s)",
            session.target_amount,
            len(lines),
            session.misc_amount,
        )
        return session

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def lines(self) -> tuple[CandidateLine, ...]:
        return self._lines

    @property
    def selected_total(self) -> Decimal:
        return sum((line.line_total for line in self._lines if line.selected), Decimal("0"))

    @property
    def misc_amount(self) -> Decimal:
        return self.target_amount - self.selected_total

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def view(self, *, accepted: bool = True) -> SessionView:
        return SessionView(
            lines=self._lines,
            misc_amount=self.misc_amount,
            misc_explanation=tuple(self.explain_miscellaneous()),
            accepted=accepted,
        )

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def set_quantity(self, product_id: str, new_quantity: int) -> SessionView:
        """Replace the quantity of one line, rejecting edits that overshoot the target.

        Negative quantities clamp to zero; a zero quantity deselects the line.

        Raises:
            InputError: If ``new_quantity`` is not an integer or the product is
                not part of the session.
            SessionClosedError: If the session was confirmed or cancelled.
        """
        self._require_open()
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            log.error("Rejected non-integer quantity %r for '%s'", new_quantity, product_id)
            raise InputError(f"Quantity must be an integer, got {new_quantity!r}")
        index = self._index_of(product_id)
        quantity = max(0, new_quantity)
        candidate = replace(self._lines[index], quantity=quantity, selected=quantity > 0)
        return self._apply(index, candidate)

    def adjust_quantity(self, product_id: str, delta: int) -> SessionView:
        """Shift a line's quantity by ``delta`` under the same rules as :meth:`set_quantity`."""
        self._require_open()
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InputError(f"Quantity delta must be an integer, got {delta!r}")
        current = self._lines[self._index_of(product_id)].quantity
        return self.set_quantity(product_id, current + delta)

    def toggle_selection(self, product_id: str) -> SessionView:
        """Flip a line's selection.

        Selecting restores at least one unit and is refused when it would
        overshoot the target. Deselecting zeroes the quantity and always
        succeeds.
        """
        self._require_open()
        index = self._index_of(product_id)
        line = self._lines[index]
        if line.selected:
            candidate = replace(line, selected=False, quantity=0)
        else:
            candidate = replace(line, selected=True, quantity=max(1, line.quantity))
        return self._apply(index, candidate)

    def add_candidate_lines(self, entries: Iterable[Union[ProductRow, CandidateLine]]) -> SessionView:
        """Append unselected, zero-quantity lines for products not yet present."""
        self._require_open()
        present = {line.product_id for line in self._lines}
        added: List[CandidateLine] = []
        for entry in entries:
            if entry.product_id in present:
                continue
            if isinstance(entry, ProductRow):
                line = line_from_product(entry)
            else:
                line = replace(entry, quantity=0, selected=False)
            if line.unit_price <= 0:
                log.warning("Skipping candidate '%s' with non-positive price", line.product_id)
                continue
            present.add(line.product_id)
            added.append(line)
        if added:
            self._lines = self._lines + tuple(added)
            log.debug("Added %d candidate lines", len(added))
        return self.view()

    def _apply(self, index: int, candidate: CandidateLine) -> SessionView:
        current = self._lines[index]
        projected = self.selected_total
        if current.selected:
            projected -= current.line_total
        if candidate.selected:
            projected += candidate.line_total
        if projected > self.target_amount:
            log.info(
                "Rejected edit on '%s': selected total %s would exceed %s",
                candidate.product_id,
                projected,
                self.target_amount,
            )
            return self.view(accepted=False)
        self._lines = self._lines[:index] + (candidate,) + self._lines[index + 1:]
        return self.view()

    # ------------------------------------------------------------------
    # Miscellaneous explanation
    # ------------------------------------------------------------------

    def explain_miscellaneous(self) -> List[MiscSuggestion]:
        """Suggest what the leftover amount could still buy.

        Selected lines contribute additional units, unselected lines fresh
        units. At most three suggestions are returned, largest value first.
        """
        misc = self.misc_amount
        if misc <= 0:
            return []
        suggestions: List[MiscSuggestion] = []
        for line in self._lines:
            if line.unit_price > misc:
                continue
            extra_quantity = int(misc // line.unit_price)
            suggestions.append(
                MiscSuggestion(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    extra_quantity=extra_quantity,
                    extra_value=min(line.unit_price * extra_quantity, misc),
                )
            )
        suggestions.sort(key=lambda suggestion: suggestion.extra_value, reverse=True)
        return suggestions[:MAX_MISC_SUGGESTIONS]

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def confirm(self, *, timestamp: Optional[datetime] = None) -> TransactionRow:
        """Freeze the selected lines into a transaction and close the session."""
        transaction = self.build_transaction(timestamp=timestamp)
        self.mark_committed(transaction)
        return transaction

    def build_transaction(self, *, timestamp: Optional[datetime] = None) -> TransactionRow:
        """Freeze the selected lines into a transaction, leaving the session open.

        Callers that record the transaction elsewhere close the session with
        :meth:`mark_committed` once the record succeeded.
        """
        self._require_open()
        moment = _resolve_timestamp(timestamp)
        return TransactionRow(
            transaction_id=generate_transaction_id(when=moment),
            timestamp=moment,
            amount=self.target_amount,
            lines=tuple(
                TransactionLineRow(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                )
                for line in self._lines
                if line.selected and line.quantity > 0
            ),
            misc_amount=self.misc_amount,
            source_method=self.source_method,
            transcription_text=self.transcription_text,
            detected_language=self.detected_language,
            payer_info=self.payer_info,
        )

    def mark_committed(self, transaction: TransactionRow) -> None:
        self._require_open()
        self.state = SessionState.COMMITTED
        log.info(
            "Confirmed session as '%s' (amount=%s, lines=%d, misc=%s)",
            transaction.transaction_id,
            transaction.amount,
            len(transaction.lines),
            transaction.misc_amount,
        )

    def cancel(self) -> None:
        """Discard the session without side effects."""
        self._require_open()
        self.state = SessionState.DISCARDED
        log.info("Cancelled reconciliation session for %s", self.target_amount)

    def _require_open(self) -> None:
        if self.state is not SessionState.OPEN:
            raise SessionClosedError(f"Session is already {self.state.value.lower()}")

    def _index_of(self, product_id: str) -> int:
        for index, line in enumerate(self._lines):
            if line.product_id == product_id:
                return index
        log.error("Session has no line for product '%s'", product_id)
        raise InputError(f"Product '{product_id}' is not part of this session")
