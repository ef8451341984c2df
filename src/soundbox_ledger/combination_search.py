"""Bounded search for product combinations that explain a payment amount.

The search walks four fixed tiers (exact single product, exact multiple of a
single product, exact pair of products, best-effort floor of the priciest
affordable product), deduplicates the resulting candidate sets, and ranks
exact totals ahead of partial fits. Every loop is capped by
:class:`SearchLimits` so that large catalogs never trigger an unbounded
enumeration. The function is pure: identical inputs always yield identical
output in identical order.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from itertools import combinations
from typing import Iterable, List, Optional, Sequence

from . import log
from .constants import (
    CONFIDENCE_EXACT_MULTIPLE,
    CONFIDENCE_EXACT_PAIR,
    CONFIDENCE_EXACT_SINGLE,
    CONFIDENCE_FLOOR_FALLBACK,
    DEFAULT_MAX_PAIR_QUANTITY,
    DEFAULT_MAX_SINGLE_MULTIPLE,
    DEFAULT_TOP_K,
)
from .data_manager import ConfigSettings, ProductRow, to_amount
from .errors import InputError


@dataclass(frozen=True)
class SearchLimits:
    """Caps applied to each search tier."""

    max_single_multiple: int = DEFAULT_MAX_SINGLE_MULTIPLE
    max_pair_quantity: int = DEFAULT_MAX_PAIR_QUANTITY
    top_k: int = DEFAULT_TOP_K

    @classmethod
    def from_settings(cls, settings: ConfigSettings) -> "SearchLimits":
        return cls(
            max_single_multiple=settings.max_single_multiple,
            max_pair_quantity=settings.max_pair_quantity,
            top_k=settings.top_k,
        )


@dataclass(frozen=True)
class CandidateItem:
    """One product/quantity pair proposed by the search."""

    product: ProductRow
    quantity: int
    confidence: float

    @property
    def line_total(self) -> Decimal:
        return self.product.unit_price * self.quantity


@dataclass(frozen=True)
class CandidateSet:
    """A non-empty, ordered group of candidate items."""

    items: tuple[CandidateItem, ...]

    def __post_init__(self) -> None:
        if not self.items:
            raise InputError("A candidate set needs at least one item")
        if any(item.quantity < 1 for item in self.items):
            raise InputError("Candidate quantities must be at least 1")

    @property
    def total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def confidence(self) -> float:
        """Mean confidence of the member items."""
        return sum(item.confidence for item in self.items) / len(self.items)

    def is_exact(self, target_amount: Decimal) -> bool:
        return self.total == target_amount

    def signature(self) -> frozenset[tuple[str, int]]:
        """Unordered multiset key used for deduplication."""
        return frozenset((item.product.product_id, item.quantity) for item in self.items)


def _single(product: ProductRow, quantity: int, confidence: float) -> CandidateSet:
    return CandidateSet(items=(CandidateItem(product, quantity, confidence),))


def _usable_products(catalog: Iterable[ProductRow]) -> List[ProductRow]:
    return [product for product in catalog if product.is_active and product.unit_price > 0]


def _exact_singles(target: Decimal, products: Sequence[ProductRow]) -> Iterable[CandidateSet]:
    for product in products:
        if product.unit_price == target:
            yield _single(product, 1, CONFIDENCE_EXACT_SINGLE)


def _exact_multiples(target: Decimal, products: Sequence[ProductRow], limits: SearchLimits) -> Iterable[CandidateSet]:
    for product in products:
        if target % product.unit_price != 0:
            continue
        quantity = int(target / product.unit_price)
        if 2 <= quantity <= limits.max_single_multiple:
            yield _single(product, quantity, CONFIDENCE_EXACT_MULTIPLE)


def _exact_pairs(target: Decimal, products: Sequence[ProductRow], limits: SearchLimits) -> Iterable[CandidateSet]:
    quantities = range(1, limits.max_pair_quantity + 1)
    for first, second in combinations(products, 2):
        for first_quantity in quantities:
            first_total = first.unit_price * first_quantity
            if first_total >= target:
                break
            for second_quantity in quantities:
                total = first_total + second.unit_price * second_quantity
                if total > target:
                    break
                if total == target:
                    yield CandidateSet(
                        items=(
                            CandidateItem(first, first_quantity, CONFIDENCE_EXACT_PAIR),
                            CandidateItem(second, second_quantity, CONFIDENCE_EXACT_PAIR),
                        )
                    )


def _floor_fallback(target: Decimal, products: Sequence[ProductRow]) -> Optional[CandidateSet]:
    best: Optional[ProductRow] = None
    for product in products:
        if product.unit_price <= target and (best is None or product.unit_price > best.unit_price):
            best = product
    if best is None:
        return None
    quantity = int(target // best.unit_price)
    return _single(best, quantity, CONFIDENCE_FLOOR_FALLBACK)


def search(
    target_amount: Decimal,
    catalog: Sequence[ProductRow],
    limits: SearchLimits = SearchLimits(),
) -> List[CandidateSet]:
    """Rank product combinations that explain ``target_amount``.

    Args:
        target_amount (Decimal): Positive payment amount to reconcile.
        catalog (Sequence[ProductRow]): Products to consider. Inactive or
            non-positive priced entries are ignored; catalog order drives the
            enumeration order and therefore tie-breaking.
        limits (SearchLimits): Caps for each tier and the number of results.

    Returns:
        list[CandidateSet]: At most ``limits.top_k`` sets; exact totals first,
            then by descending mean confidence, ties in discovery order. Empty
            when no product fits within the target.

    Raises:
        InputError: If ``target_amount`` is not a finite positive number.
    """
    try:
        target = to_amount(target_amount)
    except InputError:
        log.error("Combination search rejected amount: %r", target_amount)
        raise

    products = _usable_products(catalog)
    discovered: List[CandidateSet] = []
    discovered.extend(_exact_singles(target, products))
    discovered.extend(_exact_multiples(target, products, limits))
    discovered.extend(_exact_pairs(target, products, limits))
    fallback = _floor_fallback(target, products)
    if fallback is not None:
        discovered.append(fallback)

    unique: List[CandidateSet] = []
    seen: set[frozenset[tuple[str, int]]] = set()
    for candidate in discovered:
        key = candidate.signature()
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)

    # sorted() is stable, so equal keys keep discovery order.
    ranked = sorted(unique, key=lambda candidate: (not candidate.is_exact(target), -candidate.confidence))
    result = ranked[: limits.top_k]
    log.debug(
        "Combination search for %s over %d products: %d discovered, %d unique, %d returned",
        target,
        len(products),
        len(discovered),
        len(unique),
        len(result),
    )
    return result


def best_candidate(
    target_amount: Decimal,
    catalog: Sequence[ProductRow],
    limits: SearchLimits = SearchLimits(),
) -> Optional[CandidateSet]:
    """Return the top-ranked candidate set, or ``None`` when nothing fits."""
    ranked = search(target_amount, catalog, limits)
    return ranked[0] if ranked else None
