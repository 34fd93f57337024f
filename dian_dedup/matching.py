"""Tolerance comparison between stored documents and the canonical record."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .models import CanonicalRecord, LedgerDocument, MemberComparison
from .numeral import to_amount

DEFAULT_TOLERANCE = Decimal("0.10")


def amounts_match(a: Decimal, b: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    """Absolute difference within tolerance, inclusive."""
    return abs(a - b) <= tolerance


def compare_member(
    document: LedgerDocument,
    canonical: CanonicalRecord,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> MemberComparison:
    """Compare subtotal and total of one stored document; both must be within tolerance."""
    comparison = MemberComparison(
        document=document,
        canonical_subtotal=canonical.subtotal,
        canonical_total=canonical.total,
    )
    try:
        comparison.local_subtotal = to_amount(document.subtotal)
        comparison.local_total = to_amount(document.total)
    except ValueError as exc:
        comparison.error = f"stored amount unreadable: {exc}"
        return comparison

    comparison.subtotal_diff = abs(comparison.local_subtotal - canonical.subtotal)
    comparison.total_diff = abs(comparison.local_total - canonical.total)
    comparison.subtotal_match = amounts_match(comparison.local_subtotal, canonical.subtotal, tolerance)
    comparison.total_match = amounts_match(comparison.local_total, canonical.total, tolerance)
    return comparison


def elect_authoritative(comparisons: Iterable[MemberComparison]) -> Optional[MemberComparison]:
    """First matching member in group order (oldest first), or None."""
    for comparison in comparisons:
        if comparison.matched:
            return comparison
    return None
