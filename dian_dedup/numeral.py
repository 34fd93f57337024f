"""Helpers for parsing monetary amounts stored with either decimal separator."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

__all__ = ["parse_amount", "round_amount", "to_amount"]

_NOISE_PATTERN = re.compile(r"[\s\u00a0\u202f$]")
_CENT = Decimal("0.01")


def parse_amount(raw: Any) -> Decimal:
    """Parse a stored or published amount into a Decimal.

    Accepts ``"1234.56"``, ``"1234,56"``, ``"1.234,56"`` and ``"1,234.56"``.
    When both separators appear the last one is the decimal separator; a
    separator repeated more than once is a thousands separator.
    """
    if raw is None:
        raise ValueError("value is required")
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))

    value = _NOISE_PATTERN.sub("", str(raw))
    if not value:
        raise ValueError("value is required")

    has_comma = "," in value
    has_dot = "." in value
    if has_comma and has_dot:
        if value.rfind(",") > value.rfind("."):
            normalized = value.replace(".", "").replace(",", ".")
        else:
            normalized = value.replace(",", "")
    elif has_comma:
        normalized = value.replace(",", "") if value.count(",") > 1 else value.replace(",", ".")
    elif has_dot and value.count(".") > 1:
        normalized = value.replace(".", "")
    else:
        normalized = value

    try:
        result = Decimal(normalized)
    except InvalidOperation as exc:
        raise ValueError(f"unable to parse amount from '{raw}'") from exc
    if not result.is_finite():
        raise ValueError(f"amount '{raw}' is not finite")
    return result


def round_amount(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_amount(raw: Any) -> Decimal:
    return round_amount(parse_amount(raw))
