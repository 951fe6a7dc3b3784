"""Normalisation of user-entered numeric text.

Grid cells receive numbers typed with Persian or Arabic-Indic digits, Arabic
thousands separators, and stray whitespace. Every arithmetic step in the
engine first passes its inputs through :func:`normalize_numeric_string` so
that ``"۱۲٬۳۴۰.۵"`` and ``"12,340.5"`` are treated identically.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any


PERSIAN_ZERO = 0x06F0
ARABIC_INDIC_ZERO = 0x0660

_DIGIT_TRANSLATION = {
    **{PERSIAN_ZERO + offset: str(offset) for offset in range(10)},
    **{ARABIC_INDIC_ZERO + offset: str(offset) for offset in range(10)},
}
_SEPARATOR_TRANSLATION = {0x066C: ",", 0x060C: ","}
_TO_PERSIAN = {ord(str(offset)): chr(PERSIAN_ZERO + offset) for offset in range(10)}

_WHITESPACE = re.compile(r"\s+")
_NON_NUMERIC = re.compile(r"[^0-9.]")
_GROUPING = re.compile(r"\B(?=(\d{3})+(?!\d))")

# Results that carry no magnitude and therefore coerce to zero.
_EMPTY_NUMERIC = frozenset({"", "-", ".", "-."})


def normalize_digits(raw: Any) -> str:
    """Translate Persian and Arabic-Indic digits into ASCII digits."""

    if raw is None:
        return ""
    return str(raw).translate(_DIGIT_TRANSLATION)


def normalize_numeric_string(raw: Any) -> str:
    """Reduce arbitrary numeric text to a canonical ASCII decimal string.

    Localised digits are translated, Arabic separators and commas dropped,
    whitespace removed, a leading ``-`` kept as the only sign, and every
    character other than digits and dots discarded. When several dots are
    present the first one is the decimal point and the remaining digit runs
    are concatenated into the fractional part. The transformation is
    idempotent.

    Args:
        raw (Any): Value typed by the user, possibly ``None`` or a number.

    Returns:
        str: Canonical representation such as ``"-12340.5"``; an empty string
            when ``raw`` is ``None``.
    """

    if raw is None:
        return ""
    if isinstance(raw, float):
        raw = Decimal(repr(raw))
    if isinstance(raw, Decimal):
        raw = format(raw, "f")
    text = normalize_digits(raw).translate(_SEPARATOR_TRANSLATION)
    text = _WHITESPACE.sub("", text).replace(",", "")

    sign = "-" if text.startswith("-") else ""
    cleaned = _NON_NUMERIC.sub("", text.replace("-", ""))
    integer_part, dot, decimal_part = cleaned.partition(".")
    if not dot:
        return f"{sign}{integer_part}"
    return f"{sign}{integer_part}.{decimal_part.replace('.', '')}"


def to_decimal(raw: Any) -> Decimal:
    """Coerce ``raw`` into a :class:`~decimal.Decimal`, falling back to zero."""

    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, bool):
        return Decimal(int(raw))
    if isinstance(raw, int):
        return Decimal(raw)
    normalized = normalize_numeric_string(raw)
    if normalized in _EMPTY_NUMERIC:
        return Decimal("0")
    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


def is_blank(raw: Any) -> bool:
    """Return ``True`` when ``raw`` carries no numeric magnitude."""

    return normalize_numeric_string(raw) in _EMPTY_NUMERIC


def to_persian_digits(text: Any) -> str:
    """Render ASCII digits in ``text`` with Persian glyphs."""

    return str(text).translate(_TO_PERSIAN)


def format_numeric_for_input(raw: Any, with_grouping: bool = False) -> str:
    """Format a value for display in a numeric grid cell.

    The value is normalised first, optionally grouped by thousands, and then
    rendered with Persian digits.
    """

    normalized = normalize_numeric_string(raw)
    if not normalized:
        return ""
    if not with_grouping or normalized in _EMPTY_NUMERIC:
        return to_persian_digits(normalized)

    sign = "-" if normalized.startswith("-") else ""
    unsigned = normalized[1:] if sign else normalized
    integer_part, dot, decimal_part = unsigned.partition(".")
    grouped = _GROUPING.sub(",", integer_part)
    output = f"{sign}{grouped}{dot}{decimal_part}"
    return to_persian_digits(output)


def format_decimal(value: Decimal) -> str:
    """Render a derived decimal without exponent or trailing zeros."""

    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return format(value.normalize(), "f")


__all__ = [
    "normalize_digits",
    "normalize_numeric_string",
    "to_decimal",
    "is_blank",
    "to_persian_digits",
    "format_numeric_for_input",
    "format_decimal",
]
