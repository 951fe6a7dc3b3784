"""Conversion between the main and sub measurement units of a product.

Two convertible families exist: areas, converted through square feet, and
lengths, converted through metres. Count and pack units are entered by hand
and never convert. Unit values are stored with their Persian labels; short
ASCII aliases such as ``"m"`` or ``"cm2"`` are accepted everywhere a unit is
read.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .numeric import to_decimal


class Unit(str, Enum):
    """Measurement units a product may declare."""

    COUNT = "عدد"
    PACK = "بسته"
    SQUARE_FOOT = "فوت مربع"
    SQUARE_CENTIMETER = "سانتیمتر مربع"
    SQUARE_MILLIMETER = "میلیمتر مربع"
    SQUARE_METER = "متر مربع"
    MILLIMETER = "میلیمتر طول"
    CENTIMETER = "سانتیمتر طول"
    METER = "متر طول"


UNIT_ALIASES: Dict[str, Unit] = {
    "count": Unit.COUNT,
    "pcs": Unit.COUNT,
    "pack": Unit.PACK,
    "ft2": Unit.SQUARE_FOOT,
    "sqft": Unit.SQUARE_FOOT,
    "cm2": Unit.SQUARE_CENTIMETER,
    "mm2": Unit.SQUARE_MILLIMETER,
    "m2": Unit.SQUARE_METER,
    "mm": Unit.MILLIMETER,
    "cm": Unit.CENTIMETER,
    "m": Unit.METER,
}

MANUAL_UNITS = frozenset({Unit.COUNT, Unit.PACK})

# Size of one family base unit (square foot, metre) expressed in each unit.
AREA_FACTORS: Dict[Unit, Decimal] = {
    Unit.SQUARE_FOOT: Decimal("1"),
    Unit.SQUARE_CENTIMETER: Decimal("930.25"),
    Unit.SQUARE_MILLIMETER: Decimal("93025"),
    Unit.SQUARE_METER: Decimal("0.0929025"),
}
LENGTH_FACTORS: Dict[Unit, Decimal] = {
    Unit.METER: Decimal("1"),
    Unit.CENTIMETER: Decimal("100"),
    Unit.MILLIMETER: Decimal("1000"),
}

QUANTITY_PLACES = Decimal("0.001")

UNIT_OPTIONS = [{"label": unit.value, "value": unit.value} for unit in Unit]


def parse_unit(raw: Any) -> Unit:
    """Resolve a stored unit label or alias into a :class:`Unit`.

    Raises:
        ValueError: If ``raw`` names no known unit.
    """

    if isinstance(raw, Unit):
        return raw
    text = str(raw or "").strip()
    try:
        return Unit(text)
    except ValueError:
        pass
    alias = UNIT_ALIASES.get(text.lower())
    if alias is None:
        raise ValueError(f"Unknown unit: {raw!r}")
    return alias


def try_parse_unit(raw: Any) -> Optional[Unit]:
    """Lenient variant of :func:`parse_unit` returning ``None`` when unknown."""

    if raw is None or raw == "":
        return None
    try:
        return parse_unit(raw)
    except ValueError:
        return None


def is_manual_unit(raw: Any) -> bool:
    """Return ``True`` when quantities in ``raw`` are typed rather than derived."""

    return try_parse_unit(raw) in MANUAL_UNITS


def round_quantity(value: Decimal) -> Decimal:
    """Round half-up to three decimals."""

    return value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def convert_quantity(value: Any, from_unit: Any, to_unit: Any) -> Decimal:
    """Convert ``value`` expressed in ``from_unit`` into ``to_unit``.

    Identical units return the rounded input. Conversions touching count or
    pack units, crossing the area and length families, or naming an unknown
    unit yield zero.

    Args:
        value (Any): Quantity in ``from_unit``; normalised before use.
        from_unit (Any): Source unit label or alias.
        to_unit (Any): Target unit label or alias.

    Returns:
        Decimal: Converted quantity rounded to three decimals.
    """

    amount = to_decimal(value)
    source = try_parse_unit(from_unit)
    target = try_parse_unit(to_unit)
    if source is None or target is None:
        return Decimal("0")
    if source is target:
        return round_quantity(amount)
    if source in MANUAL_UNITS or target in MANUAL_UNITS:
        return Decimal("0")

    for factors in (AREA_FACTORS, LENGTH_FACTORS):
        if source in factors and target in factors:
            return round_quantity(amount / factors[source] * factors[target])
    return Decimal("0")


__all__ = [
    "Unit",
    "UNIT_ALIASES",
    "UNIT_OPTIONS",
    "MANUAL_UNITS",
    "parse_unit",
    "try_parse_unit",
    "is_manual_unit",
    "round_quantity",
    "convert_quantity",
]
