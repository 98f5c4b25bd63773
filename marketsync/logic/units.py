"""Currency unit and size parsing shared by the provider mappers."""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

MINOR_UNITS_PER_MAJOR = Decimal(100)

_INTEGER_RE = re.compile(r"^-?\d+$")
_SIZE_NUMBER_RE = re.compile(r"[^0-9.]")

SIZE_RANGES = {
    "sneakers": (Decimal("3.5"), Decimal("16")),
}


def parse_decimal(value: Any, *, field: str = "amount") -> Decimal | None:
    """Parse a decimal amount as-is. Unparseable input is logged and becomes None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        logger.warning("Unparseable %s %r; storing null", field, value)
        return None
    if not parsed.is_finite():
        logger.warning("Non-finite %s %r; storing null", field, value)
        return None
    return parsed


def parse_major_units(value: Any, *, field: str = "amount") -> Decimal | None:
    """Amounts that are already major units ("145.00")."""
    return parse_decimal(value, field=field)


def parse_minor_units(value: Any, *, field: str = "amount") -> Decimal | None:
    """Integer minor units ("14500") converted to major units (145)."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            logger.warning("Fractional minor-unit %s %r; storing null", field, value)
            return None
        value = int(value)
    text = str(value).strip()
    if not _INTEGER_RE.match(text):
        logger.warning("Unparseable minor-unit %s %r; storing null", field, value)
        return None
    return Decimal(int(text)) / MINOR_UNITS_PER_MAJOR


def size_label(value: Any) -> str:
    """Render a numeric provider size as a label: 10.0 -> "10", 10.5 -> "10.5"."""
    if isinstance(value, str):
        return value.strip()
    number = Decimal(str(value))
    if not number.is_finite():
        raise ValueError(f"size {value!r} is not a finite number")
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def size_numeric(label: str | None) -> Decimal | None:
    if not label:
        return None
    cleaned = _SIZE_NUMBER_RE.sub("", label)
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def is_valid_size(size: Decimal | None, category: str | None) -> bool:
    if size is None or not category:
        return True
    bounds = SIZE_RANGES.get(category.lower())
    if bounds is None:
        return True
    low, high = bounds
    return low <= size <= high
