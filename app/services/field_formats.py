"""Canonical string formatting for signing-document fields.

Every formatter takes a raw value from any historical form shape and
returns a string. ``None``, blanks and unparseable values become ``""`` so
the fallback chain can move on to the next source.

    format_amount("$250,000")   -> "250000.00"
    format_percent("12.50%")    -> "12.5"
    format_date("03/15/2024")   -> "2024-03-15"
    format_boolean("yes")       -> "true"
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable

logger = logging.getLogger(__name__)

Formatter = Callable[[Any], str]

_TRUTHY = {"true", "yes", "y", "1", "on"}
_FALSY = {"false", "no", "n", "0", "off"}
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d")
_CENTS = Decimal("0.01")
# Numbers at or above 10**16 are read as unparseable; no form field is that large.
_MAX_INTEGER_DIGITS = 16


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_decimal(value: Any, strip: str = "") -> Decimal | None:
    if _blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        for char in strip + ", ":
            cleaned = cleaned.replace(char, "")
        value = cleaned
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Could not read %r as a number", value)
        return None
    if not number.is_finite():
        return None
    if number and number.adjusted() >= _MAX_INTEGER_DIGITS:
        logger.warning("Ignoring out-of-range number %r", value)
        return None
    return number


def format_amount(value: Any) -> str:
    number = _to_decimal(value, strip="$")
    if number is None:
        return ""
    return str(number.quantize(_CENTS, rounding=ROUND_HALF_UP))


def format_percent(value: Any) -> str:
    number = _to_decimal(value, strip="%")
    if number is None:
        return ""
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def format_integer(value: Any) -> str:
    number = _to_decimal(value)
    if number is None:
        return ""
    return str(int(number.to_integral_value(rounding=ROUND_HALF_UP)))


def parse_date(value: Any) -> date | None:
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    logger.warning("Could not parse date: %r", value)
    return None


def format_date(value: Any) -> str:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else ""


def is_truthy(value: Any) -> bool:
    """``True`` and the legacy string forms (``"true"``, ``"yes"``, ``1``)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


def format_boolean(value: Any) -> str:
    if _blank(value):
        return ""
    if is_truthy(value):
        return "true"
    if isinstance(value, bool) or (isinstance(value, (int, float)) and value == 0):
        return "false"
    if isinstance(value, str) and value.strip().lower() in _FALSY:
        return "false"
    return ""


def format_text(value: Any) -> str:
    if _blank(value) or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


FORMATTERS: dict[str, Formatter] = {
    "text": format_text,
    "amount": format_amount,
    "percent": format_percent,
    "integer": format_integer,
    "date": format_date,
    "boolean": format_boolean,
}
