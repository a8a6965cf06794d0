from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app.services.field_formats import (
    format_amount,
    format_boolean,
    format_date,
    format_integer,
    format_percent,
    format_text,
    is_truthy,
    parse_date,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$250,000", "250000.00"),
        (250000, "250000.00"),
        (Decimal("1234.565"), "1234.57"),
        ("", ""),
        (None, ""),
        ("abc", ""),
        (True, ""),
    ],
)
def test_format_amount(raw, expected):
    assert format_amount(raw) == expected


def test_format_percent():
    assert format_percent("12.50%") == "12.5"
    assert format_percent(60) == "60"
    assert format_percent("100.0") == "100"
    assert format_percent("n/a") == ""


def test_format_integer_rounds_half_up():
    assert format_integer("12") == "12"
    assert format_integer(2.5) == "3"
    assert format_integer("1,200") == "1200"


def test_dates_accept_legacy_layouts():
    assert format_date("03/15/2024") == "2024-03-15"
    assert format_date("2024-03-15T10:00:00Z") == "2024-03-15"
    assert format_date(datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)) == "2024-03-15"
    assert parse_date(date(2020, 1, 2)) == date(2020, 1, 2)
    assert format_date("yesterday") == ""


def test_booleans_accept_legacy_strings():
    assert is_truthy("Yes")
    assert is_truthy(1)
    assert not is_truthy("maybe")
    assert format_boolean("true") == "true"
    assert format_boolean("no") == "false"
    assert format_boolean(False) == "false"
    assert format_boolean("maybe") == ""
    assert format_boolean(None) == ""


def test_format_text_skips_structures():
    assert format_text("  Acme  ") == "Acme"
    assert format_text(42) == "42"
    assert format_text({"a": 1}) == ""
    assert format_text("   ") == ""


@pytest.mark.parametrize("raw", ["100000000000000000000000000000", "1e5000", 1e300, "$99,999,999,999,999,999"])
def test_out_of_range_numbers_are_blank(raw):
    assert format_amount(raw) == ""
    assert format_integer(raw) == ""
    assert format_percent(raw) == ""


def test_large_but_plausible_amounts_still_format():
    assert format_amount("9999999999999999") == "9999999999999999.00"
    assert format_integer("1e15") == "1000000000000000"
