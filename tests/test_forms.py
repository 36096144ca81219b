from __future__ import annotations

from datetime import date, datetime

import pytest

from ledger.forms import (
    optional_text,
    parse_date,
    parse_decimal,
    parse_non_negative,
    parse_positive,
    parse_quantity,
)


@pytest.mark.parametrize(
    "raw, expected",
    [("12.5", 12.5), ("12,5", 12.5), (" 3 ", 3.0), (7, 7.0), (0.25, 0.25), ("1 000", 1000.0)],
)
def test_parse_decimal_accepts(raw, expected):
    assert parse_decimal(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["", None, "abc", "1,000.5", "1,2,3", True, "nan", "inf"])
def test_parse_decimal_rejects(raw):
    with pytest.raises(ValueError):
        parse_decimal(raw, "Price")


def test_error_message_names_the_field():
    with pytest.raises(ValueError, match="Unit cost"):
        parse_positive("0", "Unit cost")


def test_sign_checks():
    assert parse_non_negative("0") == 0.0
    with pytest.raises(ValueError):
        parse_non_negative("-0,01")
    with pytest.raises(ValueError):
        parse_positive(0)


def test_parse_quantity():
    assert parse_quantity("4") == 4
    assert parse_quantity(4.0) == 4
    for raw in ("2.5", "0", "-1"):
        with pytest.raises(ValueError):
            parse_quantity(raw)


def test_parse_date():
    assert parse_date("2026-01-05") == "2026-01-05"
    assert parse_date("2026-01-05T10:30:00") == "2026-01-05"
    assert parse_date(date(2026, 2, 1)) == "2026-02-01"
    assert parse_date(datetime(2026, 2, 1, 8, 0)) == "2026-02-01"
    with pytest.raises(ValueError):
        parse_date("05/01/2026")
    with pytest.raises(ValueError):
        parse_date("")


def test_optional_text():
    assert optional_text("  hi ") == "hi"
    assert optional_text("   ") is None
    assert optional_text(None) is None
