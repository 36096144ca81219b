"""Operator input parsing. Everything here raises ValueError with a field-specific message."""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Optional

from ledger.utils import clean_text


def parse_decimal(raw, field: str = "Value") -> float:
    """Accepts "12.5", "12,5" and numbers. Thousands separators are not supported."""
    if isinstance(raw, bool):
        raise ValueError(f"{field} must be a number.")
    if isinstance(raw, (int, float)):
        v = float(raw)
    else:
        s = str(raw or "").strip().replace(" ", "")
        if not s:
            raise ValueError(f"{field} is required.")
        if s.count(",") == 1 and "." not in s:
            s = s.replace(",", ".")
        try:
            v = float(s)
        except ValueError:
            raise ValueError(f"{field} must be a number.")
    if not math.isfinite(v):
        raise ValueError(f"{field} must be a finite number.")
    return v


def parse_positive(raw, field: str = "Value") -> float:
    v = parse_decimal(raw, field)
    if v <= 0:
        raise ValueError(f"{field} must be > 0.")
    return v


def parse_non_negative(raw, field: str = "Value") -> float:
    v = parse_decimal(raw, field)
    if v < 0:
        raise ValueError(f"{field} must be >= 0.")
    return v


def parse_quantity(raw, field: str = "Quantity") -> int:
    v = parse_decimal(raw, field)
    if v != int(v):
        raise ValueError(f"{field} must be a whole number of pieces.")
    if v <= 0:
        raise ValueError(f"{field} must be > 0.")
    return int(v)


def parse_date(raw, field: str = "Date") -> str:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    s = str(raw or "").strip()
    if not s:
        raise ValueError(f"{field} is required.")
    try:
        return date.fromisoformat(s[:10]).isoformat()
    except ValueError:
        raise ValueError(f"{field} must be a date (YYYY-MM-DD).")


def optional_text(raw) -> Optional[str]:
    return clean_text(raw)
