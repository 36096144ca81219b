from __future__ import annotations

from datetime import datetime, timezone


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def safe_div(n: float, d: float) -> float:
    return float(n) / float(d) if d else 0.0


def margin_pct(profit: float, revenue: float) -> float:
    """profit / revenue × 100, and exactly 0.0 when revenue is 0."""
    return safe_div(profit, revenue) * 100.0


def clean_text(v) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None
