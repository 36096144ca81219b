from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from ledger.config import Settings
from ledger.db import q, x, placeholders, run_atomic
from ledger.derived import SaleComputed, SaleLineComputed, compute_line, compute_sale
from ledger.errors import LedgerError, UnknownSale
from ledger.logging import get_logger
from ledger.models import CascadeReport, Sale, SaleLine, normalize_payment_method
from ledger.utils import clean_text, iso_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class SaleFilters:
    date_from: Optional[str] = None     # ISO date, inclusive
    date_to: Optional[str] = None       # ISO date, inclusive
    status: str = "all"                 # all / draft / finalized
    payment_method: str = "all"         # all / cash / card / other
    search: str = ""


@dataclass(frozen=True)
class SalesStats:
    total_sales: int
    total_revenue_eur: float
    total_profit_real_eur: float
    total_profit_acc_eur: float
    total_pieces: int
    total_kg: float


def _parse_when(when: Optional[str]) -> datetime:
    if not when:
        return datetime.now()
    s = str(when).strip()
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return datetime.fromisoformat(s[:10])


def generate_sale_number(conn, settings: Settings, when: Optional[str] = None) -> str:
    """
    Next sale number.

      auto-mmyyyy:  S-{MM}{YYYY}-{NNN}   e.g. S-012026-001 (sequence per month)
      uuid-short:   S-{8 hex chars}
    """
    if settings.sale_number_format == "uuid-short":
        while True:
            candidate = f"S-{uuid.uuid4().hex[:8].upper()}"
            if not q(conn, "SELECT 1 FROM sales WHERE sale_number=?", (candidate,)):
                return candidate

    dt = _parse_when(when)
    prefix = f"S-{dt.month:02d}{dt.year:04d}-"
    rows = q(conn, "SELECT sale_number FROM sales WHERE sale_number LIKE ?", (prefix + "%",))

    # Max rather than count: deleted sales leave gaps that must not be reused.
    seq = 0
    rx = re.compile(r"^" + re.escape(prefix) + r"(\d+)$")
    for r in rows:
        m = rx.match(str(r["sale_number"]))
        if m:
            seq = max(seq, int(m.group(1)))
    return f"{prefix}{seq + 1:03d}"


def get_sale(conn, sale_id: int) -> Optional[Sale]:
    rows = q(conn, "SELECT * FROM sales WHERE id=?", (int(sale_id),))
    return Sale.from_row(rows[0]) if rows else None


def get_sale_lines(conn, sale_id: int) -> list[SaleLine]:
    rows = q(conn, "SELECT * FROM sale_lines WHERE sale_id=? ORDER BY position, id", (int(sale_id),))
    return [SaleLine.from_row(r) for r in rows]


def get_sale_computed(conn, sale_id: int) -> Optional[SaleComputed]:
    sale = get_sale(conn, sale_id)
    if sale is None:
        return None
    return compute_sale(sale, get_sale_lines(conn, sale.id))


def _lines_by_sale(conn, sale_ids: list[int]) -> dict[int, list[SaleLine]]:
    out: dict[int, list[SaleLine]] = {sid: [] for sid in sale_ids}
    if not sale_ids:
        return out
    rows = q(
        conn,
        f"SELECT * FROM sale_lines WHERE sale_id IN ({placeholders(sale_ids)}) ORDER BY sale_id, position, id",
        sale_ids,
    )
    for r in rows:
        l = SaleLine.from_row(r)
        out[l.sale_id].append(l)
    return out


def list_sales(conn, filters: Optional[SaleFilters] = None) -> list[SaleComputed]:
    """Sale summaries (with computed totals), newest first."""
    f = filters or SaleFilters()
    where = ["1=1"]
    params: list = []

    if f.date_from:
        where.append("substr(date_time, 1, 10) >= ?")
        params.append(str(f.date_from)[:10])
    if f.date_to:
        where.append("substr(date_time, 1, 10) <= ?")
        params.append(str(f.date_to)[:10])
    if f.status and f.status != "all":
        where.append("status = ?")
        params.append(f.status)
    if f.payment_method and f.payment_method != "all":
        where.append("payment_method = ?")
        params.append(normalize_payment_method(f.payment_method))
    if f.search and f.search.strip():
        like = f"%{f.search.strip()}%"
        where.append("(sale_number LIKE ? OR COALESCE(note, '') LIKE ?)")
        params.extend([like, like])

    rows = q(
        conn,
        f"SELECT * FROM sales WHERE {' AND '.join(where)} ORDER BY date_time DESC, id DESC",
        params,
    )
    sales = [Sale.from_row(r) for r in rows]
    lines = _lines_by_sale(conn, [s.id for s in sales])
    return [compute_sale(s, lines[s.id]) for s in sales]


def sales_stats(conn, filters: Optional[SaleFilters] = None) -> SalesStats:
    f = filters or SaleFilters()
    finalized = SaleFilters(
        date_from=f.date_from,
        date_to=f.date_to,
        status="finalized",
        payment_method=f.payment_method,
        search=f.search,
    )
    sales = list_sales(conn, finalized)
    return SalesStats(
        total_sales=len(sales),
        total_revenue_eur=sum(s.total_revenue_eur for s in sales),
        total_profit_real_eur=sum(s.total_profit_real_eur for s in sales),
        total_profit_acc_eur=sum(s.total_profit_acc_eur for s in sales),
        total_pieces=sum(s.total_pieces for s in sales),
        total_kg=sum(s.total_kg for s in sales),
    )


def update_sale_header(
    conn,
    sale_id: int,
    *,
    payment_method: Optional[str] = None,
    note: Optional[str] = None,
) -> Union[Sale, LedgerError]:
    """Edit payment method / note. Lines and their snapshots are never rewritten."""
    sale = get_sale(conn, sale_id)
    if sale is None:
        return UnknownSale(int(sale_id))

    pm = normalize_payment_method(payment_method) if payment_method is not None else sale.payment_method
    new_note = clean_text(note) if note is not None else sale.note
    x(
        conn,
        "UPDATE sales SET payment_method=?, note=?, updated_at=? WHERE id=?",
        (pm, new_note, iso_now(), sale.id),
    )
    return get_sale(conn, sale.id)


def delete_sale(conn, sale_id: int, settings: Optional[Settings] = None) -> Union[CascadeReport, LedgerError]:
    """Delete a sale; its lines go with it in the same transaction."""

    def op():
        if not q(conn, "SELECT 1 FROM sales WHERE id=?", (int(sale_id),)):
            return UnknownSale(int(sale_id))
        return CascadeReport(deleted_sales=delete_sales(conn, [int(sale_id)]))

    result = run_atomic(conn, op, action="delete_sale", settings=settings)
    if isinstance(result, CascadeReport):
        logger.info("sale_deleted", sale_id=int(sale_id))
    return result


def sale_ids_referencing(conn, delivery_ids: Iterable[int]) -> list[int]:
    """Sales with at least one line using any of the deliveries as real or accounting delivery."""
    ids = sorted({int(i) for i in delivery_ids})
    if not ids:
        return []
    ph = placeholders(ids)
    rows = q(
        conn,
        f"""
        SELECT DISTINCT sale_id
        FROM sale_lines
        WHERE real_delivery_id IN ({ph}) OR accounting_delivery_id IN ({ph})
        ORDER BY sale_id
        """,
        ids + ids,
    )
    return [int(r["sale_id"]) for r in rows]


def delete_sales(conn, sale_ids: list[int]) -> int:
    """Delete sales and their lines. Caller owns the transaction."""
    if not sale_ids:
        return 0
    ph = placeholders(sale_ids)
    x(conn, f"DELETE FROM sale_lines WHERE sale_id IN ({ph})", sale_ids)
    x(conn, f"DELETE FROM sales WHERE id IN ({ph})", sale_ids)
    return len(sale_ids)


def sales_for_delivery(conn, delivery_id: int, *, finalized_only: bool = False) -> list[SaleLineComputed]:
    status_clause = "AND s.status = 'finalized'" if finalized_only else ""
    rows = q(
        conn,
        f"""
        SELECT sl.*
        FROM sale_lines sl
        JOIN sales s ON s.id = sl.sale_id
        WHERE (sl.real_delivery_id = ? OR sl.accounting_delivery_id = ?)
        {status_clause}
        ORDER BY s.date_time, sl.sale_id, sl.position
        """,
        (int(delivery_id), int(delivery_id)),
    )
    return [compute_line(SaleLine.from_row(r)) for r in rows]
