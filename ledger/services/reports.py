"""
Report rollups over finalized sale lines.

Every transaction row carries both Real and Accounting figures. The grouped
rollups (by delivery, quality, article) and the summary pick cogs/profit/margin
for the selected mode only. In Accounting mode the delivery grouping key is the
effective accounting delivery, and lines whose effective accounting delivery is
not invoiced are left out entirely.
"""

from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Optional, Sequence

import pandas as pd

from ledger.db import q, placeholders
from ledger.derived import compute_line
from ledger.models import Delivery, SaleLine, normalize_mode, normalize_payment_method
from ledger.services.balances import load_deliveries
from ledger.utils import iso_now, margin_pct, safe_div

PERIOD_PRESETS = ("this-month", "last-month", "custom")


@dataclass(frozen=True)
class ReportFilters:
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    mode: str = "real"
    quality_ids: tuple[int, ...] = ()
    delivery_id: Optional[int] = None
    payment_method: str = "all"
    supplier_name: Optional[str] = None


def period_dates(
    preset: str,
    *,
    today: Optional[date] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> tuple[str, str]:
    """ISO (from, to) for a period preset. `custom` falls back to this month for a missing end."""
    today = today or date.today()
    first = today.replace(day=1)
    last = today.replace(day=calendar.monthrange(today.year, today.month)[1])

    if preset == "this-month":
        return first.isoformat(), last.isoformat()
    if preset == "last-month":
        prev_last = first - timedelta(days=1)
        return prev_last.replace(day=1).isoformat(), prev_last.isoformat()
    if preset == "custom":
        return (date_from or first.isoformat())[:10], (date_to or last.isoformat())[:10]
    raise ValueError(f"Unknown period preset: {preset!r}")


@dataclass(frozen=True)
class TransactionRow:
    sale_id: int
    sale_number: str
    date_time: str
    payment_method: str
    line_id: int
    article_id: int
    article_name: str
    pieces: int
    kg: float
    price_per_piece_eur: float
    revenue_eur: float
    real_delivery_id: int
    real_display_id: str
    accounting_delivery_id: int
    accounting_display_id: str
    eur_per_kg_real_snapshot: float
    eur_per_kg_acc_snapshot: float
    cogs_real_eur: float
    cogs_acc_eur: float
    profit_real_eur: float
    profit_acc_eur: float
    margin_real_pct: float
    margin_acc_pct: float


@dataclass(frozen=True)
class DeliveryReportRow:
    delivery_id: int
    display_id: str
    delivery_date: str
    quality_name: str
    invoice_number: Optional[str]
    is_invoiced: bool
    kg_in: float
    eur_per_kg_delivery: float
    total_delivery_cost_eur: float
    kg_sold: float
    pieces_sold: int
    revenue_eur: float
    cogs_eur: float
    profit_eur: float
    margin_pct: float
    avg_price_per_kg_eur: float
    earned_from_delivery_eur: float


@dataclass(frozen=True)
class QualityReportRow:
    quality_id: int
    quality_name: str
    kg_sold: float
    pieces_sold: int
    revenue_eur: float
    cogs_eur: float
    profit_eur: float
    margin_pct: float
    avg_price_per_kg_eur: float


@dataclass(frozen=True)
class ArticleReportRow:
    article_id: int
    article_name: str
    kg_sold: float
    pieces_sold: int
    revenue_eur: float
    cogs_eur: float
    profit_eur: float
    margin_pct: float
    avg_price_per_piece_eur: float


@dataclass(frozen=True)
class ReportSummary:
    revenue_eur: float
    cogs_eur: float
    profit_eur: float
    margin_pct: float
    total_kg: float
    total_pieces: int
    sales_count: int


@dataclass(frozen=True)
class ReportData:
    filters: ReportFilters
    period_label: str
    generated_at: str
    summary: ReportSummary
    transactions: list[TransactionRow] = field(default_factory=list)
    by_delivery: list[DeliveryReportRow] = field(default_factory=list)
    by_quality: list[QualityReportRow] = field(default_factory=list)
    by_article: list[ArticleReportRow] = field(default_factory=list)


# -------------------------
# Building blocks
# -------------------------

def _finalized_sale_rows(conn, f: ReportFilters):
    where = ["status = 'finalized'"]
    params: list = []
    if f.date_from:
        where.append("substr(date_time, 1, 10) >= ?")
        params.append(str(f.date_from)[:10])
    if f.date_to:
        where.append("substr(date_time, 1, 10) <= ?")
        params.append(str(f.date_to)[:10])
    if f.payment_method and f.payment_method != "all":
        where.append("payment_method = ?")
        params.append(normalize_payment_method(f.payment_method))
    return q(conn, f"SELECT * FROM sales WHERE {' AND '.join(where)}", params)


def _include(line: SaleLine, real: Delivery, acc: Optional[Delivery], mode: str, f: ReportFilters) -> bool:
    if f.quality_ids and real.quality_id not in {int(i) for i in f.quality_ids}:
        return False
    if f.supplier_name and f.supplier_name != "all" and real.supplier_name != f.supplier_name:
        return False
    if f.delivery_id is not None:
        key = line.real_delivery_id if mode == "real" else line.effective_accounting_delivery_id
        if key != int(f.delivery_id):
            return False
    if mode == "accounting" and (acc is None or not acc.is_invoiced):
        return False
    return True


def transaction_rows(conn, filters: ReportFilters) -> list[TransactionRow]:
    """Line-level rows for finalized sales matching the filters, oldest first."""
    mode = normalize_mode(filters.mode)
    sales = {int(r["id"]): r for r in _finalized_sale_rows(conn, filters)}
    if not sales:
        return []

    sale_ids = sorted(sales)
    lines = [
        SaleLine.from_row(r)
        for r in q(
            conn,
            f"SELECT * FROM sale_lines WHERE sale_id IN ({placeholders(sale_ids)}) ORDER BY sale_id, position, id",
            sale_ids,
        )
    ]
    deliveries = {d.id: d for d in load_deliveries(conn)}
    article_names = {int(r["id"]): str(r["name"]) for r in q(conn, "SELECT id, name FROM articles")}

    out: list[TransactionRow] = []
    for l in lines:
        real = deliveries.get(l.real_delivery_id)
        if real is None:
            continue
        acc = deliveries.get(l.effective_accounting_delivery_id)
        if not _include(l, real, acc, mode, filters):
            continue

        s = sales[l.sale_id]
        c = compute_line(l)
        out.append(
            TransactionRow(
                sale_id=l.sale_id,
                sale_number=str(s["sale_number"]),
                date_time=str(s["date_time"]),
                payment_method=str(s["payment_method"]),
                line_id=l.id,
                article_id=l.article_id,
                article_name=article_names.get(l.article_id, ""),
                pieces=int(l.quantity),
                kg=c.kg_line,
                price_per_piece_eur=float(l.unit_price_eur),
                revenue_eur=c.revenue_eur,
                real_delivery_id=real.id,
                real_display_id=real.display_id,
                accounting_delivery_id=l.effective_accounting_delivery_id,
                accounting_display_id=acc.display_id if acc is not None else real.display_id,
                eur_per_kg_real_snapshot=float(l.unit_cost_per_kg_real_snapshot),
                eur_per_kg_acc_snapshot=c.unit_cost_per_kg_acc_effective,
                cogs_real_eur=c.cogs_real_eur,
                cogs_acc_eur=c.cogs_acc_eur,
                profit_real_eur=c.profit_real_eur,
                profit_acc_eur=c.profit_acc_eur,
                margin_real_pct=c.margin_real_pct,
                margin_acc_pct=c.margin_acc_pct,
            )
        )

    out.sort(key=lambda r: (r.date_time, r.sale_id, r.line_id))
    return out


def _cogs(r: TransactionRow, mode: str) -> float:
    return r.cogs_acc_eur if mode == "accounting" else r.cogs_real_eur


def _delivery_key(r: TransactionRow, mode: str) -> int:
    return r.accounting_delivery_id if mode == "accounting" else r.real_delivery_id


def summarize(rows: Sequence[TransactionRow], mode: str) -> ReportSummary:
    revenue = sum(r.revenue_eur for r in rows)
    cogs = sum(_cogs(r, mode) for r in rows)
    profit = revenue - cogs
    return ReportSummary(
        revenue_eur=revenue,
        cogs_eur=cogs,
        profit_eur=profit,
        margin_pct=margin_pct(profit, revenue),
        total_kg=sum(r.kg for r in rows),
        total_pieces=sum(r.pieces for r in rows),
        sales_count=len({r.sale_id for r in rows}),
    )


def rollup_by_delivery(
    rows: Sequence[TransactionRow],
    mode: str,
    deliveries: dict[int, Delivery],
    quality_names: dict[int, str],
) -> list[DeliveryReportRow]:
    grouped: dict[int, list[TransactionRow]] = defaultdict(list)
    for r in rows:
        grouped[_delivery_key(r, mode)].append(r)

    out: list[DeliveryReportRow] = []
    for delivery_id, group in grouped.items():
        d = deliveries.get(delivery_id)
        if d is None:
            continue
        kg = sum(r.kg for r in group)
        revenue = sum(r.revenue_eur for r in group)
        cogs = sum(_cogs(r, mode) for r in group)
        profit = revenue - cogs
        out.append(
            DeliveryReportRow(
                delivery_id=d.id,
                display_id=d.display_id,
                delivery_date=d.date,
                quality_name=quality_names.get(d.quality_id, ""),
                invoice_number=d.invoice_number,
                is_invoiced=d.is_invoiced,
                kg_in=float(d.kg_in),
                eur_per_kg_delivery=float(d.unit_cost_per_kg),
                total_delivery_cost_eur=d.total_cost_eur,
                kg_sold=kg,
                pieces_sold=sum(r.pieces for r in group),
                revenue_eur=revenue,
                cogs_eur=cogs,
                profit_eur=profit,
                margin_pct=margin_pct(profit, revenue),
                avg_price_per_kg_eur=safe_div(revenue, kg),
                earned_from_delivery_eur=revenue - d.total_cost_eur,
            )
        )

    out.sort(key=lambda r: (r.delivery_date, r.delivery_id))
    return out


def rollup_by_quality(
    rows: Sequence[TransactionRow],
    mode: str,
    deliveries: dict[int, Delivery],
    quality_names: dict[int, str],
) -> list[QualityReportRow]:
    # Quality of the delivery the mode books the line against.
    grouped: dict[int, list[TransactionRow]] = defaultdict(list)
    for r in rows:
        d = deliveries.get(_delivery_key(r, mode))
        if d is not None:
            grouped[d.quality_id].append(r)

    out: list[QualityReportRow] = []
    for quality_id, group in grouped.items():
        kg = sum(r.kg for r in group)
        revenue = sum(r.revenue_eur for r in group)
        cogs = sum(_cogs(r, mode) for r in group)
        profit = revenue - cogs
        out.append(
            QualityReportRow(
                quality_id=quality_id,
                quality_name=quality_names.get(quality_id, ""),
                kg_sold=kg,
                pieces_sold=sum(r.pieces for r in group),
                revenue_eur=revenue,
                cogs_eur=cogs,
                profit_eur=profit,
                margin_pct=margin_pct(profit, revenue),
                avg_price_per_kg_eur=safe_div(revenue, kg),
            )
        )

    out.sort(key=lambda r: r.revenue_eur, reverse=True)
    return out


def rollup_by_article(rows: Sequence[TransactionRow], mode: str) -> list[ArticleReportRow]:
    grouped: dict[int, list[TransactionRow]] = defaultdict(list)
    for r in rows:
        grouped[r.article_id].append(r)

    out: list[ArticleReportRow] = []
    for article_id, group in grouped.items():
        pieces = sum(r.pieces for r in group)
        revenue = sum(r.revenue_eur for r in group)
        cogs = sum(_cogs(r, mode) for r in group)
        profit = revenue - cogs
        out.append(
            ArticleReportRow(
                article_id=article_id,
                article_name=group[0].article_name,
                kg_sold=sum(r.kg for r in group),
                pieces_sold=pieces,
                revenue_eur=revenue,
                cogs_eur=cogs,
                profit_eur=profit,
                margin_pct=margin_pct(profit, revenue),
                avg_price_per_piece_eur=safe_div(revenue, pieces),
            )
        )

    out.sort(key=lambda r: r.revenue_eur, reverse=True)
    return out


def _period_label(f: ReportFilters) -> str:
    if f.date_from and f.date_to:
        return f"{str(f.date_from)[:10]} to {str(f.date_to)[:10]}"
    if f.date_from:
        return f"from {str(f.date_from)[:10]}"
    if f.date_to:
        return f"until {str(f.date_to)[:10]}"
    return "all time"


def build_report(conn, filters: Optional[ReportFilters] = None) -> ReportData:
    f = filters or ReportFilters()
    mode = normalize_mode(f.mode)

    rows = transaction_rows(conn, f)
    deliveries = {d.id: d for d in load_deliveries(conn)}
    quality_names = {int(r["id"]): str(r["name"]) for r in q(conn, "SELECT id, name FROM qualities")}

    return ReportData(
        filters=f,
        period_label=_period_label(f),
        generated_at=iso_now(),
        summary=summarize(rows, mode),
        transactions=rows,
        by_delivery=rollup_by_delivery(rows, mode, deliveries, quality_names),
        by_quality=rollup_by_quality(rows, mode, deliveries, quality_names),
        by_article=rollup_by_article(rows, mode),
    )


def report_frame(rows: Sequence) -> pd.DataFrame:
    """Dataclass rows -> DataFrame for st.dataframe."""
    if not rows:
        return pd.DataFrame()
    return pd.DataFrame([asdict(r) for r in rows])
