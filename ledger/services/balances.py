from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from ledger.db import q, placeholders
from ledger.models import Delivery, SaleLine, normalize_mode
from ledger.utils import safe_div

# Float tolerance for kg comparisons (sums of quantity × kg/piece).
KG_EPSILON = 1e-6

# Real vs Accounting comparison thresholds (kg)
COMPARISON_OK_KG = 0.01
COMPARISON_WARNING_KG = 5.0

STOCK_STATUSES = ("in-stock", "below-minimum", "depleted", "negative")


@dataclass(frozen=True)
class DeliveryBalance:
    delivery: Delivery
    kg_sold_real: float
    kg_sold_acc: float
    revenue_real_eur: float
    revenue_acc_eur: float

    @property
    def delivery_id(self) -> int:
        return self.delivery.id

    @property
    def is_invoiced(self) -> bool:
        return self.delivery.is_invoiced

    @property
    def kg_remaining_real(self) -> float:
        return float(self.delivery.kg_in) - self.kg_sold_real

    @property
    def kg_remaining_acc(self) -> float:
        # Computed for every delivery; only meaningful when invoiced.
        return float(self.delivery.kg_in) - self.kg_sold_acc

    @property
    def total_cost_eur(self) -> float:
        return self.delivery.total_cost_eur

    def kg_sold(self, mode: str) -> float:
        return self.kg_sold_acc if mode == "accounting" else self.kg_sold_real

    def kg_remaining(self, mode: str) -> float:
        return self.kg_remaining_acc if mode == "accounting" else self.kg_remaining_real

    def revenue(self, mode: str) -> float:
        return self.revenue_acc_eur if mode == "accounting" else self.revenue_real_eur


def compute_balances(deliveries: Iterable[Delivery], lines: Iterable[SaleLine]) -> dict[int, DeliveryBalance]:
    """
    Real and Accounting balances for every delivery.

    `lines` must be the finalized sale lines only. Two independent sums:
    Real keyed by real_delivery_id, Accounting keyed by
    accounting_delivery_id falling back to real_delivery_id. Lines that point
    at deliveries not in `deliveries` are ignored.
    """
    sold_real: dict[int, float] = defaultdict(float)
    sold_acc: dict[int, float] = defaultdict(float)
    rev_real: dict[int, float] = defaultdict(float)
    rev_acc: dict[int, float] = defaultdict(float)

    for l in lines:
        kg = l.kg_line
        revenue = int(l.quantity) * float(l.unit_price_eur)
        real_key = int(l.real_delivery_id)
        acc_key = l.effective_accounting_delivery_id

        sold_real[real_key] += kg
        rev_real[real_key] += revenue
        sold_acc[acc_key] += kg
        rev_acc[acc_key] += revenue

    return {
        d.id: DeliveryBalance(
            delivery=d,
            kg_sold_real=sold_real.get(d.id, 0.0),
            kg_sold_acc=sold_acc.get(d.id, 0.0),
            revenue_real_eur=rev_real.get(d.id, 0.0),
            revenue_acc_eur=rev_acc.get(d.id, 0.0),
        )
        for d in deliveries
    }


# -------------------------
# Loading from the store
# -------------------------

def load_deliveries(conn, delivery_ids: Optional[Iterable[int]] = None) -> list[Delivery]:
    if delivery_ids is None:
        rows = q(conn, "SELECT * FROM deliveries ORDER BY date DESC, id DESC")
    else:
        ids = sorted({int(i) for i in delivery_ids})
        if not ids:
            return []
        rows = q(conn, f"SELECT * FROM deliveries WHERE id IN ({placeholders(ids)})", ids)
    return [Delivery.from_row(r) for r in rows]


def load_finalized_lines(conn, delivery_ids: Optional[Iterable[int]] = None) -> list[SaleLine]:
    """Finalized sale lines, optionally only those touching the given deliveries."""
    sql = """
        SELECT sl.*
        FROM sale_lines sl
        JOIN sales s ON s.id = sl.sale_id
        WHERE s.status = 'finalized'
    """
    params: list = []
    if delivery_ids is not None:
        ids = sorted({int(i) for i in delivery_ids})
        if not ids:
            return []
        ph = placeholders(ids)
        sql += f"""
          AND (sl.real_delivery_id IN ({ph})
               OR COALESCE(sl.accounting_delivery_id, sl.real_delivery_id) IN ({ph}))
        """
        params = ids + ids
    return [SaleLine.from_row(r) for r in q(conn, sql, params)]


def delivery_balances(conn, delivery_ids: Optional[Iterable[int]] = None) -> dict[int, DeliveryBalance]:
    ids = None if delivery_ids is None else list(delivery_ids)
    return compute_balances(load_deliveries(conn, ids), load_finalized_lines(conn, ids))


def delivery_balance(conn, delivery_id: int) -> Optional[DeliveryBalance]:
    return delivery_balances(conn, [int(delivery_id)]).get(int(delivery_id))


# -------------------------
# Inventory views
# -------------------------

def stock_status(kg_remaining: float, min_kg_threshold: float) -> str:
    if kg_remaining < -KG_EPSILON:
        return "negative"
    if abs(kg_remaining) <= KG_EPSILON:
        return "depleted"
    if kg_remaining <= float(min_kg_threshold):
        return "below-minimum"
    return "in-stock"


def comparison_status(kg_difference: float) -> str:
    diff = abs(kg_difference)
    if diff <= COMPARISON_OK_KG:
        return "ok"
    return "warning" if diff <= COMPARISON_WARNING_KG else "critical"


@dataclass(frozen=True)
class InventoryFilters:
    search: str = ""
    quality_id: Optional[int] = None
    supplier_name: Optional[str] = None
    delivery_type: str = "all"          # all / invoiced / non-invoiced
    stock_status: str = "all"           # all / in-stock / below-minimum / depleted / negative


@dataclass(frozen=True)
class InventoryRow:
    mode: str
    delivery_id: int
    display_id: str
    date: str
    quality_id: int
    quality_name: str
    invoice_number: Optional[str]
    supplier_name: Optional[str]
    is_invoiced: bool
    kg_in: float
    unit_cost_per_kg: float
    kg_sold: float
    kg_remaining: float
    percent_remaining: float
    total_cost_eur: float
    value_remaining_eur: float
    revenue_eur: float
    earned_eur: float
    stock_status: str


@dataclass(frozen=True)
class ComparisonRow:
    delivery_id: int
    display_id: str
    quality_name: str
    kg_remaining_real: float
    kg_remaining_acc: float
    kg_difference: float
    revenue_real_eur: float
    revenue_acc_eur: float
    earned_real_eur: float
    earned_acc_eur: float
    status: str


@dataclass(frozen=True)
class InventoryStats:
    total_deliveries: int
    in_stock: int
    below_minimum: int
    depleted: int
    total_kg_remaining: float
    total_value_remaining_eur: float


def _quality_names(conn) -> dict[int, str]:
    return {int(r["id"]): str(r["name"]) for r in q(conn, "SELECT id, name FROM qualities")}


def _matches_search(d: Delivery, quality_name: str, search: str) -> bool:
    s = search.strip().lower()
    if not s:
        return True
    haystack = [d.display_id, quality_name, d.invoice_number or "", d.supplier_name or ""]
    return any(s in str(h).lower() for h in haystack)


def _matches(d: Delivery, quality_name: str, f: InventoryFilters) -> bool:
    if not _matches_search(d, quality_name, f.search):
        return False
    if f.quality_id is not None and d.quality_id != int(f.quality_id):
        return False
    if f.supplier_name and f.supplier_name != "all" and d.supplier_name != f.supplier_name:
        return False
    if f.delivery_type == "invoiced" and not d.is_invoiced:
        return False
    if f.delivery_type == "non-invoiced" and d.is_invoiced:
        return False
    return True


def inventory_rows(
    conn,
    mode: str = "real",
    filters: Optional[InventoryFilters] = None,
    *,
    min_kg_threshold: float = 5.0,
) -> list[InventoryRow]:
    """
    Per-delivery stock for one ledger, newest delivery first.

    The Accounting view lists invoiced deliveries only.
    """
    mode = normalize_mode(mode)
    f = filters or InventoryFilters()
    names = _quality_names(conn)

    out: list[InventoryRow] = []
    for b in delivery_balances(conn).values():
        d = b.delivery
        if mode == "accounting" and not d.is_invoiced:
            continue
        qname = names.get(d.quality_id, "")
        if not _matches(d, qname, f):
            continue

        remaining = b.kg_remaining(mode)
        status = stock_status(remaining, min_kg_threshold)
        if f.stock_status != "all" and status != f.stock_status:
            continue

        revenue = b.revenue(mode)
        out.append(
            InventoryRow(
                mode=mode,
                delivery_id=d.id,
                display_id=d.display_id,
                date=d.date,
                quality_id=d.quality_id,
                quality_name=qname,
                invoice_number=d.invoice_number,
                supplier_name=d.supplier_name,
                is_invoiced=d.is_invoiced,
                kg_in=float(d.kg_in),
                unit_cost_per_kg=float(d.unit_cost_per_kg),
                kg_sold=b.kg_sold(mode),
                kg_remaining=remaining,
                percent_remaining=safe_div(remaining, d.kg_in) * 100.0,
                total_cost_eur=b.total_cost_eur,
                value_remaining_eur=remaining * float(d.unit_cost_per_kg),
                revenue_eur=revenue,
                earned_eur=revenue - b.total_cost_eur,
                stock_status=status,
            )
        )

    out.sort(key=lambda r: (r.date, r.delivery_id), reverse=True)
    return out


def comparison_rows(conn, filters: Optional[InventoryFilters] = None) -> list[ComparisonRow]:
    f = filters or InventoryFilters()
    names = _quality_names(conn)

    out: list[ComparisonRow] = []
    for b in delivery_balances(conn).values():
        d = b.delivery
        qname = names.get(d.quality_id, "")
        if not _matches_search(d, qname, f.search):
            continue
        diff = b.kg_remaining_real - b.kg_remaining_acc
        out.append(
            ComparisonRow(
                delivery_id=d.id,
                display_id=d.display_id,
                quality_name=qname,
                kg_remaining_real=b.kg_remaining_real,
                kg_remaining_acc=b.kg_remaining_acc,
                kg_difference=diff,
                revenue_real_eur=b.revenue_real_eur,
                revenue_acc_eur=b.revenue_acc_eur,
                earned_real_eur=b.revenue_real_eur - b.total_cost_eur,
                earned_acc_eur=b.revenue_acc_eur - b.total_cost_eur,
                status=comparison_status(diff),
            )
        )
    return out


def inventory_stats(rows: Iterable[InventoryRow], min_kg_threshold: float = 5.0) -> InventoryStats:
    rows = list(rows)
    return InventoryStats(
        total_deliveries=len(rows),
        in_stock=sum(1 for r in rows if r.kg_remaining > min_kg_threshold),
        below_minimum=sum(1 for r in rows if KG_EPSILON < r.kg_remaining <= min_kg_threshold),
        depleted=sum(1 for r in rows if r.kg_remaining <= KG_EPSILON),
        total_kg_remaining=sum(max(0.0, r.kg_remaining) for r in rows),
        total_value_remaining_eur=sum(max(0.0, r.value_remaining_eur) for r in rows),
    )
