"""
Computed views over sale lines and sales.

Everything here is a pure function of raw rows and is recomputed on read;
nothing is stored. Costs come only from the snapshots on each line, so a later
correction of a delivery's cost per kg never changes these figures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ledger.models import Sale, SaleLine
from ledger.utils import margin_pct


@dataclass(frozen=True)
class SaleLineComputed:
    line: SaleLine
    kg_line: float
    revenue_eur: float
    cogs_real_eur: float
    cogs_acc_eur: float
    profit_real_eur: float
    profit_acc_eur: float
    margin_real_pct: float
    margin_acc_pct: float

    @property
    def unit_cost_per_kg_acc_effective(self) -> float:
        acc = self.line.unit_cost_per_kg_acc_snapshot
        return float(acc) if acc is not None else float(self.line.unit_cost_per_kg_real_snapshot)

    def cogs(self, mode: str) -> float:
        return self.cogs_acc_eur if mode == "accounting" else self.cogs_real_eur

    def profit(self, mode: str) -> float:
        return self.profit_acc_eur if mode == "accounting" else self.profit_real_eur


def compute_line(line: SaleLine) -> SaleLineComputed:
    kg = int(line.quantity) * float(line.kg_per_piece_snapshot)
    revenue = int(line.quantity) * float(line.unit_price_eur)

    cost_real = float(line.unit_cost_per_kg_real_snapshot)
    # Accounting mirrors real when the line has no separate accounting snapshot.
    cost_acc = (
        float(line.unit_cost_per_kg_acc_snapshot)
        if line.unit_cost_per_kg_acc_snapshot is not None
        else cost_real
    )

    cogs_real = kg * cost_real
    cogs_acc = kg * cost_acc
    profit_real = revenue - cogs_real
    profit_acc = revenue - cogs_acc

    return SaleLineComputed(
        line=line,
        kg_line=kg,
        revenue_eur=revenue,
        cogs_real_eur=cogs_real,
        cogs_acc_eur=cogs_acc,
        profit_real_eur=profit_real,
        profit_acc_eur=profit_acc,
        margin_real_pct=margin_pct(profit_real, revenue),
        margin_acc_pct=margin_pct(profit_acc, revenue),
    )


@dataclass(frozen=True)
class SaleComputed:
    sale: Optional[Sale]
    lines: tuple[SaleLineComputed, ...]
    lines_count: int
    total_pieces: int
    total_kg: float
    total_revenue_eur: float
    total_cogs_real_eur: float
    total_cogs_acc_eur: float
    total_profit_real_eur: float
    total_profit_acc_eur: float
    margin_real_pct: float
    margin_acc_pct: float


def compute_sale(sale: Optional[Sale], lines: Iterable[SaleLine]) -> SaleComputed:
    computed = tuple(compute_line(l) for l in sorted(lines, key=lambda l: (l.position, l.id)))

    revenue = sum(c.revenue_eur for c in computed)
    cogs_real = sum(c.cogs_real_eur for c in computed)
    cogs_acc = sum(c.cogs_acc_eur for c in computed)
    profit_real = revenue - cogs_real
    profit_acc = revenue - cogs_acc

    return SaleComputed(
        sale=sale,
        lines=computed,
        lines_count=len(computed),
        total_pieces=sum(int(c.line.quantity) for c in computed),
        total_kg=sum(c.kg_line for c in computed),
        total_revenue_eur=revenue,
        total_cogs_real_eur=cogs_real,
        total_cogs_acc_eur=cogs_acc,
        total_profit_real_eur=profit_real,
        total_profit_acc_eur=profit_acc,
        margin_real_pct=margin_pct(profit_real, revenue),
        margin_acc_pct=margin_pct(profit_acc, revenue),
    )
