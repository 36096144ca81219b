from __future__ import annotations

import math

import pytest

from ledger.derived import compute_line, compute_sale
from ledger.models import Sale, SaleLine


def _line(id_, qty, price, kg_pp=0.3, real_cost=2.0, acc_cost=None, position=0) -> SaleLine:
    return SaleLine(
        id=id_,
        sale_id=1,
        article_id=1,
        quantity=qty,
        unit_price_eur=price,
        real_delivery_id=1,
        accounting_delivery_id=None if acc_cost is None else 2,
        kg_per_piece_snapshot=kg_pp,
        unit_cost_per_kg_real_snapshot=real_cost,
        unit_cost_per_kg_acc_snapshot=acc_cost,
        position=position,
    )


def test_line_figures():
    c = compute_line(_line(1, 10, 5.0))
    assert c.kg_line == pytest.approx(3.0)
    assert c.revenue_eur == pytest.approx(50.0)
    assert c.cogs_real_eur == pytest.approx(6.0)
    assert c.profit_real_eur == pytest.approx(44.0)
    assert c.margin_real_pct == pytest.approx(88.0)


def test_accounting_mirrors_real_without_accounting_snapshot():
    c = compute_line(_line(1, 7, 3.0, real_cost=4.2))
    assert c.cogs_acc_eur == c.cogs_real_eur
    assert c.profit_acc_eur == c.profit_real_eur
    assert c.unit_cost_per_kg_acc_effective == 4.2


def test_accounting_uses_its_own_snapshot():
    c = compute_line(_line(1, 10, 5.0, real_cost=1.0, acc_cost=3.0))
    assert c.cogs_real_eur == pytest.approx(3.0)
    assert c.cogs_acc_eur == pytest.approx(9.0)
    assert c.cogs("accounting") == c.cogs_acc_eur
    assert c.profit("real") == pytest.approx(47.0)


def test_zero_revenue_margin_is_zero():
    c = compute_line(_line(1, 3, 0.0))
    assert c.margin_real_pct == 0.0
    assert c.margin_acc_pct == 0.0
    assert math.isfinite(c.profit_real_eur)

    s = compute_sale(None, [_line(1, 3, 0.0), _line(2, 1, 0.0)])
    assert s.margin_real_pct == 0.0
    assert s.total_revenue_eur == 0.0


def test_sale_totals_and_line_order():
    sale = Sale(id=1, sale_number="S-012026-001", date_time="2026-01-15T10:00:00", status="finalized")
    s = compute_sale(
        sale,
        [_line(2, 1, 10.0, kg_pp=1.0, position=1), _line(1, 2, 5.0, kg_pp=0.5, acc_cost=3.0, position=0)],
    )

    assert [c.line.id for c in s.lines] == [1, 2]
    assert s.lines_count == 2
    assert s.total_pieces == 3
    assert s.total_kg == pytest.approx(2.0)
    assert s.total_revenue_eur == pytest.approx(20.0)
    assert s.total_cogs_real_eur == pytest.approx(4.0)
    assert s.total_cogs_acc_eur == pytest.approx(3.0 + 2.0)
    assert s.margin_real_pct == pytest.approx(80.0)
    assert s.margin_acc_pct == pytest.approx(75.0)
