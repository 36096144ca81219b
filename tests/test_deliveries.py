from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import line, with_settings
from ledger.db import q
from ledger.errors import DeliveryLocked, DuplicateDisplayId, UnknownDelivery, UnknownQuality
from ledger.services.deliveries import (
    DeliveryFilters,
    DeliveryInput,
    a_variant,
    create_delivery,
    deliveries_with_stock,
    delete_delivery,
    delivery_dependencies,
    delivery_stats,
    invoiced_deliveries_with_stock,
    list_deliveries,
    next_display_id,
    supplier_names,
    update_delivery,
    update_delivery_note,
)
from ledger.services.qualities import deactivate_quality


def _input(d, **changes) -> DeliveryInput:
    base = DeliveryInput(
        display_id=d.display_id,
        date=d.date,
        quality_id=d.quality_id,
        kg_in=d.kg_in,
        unit_cost_per_kg=d.unit_cost_per_kg,
        invoice_number=d.invoice_number,
        supplier_name=d.supplier_name,
        note=d.note,
    )
    return replace(base, **changes)


def test_create_trims_text_and_detects_invoicing(make):
    d = make.delivery(" 7 ", kg_in=12.5, invoice="   ", supplier="  Acme ")
    assert d.display_id == "7"
    assert d.invoice_number is None
    assert not d.is_invoiced
    assert d.supplier_name == "Acme"


def test_duplicate_display_id(make, conn):
    first = make.delivery("1", kg_in=10)
    result = create_delivery(conn, _input(first, kg_in=3.0))
    assert isinstance(result, DuplicateDisplayId)
    assert result.display_id == "1"


def test_unknown_or_inactive_quality(make, conn):
    d = make.delivery("1", kg_in=10)
    assert isinstance(create_delivery(conn, _input(d, display_id="2", quality_id=999)), UnknownQuality)

    deactivate_quality(conn, d.quality_id)
    assert isinstance(create_delivery(conn, _input(d, display_id="3")), UnknownQuality)


@pytest.mark.parametrize("kg_in, cost", [(0, 1.0), (-1, 1.0), (5, -0.01)])
def test_bad_quantities_raise(make, conn, kg_in, cost):
    d = make.delivery("1", kg_in=10)
    with pytest.raises(ValueError):
        create_delivery(conn, _input(d, display_id="9", kg_in=kg_in, unit_cost_per_kg=cost))


def test_unreferenced_delivery_is_fully_editable(make, conn):
    d = make.delivery("1", kg_in=10, cost=2.0)
    updated = update_delivery(conn, d.id, _input(d, kg_in=12.0, unit_cost_per_kg=2.5, invoice_number="INV-9"))

    assert updated.kg_in == 12.0
    assert updated.unit_cost_per_kg == 2.5
    assert updated.is_invoiced


def test_referenced_delivery_only_allows_note(make, conn, settings):
    d = make.delivery("1", kg_in=10, cost=2.0, invoice="INV-1")
    a = make.article()
    make.sale(line(a, 1, 1.0, d))

    locked = update_delivery(conn, d.id, _input(d, kg_in=20.0, unit_cost_per_kg=3.0, note="x"), settings)
    assert isinstance(locked, DeliveryLocked)
    assert set(locked.fields) == {"kg_in", "unit_cost_per_kg"}
    assert q(conn, "SELECT kg_in FROM deliveries WHERE id=?", (d.id,))[0]["kg_in"] == 10.0

    noted = update_delivery_note(conn, d.id, "weighed twice", settings)
    assert noted.note == "weighed twice"


def test_accounting_reference_also_locks(make, conn):
    plain = make.delivery("1A", kg_in=10)
    inv = make.delivery("2", kg_in=10, invoice="INV-2")
    a = make.article()
    make.sale(line(a, 1, 1.0, plain, acc=inv))

    result = update_delivery(conn, inv.id, _input(inv, invoice_number=None))
    assert isinstance(result, DeliveryLocked)
    assert result.fields == ("invoice_number",)


def test_draft_reference_locks(make, conn):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article()
    make.sale(line(a, 1, 1.0, d), finalize=False)

    assert isinstance(update_delivery(conn, d.id, _input(d, display_id="100")), DeliveryLocked)


def test_forbidden_mode_locks_notes_too(make, conn, settings):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article()
    make.sale(line(a, 1, 1.0, d))

    result = update_delivery_note(conn, d.id, "late note", with_settings(settings, delivery_edit_mode="forbidden"))
    assert isinstance(result, DeliveryLocked)
    assert result.fields == ("note",)


def test_update_checks_display_id_collision(make, conn):
    make.delivery("1", kg_in=10)
    d2 = make.delivery("2", kg_in=10)
    assert isinstance(update_delivery(conn, d2.id, _input(d2, display_id="1")), DuplicateDisplayId)


def test_update_unknown_delivery(make, conn):
    d = make.delivery("1", kg_in=10)
    assert isinstance(update_delivery(conn, 999, _input(d)), UnknownDelivery)


def test_next_display_id(make, conn):
    assert next_display_id(conn) == "1"
    make.delivery("12", kg_in=1)
    make.delivery(a_variant("12"), kg_in=1)
    assert next_display_id(conn) == "13"
    make.delivery("LOT-X", kg_in=1)
    assert next_display_id(conn) == "13"


def test_a_variant():
    assert a_variant(" 12 ") == "12A"


def test_delete_delivery_cascades_through_real_and_accounting_use(make, conn):
    plain = make.delivery("1A", kg_in=20)
    inv = make.delivery("2", kg_in=20, invoice="INV-2")
    other = make.delivery("3", kg_in=20, invoice="INV-3")
    a = make.article()

    make.sale(line(a, 1, 1.0, plain, acc=inv))            # uses inv as accounting
    make.sale(line(a, 1, 1.0, inv))                       # uses inv as real
    make.sale(line(a, 1, 1.0, other), line(a, 1, 1.0, inv))
    keep = make.sale(line(a, 1, 1.0, other))

    assert delivery_dependencies(conn, inv.id) == 3
    report = delete_delivery(conn, inv.id)

    assert report.deleted_sales == 3
    assert report.deleted_deliveries == 1
    refs = q(
        conn,
        "SELECT COUNT(*) AS n FROM sale_lines WHERE real_delivery_id=? OR accounting_delivery_id=?",
        (inv.id, inv.id),
    )
    assert refs[0]["n"] == 0
    orphans = q(conn, "SELECT COUNT(*) AS n FROM sales s WHERE NOT EXISTS (SELECT 1 FROM sale_lines WHERE sale_id=s.id)")
    assert orphans[0]["n"] == 0
    assert [r["id"] for r in q(conn, "SELECT id FROM sales")] == [keep.sale.id]


def test_delete_unknown_delivery(conn):
    assert isinstance(delete_delivery(conn, 42), UnknownDelivery)


def test_pickers_hide_non_invoiced_from_accounting(make, conn):
    plain = make.delivery("1A", kg_in=5)
    inv = make.delivery("2", kg_in=5, invoice="INV-2")
    empty = make.delivery("3", kg_in=1, invoice="INV-3")
    a = make.article("Kilo", 1000)
    make.sale(line(a, 1, 1.0, empty))

    assert {b.delivery_id for b in deliveries_with_stock(conn)} == {plain.id, inv.id}
    assert [b.delivery_id for b in invoiced_deliveries_with_stock(conn)] == [inv.id]


def test_listing_filters_and_stats(make, conn):
    make.delivery("1", kg_in=10, cost=2.0, invoice="INV-1", date="2026-01-05", supplier="North")
    make.delivery("2A", kg_in=5, cost=1.0, date="2026-02-05", supplier="South")

    assert [b.delivery.display_id for b in list_deliveries(conn)] == ["2A", "1"]
    assert [b.delivery.display_id for b in list_deliveries(conn, DeliveryFilters(is_invoiced=True))] == ["1"]
    assert [b.delivery.display_id for b in list_deliveries(conn, DeliveryFilters(date_from="2026-02-01"))] == ["2A"]
    assert [b.delivery.display_id for b in list_deliveries(conn, DeliveryFilters(search="north"))] == ["1"]
    assert supplier_names(conn) == ["North", "South"]

    stats = delivery_stats(conn)
    assert stats.total_deliveries == 2
    assert stats.total_kg_in == pytest.approx(15.0)
    assert stats.total_value_eur == pytest.approx(25.0)
    assert stats.in_stock == 2
