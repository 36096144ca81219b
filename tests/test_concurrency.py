from __future__ import annotations

import threading

import pytest

from conftest import line, with_settings
from ledger.db import connect, q, session_conn, x
from ledger.errors import ConcurrentModification, InsufficientRealStock, LedgerError
from ledger.models import SaleHeader
from ledger.services.allocation import SaleResult, create_sale
from ledger.services.balances import delivery_balance
from ledger.services.deliveries import delete_delivery, get_delivery, update_delivery_note
from ledger.services.demo_data import wipe_all
from ledger.services.qualities import delete_quality
from ledger.services.sales import delete_sale


def test_lock_contention_is_retried_then_reported(make, db_path, settings):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article("Kilo", 1000)

    blocker = connect(db_path)
    impatient = connect(db_path, busy_timeout_ms=20)
    blocker.execute("BEGIN IMMEDIATE;")
    try:
        result = create_sale(
            impatient,
            SaleHeader(date_time="2026-01-15T10:00:00"),
            [line(a, 1, 1.0, d)],
            with_settings(settings, max_commit_retries=3),
        )
    finally:
        blocker.execute("ROLLBACK;")
        blocker.close()

    assert isinstance(result, ConcurrentModification)
    assert result.attempts == 3
    assert q(impatient, "SELECT COUNT(*) AS n FROM sales")[0]["n"] == 0
    impatient.close()


def test_sale_goes_through_once_the_lock_is_released(make, db_path, settings):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article("Kilo", 1000)

    blocker = connect(db_path)
    blocker.execute("BEGIN IMMEDIATE;")
    release = threading.Timer(0.2, lambda: blocker.execute("ROLLBACK;"))
    release.start()

    other = connect(db_path)
    try:
        result = create_sale(other, SaleHeader(date_time="2026-01-15T10:00:00"), [line(a, 2, 1.0, d)], settings)
    finally:
        release.join()
        blocker.close()

    assert isinstance(result, SaleResult)
    assert delivery_balance(other, d.id).kg_remaining_real == pytest.approx(8.0)
    other.close()


def test_two_cashiers_cannot_oversell_one_lot(make, db_path, settings):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article("Kilo", 1000)

    barrier = threading.Barrier(2)
    results: list = []
    guard = threading.Lock()

    def cashier(minute: int) -> None:
        c = connect(db_path)
        try:
            barrier.wait()
            r = create_sale(
                c,
                SaleHeader(date_time=f"2026-01-15T10:{minute:02d}:00"),
                [line(a, 8, 10.0, d)],
                settings,
            )
            with guard:
                results.append(r)
        finally:
            c.close()

    threads = [threading.Thread(target=cashier, args=(m,)) for m in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ok = [r for r in results if not isinstance(r, LedgerError)]
    rejected = [r for r in results if isinstance(r, LedgerError)]
    assert len(ok) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], InsufficientRealStock)
    assert rejected[0].available == pytest.approx(2.0)

    check = connect(db_path)
    assert delivery_balance(check, d.id).kg_remaining_real == pytest.approx(2.0)
    check.close()


def test_each_session_gets_its_own_connection(db_path):
    first, second = {}, {}

    a = session_conn(first, db_path)
    b = session_conn(second, db_path)

    assert session_conn(first, db_path) is a
    assert a is not b
    a.close()
    b.close()


def test_open_transaction_in_one_session_does_not_leak_into_another(make, db_path, settings):
    d1 = make.delivery("1", kg_in=10, invoice="INV-1")
    d2 = make.delivery("2", kg_in=10, invoice="INV-2")
    a = make.article("Kilo", 1000)
    busy = session_conn({}, db_path)
    other = session_conn({}, db_path)

    busy.execute("BEGIN IMMEDIATE;")
    x(busy, "UPDATE deliveries SET note='pending' WHERE id=?", (d1.id,))
    assert get_delivery(other, d1.id).note is None

    release = threading.Timer(0.2, lambda: busy.execute("ROLLBACK;"))
    release.start()
    try:
        sold = create_sale(other, SaleHeader(date_time="2026-01-15T10:00:00"), [line(a, 1, 1.0, d2)], settings)
    finally:
        release.join()

    assert isinstance(sold, SaleResult)
    assert delivery_balance(busy, d2.id).kg_remaining_real == pytest.approx(9.0)
    assert get_delivery(busy, d1.id).note is None
    busy.close()
    other.close()


@pytest.mark.parametrize(
    "write",
    [
        lambda c, ids, s: delete_delivery(c, ids["delivery"], s),
        lambda c, ids, s: delete_quality(c, ids["quality"], s),
        lambda c, ids, s: delete_sale(c, ids["sale"], s),
        lambda c, ids, s: wipe_all(c, s),
        lambda c, ids, s: update_delivery_note(c, ids["delivery"], "recount", s),
    ],
    ids=["delete_delivery", "delete_quality", "delete_sale", "wipe_all", "update_delivery_note"],
)
def test_cascading_writes_report_lock_contention(make, db_path, settings, write):
    d = make.delivery("1", kg_in=10, invoice="INV-1")
    a = make.article("Kilo", 1000)
    sale = make.sale(line(a, 1, 1.0, d))
    ids = {"delivery": d.id, "quality": d.quality_id, "sale": sale.sale.id}

    blocker = connect(db_path)
    impatient = connect(db_path, busy_timeout_ms=20)
    blocker.execute("BEGIN IMMEDIATE;")
    try:
        result = write(impatient, ids, with_settings(settings, max_commit_retries=2))
    finally:
        blocker.execute("ROLLBACK;")
        blocker.close()

    assert isinstance(result, ConcurrentModification)
    assert result.attempts == 2
    assert get_delivery(impatient, d.id) is not None
    assert q(impatient, "SELECT COUNT(*) AS n FROM sales")[0]["n"] == 1
    impatient.close()
