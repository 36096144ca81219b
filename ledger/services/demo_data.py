from __future__ import annotations

import random
from datetime import date, datetime, time, timedelta
from typing import Optional

from ledger.config import Settings
from ledger.db import q, x, ensure_schema, run_atomic
from ledger.errors import LedgerError
from ledger.logging import get_logger
from ledger.models import ProposedLine, SaleHeader, PAYMENT_METHODS
from ledger.services.allocation import create_sale
from ledger.services.deliveries import DeliveryInput, a_variant, create_delivery, next_display_id
from ledger.utils import iso_now

logger = get_logger(__name__)

DEFAULT_QUALITIES = ["Premium", "Standard", "Economy"]
DEFAULT_ARTICLES = [
    ("Piece 100 g", 100.0),
    ("Piece 250 g", 250.0),
    ("Piece 500 g", 500.0),
    ("Piece 1 kg", 1000.0),
]


def upsert_reference_data(conn) -> None:
    ensure_schema(conn)
    now = iso_now()

    for name in DEFAULT_QUALITIES:
        x(
            conn,
            "INSERT OR IGNORE INTO qualities(name, is_active, created_at, updated_at) VALUES (?, 1, ?, ?)",
            (name, now, now),
        )

    for name, grams in DEFAULT_ARTICLES:
        x(
            conn,
            "INSERT OR IGNORE INTO articles(name, grams_per_piece, is_active, created_at, updated_at) VALUES (?, ?, 1, ?, ?)",
            (name, float(grams), now, now),
        )


def wipe_all(conn, settings: Optional[Settings] = None) -> Optional[LedgerError]:
    def op():
        # Keep schema, delete data (order matters for FKs).
        for t in ["sale_lines", "sales", "deliveries", "articles", "qualities"]:
            conn.execute(f"DELETE FROM {t};")

    result = run_atomic(conn, op, action="wipe_all", settings=settings)
    if isinstance(result, LedgerError):
        return result
    logger.warning("data_wiped")
    return None


def load_demo_data(conn, settings: Settings, *, seed: int = 7) -> int:
    """
    Demo deliveries (invoiced lots with a non-invoiced "A" twin) and sales.

    Sales go through the allocation gate like any operator sale; proposals the
    gate rejects are skipped. Returns the number of sales created.
    """
    rnd = random.Random(seed)
    upsert_reference_data(conn)

    qualities = q(conn, "SELECT * FROM qualities WHERE is_active=1 ORDER BY id")
    articles = q(conn, "SELECT * FROM articles WHERE is_active=1 ORDER BY id")

    base_date = date.today() - timedelta(days=10)
    invoiced_ids: list[int] = []
    plain_ids: list[int] = []
    for i in range(4):
        quality = qualities[i % len(qualities)]
        delivery_date = (base_date + timedelta(days=i * 2)).isoformat()
        display_id = next_display_id(conn)

        invoiced = create_delivery(
            conn,
            DeliveryInput(
                display_id=display_id,
                date=delivery_date,
                quality_id=int(quality["id"]),
                kg_in=round(rnd.uniform(80, 160), 1),
                unit_cost_per_kg=round(rnd.uniform(2.5, 6.0), 2),
                invoice_number=f"INV-{delivery_date.replace('-', '')}-{i + 1:02d}",
                supplier_name="Demo Supplier",
                note="Demo delivery",
            ),
        )
        plain = create_delivery(
            conn,
            DeliveryInput(
                display_id=a_variant(display_id),
                date=delivery_date,
                quality_id=int(quality["id"]),
                kg_in=round(rnd.uniform(20, 60), 1),
                unit_cost_per_kg=round(rnd.uniform(2.0, 5.0), 2),
                supplier_name="Demo Supplier",
                note="Demo delivery (no invoice)",
            ),
        )
        if not isinstance(invoiced, LedgerError):
            invoiced_ids.append(invoiced.id)
        if not isinstance(plain, LedgerError):
            plain_ids.append(plain.id)

    if not invoiced_ids:
        return 0

    created = 0
    for i in range(12):
        lines = []
        for _ in range(rnd.randint(1, 3)):
            article = rnd.choice(articles)
            unit_price = round(float(article["grams_per_piece"]) / 1000.0 * rnd.uniform(7.0, 12.0), 2)
            if plain_ids and invoiced_ids and rnd.random() < 0.35:
                real_id = rnd.choice(plain_ids)
                acc_id = rnd.choice(invoiced_ids)
            else:
                real_id = rnd.choice(invoiced_ids)
                acc_id = None
            lines.append(
                ProposedLine(
                    article_id=int(article["id"]),
                    quantity=rnd.randint(1, 12),
                    unit_price_eur=unit_price,
                    real_delivery_id=real_id,
                    accounting_delivery_id=acc_id,
                )
            )

        sale_day = base_date + timedelta(days=8 + i % 3)
        when = datetime.combine(sale_day, time(hour=9 + i % 9)).isoformat(timespec="seconds")
        result = create_sale(
            conn,
            SaleHeader(date_time=when, payment_method=rnd.choice(PAYMENT_METHODS)),
            lines,
            settings,
        )
        if isinstance(result, LedgerError):
            logger.info("demo_sale_skipped", reason=result.message)
            continue
        created += 1

    logger.info("demo_data_loaded", deliveries=len(invoiced_ids) + len(plain_ids), sales=created)
    return created
