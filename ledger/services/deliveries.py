from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from typing import Optional, Union

from ledger.config import Settings
from ledger.db import q, x, run_atomic
from ledger.errors import (
    DeliveryLocked,
    DuplicateDisplayId,
    LedgerError,
    UnknownDelivery,
    UnknownQuality,
)
from ledger.logging import get_logger
from ledger.models import CascadeReport, Delivery
from ledger.services.balances import KG_EPSILON, DeliveryBalance, delivery_balances
from ledger.services.sales import delete_sales, sale_ids_referencing
from ledger.utils import clean_text, iso_now

logger = get_logger(__name__)

# Everything except the note is frozen once a sale line references the delivery.
LOCKED_FIELDS = (
    "display_id",
    "date",
    "quality_id",
    "kg_in",
    "unit_cost_per_kg",
    "invoice_number",
    "supplier_name",
)


@dataclass
class DeliveryInput:
    display_id: str
    date: str
    quality_id: int
    kg_in: float
    unit_cost_per_kg: float
    invoice_number: Optional[str] = None
    supplier_name: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class DeliveryFilters:
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    quality_id: Optional[int] = None
    search: str = ""
    is_invoiced: Optional[bool] = None
    has_stock: Optional[bool] = None


@dataclass(frozen=True)
class DeliveryStats:
    total_deliveries: int
    total_kg_in: float
    total_value_eur: float
    in_stock: int
    depleted: int


def _normalize_input(data: DeliveryInput) -> DeliveryInput:
    display_id = clean_text(data.display_id)
    if not display_id:
        raise ValueError("Delivery ID is required.")
    date = clean_text(data.date)
    if not date:
        raise ValueError("Delivery date is required.")

    try:
        kg_in = float(data.kg_in)
        unit_cost = float(data.unit_cost_per_kg)
    except (TypeError, ValueError):
        raise ValueError("kg in and cost per kg must be numbers.")
    if kg_in <= 0:
        raise ValueError("kg in must be > 0.")
    if unit_cost < 0:
        raise ValueError("Cost per kg must be >= 0.")

    return DeliveryInput(
        display_id=display_id,
        date=date,
        quality_id=int(data.quality_id),
        kg_in=kg_in,
        unit_cost_per_kg=unit_cost,
        invoice_number=clean_text(data.invoice_number),
        supplier_name=clean_text(data.supplier_name),
        note=clean_text(data.note),
    )


def _quality_is_active(conn, quality_id: int) -> bool:
    r = q(conn, "SELECT is_active FROM qualities WHERE id=?", (int(quality_id),))
    return bool(r) and bool(r[0]["is_active"])


def _display_id_taken(conn, display_id: str, *, exclude_id: Optional[int] = None) -> bool:
    if exclude_id is None:
        r = q(conn, "SELECT 1 FROM deliveries WHERE display_id=?", (display_id,))
    else:
        r = q(conn, "SELECT 1 FROM deliveries WHERE display_id=? AND id<>?", (display_id, int(exclude_id)))
    return bool(r)


def get_delivery(conn, delivery_id: int) -> Optional[Delivery]:
    rows = q(conn, "SELECT * FROM deliveries WHERE id=?", (int(delivery_id),))
    return Delivery.from_row(rows[0]) if rows else None


def is_referenced(conn, delivery_id: int) -> bool:
    """True when any sale line (draft or finalized) uses the delivery as real or accounting delivery."""
    r = q(
        conn,
        "SELECT 1 FROM sale_lines WHERE real_delivery_id=? OR accounting_delivery_id=? LIMIT 1",
        (int(delivery_id), int(delivery_id)),
    )
    return bool(r)


def create_delivery(conn, data: DeliveryInput) -> Union[Delivery, LedgerError]:
    d = _normalize_input(data)

    if not _quality_is_active(conn, d.quality_id):
        return UnknownQuality(d.quality_id)
    if _display_id_taken(conn, d.display_id):
        return DuplicateDisplayId(d.display_id)

    now = iso_now()
    try:
        delivery_id = x(
            conn,
            """
            INSERT INTO deliveries (
                display_id, date, quality_id, kg_in, unit_cost_per_kg,
                invoice_number, supplier_name, note, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                d.display_id,
                d.date,
                d.quality_id,
                d.kg_in,
                d.unit_cost_per_kg,
                d.invoice_number,
                d.supplier_name,
                d.note,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError:
        # Raced with another insert of the same display id.
        return DuplicateDisplayId(d.display_id)

    logger.info("delivery_created", delivery_id=delivery_id, display_id=d.display_id, kg_in=d.kg_in)
    return get_delivery(conn, delivery_id)


def _changed_fields(current: Delivery, new: DeliveryInput) -> list[str]:
    changed = []
    for name in LOCKED_FIELDS + ("note",):
        old_v = getattr(current, name)
        new_v = getattr(new, name)
        if isinstance(old_v, float) or isinstance(new_v, float):
            if abs(float(old_v) - float(new_v)) > 1e-12:
                changed.append(name)
        elif old_v != new_v:
            changed.append(name)
    return changed


def update_delivery(
    conn,
    delivery_id: int,
    data: DeliveryInput,
    settings: Optional[Settings] = None,
) -> Union[Delivery, LedgerError]:
    """
    Full edit while no sale line references the delivery; note-only afterwards.

    With delivery_edit_mode="forbidden" a referenced delivery cannot be
    edited at all.
    """
    new = _normalize_input(data)
    edit_mode = settings.delivery_edit_mode if settings is not None else "note-only"

    def op():
        current = get_delivery(conn, delivery_id)
        if current is None:
            return UnknownDelivery(int(delivery_id))

        changed = _changed_fields(current, new)
        if not changed:
            return current

        if is_referenced(conn, current.id):
            locked = tuple(f for f in changed if f != "note")
            if edit_mode == "forbidden" and "note" in changed:
                locked = locked + ("note",)
            if locked:
                logger.info("delivery_locked", delivery_id=current.id, fields=list(locked))
                return DeliveryLocked(current.id, fields=locked)

        if "quality_id" in changed and not _quality_is_active(conn, new.quality_id):
            return UnknownQuality(new.quality_id)
        if "display_id" in changed and _display_id_taken(conn, new.display_id, exclude_id=current.id):
            return DuplicateDisplayId(new.display_id)

        x(
            conn,
            """
            UPDATE deliveries
            SET display_id=?, date=?, quality_id=?, kg_in=?, unit_cost_per_kg=?,
                invoice_number=?, supplier_name=?, note=?, updated_at=?
            WHERE id=?
            """,
            (
                new.display_id,
                new.date,
                new.quality_id,
                new.kg_in,
                new.unit_cost_per_kg,
                new.invoice_number,
                new.supplier_name,
                new.note,
                iso_now(),
                current.id,
            ),
        )
        logger.info("delivery_updated", delivery_id=current.id, fields=changed)
        return get_delivery(conn, current.id)

    return run_atomic(conn, op, action="update_delivery", settings=settings)


def update_delivery_note(
    conn,
    delivery_id: int,
    note: Optional[str],
    settings: Optional[Settings] = None,
) -> Union[Delivery, LedgerError]:
    current = get_delivery(conn, delivery_id)
    if current is None:
        return UnknownDelivery(int(delivery_id))
    data = DeliveryInput(
        display_id=current.display_id,
        date=current.date,
        quality_id=current.quality_id,
        kg_in=current.kg_in,
        unit_cost_per_kg=current.unit_cost_per_kg,
        invoice_number=current.invoice_number,
        supplier_name=current.supplier_name,
        note=note,
    )
    return update_delivery(conn, current.id, data, settings)


_DISPLAY_ID_RX = re.compile(r"^(\d+)(A)?$", re.IGNORECASE)


def next_display_id(conn) -> str:
    """
    Number after the most recently created delivery ("12A" -> "13").

    Falls back to the highest numeric display id when the latest one is not
    numeric, and to "1" for an empty ledger.
    """
    last = q(conn, "SELECT display_id FROM deliveries ORDER BY created_at DESC, id DESC LIMIT 1")
    if not last:
        return "1"
    m = _DISPLAY_ID_RX.match(str(last[0]["display_id"]).strip())
    if m:
        return str(int(m.group(1)) + 1)

    highest = 0
    for r in q(conn, "SELECT display_id FROM deliveries"):
        m = _DISPLAY_ID_RX.match(str(r["display_id"]).strip())
        if m:
            highest = max(highest, int(m.group(1)))
    return str(highest + 1)


def a_variant(display_id: str) -> str:
    """Operator convention for a non-invoiced lot: "12" -> "12A"."""
    return f"{str(display_id).strip()}A"


def delivery_dependencies(conn, delivery_id: int) -> int:
    """How many sales a delete of this delivery would remove."""
    return len(sale_ids_referencing(conn, [int(delivery_id)]))


def delete_delivery(
    conn,
    delivery_id: int,
    settings: Optional[Settings] = None,
) -> Union[CascadeReport, LedgerError]:
    """
    Delete every sale that uses the delivery (as real or accounting
    delivery), then the delivery itself, in one transaction.
    """

    def op():
        current = get_delivery(conn, delivery_id)
        if current is None:
            return UnknownDelivery(int(delivery_id))

        deleted_sales = delete_sales(conn, sale_ids_referencing(conn, [current.id]))
        x(conn, "DELETE FROM deliveries WHERE id=?", (current.id,))
        return CascadeReport(deleted_sales=deleted_sales, deleted_deliveries=1)

    result = run_atomic(conn, op, action="delete_delivery", settings=settings)
    if isinstance(result, CascadeReport):
        logger.warning("delivery_deleted", delivery_id=int(delivery_id), deleted_sales=result.deleted_sales)
    return result


# -------------------------
# Listings & pickers
# -------------------------

def list_deliveries(conn, filters: Optional[DeliveryFilters] = None) -> list[DeliveryBalance]:
    """Deliveries with their Real/Accounting balances, newest first."""
    f = filters or DeliveryFilters()
    search = f.search.strip().lower()

    out: list[DeliveryBalance] = []
    for b in delivery_balances(conn).values():
        d = b.delivery
        if f.date_from and d.date[:10] < str(f.date_from)[:10]:
            continue
        if f.date_to and d.date[:10] > str(f.date_to)[:10]:
            continue
        if f.quality_id is not None and d.quality_id != int(f.quality_id):
            continue
        if search and not any(
            search in str(v).lower() for v in (d.display_id, d.invoice_number or "", d.supplier_name or "")
        ):
            continue
        if f.is_invoiced is not None and d.is_invoiced != bool(f.is_invoiced):
            continue
        if f.has_stock is True and b.kg_remaining_real <= KG_EPSILON:
            continue
        if f.has_stock is False and b.kg_remaining_real > KG_EPSILON:
            continue
        out.append(b)

    out.sort(key=lambda b: (b.delivery.date, b.delivery.id), reverse=True)
    return out


def deliveries_with_stock(conn) -> list[DeliveryBalance]:
    """Real-delivery picker: any delivery with Real stock left."""
    return list_deliveries(conn, DeliveryFilters(has_stock=True))


def invoiced_deliveries_with_stock(conn) -> list[DeliveryBalance]:
    """Accounting-delivery picker: invoiced deliveries with Accounting stock left."""
    return [b for b in list_deliveries(conn, DeliveryFilters(is_invoiced=True)) if b.kg_remaining_acc > KG_EPSILON]


def supplier_names(conn) -> list[str]:
    rows = q(
        conn,
        """
        SELECT DISTINCT supplier_name FROM deliveries
        WHERE supplier_name IS NOT NULL AND supplier_name <> ''
        ORDER BY supplier_name
        """,
    )
    return [str(r["supplier_name"]) for r in rows]


def delivery_stats(conn) -> DeliveryStats:
    balances = list(delivery_balances(conn).values())
    return DeliveryStats(
        total_deliveries=len(balances),
        total_kg_in=sum(float(b.delivery.kg_in) for b in balances),
        total_value_eur=sum(b.total_cost_eur for b in balances),
        in_stock=sum(1 for b in balances if b.kg_remaining_real > KG_EPSILON),
        depleted=sum(1 for b in balances if b.kg_remaining_real <= KG_EPSILON),
    )
