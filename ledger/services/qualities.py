from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional, Union

from ledger.config import Settings
from ledger.db import q, x, run_atomic
from ledger.errors import DuplicateQualityName, LedgerError, UnknownQuality
from ledger.logging import get_logger
from ledger.models import CascadeReport, Quality
from ledger.services.sales import delete_sales, sale_ids_referencing
from ledger.utils import clean_text, iso_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class QualityWithStats:
    quality: Quality
    deliveries_count: int
    last_delivery_date: Optional[str]


@dataclass(frozen=True)
class QualityDependencies:
    deliveries: int
    sales: int


def _require_name(name: str) -> str:
    n = clean_text(name)
    if not n:
        raise ValueError("Quality name is required.")
    return n


def _name_taken(conn, name: str, *, exclude_id: Optional[int] = None) -> bool:
    sql = "SELECT 1 FROM qualities WHERE name = ? COLLATE NOCASE"
    params: list = [name]
    if exclude_id is not None:
        sql += " AND id <> ?"
        params.append(int(exclude_id))
    return bool(q(conn, sql, params))


def get_quality(conn, quality_id: int) -> Optional[Quality]:
    rows = q(conn, "SELECT * FROM qualities WHERE id=?", (int(quality_id),))
    return Quality.from_row(rows[0]) if rows else None


def list_qualities(conn, *, active_only: bool = False) -> list[Quality]:
    sql = "SELECT * FROM qualities"
    if active_only:
        sql += " WHERE is_active=1"
    sql += " ORDER BY name COLLATE NOCASE"
    return [Quality.from_row(r) for r in q(conn, sql)]


def list_qualities_with_stats(conn, *, active_only: bool = False) -> list[QualityWithStats]:
    rows = q(
        conn,
        f"""
        SELECT qu.*,
               COUNT(d.id) AS deliveries_count,
               MAX(d.date) AS last_delivery_date
        FROM qualities qu
        LEFT JOIN deliveries d ON d.quality_id = qu.id
        {"WHERE qu.is_active=1" if active_only else ""}
        GROUP BY qu.id
        ORDER BY qu.name COLLATE NOCASE
        """,
    )
    return [
        QualityWithStats(
            quality=Quality.from_row(r),
            deliveries_count=int(r["deliveries_count"] or 0),
            last_delivery_date=r["last_delivery_date"],
        )
        for r in rows
    ]


def create_quality(conn, name: str, note: Optional[str] = None) -> Union[Quality, LedgerError]:
    n = _require_name(name)
    if _name_taken(conn, n):
        return DuplicateQualityName(n)

    now = iso_now()
    try:
        quality_id = x(
            conn,
            "INSERT INTO qualities(name, is_active, note, created_at, updated_at) VALUES (?, 1, ?, ?, ?)",
            (n, clean_text(note), now, now),
        )
    except sqlite3.IntegrityError:
        return DuplicateQualityName(n)

    logger.info("quality_created", quality_id=quality_id, name=n)
    return get_quality(conn, quality_id)


def update_quality(
    conn,
    quality_id: int,
    *,
    name: Optional[str] = None,
    note: Optional[str] = None,
) -> Union[Quality, LedgerError]:
    current = get_quality(conn, quality_id)
    if current is None:
        return UnknownQuality(int(quality_id))

    new_name = _require_name(name) if name is not None else current.name
    new_note = clean_text(note) if note is not None else current.note
    if _name_taken(conn, new_name, exclude_id=current.id):
        return DuplicateQualityName(new_name)

    x(
        conn,
        "UPDATE qualities SET name=?, note=?, updated_at=? WHERE id=?",
        (new_name, new_note, iso_now(), current.id),
    )
    return get_quality(conn, current.id)


def _set_active(conn, quality_id: int, active: bool) -> Union[Quality, LedgerError]:
    current = get_quality(conn, quality_id)
    if current is None:
        return UnknownQuality(int(quality_id))
    x(
        conn,
        "UPDATE qualities SET is_active=?, updated_at=? WHERE id=?",
        (1 if active else 0, iso_now(), current.id),
    )
    return get_quality(conn, current.id)


def deactivate_quality(conn, quality_id: int) -> Union[Quality, LedgerError]:
    """Hide from pickers; existing deliveries keep pointing at it."""
    return _set_active(conn, quality_id, False)


def activate_quality(conn, quality_id: int) -> Union[Quality, LedgerError]:
    return _set_active(conn, quality_id, True)


def _delivery_ids_for(conn, quality_id: int) -> list[int]:
    return [int(r["id"]) for r in q(conn, "SELECT id FROM deliveries WHERE quality_id=?", (int(quality_id),))]


def quality_dependencies(conn, quality_id: int) -> QualityDependencies:
    delivery_ids = _delivery_ids_for(conn, quality_id)
    return QualityDependencies(
        deliveries=len(delivery_ids),
        sales=len(sale_ids_referencing(conn, delivery_ids)),
    )


def delete_quality(
    conn,
    quality_id: int,
    settings: Optional[Settings] = None,
) -> Union[CascadeReport, LedgerError]:
    """
    Hard delete: every sale touching one of the quality's deliveries, then
    the deliveries, then the quality. One transaction.
    """

    def op():
        current = get_quality(conn, quality_id)
        if current is None:
            return UnknownQuality(int(quality_id))

        delivery_ids = _delivery_ids_for(conn, current.id)
        deleted_sales = delete_sales(conn, sale_ids_referencing(conn, delivery_ids))
        x(conn, "DELETE FROM deliveries WHERE quality_id=?", (current.id,))
        x(conn, "DELETE FROM qualities WHERE id=?", (current.id,))
        return CascadeReport(
            deleted_sales=deleted_sales,
            deleted_deliveries=len(delivery_ids),
            deleted_qualities=1,
        )

    result = run_atomic(conn, op, action="delete_quality", settings=settings)
    if isinstance(result, CascadeReport):
        logger.warning(
            "quality_deleted",
            quality_id=int(quality_id),
            deleted_deliveries=result.deleted_deliveries,
            deleted_sales=result.deleted_sales,
        )
    return result
