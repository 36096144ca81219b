from __future__ import annotations

import sqlite3
from typing import Optional, Union

from ledger.db import q, x
from ledger.errors import DuplicateArticleName, LedgerError, UnknownArticle
from ledger.logging import get_logger
from ledger.models import Article
from ledger.utils import clean_text, iso_now

logger = get_logger(__name__)


def _require_name(name: str) -> str:
    n = clean_text(name)
    if not n:
        raise ValueError("Article name is required.")
    return n


def _require_grams(grams_per_piece) -> float:
    try:
        g = float(grams_per_piece)
    except (TypeError, ValueError):
        raise ValueError("Weight per piece must be a number.")
    if g <= 0:
        raise ValueError("Weight per piece (g) must be > 0.")
    return g


def _name_taken(conn, name: str, *, exclude_id: Optional[int] = None) -> bool:
    sql = "SELECT 1 FROM articles WHERE name = ? COLLATE NOCASE"
    params: list = [name]
    if exclude_id is not None:
        sql += " AND id <> ?"
        params.append(int(exclude_id))
    return bool(q(conn, sql, params))


def get_article(conn, article_id: int) -> Optional[Article]:
    rows = q(conn, "SELECT * FROM articles WHERE id=?", (int(article_id),))
    return Article.from_row(rows[0]) if rows else None


def list_articles(conn, *, active_only: bool = False, search: str = "") -> list[Article]:
    where = ["1=1"]
    params: list = []
    if active_only:
        where.append("is_active=1")
    if search and search.strip():
        where.append("name LIKE ?")
        params.append(f"%{search.strip()}%")
    rows = q(conn, f"SELECT * FROM articles WHERE {' AND '.join(where)} ORDER BY name COLLATE NOCASE", params)
    return [Article.from_row(r) for r in rows]


def create_article(conn, name: str, grams_per_piece: float) -> Union[Article, LedgerError]:
    n = _require_name(name)
    g = _require_grams(grams_per_piece)
    if _name_taken(conn, n):
        return DuplicateArticleName(n)

    now = iso_now()
    try:
        article_id = x(
            conn,
            "INSERT INTO articles(name, grams_per_piece, is_active, created_at, updated_at) VALUES (?, ?, 1, ?, ?)",
            (n, g, now, now),
        )
    except sqlite3.IntegrityError:
        return DuplicateArticleName(n)

    logger.info("article_created", article_id=article_id, name=n, grams_per_piece=g)
    return get_article(conn, article_id)


def update_article(
    conn,
    article_id: int,
    *,
    name: Optional[str] = None,
    grams_per_piece: Optional[float] = None,
) -> Union[Article, LedgerError]:
    """
    Rename or re-weigh an article.

    A new weight applies to future sale lines only; existing lines keep their
    kg-per-piece snapshot.
    """
    current = get_article(conn, article_id)
    if current is None:
        return UnknownArticle(int(article_id))

    new_name = _require_name(name) if name is not None else current.name
    new_grams = _require_grams(grams_per_piece) if grams_per_piece is not None else current.grams_per_piece
    if _name_taken(conn, new_name, exclude_id=current.id):
        return DuplicateArticleName(new_name)

    x(
        conn,
        "UPDATE articles SET name=?, grams_per_piece=?, updated_at=? WHERE id=?",
        (new_name, new_grams, iso_now(), current.id),
    )
    return get_article(conn, current.id)


def _set_active(conn, article_id: int, active: bool) -> Union[Article, LedgerError]:
    current = get_article(conn, article_id)
    if current is None:
        return UnknownArticle(int(article_id))
    x(
        conn,
        "UPDATE articles SET is_active=?, updated_at=? WHERE id=?",
        (1 if active else 0, iso_now(), current.id),
    )
    return get_article(conn, current.id)


def deactivate_article(conn, article_id: int) -> Union[Article, LedgerError]:
    return _set_active(conn, article_id, False)


def activate_article(conn, article_id: int) -> Union[Article, LedgerError]:
    return _set_active(conn, article_id, True)
