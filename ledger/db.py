from __future__ import annotations

import sqlite3
from contextlib import contextmanager, nullcontext
from functools import partial
from pathlib import Path
from typing import Any, Callable, ContextManager, Iterable, Iterator, MutableMapping, Optional

import streamlit as st
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ledger.errors import ConcurrentModification
from ledger.logging import get_logger
from ledger.schema import SCHEMA_SQL

logger = get_logger(__name__)

BUSY_TIMEOUT_MS = 5000
DEFAULT_COMMIT_ATTEMPTS = 3
RETRY_BACKOFF_S = 0.05


def connect(db_path: Path | str, *, busy_timeout_ms: int = BUSY_TIMEOUT_MS) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly (see `transaction`).
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=False,
        isolation_level=None,
        timeout=busy_timeout_ms / 1000.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
    return conn


def session_conn(store: MutableMapping[str, Any], db_path: Path | str) -> sqlite3.Connection:
    """The connection owned by one session store, opened on first use."""
    key = f"lot_ledger_conn:{Path(db_path)}"
    conn = store.get(key)
    if conn is None:
        conn = connect(db_path)
        store[key] = conn
    return conn


def get_conn(db_path: Path) -> sqlite3.Connection:
    # One connection per browser session, so a transaction never spans sessions.
    return session_conn(st.session_state, db_path)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    cur = conn.execute(sql, tuple(params))
    rows = cur.fetchall()
    cur.close()
    return rows


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    # Autocommits on its own; joins the open transaction inside `transaction()`.
    cur = conn.execute(sql, tuple(params))
    last = cur.lastrowid
    cur.close()
    return int(last or 0)


def placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit: BEGIN (IMMEDIATE) … COMMIT, ROLLBACK on any error.

    BEGIN IMMEDIATE takes SQLite's reserved lock up front, so a
    read-then-write inside the block cannot interleave with another writer.
    Lock contention surfaces as sqlite3.OperationalError from the BEGIN.
    """
    conn.execute("BEGIN IMMEDIATE;" if immediate else "BEGIN;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    else:
        conn.execute("COMMIT;")


def is_conflict(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def _is_write_conflict(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and is_conflict(exc)


def _log_retry(action: str, retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "write_conflict_retry",
        action=action,
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


def run_atomic(
    conn: sqlite3.Connection,
    op: Callable[[], Any],
    *,
    action: str,
    settings=None,
    guard: Optional[Callable[[], ContextManager]] = None,
):
    """
    Run `op()` in one immediate transaction (inside `guard()` if given).

    When another connection holds the write lock past the busy timeout, the
    whole unit is retried from the start with exponential backoff, up to
    `settings.max_commit_retries` attempts. Returns what `op()` returns, or
    ConcurrentModification once the attempts are used up.
    """
    attempts = int(settings.max_commit_retries) if settings is not None else DEFAULT_COMMIT_ATTEMPTS

    def attempt():
        with guard() if guard is not None else nullcontext():
            with transaction(conn):
                return op()

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=RETRY_BACKOFF_S, min=RETRY_BACKOFF_S, max=RETRY_BACKOFF_S * 8),
        retry=retry_if_exception(_is_write_conflict),
        before_sleep=partial(_log_retry, action),
    )
    try:
        return retrying(attempt)
    except RetryError:
        logger.error("write_conflict_exhausted", action=action, attempts=attempts)
        return ConcurrentModification(attempts=attempts)
