"""
The allocation gate: every sale line passes through here before it exists.

A proposed sale is validated line by line against the Real and Accounting
balances of the deliveries it draws from. Lines of the same sale are staged
cumulatively, so two lines drawing from one lot are checked together. The first
failing line rejects the whole sale and nothing is written. Accepted lines get
their kg-per-piece and cost-per-kg snapshots copied from the article and the
deliveries at that moment; those snapshots are never rewritten.

Balance read, validation and insert run in one `BEGIN IMMEDIATE` transaction
while holding in-process locks on the touched delivery ids. Lock contention
from another writer is retried from the balance read, up to
`settings.max_commit_retries` attempts, then reported as
ConcurrentModification.
"""

from __future__ import annotations

import math
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Mapping, Optional, Sequence, Union

from ledger.config import Settings
from ledger.db import q, x, placeholders, run_atomic
from ledger.errors import (
    EmptySale,
    InsufficientAccountingStock,
    InsufficientRealStock,
    InvalidLine,
    LedgerError,
    MissingAccountingDelivery,
    SaleNotDraft,
    UnknownArticle,
    UnknownDelivery,
    UnknownSale,
    UnknownSaleLine,
)
from ledger.logging import get_logger
from ledger.models import (
    Article,
    Delivery,
    ProposedLine,
    Sale,
    SaleHeader,
    SaleLine,
    normalize_payment_method,
)
from ledger.services.balances import KG_EPSILON, DeliveryBalance, delivery_balances, load_deliveries
from ledger.services.sales import generate_sale_number, get_sale_lines
from ledger.utils import clean_text, iso_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class StagedLine:
    """A validated line, snapshots filled, not yet written."""

    position: int
    article_id: int
    quantity: int
    unit_price_eur: float
    real_delivery_id: int
    accounting_delivery_id: Optional[int]
    kg_per_piece_snapshot: float
    unit_cost_per_kg_real_snapshot: float
    unit_cost_per_kg_acc_snapshot: Optional[float]

    @property
    def kg_line(self) -> float:
        return int(self.quantity) * float(self.kg_per_piece_snapshot)


@dataclass(frozen=True)
class SaleResult:
    sale: Sale
    lines: tuple[SaleLine, ...]

    @property
    def total_kg(self) -> float:
        return sum(l.kg_line for l in self.lines)

    @property
    def total_pieces(self) -> int:
        return sum(int(l.quantity) for l in self.lines)


class DeliveryLocks:
    """
    In-process mutexes keyed by delivery id.

    Acquired in ascending id order so two sales touching overlapping
    delivery sets cannot deadlock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, delivery_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(int(delivery_id), threading.Lock())

    @contextmanager
    def hold(self, delivery_ids: Iterable[int]) -> Iterator[None]:
        locks = [self._lock_for(i) for i in sorted({int(i) for i in delivery_ids})]
        acquired: list[threading.Lock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


_delivery_locks = DeliveryLocks()


# -------------------------
# Pure validation
# -------------------------

class _StagedStock:
    """Remaining kg per delivery, minus what earlier lines of this sale took."""

    def __init__(self, balances: Mapping[int, DeliveryBalance]) -> None:
        self._balances = balances
        self._real: dict[int, float] = defaultdict(float)
        self._acc: dict[int, float] = defaultdict(float)

    def available_real(self, delivery_id: int) -> float:
        b = self._balances.get(delivery_id)
        base = b.kg_remaining_real if b is not None else 0.0
        return base - self._real[delivery_id]

    def available_acc(self, delivery_id: int) -> float:
        b = self._balances.get(delivery_id)
        base = b.kg_remaining_acc if b is not None else 0.0
        return base - self._acc[delivery_id]

    def take(self, real_id: int, acc_key: int, kg: float) -> None:
        self._real[real_id] += kg
        self._acc[acc_key] += kg


def _check_shape(line: ProposedLine, index: int, *, allow_zero_price: bool) -> Optional[LedgerError]:
    qty = line.quantity
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        return InvalidLine("quantity must be a whole number > 0.", line_index=index)
    try:
        price = float(line.unit_price_eur)
    except (TypeError, ValueError):
        return InvalidLine("unit price must be a number.", line_index=index)
    if not math.isfinite(price) or price < 0:
        return InvalidLine("unit price must be >= 0.", line_index=index)
    if price == 0 and not allow_zero_price:
        return InvalidLine("zero-price sales are not allowed.", line_index=index)
    return None


def validate_sale(
    proposed: Sequence[ProposedLine],
    articles: Mapping[int, Article],
    deliveries: Mapping[int, Delivery],
    balances: Optional[Mapping[int, DeliveryBalance]] = None,
    *,
    allow_zero_price: bool = True,
) -> Union[list[StagedLine], LedgerError]:
    """
    Validate a whole proposed sale; first failing line wins.

    `balances` holds the committed Real/Accounting balances of the touched
    deliveries. Pass None to skip the stock checks (drafts).
    """
    if not proposed:
        return EmptySale()

    stock = _StagedStock(balances) if balances is not None else None
    staged: list[StagedLine] = []

    for i, line in enumerate(proposed):
        err = _check_shape(line, i, allow_zero_price=allow_zero_price)
        if err is not None:
            return err

        # 1. Article
        article = articles.get(int(line.article_id))
        if article is None or not article.is_active:
            return UnknownArticle(int(line.article_id), line_index=i)

        # 2. Real delivery
        real = deliveries.get(int(line.real_delivery_id))
        if real is None:
            return UnknownDelivery(int(line.real_delivery_id), line_index=i)

        # 3. Real stock, including earlier lines of this sale
        kg_needed = int(line.quantity) * article.kg_per_piece
        if stock is not None:
            available = stock.available_real(real.id)
            if kg_needed > available + KG_EPSILON:
                return InsufficientRealStock(real.id, required=kg_needed, available=available, line_index=i)

        # 4./5. Accounting delivery
        acc: Optional[Delivery] = None
        if not real.is_invoiced:
            if line.accounting_delivery_id is None:
                return MissingAccountingDelivery(real.id, line_index=i)
            acc = deliveries.get(int(line.accounting_delivery_id))
            if acc is None:
                return UnknownDelivery(int(line.accounting_delivery_id), line_index=i)
            if not acc.is_invoiced:
                return MissingAccountingDelivery(real.id, accounting_delivery_id=acc.id, line_index=i)
            if stock is not None:
                available = stock.available_acc(acc.id)
                if kg_needed > available + KG_EPSILON:
                    return InsufficientAccountingStock(
                        acc.id, required=kg_needed, available=available, line_index=i
                    )

        acc_key = acc.id if acc is not None else real.id
        if stock is not None and acc is None:
            # Accounting mirrors Real here, but other lots may already book against this one.
            available = stock.available_acc(acc_key)
            if kg_needed > available + KG_EPSILON:
                return InsufficientAccountingStock(
                    acc_key, required=kg_needed, available=available, line_index=i
                )
        if stock is not None:
            stock.take(real.id, acc_key, kg_needed)

        staged.append(
            StagedLine(
                position=i,
                article_id=article.id,
                quantity=int(line.quantity),
                unit_price_eur=float(line.unit_price_eur),
                real_delivery_id=real.id,
                accounting_delivery_id=acc.id if acc is not None else None,
                kg_per_piece_snapshot=article.kg_per_piece,
                unit_cost_per_kg_real_snapshot=float(real.unit_cost_per_kg),
                unit_cost_per_kg_acc_snapshot=float(acc.unit_cost_per_kg) if acc is not None else None,
            )
        )

    return staged


def check_stock(
    lines: Sequence[SaleLine],
    deliveries: Mapping[int, Delivery],
    balances: Mapping[int, DeliveryBalance],
) -> Optional[LedgerError]:
    """Stock checks for already-snapshotted lines (used when finalizing a draft)."""
    stock = _StagedStock(balances)
    for i, l in enumerate(lines):
        if int(l.real_delivery_id) not in deliveries:
            return UnknownDelivery(int(l.real_delivery_id), line_index=i)
        kg = l.kg_line
        available = stock.available_real(l.real_delivery_id)
        if kg > available + KG_EPSILON:
            return InsufficientRealStock(l.real_delivery_id, required=kg, available=available, line_index=i)
        acc_key = l.effective_accounting_delivery_id
        acc = deliveries.get(acc_key)
        if acc is None:
            return UnknownDelivery(acc_key, line_index=i)
        if l.accounting_delivery_id is not None and not acc.is_invoiced:
            return MissingAccountingDelivery(l.real_delivery_id, accounting_delivery_id=acc_key, line_index=i)
        if acc.is_invoiced:
            available = stock.available_acc(acc_key)
            if kg > available + KG_EPSILON:
                return InsufficientAccountingStock(acc_key, required=kg, available=available, line_index=i)
        stock.take(l.real_delivery_id, acc_key, kg)
    return None


# -------------------------
# Store access
# -------------------------

def _touched_delivery_ids(lines: Iterable) -> set[int]:
    ids: set[int] = set()
    for l in lines:
        ids.add(int(l.real_delivery_id))
        if l.accounting_delivery_id is not None:
            ids.add(int(l.accounting_delivery_id))
    return ids


def _load_articles(conn, article_ids: Iterable[int]) -> dict[int, Article]:
    ids = sorted({int(i) for i in article_ids})
    if not ids:
        return {}
    rows = q(conn, f"SELECT * FROM articles WHERE id IN ({placeholders(ids)})", ids)
    return {int(r["id"]): Article.from_row(r) for r in rows}


def _insert_lines(conn, sale_id: int, staged: Sequence[StagedLine], now: str) -> None:
    for s in staged:
        x(
            conn,
            """
            INSERT INTO sale_lines (
                sale_id, position, article_id, quantity, unit_price_eur,
                real_delivery_id, accounting_delivery_id,
                kg_per_piece_snapshot, unit_cost_per_kg_real_snapshot, unit_cost_per_kg_acc_snapshot,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(sale_id),
                int(s.position),
                int(s.article_id),
                int(s.quantity),
                float(s.unit_price_eur),
                int(s.real_delivery_id),
                int(s.accounting_delivery_id) if s.accounting_delivery_id is not None else None,
                float(s.kg_per_piece_snapshot),
                float(s.unit_cost_per_kg_real_snapshot),
                float(s.unit_cost_per_kg_acc_snapshot) if s.unit_cost_per_kg_acc_snapshot is not None else None,
                now,
            ),
        )


def _stamp_last_sold(conn, article_ids: Iterable[int], when: str) -> None:
    ids = sorted({int(i) for i in article_ids})
    if ids:
        x(conn, f"UPDATE articles SET last_sold_at=? WHERE id IN ({placeholders(ids)})", [when] + ids)


def _load_sale(conn, sale_id: int) -> Optional[Sale]:
    rows = q(conn, "SELECT * FROM sales WHERE id=?", (int(sale_id),))
    return Sale.from_row(rows[0]) if rows else None


def _run_locked(conn, delivery_ids: set[int], settings: Settings, op, *, action: str):
    """Run `op()` atomically while holding the locks of the touched deliveries."""
    return run_atomic(
        conn,
        op,
        action=action,
        settings=settings,
        guard=lambda: _delivery_locks.hold(delivery_ids),
    )


# -------------------------
# Entry points
# -------------------------

def create_sale(
    conn,
    header: SaleHeader,
    lines: Sequence[ProposedLine],
    settings: Settings,
    *,
    finalize: bool = True,
) -> Union[SaleResult, LedgerError]:
    """
    Validate and write a sale with its lines as one atomic unit.

    finalize=True (the POS path) checks stock and writes a finalized sale.
    finalize=False writes a draft: same checks except stock, snapshots taken
    now, no stock consumed until `finalize_sale`.
    """
    if not lines:
        return EmptySale()

    payment_method = normalize_payment_method(header.payment_method)
    touched = _touched_delivery_ids(lines)

    def op():
        articles = _load_articles(conn, (l.article_id for l in lines))
        deliveries = {d.id: d for d in load_deliveries(conn, touched)}
        balances = delivery_balances(conn, touched) if finalize else None

        staged = validate_sale(
            lines,
            articles,
            deliveries,
            balances,
            allow_zero_price=settings.allow_zero_price_sales,
        )
        if isinstance(staged, LedgerError):
            return staged

        now = iso_now()
        status = "finalized" if finalize else "draft"
        sale_number = generate_sale_number(conn, settings, header.date_time)
        sale_id = x(
            conn,
            """
            INSERT INTO sales (
                sale_number, date_time, payment_method, note, status, finalized_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                sale_number,
                str(header.date_time),
                payment_method,
                clean_text(header.note),
                status,
                now if finalize else None,
                now,
                now,
            ),
        )
        _insert_lines(conn, sale_id, staged, now)
        if finalize:
            _stamp_last_sold(conn, (s.article_id for s in staged), now)

        return SaleResult(sale=_load_sale(conn, sale_id), lines=tuple(get_sale_lines(conn, sale_id)))

    result = _run_locked(conn, touched, settings, op, action="create_sale")

    if isinstance(result, LedgerError):
        logger.info("sale_rejected", code=result.code, reason=result.message)
    else:
        logger.info(
            "sale_created",
            sale_id=result.sale.id,
            sale_number=result.sale.sale_number,
            status=result.sale.status,
            lines=len(result.lines),
            kg=round(result.total_kg, 3),
        )
    return result


def finalize_sale(conn, sale_id: int, settings: Settings) -> Union[SaleResult, LedgerError]:
    """Re-check a draft's lines against committed stock and finalize it."""
    draft_lines = get_sale_lines(conn, sale_id)
    touched = _touched_delivery_ids(draft_lines)

    def op():
        sale = _load_draft(conn, sale_id)
        if isinstance(sale, LedgerError):
            return sale

        # Lines may have changed since `touched` was read; BEGIN IMMEDIATE still
        # serializes this check against every other writer.
        lines = get_sale_lines(conn, sale.id)
        if not lines:
            return EmptySale()

        current = _touched_delivery_ids(lines)
        deliveries = {d.id: d for d in load_deliveries(conn, current)}
        err = check_stock(lines, deliveries, delivery_balances(conn, current))
        if err is not None:
            return err

        now = iso_now()
        x(
            conn,
            "UPDATE sales SET status='finalized', finalized_at=?, updated_at=? WHERE id=?",
            (now, now, sale.id),
        )
        _stamp_last_sold(conn, (l.article_id for l in lines), now)
        return SaleResult(sale=_load_sale(conn, sale.id), lines=tuple(lines))

    result = _run_locked(conn, touched, settings, op, action="finalize_sale")

    if isinstance(result, LedgerError):
        logger.info("sale_finalize_rejected", sale_id=int(sale_id), code=result.code, reason=result.message)
    else:
        logger.info("sale_finalized", sale_id=result.sale.id, sale_number=result.sale.sale_number)
    return result


# -------------------------
# Draft editing
# -------------------------

def _load_draft(conn, sale_id: int) -> Union[Sale, LedgerError]:
    sale = _load_sale(conn, sale_id)
    if sale is None:
        return UnknownSale(int(sale_id))
    if sale.status != "draft":
        return SaleNotDraft(sale.id, sale.status)
    return sale


def add_draft_line(conn, sale_id: int, line: ProposedLine, settings: Settings) -> Union[SaleResult, LedgerError]:
    """
    Append a line to a draft.

    The line passes the same checks as a new sale line except stock, and its
    snapshots are taken now. Existing lines are left untouched.
    """

    def op():
        sale = _load_draft(conn, sale_id)
        if isinstance(sale, LedgerError):
            return sale

        existing = get_sale_lines(conn, sale.id)
        position = max((l.position for l in existing), default=-1) + 1
        touched = _touched_delivery_ids([line])
        staged = validate_sale(
            [line],
            _load_articles(conn, [line.article_id]),
            {d.id: d for d in load_deliveries(conn, touched)},
            None,
            allow_zero_price=settings.allow_zero_price_sales,
        )
        if isinstance(staged, LedgerError):
            return staged

        now = iso_now()
        _insert_lines(conn, sale.id, [replace(staged[0], position=position)], now)
        x(conn, "UPDATE sales SET updated_at=? WHERE id=?", (now, sale.id))
        return SaleResult(sale=_load_sale(conn, sale.id), lines=tuple(get_sale_lines(conn, sale.id)))

    result = run_atomic(conn, op, action="add_draft_line", settings=settings)
    if isinstance(result, LedgerError):
        logger.info("draft_line_rejected", sale_id=int(sale_id), code=result.code, reason=result.message)
    else:
        logger.info("draft_line_added", sale_id=result.sale.id, lines=len(result.lines))
    return result


def remove_draft_line(conn, sale_id: int, line_id: int, settings: Settings) -> Union[SaleResult, LedgerError]:
    """Drop one line from a draft. A draft left without lines cannot be finalized."""

    def op():
        sale = _load_draft(conn, sale_id)
        if isinstance(sale, LedgerError):
            return sale
        if not q(conn, "SELECT 1 FROM sale_lines WHERE id=? AND sale_id=?", (int(line_id), sale.id)):
            return UnknownSaleLine(sale.id, int(line_id))

        x(conn, "DELETE FROM sale_lines WHERE id=?", (int(line_id),))
        x(conn, "UPDATE sales SET updated_at=? WHERE id=?", (iso_now(), sale.id))
        return SaleResult(sale=_load_sale(conn, sale.id), lines=tuple(get_sale_lines(conn, sale.id)))

    result = run_atomic(conn, op, action="remove_draft_line", settings=settings)
    if not isinstance(result, LedgerError):
        logger.info("draft_line_removed", sale_id=result.sale.id, line_id=int(line_id))
    return result
