"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from typing import Optional

import pytest

from ledger.config import ENV_PREFIX, load_settings
from ledger.db import connect, ensure_schema
from ledger.errors import LedgerError
from ledger.models import ProposedLine, SaleHeader
from ledger.services.allocation import create_sale
from ledger.services.articles import create_article
from ledger.services.deliveries import DeliveryInput, create_delivery
from ledger.services.qualities import create_quality


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "ledger.db"


@pytest.fixture
def conn(db_path):
    c = connect(db_path)
    ensure_schema(c)
    yield c
    c.close()


@pytest.fixture(autouse=True)
def _clean_settings_env(monkeypatch):
    for name in list(os.environ):
        if name.upper().startswith(ENV_PREFIX):
            monkeypatch.delenv(name)


@pytest.fixture
def settings(tmp_path):
    return load_settings(tmp_path / "data")


class Factory:
    """Small helpers that build catalog rows and sales through the real services."""

    def __init__(self, conn, settings):
        self.conn = conn
        self.settings = settings
        self._quality_id: Optional[int] = None

    def quality(self, name: str = "Standard"):
        q = create_quality(self.conn, name)
        assert not isinstance(q, LedgerError), q
        return q

    @property
    def default_quality_id(self) -> int:
        if self._quality_id is None:
            self._quality_id = self.quality("Default").id
        return self._quality_id

    def article(self, name: str = "A1", grams: float = 300.0):
        a = create_article(self.conn, name, grams)
        assert not isinstance(a, LedgerError), a
        return a

    def delivery(
        self,
        display_id: str,
        kg_in: float,
        cost: float = 2.0,
        invoice: Optional[str] = None,
        *,
        date: str = "2026-01-10",
        quality_id: Optional[int] = None,
        supplier: Optional[str] = None,
    ):
        d = create_delivery(
            self.conn,
            DeliveryInput(
                display_id=display_id,
                date=date,
                quality_id=quality_id if quality_id is not None else self.default_quality_id,
                kg_in=kg_in,
                unit_cost_per_kg=cost,
                invoice_number=invoice,
                supplier_name=supplier,
            ),
        )
        assert not isinstance(d, LedgerError), d
        return d

    def sale(self, *lines: ProposedLine, when: str = "2026-01-15T10:00:00", payment: str = "cash", finalize=True):
        return create_sale(
            self.conn,
            SaleHeader(date_time=when, payment_method=payment),
            list(lines),
            self.settings,
            finalize=finalize,
        )


@pytest.fixture
def make(conn, settings):
    return Factory(conn, settings)


def line(article, qty: int, price: float, real, acc=None) -> ProposedLine:
    return ProposedLine(
        article_id=article.id,
        quantity=qty,
        unit_price_eur=price,
        real_delivery_id=real.id,
        accounting_delivery_id=acc.id if acc is not None else None,
    )


def with_settings(settings, **changes):
    return settings.model_copy(update=changes)
