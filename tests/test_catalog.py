from __future__ import annotations

import pytest

from conftest import line
from ledger.db import q
from ledger.errors import DuplicateArticleName, DuplicateQualityName, UnknownArticle, UnknownQuality
from ledger.services.articles import (
    activate_article,
    create_article,
    deactivate_article,
    list_articles,
    update_article,
)
from ledger.services.qualities import (
    activate_quality,
    create_quality,
    deactivate_quality,
    delete_quality,
    list_qualities,
    list_qualities_with_stats,
    quality_dependencies,
    update_quality,
)


def test_quality_names_are_unique_case_insensitively(conn):
    premium = create_quality(conn, "  Premium ")
    assert premium.name == "Premium"
    assert isinstance(create_quality(conn, "premium"), DuplicateQualityName)

    other = create_quality(conn, "Economy")
    assert isinstance(update_quality(conn, other.id, name="PREMIUM"), DuplicateQualityName)
    assert update_quality(conn, other.id, note="cheap").note == "cheap"


def test_quality_name_required(conn):
    with pytest.raises(ValueError):
        create_quality(conn, "   ")


def test_quality_activation(conn):
    qual = create_quality(conn, "Premium")
    assert not deactivate_quality(conn, qual.id).is_active
    assert list_qualities(conn, active_only=True) == []
    assert activate_quality(conn, qual.id).is_active
    assert isinstance(deactivate_quality(conn, 999), UnknownQuality)


def test_quality_stats(make, conn):
    qual = make.quality("Premium")
    make.delivery("1", kg_in=1, date="2026-01-02", quality_id=qual.id)
    make.delivery("2", kg_in=1, date="2026-03-02", quality_id=qual.id)

    stats = {s.quality.name: s for s in list_qualities_with_stats(conn)}
    assert stats["Premium"].deliveries_count == 2
    assert stats["Premium"].last_delivery_date == "2026-03-02"


def test_delete_quality_cascades(make, conn):
    doomed = make.quality("Doomed")
    kept = make.quality("Kept")
    plain = make.delivery("1A", kg_in=10, quality_id=doomed.id)
    inv_kept = make.delivery("2", kg_in=10, invoice="INV-2", quality_id=kept.id)
    inv_doomed = make.delivery("3", kg_in=10, invoice="INV-3", quality_id=doomed.id)
    a = make.article()

    make.sale(line(a, 1, 1.0, plain, acc=inv_kept))
    make.sale(line(a, 1, 1.0, inv_kept))
    make.sale(line(a, 1, 1.0, inv_doomed))

    deps = quality_dependencies(conn, doomed.id)
    assert (deps.deliveries, deps.sales) == (2, 2)

    report = delete_quality(conn, doomed.id)
    assert report.deleted_qualities == 1
    assert report.deleted_deliveries == 2
    assert report.deleted_sales == 2

    assert [r["display_id"] for r in q(conn, "SELECT display_id FROM deliveries")] == ["2"]
    assert q(conn, "SELECT COUNT(*) AS n FROM sales")[0]["n"] == 1
    assert isinstance(delete_quality(conn, doomed.id), UnknownQuality)


def test_article_lifecycle(conn):
    a = create_article(conn, "Fillet", 250)
    assert a.kg_per_piece == pytest.approx(0.25)
    assert a.pieces_per_kg == pytest.approx(4.0)
    assert isinstance(create_article(conn, "FILLET", 100), DuplicateArticleName)

    renamed = update_article(conn, a.id, name="Fillet L", grams_per_piece=400)
    assert (renamed.name, renamed.grams_per_piece) == ("Fillet L", 400.0)

    assert not deactivate_article(conn, a.id).is_active
    assert list_articles(conn, active_only=True) == []
    assert activate_article(conn, a.id).is_active
    assert [x.name for x in list_articles(conn, search="fil")] == ["Fillet L"]
    assert isinstance(update_article(conn, 999, name="x"), UnknownArticle)


@pytest.mark.parametrize("grams", [0, -10, "abc"])
def test_article_weight_must_be_positive(conn, grams):
    with pytest.raises(ValueError):
        create_article(conn, "Bad", grams)
