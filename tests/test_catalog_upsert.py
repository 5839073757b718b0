"""Tests for the batched, idempotent catalog upsert."""
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from franchise_sync.models import Product, StoreLink
from franchise_sync.schemas import CanonicalProduct, CanonicalVariation
from franchise_sync.services import catalog_upsert
from franchise_sync.services.catalog_upsert import CatalogUpsertEngine

from tests.conftest import make_link, make_product, make_store


def canonical(external_id, stock=0, price="10.00", active=True, variations=None, name=None):
    return CanonicalProduct(
        external_id=external_id,
        name=name or f"Product {external_id}",
        base_price=Decimal(price),
        stock=stock,
        active=active,
        variations=variations or [],
    )


def test_inserts_new_products(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)

    result = engine.apply([
        canonical("1", stock=3),
        canonical("2", variations=[CanonicalVariation(sku="P", stock=1), CanonicalVariation(sku="M", stock=4)]),
    ])

    assert result.created == 2
    assert result.errors == []
    row = db.query(Product).filter_by(external_id="2").one()
    assert row.stock == 5
    assert [v.sku for v in row.variations] == ["P", "M"]
    assert row.version == 1


def test_price_that_cannot_be_stored_becomes_empty(session_factory, db):
    result = CatalogUpsertEngine(session_factory).apply([
        canonical("1", price="9" * 40),
        canonical("2", price="19.99"),
    ])

    assert result.created == 2
    prices = {p.external_id: p.base_price for p in db.query(Product).all()}
    assert prices == {"1": None, "2": Decimal("19.99")}


def test_second_application_is_a_no_op(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)
    products = [
        canonical("1", stock=3),
        canonical("2", variations=[CanonicalVariation(sku="P", stock=1)]),
    ]
    engine.apply(products)

    result = engine.apply(products)

    assert result.writes == 0
    assert result.unchanged == 2
    assert {p.version for p in db.query(Product).all()} == {1}


def test_changed_stock_updates_and_records_transition(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)
    engine.apply([canonical("1", stock=3)])

    result = engine.apply([canonical("1", stock=8)])

    assert result.updated == 1
    assert [(t.external_id, t.before, t.after) for t in result.transitions] == [("1", 3, 8)]
    row = db.query(Product).filter_by(external_id="1").one()
    assert row.stock == 8
    assert row.version == 2


def test_variation_changes_are_applied(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)
    engine.apply([canonical("1", variations=[
        CanonicalVariation(sku="P", stock=1),
        CanonicalVariation(sku="M", stock=1),
    ])])

    engine.apply([canonical("1", variations=[CanonicalVariation(sku="P", stock=6)])])

    row = db.query(Product).filter_by(external_id="1").one()
    assert [(v.sku, v.stock) for v in row.variations] == [("P", 6)]
    assert row.stock == 6


def test_dry_run_writes_nothing(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)

    result = engine.apply([canonical("1", stock=3)], dry_run=True)

    assert result.created == 1
    assert db.query(Product).count() == 0


def test_duplicate_ids_last_one_wins(session_factory, db):
    engine = CatalogUpsertEngine(session_factory)

    result = engine.apply([canonical("1", stock=1), canonical("1", stock=9)])

    assert result.created == 1
    assert db.query(Product).filter_by(external_id="1").one().stock == 9


def test_store_owned_link_fields_are_untouched(session_factory, db):
    store = make_store(db)
    product = make_product(db, "1", stock=3)
    make_link(db, store, product, is_active=True, margin_percent=Decimal("35.00"))

    CatalogUpsertEngine(session_factory).apply([canonical("1", stock=0, price="12.00")])

    db.expire_all()
    link = db.query(StoreLink).one()
    assert link.is_active is True
    assert link.margin_percent == Decimal("35.00")


def test_stale_version_is_reported_as_conflict(session_factory, db, monkeypatch):
    make_product(db, "1", stock=3)
    original_diff = catalog_upsert.diff_product

    def racing_diff(row, item):
        # A sale commits between this batch's read and its write
        other = session_factory()
        other.query(Product).filter_by(external_id="1").update({"stock": 2, "version": Product.version + 1})
        other.commit()
        other.close()
        return original_diff(row, item)

    monkeypatch.setattr(catalog_upsert, "diff_product", racing_diff)

    result = CatalogUpsertEngine(session_factory).apply([canonical("1", stock=10)])

    assert result.conflicts == 1
    assert result.updated == 0
    db.expire_all()
    assert db.query(Product).filter_by(external_id="1").one().stock == 2


def test_failing_batch_stops_the_run_and_keeps_earlier_batches(session_factory, db):
    calls = []

    class FlakyEngine(CatalogUpsertEngine):
        def _apply_batch(self, session, batch, dry_run):
            calls.append(len(batch))
            if len(calls) == 2:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return super()._apply_batch(session, batch, dry_run)

    engine = FlakyEngine(session_factory, batch_size=2)
    result = engine.apply([canonical(str(i)) for i in range(5)])

    assert calls == [2, 2]
    assert result.aborted is True
    assert result.created == 2
    assert len(result.errors) == 1
    assert "batch 2" in result.errors[0]
    assert db.query(Product).count() == 2


def test_deactivate(session_factory, db):
    make_product(db, "1", stock=3)
    engine = CatalogUpsertEngine(session_factory)

    assert engine.deactivate("1") is True
    assert engine.deactivate("missing") is False
    db.expire_all()
    assert db.query(Product).filter_by(external_id="1").one().active is False
