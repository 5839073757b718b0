"""Tests for the downstream stock cascade."""
import json

import httpx
import pytest
from sqlalchemy.orm import Session

from franchise_sync.exceptions import ConfigurationError, InvalidStockUpdateError, ProductNotFoundError
from franchise_sync.models import Product, StockMovement, Variation
from franchise_sync.schemas import CanonicalVariation, StockSnapshot
from franchise_sync.services import stock_cascade
from franchise_sync.services.stock_cascade import (
    SECRET_HEADER,
    STOCK_UPDATED_EVENT,
    CascadeWorkerPool,
    EndpointConfig,
    StockCascadeDispatcher,
    cascade_stock_update,
    load_endpoints,
    snapshot_from_product,
)

from tests.conftest import RecordingDispatcher, make_endpoint, make_product, make_store


class Recorder:
    """Mock transport handler capturing requests; hosts in `down` are unreachable."""

    def __init__(self, down=(), status=200):
        self.down = set(down)
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host in self.down:
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": True})


def make_dispatcher(session_factory, endpoints, handler, **kwargs):
    return StockCascadeDispatcher(
        endpoints,
        session_factory=session_factory,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_one_unreachable_endpoint_does_not_affect_the_others(session_factory, db):
    make_product(db, "77", stock=3, name="Vestido Floral")
    endpoints = [EndpointConfig(url=f"https://store{i}.test/webhook", secret=f"s{i}") for i in range(4)]
    handler = Recorder(down={"store2.test"})

    result = make_dispatcher(session_factory, endpoints, handler).dispatch("77", StockSnapshot(stock=3))

    assert result.dispatched == 4
    assert result.succeeded == 3
    assert result.failed == 1
    failed = [o for o in result.outcomes if not o.success]
    assert failed[0].endpoint == "https://store2.test/webhook"


def test_payload_and_secret_header(session_factory, db):
    product = make_product(db, "77", name="Vestido Floral")
    product.primary_image = "https://cdn.test/77.jpg"
    db.commit()
    handler = Recorder()
    snapshot = StockSnapshot(variations=[
        CanonicalVariation(sku="P", size="P", stock=1),
        CanonicalVariation(sku="M", size="M", stock=2),
    ])

    make_dispatcher(
        session_factory, [EndpointConfig(url="https://store.test/hook", secret="shh")], handler
    ).dispatch("77", snapshot)

    request = handler.requests[0]
    assert request.method == "POST"
    assert request.headers[SECRET_HEADER] == "shh"
    body = json.loads(request.content)
    assert body["event"] == STOCK_UPDATED_EVENT
    assert body["data"]["external_id"] == "77"
    assert body["data"]["name"] == "Vestido Floral"
    assert body["data"]["stock"] == 3
    assert body["data"]["primary_image"] == "https://cdn.test/77.jpg"
    assert [v["stock"] for v in body["data"]["variations"]] == [1, 2]
    assert "timestamp" in body


def test_error_status_counts_as_failure(session_factory, db):
    make_product(db, "1")

    result = make_dispatcher(
        session_factory, [EndpointConfig(url="https://store.test/hook")], Recorder(status=500)
    ).dispatch("1", StockSnapshot(stock=0))

    assert result.failed == 1
    assert result.outcomes[0].status_code == 500


def test_timeout_counts_as_failure(session_factory, db):
    make_product(db, "1")

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = make_dispatcher(
        session_factory, [EndpointConfig(url="https://store.test/hook")], slow
    ).dispatch("1", StockSnapshot(stock=0))

    assert result.failed == 1
    assert result.succeeded == 0


def test_zero_endpoints_is_a_no_op(session_factory):
    handler = Recorder()

    result = make_dispatcher(session_factory, [], handler).dispatch("1", StockSnapshot(stock=1))

    assert (result.dispatched, result.succeeded, result.failed) == (0, 0, 0)
    assert handler.requests == []


def test_unknown_product_reports_error(session_factory):
    result = make_dispatcher(
        session_factory, [EndpointConfig(url="https://store.test/hook")], Recorder()
    ).dispatch("missing", StockSnapshot(stock=1))

    assert result.dispatched == 0
    assert "missing" in result.error


def test_endpoint_without_url_is_rejected(session_factory):
    with pytest.raises(ConfigurationError):
        StockCascadeDispatcher([EndpointConfig(url="", name="Broken store")], session_factory=session_factory)


def test_submit_runs_on_the_worker_pool(session_factory, db):
    make_product(db, "1")
    pool = CascadeWorkerPool(max_workers=1)
    handler = Recorder()
    dispatcher = make_dispatcher(
        session_factory, [EndpointConfig(url="https://store.test/hook")], handler, pool=pool
    )

    try:
        result = dispatcher.submit("1", StockSnapshot(stock=4)).result(timeout=10)
    finally:
        pool.shutdown()

    assert result.succeeded == 1
    assert len(handler.requests) == 1


def test_load_endpoints_only_enabled_of_approved_stores(db):
    approved = make_store(db, "Approved")
    suspended = make_store(db, "Suspended", status="suspended")
    make_endpoint(db, approved, "https://a.test/hook", secret="a")
    make_endpoint(db, approved, "https://a.test/disabled", enabled=False)
    make_endpoint(db, suspended, "https://s.test/hook")

    endpoints = load_endpoints(db)

    assert endpoints == [EndpointConfig(url="https://a.test/hook", secret="a", name="Approved")]


def test_manual_update_persists_then_submits(db):
    make_product(db, "1", stock=3)
    dispatcher = RecordingDispatcher()

    update = cascade_stock_update(db, "1", StockSnapshot(stock=7), dispatcher)

    assert (update.stock_before, update.stock_after) == (3, 7)
    row = db.query(Product).filter_by(external_id="1").one()
    assert row.stock == 7
    assert row.version == 2
    movement = db.query(StockMovement).one()
    assert (movement.kind, movement.quantity) == ("manual", 4)
    assert [external_id for external_id, _ in dispatcher.calls] == ["1"]


def test_manual_update_with_variations(db):
    make_product(db, "1", variations=[{"sku": "P", "size": "P", "stock": 1}, {"sku": "M", "size": "M", "stock": 1}])
    snapshot = StockSnapshot(variations=[
        CanonicalVariation(sku="P", size="P", stock=5),
        CanonicalVariation(sku="M", size="M", stock=0),
    ])

    cascade_stock_update(db, "1", snapshot, RecordingDispatcher())

    row = db.query(Product).filter_by(external_id="1").one()
    assert row.stock == 5
    assert snapshot_from_product(row).variations[0].stock == 5


def test_manual_update_unknown_product(db):
    with pytest.raises(ProductNotFoundError):
        cascade_stock_update(db, "missing", StockSnapshot(stock=1), RecordingDispatcher())


def test_manual_update_changes_stock_only(db):
    make_product(db, "1", variations=[
        {"external_id": "v1", "sku": "P", "size": "P", "name": "Vestido P", "barcode": "789", "stock": 1},
        {"external_id": "v2", "sku": "M", "size": "M", "stock": 2},
    ])
    dispatcher = RecordingDispatcher()

    update = cascade_stock_update(db, "1", StockSnapshot(variations=[CanonicalVariation(id="v1", stock=5)]), dispatcher)

    assert update.stock_after == 7
    row = db.query(Product).filter_by(external_id="1").one()
    assert [(v.external_id, v.sku, v.size, v.name, v.barcode, v.stock) for v in row.variations] == [
        ("v1", "P", "P", "Vestido P", "789", 5),
        ("v2", "M", "M", None, None, 2),
    ]
    assert row.stock == 7
    _, sent = dispatcher.calls[0]
    assert sent.stock == 7
    assert [(v.sku, v.stock) for v in sent.variations] == [("P", 5), ("M", 2)]


def test_manual_update_rejects_unknown_variation(db):
    make_product(db, "1", variations=[{"sku": "P", "size": "P", "stock": 1}])
    dispatcher = RecordingDispatcher()

    with pytest.raises(InvalidStockUpdateError):
        cascade_stock_update(db, "1", StockSnapshot(variations=[CanonicalVariation(sku="GG", stock=4)]), dispatcher)

    db.expire_all()
    assert db.query(Variation).one().stock == 1
    assert dispatcher.calls == []


def test_manual_update_needs_per_variation_stock(db):
    make_product(db, "1", variations=[{"sku": "P", "size": "P", "stock": 1}])

    with pytest.raises(InvalidStockUpdateError):
        cascade_stock_update(db, "1", StockSnapshot(stock=9), RecordingDispatcher())


def test_manual_update_retries_after_concurrent_sale(db, monkeypatch):
    product = make_product(db, "1", variations=[
        {"sku": "A", "size": "P", "stock": 10},
        {"sku": "B", "size": "M", "stock": 4},
    ])
    product_id = product.id
    original = stock_cascade.variation_stock_changes
    raced = []

    def racing_changes(rows, variations):
        # A sale of B commits after this attempt read the row
        if not raced:
            raced.append(True)
            other = Session(bind=db.get_bind())
            other.query(Variation).filter_by(product_id=product_id, sku="B").update({"stock": 3})
            other.query(Product).filter_by(id=product_id).update({"stock": 13, "version": Product.version + 1})
            other.commit()
            other.close()
        return original(rows, variations)

    monkeypatch.setattr(stock_cascade, "variation_stock_changes", racing_changes)

    update = cascade_stock_update(
        db, "1", StockSnapshot(variations=[CanonicalVariation(sku="A", stock=6)]), RecordingDispatcher()
    )

    assert (update.stock_before, update.stock_after) == (13, 9)
    db.expire_all()
    row = db.query(Product).filter_by(external_id="1").one()
    assert row.stock == 9
    assert row.version == 3
    assert [v.stock for v in row.variations] == [6, 3]
