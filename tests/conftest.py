"""
Pytest configuration and shared fixtures for the sync engine tests.
"""
import os
import tempfile
from concurrent.futures import Future
from decimal import Decimal

os.environ.setdefault("SCHEDULER_ENABLED", "false")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import franchise_sync.models  # noqa: F401
from franchise_sync.database import Base, get_db
from franchise_sync.models import Product, Variation, Store, StoreLink, WebhookEndpoint

ASSET_HOST = "https://arquivos.facilzap.app.br"


@pytest.fixture(scope='function')
def engine():
    """Fresh SQLite database file for each test."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app(session_factory):
    """FastAPI app wired to the test database. Lifespan is not run."""
    from franchise_sync.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


class RecordingDispatcher:
    """Stands in for StockCascadeDispatcher, recording submitted cascades."""

    def __init__(self, endpoints=None):
        self.endpoints = endpoints or []
        self.calls = []

    def submit(self, external_id, snapshot):
        self.calls.append((external_id, snapshot))
        future = Future()
        future.set_result(None)
        return future


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def make_store(db, name="Loja Centro", status="approved", kind="franchisee"):
    store = Store(name=name, slug=name.lower().replace(" ", "-"), status=status, kind=kind)
    db.add(store)
    db.commit()
    return store


def make_product(db, external_id, stock=0, active=True, variations=None, name=None, price="99.90"):
    product = Product(
        external_id=str(external_id),
        name=name or f"Product {external_id}",
        base_price=Decimal(price) if price is not None else None,
        stock=stock,
        active=active,
        images=[],
        version=1,
    )
    if variations:
        product.variations = [
            Variation(position=i, **fields) for i, fields in enumerate(variations)
        ]
        product.stock = sum(v.get("stock", 0) for v in variations)
    db.add(product)
    db.commit()
    return product


def make_link(db, store, product, is_active=True, margin_percent=None):
    link = StoreLink(store_id=store.id, product_id=product.id, is_active=is_active, margin_percent=margin_percent)
    db.add(link)
    db.commit()
    return link


def make_endpoint(db, store, url, secret=None, enabled=True):
    endpoint = WebhookEndpoint(store_id=store.id, url=url, secret=secret, enabled=enabled)
    db.add(endpoint)
    db.commit()
    return endpoint


def json_transport(routes):
    """MockTransport answering GET requests by path from a dict of (status, body)."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path
        if request.url.params.get("page"):
            key = f"{key}?page={request.url.params['page']}"
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = routes[key]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)
