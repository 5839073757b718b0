"""
Stock Cascade Dispatcher

Fans a product's stock change out to every downstream storefront webhook.

Deliveries run concurrently on an httpx.AsyncClient, each with its own
timeout and secret header. One endpoint failing or timing out never delays
or cancels the others; failures are only counted. Triggers (sales, manual
edits) hand the dispatch to a bounded worker pool and return immediately.
"""
import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session, selectinload

from franchise_sync.config import get_settings
from franchise_sync.database import SessionLocal
from franchise_sync.exceptions import (
    ConcurrentUpdateError,
    ConfigurationError,
    InvalidStockUpdateError,
    ProductNotFoundError,
)
from franchise_sync.models import Product, Store, StockMovement, Variation, WebhookEndpoint
from franchise_sync.schemas.canonical import CanonicalVariation, StockSnapshot, VariationKey

logger = logging.getLogger(__name__)

STOCK_UPDATED_EVENT = "product.stock.updated"
SECRET_HEADER = "X-Webhook-Secret"


@dataclass(frozen=True)
class EndpointConfig:
    url: str
    secret: Optional[str] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.url


@dataclass
class DeliveryOutcome:
    endpoint: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CascadeResult:
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    error: Optional[str] = None


class CascadeWorkerPool:
    """Bounded pool running fire-and-forget dispatches."""

    def __init__(self, max_workers: Optional[int] = None):
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args) -> Future:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers or get_settings().cascade_pool_workers,
                    thread_name_prefix="cascade",
                )
            return self._executor.submit(fn, *args)

    def shutdown(self, wait: bool = True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


# Singleton instance
cascade_pool = CascadeWorkerPool()


def snapshot_from_product(row: Product) -> StockSnapshot:
    return StockSnapshot(
        stock=row.stock,
        variations=[
            CanonicalVariation(
                id=v.external_id,
                sku=v.sku,
                name=v.name,
                size=v.size,
                stock=v.stock,
                barcode=v.barcode,
            )
            for v in row.variations
        ],
    )


def _same(a, b) -> bool:
    return str(a).strip().lower() == str(b).strip().lower()


def find_variation(variations: list[Variation], key: VariationKey) -> Optional[Variation]:
    """Locate a variation by id, or by size and SKU together, or by either alone."""
    if key.variation_id:
        return next((v for v in variations if v.external_id and _same(v.external_id, key.variation_id)), None)

    if key.size and key.sku:
        return next(
            (v for v in variations if v.size and v.sku and _same(v.size, key.size) and _same(v.sku, key.sku)),
            None,
        )
    if key.size:
        return next((v for v in variations if v.size and _same(v.size, key.size)), None)
    if key.sku:
        return next((v for v in variations if v.sku and _same(v.sku, key.sku)), None)
    return None


def variation_stock_changes(rows: list[Variation], variations: list[CanonicalVariation]) -> dict[int, int]:
    """
    Map stored variation ids to their new stock.

    Each edited variation is matched by id, size or SKU; one carrying none of
    those falls back to its position. Unmatched variations are rejected.
    """
    changes = {}
    for position, v in enumerate(variations):
        key = VariationKey(variation_id=v.id, size=v.size, sku=v.sku)
        if not key.is_empty():
            target = find_variation(rows, key)
        else:
            target = rows[position] if position < len(rows) else None
        if target is None:
            label = v.id or v.sku or v.size or f"#{position}"
            raise InvalidStockUpdateError(f"No stored variation matches {label}")
        changes[target.id] = v.stock
    return changes


def load_endpoints(db: Session) -> list[EndpointConfig]:
    """Enabled webhook endpoints of approved stores."""
    rows = (
        db.query(WebhookEndpoint, Store.name)
        .join(Store, Store.id == WebhookEndpoint.store_id)
        .filter(WebhookEndpoint.enabled.is_(True), Store.status == "approved")
        .order_by(WebhookEndpoint.id)
        .all()
    )
    return [EndpointConfig(url=endpoint.url, secret=endpoint.secret, name=store_name) for endpoint, store_name in rows]


class StockCascadeDispatcher:

    def __init__(
        self,
        endpoints: list[EndpointConfig],
        session_factory: Callable[[], Session] = SessionLocal,
        timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        pool: Optional[CascadeWorkerPool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        for endpoint in endpoints:
            if not endpoint.url:
                raise ConfigurationError(f"Webhook endpoint {endpoint.label!r} has no URL")

        settings = get_settings()
        self.endpoints = list(endpoints)
        self.session_factory = session_factory
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.max_concurrency = max_concurrency or settings.webhook_max_concurrency
        self.pool = pool or cascade_pool
        self.transport = transport

    @classmethod
    def from_db(cls, session_factory: Callable[[], Session] = SessionLocal, **kwargs) -> "StockCascadeDispatcher":
        db = session_factory()
        try:
            endpoints = load_endpoints(db)
        finally:
            db.close()
        return cls(endpoints, session_factory=session_factory, **kwargs)

    def build_payload(self, external_id: str, name: str, primary_image: Optional[str], snapshot: StockSnapshot) -> dict:
        return {
            "event": STOCK_UPDATED_EVENT,
            "data": {
                "external_id": external_id,
                "name": name,
                "stock": snapshot.stock,
                "variations": [v.model_dump(mode="json") for v in snapshot.variations],
                "primary_image": primary_image,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def dispatch(self, external_id: str, snapshot: StockSnapshot) -> CascadeResult:
        """Deliver the change to every endpoint and wait for all outcomes."""
        if not self.endpoints:
            logger.info("No downstream webhook endpoints configured, nothing to dispatch")
            return CascadeResult()

        db = self.session_factory()
        try:
            product = db.query(Product).filter(Product.external_id == str(external_id)).first()
            if product is None:
                logger.error(f"Cascade skipped, product not found: {external_id}")
                return CascadeResult(error=f"Product not found: {external_id}")
            payload = self.build_payload(product.external_id, product.name, product.primary_image, snapshot)
        finally:
            db.close()

        outcomes = asyncio.run(self._deliver_all(payload))
        result = CascadeResult(
            dispatched=len(outcomes),
            succeeded=sum(1 for o in outcomes if o.success),
            failed=sum(1 for o in outcomes if not o.success),
            outcomes=outcomes,
        )
        logger.info(f"Cascade {external_id}: {result.succeeded} delivered, {result.failed} failed")
        return result

    async def _deliver_all(self, payload: dict) -> list[DeliveryOutcome]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            tasks = [self._deliver(client, semaphore, endpoint, payload) for endpoint in self.endpoints]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for endpoint, result in zip(self.endpoints, results):
            if isinstance(result, BaseException):
                logger.error(f"Webhook to {endpoint.label} crashed: {result}")
                outcomes.append(DeliveryOutcome(endpoint=endpoint.url, success=False, error=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        endpoint: EndpointConfig,
        payload: dict,
    ) -> DeliveryOutcome:
        headers = {"Content-Type": "application/json"}
        if endpoint.secret:
            headers[SECRET_HEADER] = endpoint.secret

        async with semaphore:
            try:
                response = await client.post(endpoint.url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                error = str(e) or e.__class__.__name__
                logger.warning(f"Webhook to {endpoint.label} failed: {error}")
                return DeliveryOutcome(endpoint=endpoint.url, success=False, error=error)

        if response.is_success:
            logger.info(f"Webhook delivered to {endpoint.label}")
            return DeliveryOutcome(endpoint=endpoint.url, success=True, status_code=response.status_code)

        logger.warning(f"Webhook to {endpoint.label} returned {response.status_code}")
        return DeliveryOutcome(
            endpoint=endpoint.url,
            success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )

    def submit(self, external_id: str, snapshot: StockSnapshot) -> Future:
        """Queue the dispatch on the worker pool without waiting for it."""
        future = self.pool.submit(self.dispatch, external_id, snapshot)
        future.add_done_callback(lambda f: _log_completion(external_id, f))
        return future


def _log_completion(external_id: str, future: Future):
    error = future.exception()
    if error is not None:
        logger.error(f"Cascade dispatch for {external_id} crashed: {error}")
        return
    result = future.result()
    if result.failed:
        logger.warning(f"Cascade {external_id} finished with {result.failed} failed deliveries")


@dataclass
class CascadeUpdate:
    external_id: str
    stock_before: int
    stock_after: int
    future: Optional[Future] = None


def cascade_stock_update(
    db: Session,
    external_id: str,
    snapshot: StockSnapshot,
    dispatcher: StockCascadeDispatcher,
    max_attempts: Optional[int] = None,
) -> CascadeUpdate:
    """
    Persist a manual stock edit, then fan it out without waiting.

    Only stock changes: variations are matched to the stored ones and keep
    their catalog data; variations left out of the edit keep their stock.
    The write is compare-and-swap on Product.version and is retried against
    the fresh row when a sale or sync got there first.
    """
    max_attempts = max_attempts or get_settings().sale_update_max_attempts

    for attempt in range(1, max_attempts + 1):
        product = (
            db.query(Product)
            .options(selectinload(Product.variations))
            .filter(Product.external_id == str(external_id))
            .first()
        )
        if product is None:
            raise ProductNotFoundError(external_id)

        before = product.stock
        if product.variations:
            if not snapshot.variations:
                raise InvalidStockUpdateError(
                    f"Product {external_id} has variations, stock must be set per variation"
                )
            changes = variation_stock_changes(product.variations, snapshot.variations)
            after = sum(changes.get(v.id, v.stock) for v in product.variations)
        elif snapshot.variations:
            raise InvalidStockUpdateError(f"Product {external_id} has no variations")
        else:
            changes = {}
            after = snapshot.stock

        swapped = db.query(Product).filter(
            Product.id == product.id,
            Product.version == product.version,
        ).update(
            {"stock": after, "version": product.version + 1, "updated_at": datetime.now(timezone.utc)},
            synchronize_session=False,
        )
        if swapped == 0:
            db.rollback()
            logger.info(f"Product {external_id} changed concurrently, retrying manual edit ({attempt}/{max_attempts})")
            continue

        for variation_id, stock in changes.items():
            db.query(Variation).filter(Variation.id == variation_id).update(
                {"stock": stock}, synchronize_session=False
            )
        db.add(StockMovement(
            product_id=product.id,
            kind="manual",
            quantity=after - before,
            stock_before=before,
            stock_after=after,
        ))
        db.commit()
        logger.info(f"Stock of {product.name} set manually: {before} -> {after}")

        outgoing = snapshot_from_product(product)
        future = dispatcher.submit(product.external_id, outgoing)
        return CascadeUpdate(external_id=product.external_id, stock_before=before, stock_after=after, future=future)

    logger.error(f"Manual stock edit of {external_id} gave up after {max_attempts} conflicts")
    raise ConcurrentUpdateError(external_id, max_attempts)
