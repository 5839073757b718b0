"""
Sale-Triggered Stock Updater

Applies a confirmed sale to the master catalog and cascades the new stock.

Each line item walks LOOKUP_PRODUCT -> LOOKUP_VARIATION -> COMPUTE_NEW_STOCK
-> PERSIST -> DISPATCH_CASCADE. Stock never goes below zero, however much
was oversold. The write is compare-and-swap on Product.version so a batch
sync or another sale touching the same row forces a reload instead of a
lost update.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from franchise_sync.config import get_settings
from franchise_sync.database import SessionLocal
from franchise_sync.models import Product, Variation, StockMovement
from franchise_sync.schemas.canonical import CanonicalVariation, StockSnapshot, VariationKey
from franchise_sync.schemas.sync import PaymentConfirmed, SaleLineOutcomeInfo, SaleReport
from franchise_sync.services.stock_cascade import StockCascadeDispatcher, find_variation

logger = logging.getLogger(__name__)


class SaleState(str, Enum):
    LOOKUP_PRODUCT = "lookup_product"
    LOOKUP_VARIATION = "lookup_variation"
    COMPUTE_NEW_STOCK = "compute_new_stock"
    PERSIST = "persist"
    DISPATCH_CASCADE = "dispatch_cascade"


@dataclass
class SaleLineOutcome:
    product_id: str
    status: str  # 'updated', 'product_not_found', 'variation_not_found', 'conflict', 'error'
    state: SaleState
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    variation_id: Optional[int] = None
    dispatched: bool = False

    @property
    def updated(self) -> bool:
        return self.status == "updated"


class SaleStockUpdater:

    def __init__(
        self,
        dispatcher: Optional[StockCascadeDispatcher] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        max_attempts: Optional[int] = None,
        low_stock_threshold: Optional[int] = None,
    ):
        settings = get_settings()
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.sale_update_max_attempts
        self.low_stock_threshold = (
            settings.low_stock_threshold if low_stock_threshold is None else low_stock_threshold
        )

    def on_sale_confirmed(
        self,
        product_external_id: str,
        variation_key: Optional[VariationKey],
        quantity_sold: int,
        sale_id: Optional[str] = None,
    ) -> SaleLineOutcome:
        key = variation_key or VariationKey()
        product_external_id = str(product_external_id)

        for attempt in range(1, self.max_attempts + 1):
            db = self.session_factory()
            try:
                outcome, snapshot = self._attempt(db, product_external_id, key, quantity_sold, sale_id)
            finally:
                db.close()

            if outcome.status == "conflict":
                logger.info(f"Product {product_external_id} changed concurrently, retrying ({attempt}/{self.max_attempts})")
                continue

            if outcome.updated:
                outcome.state = SaleState.DISPATCH_CASCADE
                outcome.dispatched = self._dispatch(product_external_id, snapshot)
            return outcome

        logger.error(f"Sale {sale_id}: gave up on product {product_external_id} after {self.max_attempts} conflicts")
        return SaleLineOutcome(product_id=product_external_id, status="conflict", state=SaleState.PERSIST)

    def _attempt(
        self,
        db: Session,
        external_id: str,
        key: VariationKey,
        quantity_sold: int,
        sale_id: Optional[str],
    ) -> tuple[SaleLineOutcome, Optional[StockSnapshot]]:
        product = (
            db.query(Product)
            .options(selectinload(Product.variations))
            .filter(Product.external_id == external_id)
            .first()
        )
        if product is None:
            logger.warning(f"Sale {sale_id}: product {external_id} not found, line skipped")
            return SaleLineOutcome(external_id, "product_not_found", SaleState.LOOKUP_PRODUCT), None

        variation = None
        if product.variations:
            variation = find_variation(product.variations, key)
            if variation is None:
                logger.warning(
                    f"Sale {sale_id}: no variation of {product.name} matches "
                    f"size={key.size!r} sku={key.sku!r} id={key.variation_id!r}, line skipped"
                )
                return SaleLineOutcome(external_id, "variation_not_found", SaleState.LOOKUP_VARIATION), None

        before = variation.stock if variation is not None else product.stock
        after = max(0, before - quantity_sold)

        if variation is not None:
            variations = [
                CanonicalVariation(
                    id=v.external_id,
                    sku=v.sku,
                    name=v.name,
                    size=v.size,
                    stock=after if v.id == variation.id else v.stock,
                    barcode=v.barcode,
                )
                for v in product.variations
            ]
            snapshot = StockSnapshot(variations=variations)
        else:
            snapshot = StockSnapshot(stock=after)

        now = datetime.now(timezone.utc)
        swapped = db.query(Product).filter(
            Product.id == product.id,
            Product.version == product.version,
        ).update(
            {"stock": snapshot.stock, "version": product.version + 1, "updated_at": now},
            synchronize_session=False,
        )
        if swapped == 0:
            db.rollback()
            return SaleLineOutcome(external_id, "conflict", SaleState.PERSIST), None

        if variation is not None:
            db.query(Variation).filter(Variation.id == variation.id).update(
                {"stock": after}, synchronize_session=False
            )
        db.add(StockMovement(
            product_id=product.id,
            variation_id=variation.id if variation is not None else None,
            kind="sale",
            quantity=-quantity_sold,
            stock_before=before,
            stock_after=after,
            reference=sale_id,
        ))
        db.commit()

        label = product.name if variation is None else f"{product.name} ({variation.size or variation.sku})"
        logger.info(f"Sale {sale_id}: {label} stock {before} -> {after}")
        if after == 0:
            logger.critical(f"{label} is out of stock")
        elif after <= self.low_stock_threshold:
            logger.warning(f"{label} is low on stock: {after} left")

        outcome = SaleLineOutcome(
            product_id=external_id,
            status="updated",
            state=SaleState.PERSIST,
            stock_before=before,
            stock_after=after,
            variation_id=variation.id if variation is not None else None,
        )
        return outcome, snapshot

    def _dispatch(self, external_id: str, snapshot: StockSnapshot) -> bool:
        try:
            dispatcher = self.dispatcher or StockCascadeDispatcher.from_db(self.session_factory)
            dispatcher.submit(external_id, snapshot)
            return True
        except Exception as e:
            logger.error(f"Could not queue stock cascade for {external_id}: {e}")
            return False

    def handle_payment_confirmed(self, event: PaymentConfirmed) -> SaleReport:
        """Apply every line item of a sale; a failing line never stops the rest."""
        outcomes = []
        for item in event.line_items:
            try:
                outcome = self.on_sale_confirmed(
                    item.product_id, item.variation_key, item.quantity, sale_id=event.sale_id
                )
            except SQLAlchemyError as e:
                logger.error(f"Sale {event.sale_id}: line for product {item.product_id} failed: {e}")
                outcome = SaleLineOutcome(product_id=item.product_id, status="error", state=SaleState.PERSIST)
            outcomes.append(outcome)

        processed = sum(1 for o in outcomes if o.updated)
        logger.info(f"Sale {event.sale_id}: {processed} line(s) applied, {len(outcomes) - processed} skipped")
        return SaleReport(
            sale_id=event.sale_id,
            processed=processed,
            skipped=len(outcomes) - processed,
            lines=[
                SaleLineOutcomeInfo(
                    product_id=o.product_id,
                    status=o.status,
                    state=o.state.value,
                    stock_before=o.stock_before,
                    stock_after=o.stock_after,
                    dispatched=o.dispatched,
                )
                for o in outcomes
            ],
        )
