"""
Store Link Reconciler

Keeps every store's product links consistent with the master catalog:

- Orphan pass: active links to inactive products are deactivated.
- Missing pass: active products without a link get one, created inactive
  so a product never appears in a store before its operator sets a margin.

Both passes only touch link rows the rule selects; a store operator's
is_active and margin_percent on other links are never rewritten.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from franchise_sync.config import get_settings
from franchise_sync.database import SessionLocal
from franchise_sync.exceptions import StoreNotFoundError
from franchise_sync.models import Product, Store, StoreLink

logger = logging.getLogger(__name__)

_FROM_SETTINGS = object()


@dataclass
class ReconcileReport:
    store_id: int
    store_name: Optional[str] = None
    preview: bool = False
    orphans_deactivated: int = 0
    links_created: int = 0
    total_links: int = 0
    active_links: int = 0
    error: Optional[str] = None
    details: list[str] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return self.orphans_deactivated + self.links_created


class LinkReconciler:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        default_margin=_FROM_SETTINGS,
        max_workers: Optional[int] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.default_margin: Optional[Decimal] = (
            settings.new_link_margin_percent if default_margin is _FROM_SETTINGS else default_margin
        )
        self.max_workers = max_workers or settings.reconcile_max_workers

    def reconcile(self, store_id: int, preview: bool = False) -> ReconcileReport:
        """Run the orphan and missing passes for one store."""
        db = self.session_factory()
        try:
            store = db.get(Store, store_id)
            if store is None:
                raise StoreNotFoundError(store_id)

            report = ReconcileReport(store_id=store.id, store_name=store.name, preview=preview)
            self._orphan_pass(db, store.id, report)
            self._missing_pass(db, store.id, report)

            report.total_links = db.query(func.count(StoreLink.id)).filter(StoreLink.store_id == store.id).scalar()
            report.active_links = db.query(func.count(StoreLink.id)).filter(
                StoreLink.store_id == store.id, StoreLink.is_active.is_(True)
            ).scalar()

            if not report.changes:
                report.details.append("In sync")
            logger.info(
                f"Reconciled store {store.name}: {report.orphans_deactivated} orphans deactivated, "
                f"{report.links_created} links created{' (preview)' if preview else ''}"
            )
            return report
        finally:
            db.close()

    def _orphan_pass(self, db: Session, store_id: int, report: ReconcileReport):
        orphan_ids = [
            link_id
            for (link_id,) in db.query(StoreLink.id)
            .join(Product, Product.id == StoreLink.product_id)
            .filter(
                StoreLink.store_id == store_id,
                StoreLink.is_active.is_(True),
                Product.active.is_(False),
            )
            .all()
        ]
        if not orphan_ids:
            return

        report.orphans_deactivated = len(orphan_ids)
        report.details.append(f"{len(orphan_ids)} active link(s) to inactive products")
        if report.preview:
            return

        db.query(StoreLink).filter(StoreLink.id.in_(orphan_ids)).update(
            {"is_active": False, "updated_at": datetime.now(timezone.utc)},
            synchronize_session=False,
        )
        db.commit()

    def _missing_pass(self, db: Session, store_id: int, report: ReconcileReport):
        active_ids = {pid for (pid,) in db.query(Product.id).filter(Product.active.is_(True)).all()}
        linked_ids = {
            pid for (pid,) in db.query(StoreLink.product_id).filter(StoreLink.store_id == store_id).all()
        }
        missing = sorted(active_ids - linked_ids)
        if not missing:
            return

        report.links_created = len(missing)
        report.details.append(f"{len(missing)} active product(s) not linked")
        if report.preview:
            return

        now = datetime.now(timezone.utc)
        db.add_all([
            StoreLink(
                store_id=store_id,
                product_id=product_id,
                is_active=False,
                margin_percent=self.default_margin,
                linked_at=now,
                updated_at=now,
            )
            for product_id in missing
        ])
        db.commit()

    def approved_store_ids(self) -> list[int]:
        db = self.session_factory()
        try:
            return [
                store_id
                for (store_id,) in db.query(Store.id).filter(Store.status == "approved").order_by(Store.name).all()
            ]
        finally:
            db.close()

    def reconcile_all(self, preview: bool = False) -> list[ReconcileReport]:
        """Reconcile every approved store on a bounded worker pool."""
        store_ids = self.approved_store_ids()
        if not store_ids:
            return []

        def run(store_id: int) -> ReconcileReport:
            try:
                return self.reconcile(store_id, preview=preview)
            except Exception as e:
                logger.error(f"Reconciliation failed for store {store_id}: {e}")
                return ReconcileReport(store_id=store_id, preview=preview, error=str(e))

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(store_ids))) as pool:
            reports = list(pool.map(run, store_ids))

        logger.info(
            f"Reconciled {len(reports)} stores: "
            f"{sum(r.orphans_deactivated for r in reports)} orphans deactivated, "
            f"{sum(r.links_created for r in reports)} links created"
        )
        return reports

    def link_status(self) -> dict:
        db = self.session_factory()
        try:
            total = db.query(func.count(StoreLink.id)).scalar()
            active = db.query(func.count(StoreLink.id)).filter(StoreLink.is_active.is_(True)).scalar()
            return {
                "active_products": db.query(func.count(Product.id)).filter(Product.active.is_(True)).scalar(),
                "stores": db.query(func.count(Store.id)).filter(Store.status == "approved").scalar(),
                "active_links": active,
                "inactive_links": total - active,
                "total_links": total,
            }
        finally:
            db.close()
