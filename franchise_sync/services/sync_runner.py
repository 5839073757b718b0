"""
Batch sync pipeline: Source Adapter -> Catalog Upsert Engine -> Link Reconciler.

Pages are fetched, normalized and upserted one at a time. Record level
problems end up in the report's error list; a page that cannot be fetched
or a batch that cannot be written stops the run. Every run, successful or
not, leaves a SyncRun row behind.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from franchise_sync.config import get_settings
from franchise_sync.database import SessionLocal
from franchise_sync.exceptions import SyncError, SourceFetchError
from franchise_sync.models import SyncRun
from franchise_sync.schemas.sync import (
    SyncRequest,
    SyncRunReport,
    StockTransitionInfo,
    ReconcileReportInfo,
)
from franchise_sync.services.catalog_upsert import CatalogUpsertEngine, UpsertResult
from franchise_sync.services.link_reconciler import LinkReconciler, ReconcileReport
from franchise_sync.services.normalizer import normalize_page, normalize_product
from franchise_sync.services.source_adapter import SourceAdapter

logger = logging.getLogger(__name__)


def summarize(result: UpsertResult) -> str:
    """Short human summary such as '480 updated, 3 errors'."""
    parts = []
    for label, count in (
        ("created", result.created),
        ("updated", result.updated),
        ("unchanged", result.unchanged),
        ("conflicts", result.conflicts),
        ("errors", len(result.errors)),
    ):
        if count:
            parts.append(f"{count} {label}")
    return ", ".join(parts) or "no products"


class SyncRunner:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        adapter_factory: Optional[Callable[[], SourceAdapter]] = None,
        upsert_engine: Optional[CatalogUpsertEngine] = None,
        reconciler: Optional[LinkReconciler] = None,
    ):
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory or SourceAdapter.from_settings
        self.upsert_engine = upsert_engine or CatalogUpsertEngine(session_factory)
        self.reconciler = reconciler or LinkReconciler(session_factory)

    def run(self, request: Optional[SyncRequest] = None, trigger: str = "manual") -> SyncRunReport:
        """
        Run the batch pipeline.

        With `external_id` only that product is synced, with `page` only that
        page; otherwise the whole feed is walked. ConfigurationError and
        SourceFetchError are re-raised after the run has been logged.
        """
        request = request or SyncRequest()
        started_at = datetime.now(timezone.utc)
        result = UpsertResult()
        pages_fetched = 0
        records_fetched = 0
        stores: list[ReconcileReport] = []
        failure: Optional[SyncError] = None

        logger.info(f"Starting {trigger} sync{' (dry run)' if request.dry_run else ''}")

        try:
            with self.adapter_factory() as adapter:
                if request.external_id:
                    record = adapter.fetch_one(request.external_id)
                    pages_fetched, records_fetched = 1, 1
                    products, errors = normalize_page([record], adapter.asset_host)
                    result.errors.extend(f"product {request.external_id}: {error}" for error in errors)
                    result.merge(self.upsert_engine.apply(products, dry_run=request.dry_run))
                else:
                    if request.page:
                        records, _ = adapter.fetch_page(request.page, request.page_size)
                        pages = [(request.page, records)]
                    else:
                        pages = adapter.iter_pages(page_size=request.page_size)

                    for page, records in pages:
                        pages_fetched += 1
                        records_fetched += len(records)
                        products, errors = normalize_page(records, adapter.asset_host)
                        result.errors.extend(f"page {page}: {error}" for error in errors)
                        result.merge(self.upsert_engine.apply(products, dry_run=request.dry_run))
                        if result.aborted:
                            break

            if not result.aborted:
                stores = self.reconciler.reconcile_all(preview=request.dry_run)
        except SyncError as e:
            logger.error(f"Sync failed: {e}")
            result.errors.append(str(e))
            failure = e

        if failure is not None or result.aborted:
            status = "failed"
        elif result.errors or any(s.error for s in stores):
            status = "partial"
        else:
            status = "success"

        completed_at = datetime.now(timezone.utc)
        report = SyncRunReport(
            status=status,
            dry_run=request.dry_run,
            started_at=started_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            pages_fetched=pages_fetched,
            records_fetched=records_fetched,
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            conflicts=result.conflicts,
            errors=result.errors,
            transitions=[
                StockTransitionInfo(external_id=t.external_id, before=t.before, after=t.after)
                for t in result.transitions
            ],
            stores=[
                ReconcileReportInfo(
                    store_id=s.store_id,
                    store_name=s.store_name,
                    preview=s.preview,
                    orphans_deactivated=s.orphans_deactivated,
                    links_created=s.links_created,
                    total_links=s.total_links,
                    active_links=s.active_links,
                    error=s.error,
                )
                for s in stores
            ],
            summary=summarize(result),
        )
        report.run_id = self._record(report, trigger, completed_at, failure)
        logger.info(f"Sync {status} in {report.duration_seconds:.1f}s: {report.summary}")

        if failure is not None:
            raise failure
        return report

    def _record(self, report: SyncRunReport, trigger: str, completed_at: datetime, failure: Optional[Exception]) -> int:
        db = self.session_factory()
        try:
            run = SyncRun(
                started_at=report.started_at,
                completed_at=completed_at,
                duration_seconds=report.duration_seconds,
                trigger=trigger,
                dry_run=report.dry_run,
                status=report.status,
                pages_fetched=report.pages_fetched,
                records_fetched=report.records_fetched,
                created=report.created,
                updated=report.updated,
                unchanged=report.unchanged,
                conflicts=report.conflicts,
                errors_count=len(report.errors),
                orphans_deactivated=sum(s.orphans_deactivated for s in report.stores),
                links_created=sum(s.links_created for s in report.stores),
                error_message=str(failure) if failure else ("; ".join(report.errors[:20]) or None),
            )
            db.add(run)
            db.commit()
            return run.id
        finally:
            db.close()

    def apply_record(self, record: dict) -> UpsertResult:
        """Upsert one raw provider record pushed by a catalog event."""
        product = normalize_product(record, get_settings().source_asset_host)
        result = self.upsert_engine.apply([product])
        if result.created or result.updated:
            self.reconciler.reconcile_all()
        return result

    def deactivate(self, external_id: str) -> bool:
        """Deactivate a product deleted upstream and drop it from every store."""
        found = self.upsert_engine.deactivate(external_id)
        if found:
            self.reconciler.reconcile_all()
        return found


def run_full_sync(trigger: str = "scheduled") -> Optional[SyncRunReport]:
    """Entry point for the scheduler and background tasks; never raises."""
    try:
        return SyncRunner().run(trigger=trigger)
    except SyncError as e:
        logger.error(f"{trigger.capitalize()} sync did not complete: {e}")
        return None
