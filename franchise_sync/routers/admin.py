"""Admin API endpoints for running and inspecting the sync engine."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from franchise_sync.database import get_db
from franchise_sync.exceptions import (
    ConcurrentUpdateError,
    ConfigurationError,
    InvalidStockUpdateError,
    SourceFetchError,
    ProductNotFoundError,
    StoreNotFoundError,
)
from franchise_sync.models import SyncRun
from franchise_sync.schemas import (
    SyncRequest,
    SyncRunReport,
    SyncRunLogResponse,
    ReconcileReportInfo,
    LinkStatus,
    StockSnapshot,
)
from franchise_sync.services.link_reconciler import LinkReconciler, ReconcileReport
from franchise_sync.services.stock_cascade import (
    StockCascadeDispatcher,
    cascade_stock_update,
    load_endpoints,
)
from franchise_sync.services.sync_runner import SyncRunner
from franchise_sync.tasks.scheduler import get_scheduler_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def get_sync_runner() -> SyncRunner:
    return SyncRunner()


def get_reconciler() -> LinkReconciler:
    return LinkReconciler()


def get_dispatcher(db: Session = Depends(get_db)) -> StockCascadeDispatcher:
    try:
        return StockCascadeDispatcher(load_endpoints(db))
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _report_info(report: ReconcileReport) -> ReconcileReportInfo:
    return ReconcileReportInfo(
        store_id=report.store_id,
        store_name=report.store_name,
        preview=report.preview,
        orphans_deactivated=report.orphans_deactivated,
        links_created=report.links_created,
        total_links=report.total_links,
        active_links=report.active_links,
        error=report.error,
    )


@router.post("/sync", response_model=SyncRunReport)
def run_sync(request: SyncRequest, runner: SyncRunner = Depends(get_sync_runner)):
    """
    Run the batch sync: fetch, upsert, then reconcile every store's links.

    With dry_run nothing is written; the report shows what would change.
    """
    try:
        return runner.run(request, trigger="manual")
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ProductNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SourceFetchError as e:
        raise HTTPException(status_code=502, detail=f"Catalog provider error: {e}")


@router.get("/sync/runs", response_model=list[SyncRunLogResponse])
def list_sync_runs(limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    """Most recent sync runs first."""
    return db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()


@router.get("/links/reconcile", response_model=list[ReconcileReportInfo])
def preview_reconcile(reconciler: LinkReconciler = Depends(get_reconciler)):
    """Show what reconciliation would change in every store, without writing."""
    return [_report_info(r) for r in reconciler.reconcile_all(preview=True)]


@router.post("/links/reconcile", response_model=list[ReconcileReportInfo])
def run_reconcile(
    store_id: Optional[int] = None,
    preview: bool = False,
    reconciler: LinkReconciler = Depends(get_reconciler),
):
    """Reconcile one store, or every approved store when no store_id is given."""
    if store_id is None:
        return [_report_info(r) for r in reconciler.reconcile_all(preview=preview)]
    try:
        return [_report_info(reconciler.reconcile(store_id, preview=preview))]
    except StoreNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/links/status", response_model=LinkStatus)
def links_status(reconciler: LinkReconciler = Depends(get_reconciler)):
    return reconciler.link_status()


@router.put("/products/{external_id}/stock")
def update_stock(
    external_id: str,
    snapshot: StockSnapshot,
    db: Session = Depends(get_db),
    dispatcher: StockCascadeDispatcher = Depends(get_dispatcher),
):
    """Set stock manually and cascade it to every store. Responds before delivery."""
    try:
        update = cascade_stock_update(db, external_id, snapshot, dispatcher)
    except ProductNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStockUpdateError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "external_id": update.external_id,
        "stock_before": update.stock_before,
        "stock_after": update.stock_after,
        "endpoints": len(dispatcher.endpoints),
        "message": "Stock updated, cascade queued",
    }


@router.get("/scheduler")
def scheduler_status():
    """Get scheduler status and last run results."""
    return get_scheduler_status()
