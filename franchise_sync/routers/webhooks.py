"""
Inbound webhooks: confirmed payments from the checkout and product events
from the catalog provider.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from franchise_sync.config import get_settings
from franchise_sync.schemas import PaymentConfirmed, SaleReport, CatalogEvent
from franchise_sync.services.normalizer import InvalidRecordError, as_string
from franchise_sync.services.sale_stock_updater import SaleStockUpdater
from franchise_sync.services.sync_runner import SyncRunner, run_full_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

UPSERT_EVENTS = ("produto.criado", "produto.atualizado")
DELETE_EVENT = "produto.deletado"
FULL_SYNC_EVENT = "sync.full"


def get_sale_updater() -> SaleStockUpdater:
    return SaleStockUpdater()


def get_sync_runner() -> SyncRunner:
    return SyncRunner()


def _check_secret(provided: Optional[str], expected: Optional[str]):
    if expected and not (provided and secrets.compare_digest(provided, expected)):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/payment-confirmed", response_model=SaleReport)
def payment_confirmed(
    event: PaymentConfirmed,
    x_webhook_secret: Optional[str] = Header(None),
    updater: SaleStockUpdater = Depends(get_sale_updater),
):
    """Decrement stock for every line of a paid sale and cascade the changes."""
    _check_secret(x_webhook_secret, get_settings().payment_webhook_secret)
    logger.info(f"Payment confirmed for sale {event.sale_id} ({len(event.line_items)} items)")
    return updater.handle_payment_confirmed(event)


@router.post("/catalog")
def catalog_event(
    event: CatalogEvent,
    background_tasks: BackgroundTasks,
    x_webhook_secret: Optional[str] = Header(None),
    runner: SyncRunner = Depends(get_sync_runner),
):
    """Apply a product event pushed by the catalog provider."""
    _check_secret(x_webhook_secret, get_settings().source_webhook_secret)
    logger.info(f"Catalog event received: {event.event}")

    if event.event == FULL_SYNC_EVENT:
        background_tasks.add_task(run_full_sync, "webhook")
        return {"status": "queued", "event": event.event}

    records = event.produtos or ([event.produto] if event.produto else [])

    if event.event in UPSERT_EVENTS:
        if not records:
            raise HTTPException(status_code=400, detail="Event carries no product")
        created = updated = unchanged = 0
        for record in records:
            try:
                result = runner.apply_record(record)
            except InvalidRecordError as e:
                raise HTTPException(status_code=422, detail=str(e))
            created += result.created
            updated += result.updated
            unchanged += result.unchanged
        return {
            "status": "processed",
            "event": event.event,
            "created": created,
            "updated": updated,
            "unchanged": unchanged,
        }

    if event.event == DELETE_EVENT:
        ids = [as_string(record.get("id")) for record in records if isinstance(record, dict)]
        ids = [external_id for external_id in ids if external_id]
        if not ids:
            raise HTTPException(status_code=400, detail="Event carries no product id")
        deactivated = sum(1 for external_id in ids if runner.deactivate(external_id))
        return {"status": "processed", "event": event.event, "deactivated": deactivated}

    logger.warning(f"Ignoring unknown catalog event: {event.event}")
    return {"status": "ignored", "event": event.event}
