from pydantic import BaseModel, Field
from datetime import datetime

from franchise_sync.schemas.canonical import VariationKey


class SyncRequest(BaseModel):
    """Batch sync trigger. Without a page the whole feed is walked."""
    page: int | None = Field(default=None, ge=1)
    page_size: int | None = Field(default=None, ge=1, le=500)
    external_id: str | None = None
    dry_run: bool = False


class StockTransitionInfo(BaseModel):
    external_id: str
    before: int
    after: int


class ReconcileReportInfo(BaseModel):
    store_id: int
    store_name: str | None = None
    preview: bool
    orphans_deactivated: int
    links_created: int
    total_links: int = 0
    active_links: int = 0
    error: str | None = None


class SyncRunReport(BaseModel):
    run_id: int | None = None
    status: str
    dry_run: bool
    started_at: datetime
    duration_seconds: float
    pages_fetched: int
    records_fetched: int
    created: int
    updated: int
    unchanged: int
    conflicts: int
    errors: list[str] = []
    transitions: list[StockTransitionInfo] = []
    stores: list[ReconcileReportInfo] = []
    summary: str


class SyncRunLogResponse(BaseModel):
    id: int
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    trigger: str
    dry_run: bool
    status: str | None
    records_fetched: int | None
    created: int | None
    updated: int | None
    unchanged: int | None
    conflicts: int | None
    errors_count: int | None
    orphans_deactivated: int | None
    links_created: int | None
    error_message: str | None = None

    class Config:
        from_attributes = True


class LinkStatus(BaseModel):
    active_products: int
    stores: int
    active_links: int
    inactive_links: int
    total_links: int


class SaleLineItem(BaseModel):
    product_id: str  # Provider external id
    variation_key: VariationKey = Field(default_factory=VariationKey)
    quantity: int = Field(gt=0)


class PaymentConfirmed(BaseModel):
    sale_id: str
    line_items: list[SaleLineItem]


class SaleLineOutcomeInfo(BaseModel):
    product_id: str
    status: str
    state: str
    stock_before: int | None = None
    stock_after: int | None = None
    dispatched: bool = False


class SaleReport(BaseModel):
    sale_id: str
    processed: int
    skipped: int
    lines: list[SaleLineOutcomeInfo]


class CatalogEvent(BaseModel):
    event: str | None = None
    produto: dict | None = None
    produtos: list[dict] | None = None
