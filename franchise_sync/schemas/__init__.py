from franchise_sync.schemas.canonical import (
    CanonicalProduct,
    CanonicalVariation,
    CanonicalStoreLink,
    VariationKey,
    StockSnapshot,
)
from franchise_sync.schemas.sync import (
    SyncRequest,
    SyncRunReport,
    SyncRunLogResponse,
    ReconcileReportInfo,
    LinkStatus,
    PaymentConfirmed,
    SaleLineItem,
    SaleReport,
    CatalogEvent,
)

__all__ = [
    "CanonicalProduct", "CanonicalVariation", "CanonicalStoreLink", "VariationKey", "StockSnapshot",
    "SyncRequest", "SyncRunReport", "SyncRunLogResponse", "ReconcileReportInfo",
    "LinkStatus", "PaymentConfirmed", "SaleLineItem", "SaleReport",
    "CatalogEvent",
]
