from franchise_sync.models.store import Store
from franchise_sync.models.product import Product, Variation
from franchise_sync.models.store_link import StoreLink
from franchise_sync.models.webhook_endpoint import WebhookEndpoint
from franchise_sync.models.sync_log import SyncRun, StockMovement

__all__ = [
    "Store",
    "Product",
    "Variation",
    "StoreLink",
    "WebhookEndpoint",
    "SyncRun",
    "StockMovement",
]
