from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./franchise_sync.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Application
    environment: str = "development"
    api_prefix: str = "/api"

    # Catalog provider
    source_api_base: str = "https://api.facilzap.app.br"
    source_api_token: str | None = None
    source_asset_host: str = "https://arquivos.facilzap.app.br"
    source_timeout_seconds: float = 15.0
    source_page_size: int = 50

    # Batch sync
    upsert_batch_size: int = 500
    new_link_margin_percent: Decimal | None = None  # None leaves new links waiting for a margin
    reconcile_max_workers: int = 4

    # Stock cascade
    webhook_timeout_seconds: float = 5.0
    webhook_max_concurrency: int = 10
    cascade_pool_workers: int = 4

    # Sale path
    sale_update_max_attempts: int = 3
    low_stock_threshold: int = 2

    # Inbound webhook secrets (checked only when set)
    source_webhook_secret: str | None = None
    payment_webhook_secret: str | None = None

    # Scheduler
    scheduler_enabled: bool = True
    sync_cron_hour: str = "*/6"
    sync_cron_minute: str = "0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
