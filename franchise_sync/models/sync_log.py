from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Float, ForeignKey
from sqlalchemy.sql import func
from franchise_sync.database import Base


class SyncRun(Base):
    """Log of batch sync runs for monitoring."""
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Float)
    trigger = Column(String(20), nullable=False, default="manual")  # 'manual', 'scheduled', 'webhook'
    dry_run = Column(Boolean, nullable=False, default=False)
    status = Column(String(20))  # 'success', 'failed', 'partial'

    pages_fetched = Column(Integer, default=0)
    records_fetched = Column(Integer, default=0)
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    unchanged = Column(Integer, default=0)
    conflicts = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    orphans_deactivated = Column(Integer, default=0)
    links_created = Column(Integer, default=0)
    error_message = Column(Text)


class StockMovement(Base):
    """Stock change applied outside the batch sync (sales, manual edits)."""
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    variation_id = Column(Integer, ForeignKey("variations.id", ondelete="SET NULL"))
    kind = Column(String(20), nullable=False)  # 'sale', 'manual'
    quantity = Column(Integer, nullable=False)
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    reference = Column(String(100))  # Sale id for sales
    created_at = Column(DateTime(timezone=True), server_default=func.now())
