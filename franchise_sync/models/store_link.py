from sqlalchemy import Column, Integer, Boolean, Numeric, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from franchise_sync.database import Base


class StoreLink(Base):
    """
    Visibility of a master product in one store.

    is_active and margin_percent belong to the store operator. The catalog
    sync only ever creates links (inactive) and deactivates orphans.
    """
    __tablename__ = "store_links"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)

    # Store-owned fields
    is_active = Column(Boolean, nullable=False, default=False)
    margin_percent = Column(Numeric(6, 2))

    linked_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    store = relationship("Store", back_populates="links")
    product = relationship("Product", back_populates="links")

    __table_args__ = (
        UniqueConstraint("store_id", "product_id", name="uq_store_link"),
        Index("ix_store_links_store_active", "store_id", "is_active"),
    )
