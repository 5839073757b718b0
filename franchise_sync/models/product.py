"""
Master catalog models.

Products are identified by the provider's external id and never deleted;
a product removed upstream is only deactivated. Variations are stored as
joined rows ordered by their position in the provider feed.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from franchise_sync.database import Base


class Product(Base):
    """Master catalog entry, store independent."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)

    # Natural key from the catalog provider
    external_id = Column(String(100), unique=True, nullable=False, index=True)

    name = Column(String(255), nullable=False)
    base_price = Column(Numeric(12, 2))
    stock = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True, index=True)
    barcode = Column(String(64))

    images = Column(JSON, nullable=False, default=list)
    primary_image = Column(String(1000))

    # Bumped on every write; updates compare-and-swap on it
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_synced_at = Column(DateTime(timezone=True))

    # Relationships
    variations = relationship(
        "Variation",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="Variation.position",
    )
    links = relationship("StoreLink", back_populates="product")


class Variation(Base):
    """Sellable variation (size/colour) of a product with its own stock."""
    __tablename__ = "variations"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    external_id = Column(String(100))
    sku = Column(String(100), index=True)
    name = Column(String(255))
    size = Column(String(50))
    stock = Column(Integer, nullable=False, default=0)
    barcode = Column(String(64))

    product = relationship("Product", back_populates="variations")

    __table_args__ = (
        Index('ix_variations_product_position', 'product_id', 'position'),
    )
