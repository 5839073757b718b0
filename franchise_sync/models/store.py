from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from franchise_sync.database import Base


class Store(Base):
    """Downstream storefront (franchisee or reseller) that exposes master products."""
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)
    kind = Column(String(20), nullable=False, default="reseller")  # 'franchisee', 'reseller'
    status = Column(String(20), nullable=False, default="approved", index=True)  # 'approved', 'pending', 'suspended'
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    links = relationship("StoreLink", back_populates="store", cascade="all, delete-orphan")
    webhook_endpoints = relationship("WebhookEndpoint", back_populates="store", cascade="all, delete-orphan")
