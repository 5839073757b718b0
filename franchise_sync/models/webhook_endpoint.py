from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from franchise_sync.database import Base


class WebhookEndpoint(Base):
    """Downstream URL that receives stock change notifications for a store."""
    __tablename__ = "webhook_endpoints"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text, nullable=False)
    secret = Column(String(255))  # Sent as X-Webhook-Secret
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    store = relationship("Store", back_populates="webhook_endpoints")
