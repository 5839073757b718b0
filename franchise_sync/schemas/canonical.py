"""
Canonical catalog model.

Every component speaks these types: the source adapter produces them, the
upsert engine persists them and the cascade dispatcher serializes them.
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class CanonicalVariation(BaseModel):
    id: str | None = None
    sku: str | None = None
    name: str | None = None
    size: str | None = None
    stock: int = Field(default=0, ge=0)
    barcode: str | None = None
    price: Decimal | None = None

    class Config:
        from_attributes = True


class CanonicalProduct(BaseModel):
    external_id: str
    name: str
    base_price: Decimal | None = None
    stock: int = Field(default=0, ge=0)
    active: bool = True
    barcode: str | None = None
    images: list[str] = []
    variations: list[CanonicalVariation] = []

    @model_validator(mode="after")
    def aggregate_variation_stock(self):
        # With variations, the product stock is always their sum
        if self.variations:
            self.stock = sum(v.stock for v in self.variations)
        return self

    @property
    def primary_image(self) -> str | None:
        return self.images[0] if self.images else None


class CanonicalStoreLink(BaseModel):
    store_id: int
    product_id: int
    is_active: bool = False
    margin_percent: Decimal | None = None
    linked_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class VariationKey(BaseModel):
    """Compound key locating a variation from a sale line item."""
    variation_id: str | None = None
    size: str | None = None
    sku: str | None = None

    def is_empty(self) -> bool:
        return not (self.variation_id or self.size or self.sku)


class StockSnapshot(BaseModel):
    """Freshly updated stock of one product, as sent downstream."""
    stock: int = Field(default=0, ge=0)
    variations: list[CanonicalVariation] = []

    @model_validator(mode="after")
    def aggregate_variation_stock(self):
        if self.variations:
            self.stock = sum(v.stock for v in self.variations)
        return self
