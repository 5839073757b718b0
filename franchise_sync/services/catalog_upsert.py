"""
Catalog Upsert Engine

Diffs normalized products against the master catalog and writes only what
changed. Writes happen in fixed-size batches, one transaction per batch:
a failing batch stops the run, batches already committed stay committed.

Updates are compare-and-swap on Product.version. If the sale path changed a
row after this batch read it, the batch leaves the row alone and reports a
conflict; the next run picks it up again.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from franchise_sync.config import get_settings
from franchise_sync.database import SessionLocal
from franchise_sync.models import Product, Variation
from franchise_sync.schemas.canonical import CanonicalProduct, CanonicalVariation
from franchise_sync.services.normalizer import to_cents

logger = logging.getLogger(__name__)


@dataclass
class StockTransition:
    external_id: str
    before: int
    after: int


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    transitions: list[StockTransition] = field(default_factory=list)
    aborted: bool = False

    def merge(self, other: "UpsertResult"):
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.conflicts += other.conflicts
        self.errors.extend(other.errors)
        self.transitions.extend(other.transitions)
        self.aborted = self.aborted or other.aborted

    @property
    def writes(self) -> int:
        return self.created + self.updated


def _money(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return to_cents(Decimal(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _variation_signature(v) -> tuple:
    external_id = v.id if isinstance(v, CanonicalVariation) else v.external_id
    return (external_id, v.sku, v.name, v.size, v.stock, v.barcode)


def diff_product(row: Product, item: CanonicalProduct) -> tuple[dict, bool]:
    """Return (changed product columns, variations changed)."""
    wanted = {
        "name": item.name,
        "base_price": _money(item.base_price),
        "stock": item.stock,
        "active": item.active,
        "barcode": item.barcode,
        "images": list(item.images),
        "primary_image": item.primary_image,
    }
    current = {
        "name": row.name,
        "base_price": _money(row.base_price),
        "stock": row.stock,
        "active": row.active,
        "barcode": row.barcode,
        "images": list(row.images or []),
        "primary_image": row.primary_image,
    }
    changes = {key: value for key, value in wanted.items() if current[key] != value}

    variations_changed = (
        [_variation_signature(v) for v in row.variations]
        != [_variation_signature(v) for v in item.variations]
    )
    return changes, variations_changed


def _new_variation(product_id: Optional[int], position: int, v: CanonicalVariation) -> Variation:
    return Variation(
        product_id=product_id,
        position=position,
        external_id=v.id,
        sku=v.sku,
        name=v.name,
        size=v.size,
        stock=v.stock,
        barcode=v.barcode,
    )


def apply_variations(db: Session, row: Product, variations: list[CanonicalVariation]):
    """Update variation rows in place by position, adding or removing the tail."""
    existing = list(row.variations)
    for position, v in enumerate(variations):
        if position < len(existing):
            target = existing[position]
            target.external_id = v.id
            target.sku = v.sku
            target.name = v.name
            target.size = v.size
            target.stock = v.stock
            target.barcode = v.barcode
        else:
            db.add(_new_variation(row.id, position, v))
    for extra in existing[len(variations):]:
        db.delete(extra)


class CatalogUpsertEngine:
    """Idempotent, batched persistence of canonical products."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.batch_size = batch_size or get_settings().upsert_batch_size

    def apply(self, products: Iterable[CanonicalProduct], dry_run: bool = False) -> UpsertResult:
        # Last occurrence of an external id wins
        unique: dict[str, CanonicalProduct] = {}
        for product in products:
            unique[product.external_id] = product
        items = list(unique.values())

        result = UpsertResult()
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            batch_number = start // self.batch_size + 1
            db = self.session_factory()
            try:
                batch_result = self._apply_batch(db, batch, dry_run)
                if dry_run:
                    db.rollback()
                else:
                    db.commit()
                result.merge(batch_result)
                logger.info(
                    f"Upsert batch {batch_number}: {batch_result.created} created, "
                    f"{batch_result.updated} updated, {batch_result.unchanged} unchanged, "
                    f"{batch_result.conflicts} conflicts{' (dry run)' if dry_run else ''}"
                )
            except SQLAlchemyError as e:
                db.rollback()
                message = f"batch {batch_number} ({len(batch)} products) failed: {e}"
                logger.error(f"Upsert {message}; remaining batches skipped")
                result.errors.append(message)
                result.aborted = True
                break
            finally:
                db.close()

        for transition in result.transitions:
            logger.info(f"Stock {transition.external_id}: {transition.before} -> {transition.after}")
        return result

    def _apply_batch(self, db: Session, batch: list[CanonicalProduct], dry_run: bool) -> UpsertResult:
        result = UpsertResult()
        now = datetime.now(timezone.utc)

        ids = [item.external_id for item in batch]
        existing = {
            row.external_id: row
            for row in db.query(Product)
            .options(selectinload(Product.variations))
            .filter(Product.external_id.in_(ids))
            .all()
        }

        for item in batch:
            row = existing.get(item.external_id)

            if row is None:
                if not dry_run:
                    self._insert(db, item, now)
                result.created += 1
                continue

            changes, variations_changed = diff_product(row, item)
            if not changes and not variations_changed:
                result.unchanged += 1
                continue

            transition = None
            if row.stock != item.stock:
                transition = StockTransition(item.external_id, row.stock, item.stock)

            if not dry_run:
                swapped = db.query(Product).filter(
                    Product.id == row.id,
                    Product.version == row.version,
                ).update(
                    {**changes, "version": row.version + 1, "last_synced_at": now, "updated_at": now},
                    synchronize_session=False,
                )
                if swapped == 0:
                    logger.warning(f"Product {item.external_id} changed during sync, skipping stale write")
                    result.conflicts += 1
                    continue
                if variations_changed:
                    apply_variations(db, row, item.variations)

            if transition:
                result.transitions.append(transition)
            result.updated += 1

        return result

    def _insert(self, db: Session, item: CanonicalProduct, now: datetime):
        row = Product(
            external_id=item.external_id,
            name=item.name,
            base_price=_money(item.base_price),
            stock=item.stock,
            active=item.active,
            barcode=item.barcode,
            images=list(item.images),
            primary_image=item.primary_image,
            version=1,
            last_synced_at=now,
        )
        row.variations = [_new_variation(None, position, v) for position, v in enumerate(item.variations)]
        db.add(row)

    def deactivate(self, external_id: str) -> bool:
        """Mark a product removed upstream as inactive. Returns False if unknown."""
        db = self.session_factory()
        try:
            updated = db.query(Product).filter(Product.external_id == str(external_id)).update(
                {"active": False, "version": Product.version + 1, "updated_at": datetime.now(timezone.utc)},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

        if updated:
            logger.info(f"Product {external_id} deactivated")
        else:
            logger.warning(f"Deactivation requested for unknown product {external_id}")
        return bool(updated)
