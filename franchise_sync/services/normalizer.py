"""
Catalog Record Normalizer

Turns raw provider records into CanonicalProduct values.

The provider feed is inconsistent: price, stock, images and barcodes show up
in different places and with different types depending on how the product
was registered. Each field is resolved by a rule chain, an ordered tuple of
small extractors. The first extractor returning a value wins; an extractor
that does not recognise the record shape simply yields nothing.
"""
import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from franchise_sync.schemas.canonical import CanonicalProduct, CanonicalVariation

logger = logging.getLogger(__name__)

Rule = Callable[[dict], Any]

DEFAULT_PRODUCT_NAME = "Unnamed product"

# Barcode scan order: array fields, then scalar fields, then key substrings
ARRAY_BARCODE_KEYS = ("cod_barras", "codigos", "codigos_de_barras", "codigos_barras", "barcodes")
SCALAR_BARCODE_KEYS = ("codigo_barras", "codigoBarras", "barcode", "ean", "gtin", "cod_barras", "codigo")
BARCODE_NUMBER_KEYS = ("numero", "number", "codigo", "code", "valor", "value")
BARCODE_KEY_TOKENS = ("cod", "ean", "bar", "gtin")

STOCK_OBJECT_KEYS = ("estoque", "stock", "disponivel", "available", "quantidade")
VARIATION_STOCK_KEYS = ("estoque", "stock", "quantidade", "quantity", "disponivel")
IMAGE_OBJECT_KEYS = ("url", "file", "path", "src")

CENT = Decimal("0.01")
# Prices are stored as Numeric(12, 2): at most ten integer digits
PRICE_LIMIT = Decimal("1e10")

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class InvalidRecordError(ValueError):
    """Record cannot be identified (no external id)."""


def first_match(record: dict, rules: Iterable[Rule], default: Any = None) -> Any:
    """Evaluate rules in order, returning the first non-None result."""
    for rule in rules:
        try:
            value = rule(record)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError):
            value = None
        if value is not None:
            return value
    return default


def _get(data: dict, *keys: str) -> Any:
    """First non-None value among keys."""
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def as_string(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def to_cents(value: Decimal) -> Optional[Decimal]:
    """Round to cents; None when the amount does not fit a stored price."""
    if not value.is_finite():
        return None
    try:
        cents = value.quantize(CENT)
    except InvalidOperation:
        return None
    if abs(cents) >= PRICE_LIMIT:
        return None
    return cents


def parse_decimal(value: Any) -> Optional[Decimal]:
    """
    Parse a price permissively.

    Numbers pass through. Strings keep only digits, ',', '.' and '-'; when a
    comma is present it is the decimal separator ("1.234,50" -> 1234.50).
    Amounts that cannot be stored as a price come back as None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return to_cents(Decimal(str(value)))
    if isinstance(value, Decimal):
        return to_cents(value)
    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[^0-9,.\-]", "", value)
    if not cleaned:
        return None
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return None
    return to_cents(parsed)


def parse_stock(value: Any) -> Optional[int]:
    """Stock as number, numeric string or an object exposing a stock field."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value)
        if not cleaned:
            return None
        try:
            parsed = float(cleaned)
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    if isinstance(value, dict):
        for key in STOCK_OBJECT_KEYS:
            parsed = parse_stock(value.get(key))
            if parsed is not None:
                return parsed
    return None


def normalize_stock(value: Any) -> int:
    parsed = parse_stock(value)
    if parsed is None or parsed < 0:
        return 0
    return parsed


def raw_variations(record: dict) -> list[dict]:
    items = _get(record, "variacoes", "variations")
    if not isinstance(items, list):
        return []
    return [item if isinstance(item, dict) else {} for item in items]


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------

def _catalog_price(record: dict) -> Optional[Decimal]:
    catalogs = _get(record, "catalogos", "catalogs")
    prices = _get(catalogs[0], "precos", "prices")
    return parse_decimal(_get(prices, "preco", "price"))


def _first_variation_price(record: dict) -> Optional[Decimal]:
    return parse_decimal(_get(raw_variations(record)[0], "preco", "price"))


def _top_level_price(record: dict) -> Optional[Decimal]:
    return parse_decimal(_get(record, "preco", "price"))


PRICE_RULES: tuple[Rule, ...] = (_catalog_price, _first_variation_price, _top_level_price)


def extract_price(record: dict) -> Optional[Decimal]:
    return first_match(record, PRICE_RULES)


# ---------------------------------------------------------------------------
# Active flag
# ---------------------------------------------------------------------------

def _bool_field(*keys: str) -> Rule:
    def rule(record: dict) -> Optional[bool]:
        for key in keys:
            value = record.get(key)
            if isinstance(value, bool):
                return value
        return None
    return rule


ACTIVE_RULES: tuple[Rule, ...] = (
    _bool_field("ativado", "enabled"),
    _bool_field("ativo", "active"),
)


def extract_active(record: dict) -> bool:
    return first_match(record, ACTIVE_RULES, default=True)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def resolve_image_url(url: str, asset_host: str) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if _SCHEME_RE.match(url):
        return url
    return f"{asset_host.rstrip('/')}/{url.lstrip('/')}"


def _image_entry(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, dict):
        for key in IMAGE_OBJECT_KEYS:
            value = entry.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def extract_images(record: dict, asset_host: str) -> list[str]:
    raw = None
    for key in ("imagens", "fotos", "images"):
        if isinstance(record.get(key), list):
            raw = record[key]
            break
    if not raw:
        return []

    images = []
    for entry in raw:
        url = _image_entry(entry)
        if url:
            images.append(resolve_image_url(url, asset_host))
    return images


# ---------------------------------------------------------------------------
# Barcode
# ---------------------------------------------------------------------------

def barcode_value(value: Any) -> Optional[str]:
    """A barcode from a string, a number or an object with a number-like field."""
    if isinstance(value, dict):
        for key in BARCODE_NUMBER_KEYS:
            found = barcode_value(value.get(key))
            if found:
                return found
        return None
    if isinstance(value, list):
        for entry in value:
            found = barcode_value(entry)
            if found:
                return found
        return None
    return as_string(value)


def _array_barcode(item: dict) -> Optional[str]:
    for key in ARRAY_BARCODE_KEYS:
        value = item.get(key)
        if isinstance(value, list):
            found = barcode_value(value)
            if found:
                return found
    return None


def _scalar_barcode(item: dict) -> Optional[str]:
    for key in SCALAR_BARCODE_KEYS:
        value = item.get(key)
        if value is not None and not isinstance(value, list):
            found = barcode_value(value)
            if found:
                return found
    return None


def _key_scan_barcode(item: dict) -> Optional[str]:
    for key in sorted(item):
        lowered = str(key).lower()
        if any(token in lowered for token in BARCODE_KEY_TOKENS):
            found = barcode_value(item[key])
            if found:
                return found
    return None


BARCODE_RULES: tuple[Rule, ...] = (_array_barcode, _scalar_barcode, _key_scan_barcode)


def extract_barcode(item: Optional[dict]) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    return first_match(item, BARCODE_RULES)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def normalize_variation(raw: dict, index: int = 0, product_barcodes: Optional[list] = None) -> CanonicalVariation:
    barcode = extract_barcode(raw)
    if not barcode and product_barcodes and index < len(product_barcodes):
        # Some products list one barcode per variation at product level
        barcode = barcode_value(product_barcodes[index])

    return CanonicalVariation(
        id=as_string(_get(raw, "id", "codigo")),
        sku=as_string(_get(raw, "sku", "codigo", "id")),
        name=as_string(_get(raw, "nome", "name")),
        size=as_string(_get(raw, "tamanho", "size")),
        stock=normalize_stock(_get(raw, *VARIATION_STOCK_KEYS)),
        barcode=barcode,
        price=parse_decimal(_get(raw, "preco", "price")),
    )


def normalize_product(record: dict, asset_host: str) -> CanonicalProduct:
    """
    Normalize one provider record.

    Never fails on partial data: a missing price becomes None and missing
    stock becomes 0. Only a record without any identifier is rejected.
    """
    if not isinstance(record, dict):
        raise InvalidRecordError(f"Record is not an object: {type(record).__name__}")

    external_id = as_string(_get(record, "id", "codigo", "_id"))
    if not external_id:
        raise InvalidRecordError("Record has no id")

    name = as_string(_get(record, "nome", "name")) or DEFAULT_PRODUCT_NAME

    product_barcodes = record.get("cod_barras") if isinstance(record.get("cod_barras"), list) else None
    variations = []
    for index, raw in enumerate(raw_variations(record)):
        try:
            variations.append(normalize_variation(raw, index, product_barcodes))
        except Exception as e:
            logger.warning(f"Variation {index} of product {external_id} could not be normalized: {e}")
            variations.append(CanonicalVariation())

    if variations:
        stock = sum(v.stock for v in variations)
        barcode = next((v.barcode for v in variations if v.barcode), None)
    else:
        stock = normalize_stock(_get(record, "estoque", "stock"))
        barcode = extract_barcode(record)

    return CanonicalProduct(
        external_id=external_id,
        name=name,
        base_price=extract_price(record),
        stock=stock,
        active=extract_active(record),
        barcode=barcode,
        images=extract_images(record, asset_host),
        variations=variations,
    )


def normalize_page(records: list, asset_host: str) -> tuple[list[CanonicalProduct], list[str]]:
    """Normalize a page of records. Bad records are reported, never raised."""
    products = []
    errors = []
    for index, record in enumerate(records):
        try:
            products.append(normalize_product(record, asset_host))
        except Exception as e:
            errors.append(f"record {index}: {e}")
            logger.warning(f"Skipping record {index}: {e}")
    return products, errors
