"""
Catalog Source Adapter

Reads the external catalog provider's product listing page by page and
hands raw records to the normalizer. This is the only module that knows the
provider's URLs and envelope shapes.
"""
import logging
from typing import Iterator, Optional
from urllib.parse import quote

import httpx

from franchise_sync.config import Settings, get_settings
from franchise_sync.exceptions import ConfigurationError, SourceFetchError, ProductNotFoundError
from franchise_sync.schemas.canonical import CanonicalProduct
from franchise_sync.services.normalizer import normalize_product

logger = logging.getLogger(__name__)


def unwrap_list(payload) -> list:
    """Accept a bare array or an envelope object with a `data` array."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return []


def unwrap_object(payload) -> Optional[dict]:
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            return data
        return payload
    return None


class SourceAdapter:
    """Paginated client for the catalog provider."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        asset_host: str,
        timeout: float = 15.0,
        page_size: int = 50,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not token:
            raise ConfigurationError("Catalog provider token is not configured (SOURCE_API_TOKEN)")
        if not base_url:
            raise ConfigurationError("Catalog provider URL is not configured (SOURCE_API_BASE)")

        self.asset_host = asset_host
        self.page_size = page_size
        self.client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None) -> "SourceAdapter":
        settings = settings or get_settings()
        return cls(
            base_url=settings.source_api_base,
            token=settings.source_api_token,
            asset_host=settings.source_asset_host,
            timeout=settings.source_timeout_seconds,
            page_size=settings.source_page_size,
            transport=transport,
        )

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: Optional[dict] = None, page: Optional[int] = None) -> httpx.Response:
        try:
            response = self.client.get(path, params=params)
        except httpx.HTTPError as e:
            raise SourceFetchError(f"Request to {path} failed: {e}", page=page) from e
        return response

    def fetch_page(self, page: int = 1, page_size: Optional[int] = None) -> tuple[list, bool]:
        """
        Fetch one page of raw records.

        Returns (records, has_more). A transport error or an error status
        raises SourceFetchError; pages are never silently dropped.
        """
        page_size = page_size or self.page_size
        response = self._get("/produtos", params={"page": page, "length": page_size}, page=page)

        if response.status_code != 200:
            raise SourceFetchError(
                f"Catalog provider returned {response.status_code} for page {page}",
                page=page,
                status_code=response.status_code,
            )

        try:
            records = unwrap_list(response.json())
        except ValueError as e:
            raise SourceFetchError(f"Invalid JSON on page {page}: {e}", page=page) from e

        logger.info(f"Fetched page {page}: {len(records)} records")
        return records, len(records) >= page_size

    def fetch_one(self, external_id: str) -> dict:
        """Fetch a single raw product record."""
        response = self._get(f"/produtos/{quote(str(external_id), safe='')}")

        if response.status_code == 404:
            raise ProductNotFoundError(external_id)
        if response.status_code != 200:
            raise SourceFetchError(
                f"Catalog provider returned {response.status_code} for product {external_id}",
                status_code=response.status_code,
            )

        try:
            record = unwrap_object(response.json())
        except ValueError as e:
            raise SourceFetchError(f"Invalid JSON for product {external_id}: {e}") from e
        if record is None:
            raise ProductNotFoundError(external_id)
        return record

    def fetch_product(self, external_id: str) -> CanonicalProduct:
        return normalize_product(self.fetch_one(external_id), self.asset_host)

    def iter_pages(self, start_page: int = 1, page_size: Optional[int] = None) -> Iterator[tuple[int, list]]:
        """Yield (page, records) in fetch order until the feed is exhausted."""
        page = start_page
        while True:
            records, has_more = self.fetch_page(page, page_size)
            if records:
                yield page, records
            if not has_more:
                break
            page += 1
