"""Errors raised by the sync engine."""


class SyncError(Exception):
    pass


class ConfigurationError(SyncError):
    """Required configuration (credentials, URLs) is missing."""


class SourceFetchError(SyncError):
    """The catalog provider could not be reached or answered with an error."""

    def __init__(self, message: str, page: int | None = None, status_code: int | None = None):
        super().__init__(message)
        self.page = page
        self.status_code = status_code


class ProductNotFoundError(SyncError):
    def __init__(self, external_id: str):
        super().__init__(f"Product not found: {external_id}")
        self.external_id = external_id


class StoreNotFoundError(SyncError):
    def __init__(self, store_id: int):
        super().__init__(f"Store not found: {store_id}")
        self.store_id = store_id


class InvalidStockUpdateError(SyncError):
    """A manual stock edit does not fit the product's variations."""


class ConcurrentUpdateError(SyncError):
    def __init__(self, external_id: str, attempts: int):
        super().__init__(f"Product {external_id} kept changing, gave up after {attempts} attempts")
        self.external_id = external_id
