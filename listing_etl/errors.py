"""Exception hierarchy shared by discovery, enrichment and storage."""
from __future__ import annotations


class ListingEtlError(Exception):
    """Base class for pipeline errors."""


class TransientFetchError(ListingEtlError):
    """Network/timeout/rate-limit failure that is worth retrying."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ListingNotFound(ListingEtlError):
    """Detail record no longer exists on the portal."""

    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class TransformError(ListingEtlError):
    """Raw record could not be normalized into a StandardProperty."""


class SinkError(ListingEtlError):
    """Ingestion sink rejected a normalized record."""


class StoreUnavailableError(ListingEtlError):
    """Queue/deduplication substrate cannot be reached. Fatal for a run."""
