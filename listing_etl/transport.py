"""Collaborator interfaces consumed by discovery and enrichment."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Protocol

if TYPE_CHECKING:
    from .discovery.grid import Region

RawRecord = Dict[str, Any]


@dataclass
class SearchPage:
    """One page of search results for a region."""

    ids: List[str] = field(default_factory=list)
    total_reported: int = 0


class SearchTransport(Protocol):
    """Portal client used by the pipeline.

    ``fetch_ids`` and ``fetch_detail`` raise ``TransientFetchError`` for
    retryable failures; ``fetch_detail`` raises ``ListingNotFound`` when the
    listing is gone.
    """

    def fetch_ids(self, region: Region, offset: int, page_size: int) -> SearchPage:
        ...

    def fetch_detail(self, listing_id: str) -> RawRecord:
        ...

    def rotate(self) -> None:
        """Switch to a fresh outbound identity. Called between requests only."""
        ...

    def close(self) -> None:
        ...


TransportFactory = Callable[[], SearchTransport]
