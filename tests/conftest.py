import threading
from typing import Dict, List, Optional, Set

import pytest

from listing_etl.config import Settings
from listing_etl.discovery.grid import Region, Viewport
from listing_etl.errors import ListingNotFound, SinkError, TransientFetchError
from listing_etl.transport import SearchPage


def make_region(label: str, lat: float = -23.5, lng: float = -46.6, index: int = 1, total: int = 1) -> Region:
    return Region(
        label=label,
        lat=lat,
        lng=lng,
        viewport=Viewport(north=lat + 0.25, south=lat - 0.25, east=lng + 0.25, west=lng - 0.25),
        index=index,
        total=total,
    )


def make_raw(listing_id: str, **overrides) -> dict:
    raw = {
        "id": listing_id,
        "type": "Apartamento",
        "bedrooms": 2,
        "bathrooms": 1,
        "area": 62,
        "rent": 2100,
        "totalCost": 2650,
        "city": "São Paulo",
        "neighbourhood": "Pinheiros",
        "address": "Rua dos Pinheiros",
        "regionName": "SP",
        "location": {"lat": -23.56, "lon": -46.68},
        "parkingSpaces": 1,
        "amenities": ["Piscina", "Varanda gourmet"],
        "imageList": ["https://img.example/1.jpg"],
        "source": "quintoandar",
        "url": f"https://www.quintoandar.com.br/imovel/{listing_id}",
    }
    raw["raw_data"] = {k: v for k, v in raw.items() if k not in ("source", "url")}
    raw.update(overrides)
    return raw


class FakePortal:
    """Shared state behind every FakeTransport handed out by ``factory``."""

    def __init__(self, regions: Optional[Dict[str, List[str]]] = None) -> None:
        self.regions: Dict[str, List[str]] = dict(regions or {})
        self.totals: Dict[str, int] = {}
        self.records: Dict[str, dict] = {}
        self.not_found: Set[str] = set()
        self.search_failures: Dict[tuple, int] = {}
        self.detail_failures: Dict[str, int] = {}
        self.search_calls: List[tuple] = []
        self.detail_calls: List[str] = []
        self.transports: List["FakeTransport"] = []
        self._lock = threading.Lock()

    def factory(self) -> "FakeTransport":
        transport = FakeTransport(self)
        with self._lock:
            self.transports.append(transport)
        return transport

    def _consume_failure(self, failures: dict, key) -> bool:
        with self._lock:
            remaining = failures.get(key, 0)
            if remaining > 0:
                failures[key] = remaining - 1
                return True
            return False

    def search(self, region: Region, offset: int, page_size: int) -> SearchPage:
        with self._lock:
            self.search_calls.append((region.label, offset))
        if self._consume_failure(self.search_failures, (region.label, offset)):
            raise TransientFetchError(f"HTTP 503 for {region.label}@{offset}", status_code=503)
        ids = self.regions.get(region.label, [])
        total = self.totals.get(region.label, len(ids))
        return SearchPage(ids=list(ids[offset:offset + page_size]), total_reported=total)

    def detail(self, listing_id: str) -> dict:
        with self._lock:
            self.detail_calls.append(listing_id)
        if listing_id in self.not_found:
            raise ListingNotFound(listing_id)
        if self._consume_failure(self.detail_failures, listing_id):
            raise TransientFetchError(f"timeout fetching {listing_id}")
        return self.records.get(listing_id) or make_raw(listing_id)


class FakeTransport:
    def __init__(self, portal: FakePortal) -> None:
        self.portal = portal
        self.rotations = 0
        self.closed = False

    def fetch_ids(self, region: Region, offset: int, page_size: int) -> SearchPage:
        return self.portal.search(region, offset, page_size)

    def fetch_detail(self, listing_id: str) -> dict:
        return self.portal.detail(listing_id)

    def rotate(self) -> None:
        self.rotations += 1

    def close(self) -> None:
        self.closed = True


class FakeSink:
    def __init__(self, failures: Optional[Dict[str, int]] = None) -> None:
        self.payloads = []
        self.failures = dict(failures or {})
        self.closed = False
        self._lock = threading.Lock()

    def ingest(self, payload) -> None:
        with self._lock:
            remaining = self.failures.get(payload.portal_id, 0)
            if remaining > 0:
                self.failures[payload.portal_id] = remaining - 1
                raise SinkError(f"ingest rejected {payload.portal_id}: HTTP 500")
            self.payloads.append(payload)

    @property
    def ids(self) -> List[str]:
        return [payload.portal_id for payload in self.payloads]

    def close(self) -> None:
        self.closed = True


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings():
    return Settings(
        request_delay=0.0,
        backoff_base=0.0,
        page_size=100,
        worker_count=2,
        pop_timeout=0.05,
    )


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
def sink():
    return FakeSink()
