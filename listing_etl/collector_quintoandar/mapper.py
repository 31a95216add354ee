"""Request builders and response parsers for the QuintoAndar search APIs."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..discovery.grid import Region
from ..transport import RawRecord, SearchPage

DETAIL_FIELDS: List[str] = [
    "id", "rent", "salePrice", "forRent", "forSale", "bedrooms", "bathrooms",
    "area", "totalCost", "city", "address", "neighbourhood", "type", "coverImage",
    "parkingSpaces", "condominium", "iptuPlusCondominium", "location", "imageList",
    "amenities", "installations", "visitStatus", "hasElevator", "isFurnished",
    "regionName", "countryCode",
]


def build_search_params(
    region: Region,
    offset: int,
    page_size: int,
    *,
    business_context: str,
    device_id: str,
) -> Dict[str, str]:
    """Query parameters for the coordinates search endpoint."""
    viewport = region.viewport
    return {
        "context.mapShowing": "true",
        "context.listShowing": "true",
        "context.deviceId": device_id,
        "context.numPhotos": "12",
        "context.isSSR": "false",
        "filters.businessContext": business_context,
        "filters.location.coordinate.lat": str(region.lat),
        "filters.location.coordinate.lng": str(region.lng),
        "filters.location.countryCode": "BR",
        "filters.availability": "ANY",
        "filters.occupancy": "ANY",
        "filters.enableFlexibleSearch": "true",
        "filters.location.viewport.north": str(viewport.north),
        "filters.location.viewport.south": str(viewport.south),
        "filters.location.viewport.east": str(viewport.east),
        "filters.location.viewport.west": str(viewport.west),
        "pagination.offset": str(offset),
        "pagination.pageSize": str(page_size),
    }


def build_detail_params(listing_id: str, *, business_context: str) -> List[Tuple[str, str]]:
    """Query parameters for the yellow-pages detail endpoint (``return`` repeats)."""
    params = [
        ("house_ids", listing_id),
        ("availability", "any"),
        ("business_context", business_context),
    ]
    params.extend(("return", field) for field in DETAIL_FIELDS)
    return params


def extract_hits(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    hits = resp.get("hits") if isinstance(resp, dict) else None
    if not isinstance(hits, dict) or not isinstance(hits.get("hits"), list):
        return []
    return [hit for hit in hits["hits"] if isinstance(hit, dict)]


def _total(resp: Dict[str, Any]) -> int:
    total = (resp.get("hits") or {}).get("total")
    if isinstance(total, dict):
        total = total.get("value")
    try:
        return int(total or 0)
    except (TypeError, ValueError):
        return 0


def to_search_page(resp: Dict[str, Any]) -> SearchPage:
    """A response without hits is an empty region (total 0)."""
    hits = extract_hits(resp)
    if not hits and not isinstance((resp or {}).get("hits"), dict):
        return SearchPage(ids=[], total_reported=0)
    ids = [str(hit["_id"]) for hit in hits if hit.get("_id") is not None]
    return SearchPage(ids=ids, total_reported=_total(resp))


def to_raw_record(resp: Dict[str, Any], *, url_template: str, source: str) -> Optional[RawRecord]:
    """Merge the first detail hit into a flat raw record, or None if absent."""
    hits = extract_hits(resp)
    if not hits:
        return None
    hit = hits[0]
    listing_id = str(hit.get("_id") or (hit.get("_source") or {}).get("id") or "")
    if not listing_id:
        return None
    fields = dict(hit.get("_source") or {})
    return {
        **fields,
        "id": listing_id,
        "source": source,
        "url": url_template.format(id=listing_id),
        "raw_data": fields,
    }
