"""Map raw QuintoAndar detail records to StandardProperty payloads."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .config import Settings
from .errors import TransformError
from .models import IngestionPayload, StandardProperty

LOGGER = logging.getLogger(__name__)

CURRENCY = "BRL"

PROPERTY_TYPES = {
    "apartamento": "apartment",
    "casa": "house",
    "kitnet": "apartment",  # small studio
    "studio": "apartment",
    "flat": "apartment",
    "condominio": "apartment",
    "casa em condominio": "house",
    "casacondominio": "house",
    "cobertura": "apartment",  # penthouse
    "sobrado": "house",  # townhouse
    "chacara": "land",
    "fazenda": "land",
    "terreno": "land",
    "comercial": "commercial",
    "sala": "commercial",
    "loja": "commercial",
    "galpao": "commercial",
}

_AMENITY_KEYWORDS = {
    "has_balcony": ("varanda", "sacada", "balcony"),
    "has_garden": ("jardim", "quintal", "garden"),
    "has_pool": ("piscina", "pool"),
}

_ACCENTS = str.maketrans("áàâãéêíóôõúç", "aaaaeeiooouc")


def normalize_property_type(raw_type: Optional[str]) -> str:
    """Normalize Brazilian property types to standard types."""
    if not raw_type:
        return "other"
    key = raw_type.strip().lower().translate(_ACCENTS).replace("_", " ")
    return PROPERTY_TYPES.get(key, "other")


def _image_urls(raw: Dict[str, Any]) -> List[str]:
    images: List[str] = []
    for item in raw.get("imageList") or []:
        if isinstance(item, str):
            images.append(item)
        elif isinstance(item, dict) and item.get("url"):
            images.append(item["url"])
    if not images and raw.get("coverImage"):
        images.append(raw["coverImage"])
    return images


def _features(raw: Dict[str, Any]) -> List[str]:
    features: List[str] = []
    for key in ("amenities", "installations"):
        values = raw.get(key) or []
        if isinstance(values, str):
            values = [values]
        features.extend(str(v) for v in values if v)
    return features


def _has_keyword(features: Iterable[str], keywords: Iterable[str]) -> bool:
    lowered = [f.lower() for f in features]
    return any(k in f for f in lowered for k in keywords)


def _coordinates(raw: Dict[str, Any]) -> Optional[Dict[str, float]]:
    location = raw.get("location")
    if isinstance(location, dict) and location.get("lat") is not None and location.get("lon") is not None:
        return {"lat": location["lat"], "lon": location["lon"]}
    return None


def _title(raw: Dict[str, Any]) -> str:
    parts = []
    if raw.get("type"):
        parts.append(str(raw["type"]).strip().capitalize())
    if raw.get("bedrooms"):
        parts.append(f"{raw['bedrooms']} quartos")
    place = ", ".join(str(p) for p in (raw.get("neighbourhood"), raw.get("city")) if p)
    title = " ".join(parts) or "Imovel"
    return f"{title} - {place}" if place else f"{title} {raw['id']}"


class PropertyTransformer:
    """Normalizer handed to enrichment workers."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    def to_standard(self, raw: Dict[str, Any]) -> StandardProperty:
        """Build the normalized property; raises TransformError on bad input."""
        if not isinstance(raw, dict) or not raw.get("id"):
            raise TransformError("raw record has no id")

        is_sale = self.settings.business_context == "SALE"
        price = raw.get("salePrice") if is_sale else (raw.get("totalCost") or raw.get("rent"))
        features = _features(raw)
        parking = raw.get("parkingSpaces")

        data = {
            "title": _title(raw),
            "price": price,
            "currency": CURRENCY,
            "property_type": normalize_property_type(raw.get("type")),
            "transaction_type": "sale" if is_sale else "rent",
            "location": {
                "address": raw.get("address"),
                "city": raw.get("city"),
                "country": self.settings.country,
                "state": raw.get("regionName"),
                "coordinates": _coordinates(raw),
            },
            "details": {
                "bedrooms": raw.get("bedrooms"),
                "bathrooms": raw.get("bathrooms"),
                "sqm": raw.get("area"),
                "rooms": raw.get("bedrooms"),  # total rooms not provided
            },
            "features": features,
            "amenities": {
                "has_parking": bool(parking) if parking is not None else None,
                "has_elevator": raw.get("hasElevator"),
                "is_furnished": raw.get("isFurnished"),
                **{name: _has_keyword(features, words) for name, words in _AMENITY_KEYWORDS.items()},
            },
            "country_specific": {
                "neighborhood": raw.get("neighbourhood"),
                "condo_fee": raw.get("condominium"),
                "iptu_plus_condominium": raw.get("iptuPlusCondominium"),
                "total_monthly": raw.get("totalCost"),
                "rent": raw.get("rent"),
                "property_type_br": raw.get("type"),
                "visit_status": raw.get("visitStatus"),
            },
            "images": _image_urls(raw),
            "url": raw.get("url"),
        }

        try:
            return StandardProperty.model_validate(data)
        except ValidationError as exc:
            raise TransformError(f"listing {raw['id']}: {exc.error_count()} invalid field(s): {exc}") from exc

    def normalize(self, raw: Dict[str, Any]) -> IngestionPayload:
        """Wrap the normalized property in the ingestion envelope."""
        standardized = self.to_standard(raw)
        return IngestionPayload(
            portal=self.settings.portal,
            portal_id=str(raw["id"]),
            country=self.settings.country,
            data=standardized,
            raw_data=raw.get("raw_data"),
        )
