"""Pydantic models for normalized, portal-agnostic property records."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class Coordinates(BaseModel):
    lat: float
    lon: float


class Location(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    country: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    coordinates: Optional[Coordinates] = None

    @field_validator("country")
    @classmethod
    def _country_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("country must not be empty")
        return value


class Details(BaseModel):
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    sqm: Optional[float] = None
    rooms: Optional[int] = None


class Amenities(BaseModel):
    has_parking: Optional[bool] = None
    has_balcony: Optional[bool] = None
    has_garden: Optional[bool] = None
    has_pool: Optional[bool] = None
    has_elevator: Optional[bool] = None
    is_furnished: Optional[bool] = None


class StandardProperty(BaseModel):
    title: str = Field(min_length=1)
    price: Optional[float] = None
    currency: str = Field(min_length=3, max_length=3)
    property_type: str = Field(min_length=1)
    transaction_type: Literal["sale", "rent"]
    location: Location
    details: Details = Field(default_factory=Details)
    features: List[str] = Field(default_factory=list)
    amenities: Amenities = Field(default_factory=Amenities)
    country_specific: Dict[str, Any] = Field(default_factory=dict)
    images: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    url: Optional[str] = None
    status: str = "active"


class IngestionPayload(BaseModel):
    """Envelope sent to the ingestion service."""

    portal: str
    portal_id: str
    country: str
    data: StandardProperty
    raw_data: Optional[Dict[str, Any]] = None
