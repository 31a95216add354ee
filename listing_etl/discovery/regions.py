"""Curated named-city regions loaded from YAML."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .grid import Region, Viewport

DEFAULT_CITIES_PATH = Path(__file__).with_name("cities.yaml")


def load_cities(path: str | Path = DEFAULT_CITIES_PATH) -> Dict[str, Dict[str, Any]]:
    """Read the city table that defines named-region viewports."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("cities file must be a mapping of slug -> coordinates")
    return data


def _to_region(slug: str, entry: Dict[str, Any], index: int, total: int) -> Region:
    try:
        viewport = entry["viewport"]
        return Region(
            label=slug,
            lat=float(entry["lat"]),
            lng=float(entry["lng"]),
            viewport=Viewport(
                north=float(viewport["north"]),
                south=float(viewport["south"]),
                east=float(viewport["east"]),
                west=float(viewport["west"]),
            ),
            index=index,
            total=total,
        )
    except (KeyError, TypeError) as exc:
        raise ValueError(f"city {slug!r} is missing coordinate data: {exc}") from exc


def city_regions(
    path: str | Path = DEFAULT_CITIES_PATH,
    *,
    slugs: Optional[List[str]] = None,
    limit: Optional[int] = None,
) -> List[Region]:
    """Build Regions for the curated city list.

    Parameters
    ----------
    path : str | Path
        YAML city table
    slugs : list[str], optional
        Restrict to these slugs (in the given order)
    limit : int, optional
        Keep only the first N cities
    """
    cities = load_cities(path)
    selected = slugs if slugs is not None else list(cities)
    unknown = [slug for slug in selected if slug not in cities]
    if unknown:
        raise ValueError(f"unknown city slug(s): {', '.join(unknown)}")
    if limit is not None:
        selected = selected[:limit]
    total = len(selected)
    return [_to_region(slug, cities[slug], i, total) for i, slug in enumerate(selected, 1)]
