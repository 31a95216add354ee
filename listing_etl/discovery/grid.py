"""Geographic grid partitioning of a territory into query regions."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List

LOGGER = logging.getLogger(__name__)

# Float spans like 0.3 / 0.1 land a hair above the integer they represent.
_STEP_PRECISION = 9
_EDGE_TOLERANCE = 1e-12


@dataclass(frozen=True)
class Viewport:
    """Bounding box in degrees (east/west share the hemisphere's sign convention)."""

    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    @property
    def center(self) -> tuple[float, float]:
        return (self.north + self.south) / 2, (self.east + self.west) / 2


@dataclass(frozen=True)
class Region:
    """One query scope: a named place or a synthetic grid cell."""

    label: str
    lat: float
    lng: float
    viewport: Viewport
    index: int = 1
    total: int = 1

    @property
    def progress(self) -> str:
        return f"{self.index}/{self.total}"


# Brazil's geographic boundaries
BRAZIL_BOUNDS = Viewport(
    north=5.27,  # Roraima
    south=-33.75,  # Rio Grande do Sul
    east=-34.79,  # Paraiba coast
    west=-73.99,  # Acre
)

DEFAULT_CELL_SIZE = 0.5  # ~55km at the equator


def _steps(start: float, end: float, cell_size: float) -> int:
    steps = math.ceil(round((end - start) / cell_size, _STEP_PRECISION))
    # the rounded ratio can hide a sliver past the last full step
    while start + steps * cell_size < end - _EDGE_TOLERANCE:
        steps += 1
    return steps


def grid_shape(bounds: Viewport, cell_size: float) -> tuple[int, int]:
    """Return (rows, cols) of the grid covering ``bounds``."""
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")
    if bounds.north <= bounds.south:
        raise ValueError(f"north ({bounds.north}) must be greater than south ({bounds.south})")
    if bounds.east <= bounds.west:
        raise ValueError(f"east ({bounds.east}) must be greater than west ({bounds.west})")
    rows = _steps(bounds.south, bounds.north, cell_size)
    cols = _steps(bounds.west, bounds.east, cell_size)
    return rows, cols


def generate_grid(bounds: Viewport = BRAZIL_BOUNDS, cell_size: float = DEFAULT_CELL_SIZE) -> List[Region]:
    """Decompose ``bounds`` into cell_size x cell_size regions.

    Rows run south to north and columns west to east. Edge cells may extend
    past the bounds when the span is not a multiple of ``cell_size``; they are
    not clipped. Each cell's query coordinate is its midpoint.
    """
    rows, cols = grid_shape(bounds, cell_size)
    total = rows * cols
    LOGGER.info("Generating grid: %d rows x %d cols = %d cells", rows, cols, total)

    cells: List[Region] = []
    for row in range(rows):
        south = bounds.south + row * cell_size
        for col in range(cols):
            west = bounds.west + col * cell_size
            index = len(cells) + 1
            cells.append(
                Region(
                    label=f"cell-{index}",
                    lat=south + cell_size / 2,
                    lng=west + cell_size / 2,
                    viewport=Viewport(
                        north=south + cell_size,
                        south=south,
                        east=west + cell_size,
                        west=west,
                    ),
                    index=index,
                    total=total,
                )
            )
    return cells
