"""Region generation (named cities or geographic grid) and id discovery."""

from .grid import BRAZIL_BOUNDS, DEFAULT_CELL_SIZE, Region, Viewport, generate_grid, grid_shape
from .regions import city_regions

__all__ = [
    "BRAZIL_BOUNDS",
    "DEFAULT_CELL_SIZE",
    "Region",
    "Viewport",
    "generate_grid",
    "grid_shape",
    "city_regions",
]
