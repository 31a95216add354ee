import math

import pytest

from listing_etl.discovery.grid import BRAZIL_BOUNDS, Viewport, generate_grid, grid_shape
from listing_etl.discovery.regions import city_regions


def test_unit_square_splits_into_four_half_degree_cells():
    cells = generate_grid(Viewport(north=1, south=0, east=0, west=-1), 0.5)

    assert len(cells) == 4
    for cell in cells:
        assert cell.viewport.north - cell.viewport.south == pytest.approx(0.5)
        assert cell.viewport.east - cell.viewport.west == pytest.approx(0.5)
        assert cell.total == 4
    assert [cell.index for cell in cells] == [1, 2, 3, 4]


def test_cells_are_row_major_south_to_north_west_to_east():
    cells = generate_grid(Viewport(north=1, south=0, east=0, west=-1), 0.5)

    corners = [(c.viewport.south, c.viewport.west) for c in cells]
    assert corners == [(0, -1), (0, -0.5), (0.5, -1), (0.5, -0.5)]


def test_cell_center_is_viewport_midpoint():
    for cell in generate_grid(Viewport(north=2, south=-1, east=10, west=8.5), 0.5):
        assert (cell.lat, cell.lng) == pytest.approx(cell.viewport.center)


@pytest.mark.parametrize(
    "bounds, size",
    [
        (Viewport(north=1, south=0, east=0, west=-1), 0.5),
        (Viewport(north=1.2, south=0, east=1, west=0), 0.5),
        (Viewport(north=0.3, south=0, east=0.3, west=0), 0.1),
        (Viewport(north=-10, south=-12.7, east=-40, west=-43.1), 0.25),
        (Viewport(north=5, south=4.9, east=1, west=0), 1.0),
    ],
)
def test_cell_count_matches_ceil_of_spans(bounds, size):
    cells = generate_grid(bounds, size)
    rows = math.ceil(round((bounds.north - bounds.south) / size, 9))
    cols = math.ceil(round((bounds.east - bounds.west) / size, 9))

    assert len(cells) == rows * cols
    assert grid_shape(bounds, size) == (rows, cols)


@pytest.mark.parametrize(
    "bounds, size",
    [
        (Viewport(north=1.2, south=0, east=1, west=0), 0.5),
        (Viewport(north=-10, south=-12.7, east=-40, west=-43.1), 0.25),
    ],
)
def test_every_point_in_bounds_is_covered(bounds, size):
    cells = generate_grid(bounds, size)
    steps = 17
    for i in range(steps + 1):
        lat = bounds.south + (bounds.north - bounds.south) * i / steps
        for j in range(steps + 1):
            lng = bounds.west + (bounds.east - bounds.west) * j / steps
            assert any(cell.viewport.contains(lat, lng) for cell in cells), (lat, lng)


def test_sliver_past_last_full_step_gets_its_own_row():
    bounds = Viewport(north=1.0000000001, south=0, east=1, west=0)

    cells = generate_grid(bounds, 0.5)

    assert grid_shape(bounds, 0.5) == (3, 2)
    assert any(cell.viewport.contains(bounds.north, 0.5) for cell in cells)


def test_partial_edge_cells_are_not_clipped():
    cells = generate_grid(Viewport(north=1.2, south=0, east=0.5, west=0), 0.5)

    assert len(cells) == 3
    assert cells[-1].viewport.north == pytest.approx(1.5)


def test_brazil_grid_shape():
    assert grid_shape(BRAZIL_BOUNDS, 0.5) == (79, 79)


@pytest.mark.parametrize(
    "bounds, size",
    [
        (Viewport(north=1, south=0, east=0, west=-1), 0),
        (Viewport(north=1, south=0, east=0, west=-1), -0.5),
        (Viewport(north=0, south=1, east=0, west=-1), 0.5),
        (Viewport(north=1, south=0, east=-1, west=0), 0.5),
    ],
)
def test_invalid_bounds_or_size_rejected(bounds, size):
    with pytest.raises(ValueError):
        generate_grid(bounds, size)


def test_city_regions_default_list():
    regions = city_regions()

    assert len(regions) == 10
    assert regions[0].label == "sao-paulo-sp"
    assert regions[0].viewport.contains(regions[0].lat, regions[0].lng)
    assert [r.index for r in regions] == list(range(1, 11))
    assert all(r.total == 10 for r in regions)


def test_city_regions_selection_and_limit():
    regions = city_regions(slugs=["curitiba-pr", "recife-pe"], limit=1)

    assert [r.label for r in regions] == ["curitiba-pr"]
    assert regions[0].progress == "1/1"


def test_city_regions_unknown_slug():
    with pytest.raises(ValueError, match="atlantis"):
        city_regions(slugs=["atlantis"])
