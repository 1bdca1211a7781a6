from __future__ import annotations

import pytest

from terrain.globe import CelestialBody
from terrain.tile_pyramid import (
    GeoRect,
    TileGeometry,
    TileID,
    TileRange,
    num_tiles_x,
    num_tiles_y,
    select_tile,
    tile_bounds_deg,
    tile_size_m,
)


def test_geodetic_tile_counts() -> None:
    assert (num_tiles_x(0), num_tiles_y(0)) == (2, 1)
    assert (num_tiles_x(3), num_tiles_y(3)) == (16, 8)
    with pytest.raises(ValueError, match="Invalid zoom"):
        num_tiles_x(-1)


def test_tile_id_validates_coordinates() -> None:
    assert TileID(z=1, x=3, y=1).key() == "1/3/1"
    with pytest.raises(ValueError, match="x out of range"):
        TileID(z=0, x=2, y=0)
    with pytest.raises(ValueError, match="y out of range"):
        TileID(z=0, x=0, y=1)


def test_tile_bounds_follow_origin_convention() -> None:
    assert tile_bounds_deg(TileID(z=0, x=1, y=0)) == GeoRect(0.0, -90.0, 180.0, 90.0)

    tms = tile_bounds_deg(TileID(z=1, x=0, y=0))
    assert (tms.south, tms.north) == (-90.0, 0.0)
    left_up = tile_bounds_deg(TileID(z=1, x=0, y=0), origin_is_left_up=True)
    assert (left_up.south, left_up.north) == (0.0, 90.0)


def test_neighbouring_tiles_share_borders_exactly() -> None:
    z = 7
    for x in range(num_tiles_x(z) - 1):
        a = tile_bounds_deg(TileID(z=z, x=x, y=5))
        b = tile_bounds_deg(TileID(z=z, x=x + 1, y=5))
        assert a.east == b.west
    for y in range(num_tiles_y(z) - 1):
        a = tile_bounds_deg(TileID(z=z, x=3, y=y), origin_is_left_up=True)
        b = tile_bounds_deg(TileID(z=z, x=3, y=y + 1), origin_is_left_up=True)
        assert a.south == b.north


def test_select_tile_clamps_east_and_north_edges() -> None:
    assert select_tile(0, 180.0, 90.0) == TileID(z=0, x=1, y=0)
    assert select_tile(1, -180.0, -90.0) == TileID(z=1, x=0, y=0)
    assert select_tile(1, 10.0, 45.0) == TileID(z=1, x=2, y=1)
    assert select_tile(1, 10.0, 45.0, origin_is_left_up=True) == TileID(z=1, x=2, y=0)


def test_tile_range_expansion_is_clamped() -> None:
    corner = TileRange.for_tile(TileID(z=1, x=0, y=0)).expanded(1)
    assert (corner.x_min, corner.x_max, corner.y_min, corner.y_max) == (0, 1, 0, 1)

    middle = TileRange.for_tile(TileID(z=2, x=3, y=1)).expanded(1)
    assert (middle.width, middle.height) == (3, 3)
    rows = list(middle.rows())
    assert [t.y for t in (row[0] for row in rows)] == [0, 1, 2]
    assert [t.x for t in rows[0]] == [2, 3, 4]
    assert len(list(middle.tiles())) == 9
    assert middle.contains(TileID(z=2, x=4, y=2))
    assert not middle.contains(TileID(z=1, x=1, y=1))
    assert not middle.contains(None)


def test_tile_range_for_rectangle_flips_rows_for_left_up_origin() -> None:
    rect = GeoRect(west=-10.0, south=10.0, east=10.0, north=20.0)
    tms = TileRange.for_rectangle(rect, 2)
    assert (tms.x_min, tms.x_max, tms.y_min, tms.y_max) == (3, 4, 2, 2)

    left_up = TileRange.for_rectangle(rect, 2, origin_is_left_up=True)
    assert (left_up.y_min, left_up.y_max) == (1, 1)

    # Edges on tile borders are half-open and do not pull in the next tile.
    aligned = TileRange.for_rectangle(GeoRect(0.0, 0.0, 90.0, 45.0), 1)
    assert (aligned.x_min, aligned.x_max, aligned.y_min, aligned.y_max) == (2, 2, 1, 1)

    with pytest.raises(ValueError, match="Empty tile range"):
        TileRange(z=1, x_min=2, x_max=1, y_min=0, y_max=0)


def test_geo_rect_validation() -> None:
    with pytest.raises(ValueError, match="west < east"):
        GeoRect(west=10.0, south=0.0, east=0.0, north=1.0)
    with pytest.raises(ValueError, match="north out of range"):
        GeoRect(west=0.0, south=0.0, east=1.0, north=91.0)
    assert GeoRect(-10.0, -10.0, 10.0, 30.0).center == (0.0, 10.0)


def test_tile_geometry_tolerances_scale_with_depth() -> None:
    geometry = TileGeometry()
    assert geometry.tile_size_m(0) == pytest.approx(tile_size_m(0))
    assert geometry.tile_size_m(1) == pytest.approx(geometry.tile_size_m(0) / 2)
    assert geometry.max_triangle_size_m(2) == pytest.approx(geometry.tile_size_m(2) * 0.25)
    assert geometry.min_triangle_size_m(2) < geometry.max_triangle_size_m(2)
    # Deep tiles bottom out at the absolute error floor.
    assert geometry.max_error_m(25) == 0.5

    moon = TileGeometry(body=CelestialBody.MOON, max_error_overrides={4: 3.0})
    assert moon.max_error_m(4) == 3.0
    assert moon.tile_size_m(0) < geometry.tile_size_m(0)
    assert moon.rectangle(TileID(z=0, x=0, y=0)).east == 0.0
