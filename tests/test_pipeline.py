from __future__ import annotations

import json
import logging
import math
from pathlib import Path

import numpy as np
import pytest

from terrain.config import TerrainConfig, TilesConfig
from terrain.elevation import DemGrid
from terrain.memory import StaticMemoryProbe
from terrain.mesh import TerrainMesh
from terrain.pipeline import (
    available_ranges,
    build_layer_json,
    generate_tileset,
    mesh_path,
    plan_tile_ranges,
    recalculate_elevation,
    separate_by_tile,
    terrain_path,
)
from terrain.serializer import load_mesh
from terrain.stitcher import TileStitcher
from terrain.tile_builder import build_tile_mesh
from terrain.tile_pyramid import GeoRect, TileGeometry, TileID, TileRange
from terrain.topology import check_mesh

RECT = GeoRect(west=-10.0, south=-10.0, east=10.0, north=10.0)


class PlaneOracle:
    """Elevation rising eastwards inside the western hemisphere, NaN elsewhere."""

    def elevation(self, tile: TileID, lon: float, lat: float) -> float:
        if lon > 0.0:
            return math.nan
        return 1000.0 + lon


def _hill_source() -> DemGrid:
    lons = np.linspace(-20.0, 20.0, 81)
    lats = np.linspace(-20.0, 20.0, 81)
    lon_grid, lat_grid = np.meshgrid(lons, lats)
    heights = 2000.0 * np.exp(-(lon_grid**2 + lat_grid**2) / 50.0)
    return DemGrid(west=-20.0, south=-20.0, east=20.0, north=20.0, heights_m=heights.astype(np.float32))


def _stitched_pair() -> TerrainMesh:
    geometry = TileGeometry()
    left = build_tile_mesh(TileID(1, 1, 0), geometry=geometry, oracle=None, grid_size=3)
    right = build_tile_mesh(TileID(1, 2, 0), geometry=geometry, oracle=None, grid_size=3)
    TileStitcher().stitch_horizontal(left, right)
    return left


def test_recalculate_elevation_keeps_vertices_without_data() -> None:
    mesh = _stitched_pair()
    tile_range = TileRange(z=1, x_min=1, x_max=2, y_min=0, y_max=0)

    updated = recalculate_elevation(mesh, tile_range, PlaneOracle(), geometry=TileGeometry())

    assert updated == 9
    for vertex in mesh.vertices:
        if vertex.x > 0.0:
            assert vertex.z == 0.0
        else:
            assert vertex.z == pytest.approx(1000.0 + vertex.x)


def test_separate_by_tile_returns_dense_meshes() -> None:
    parts = separate_by_tile(_stitched_pair())

    assert list(parts) == [TileID(1, 1, 0), TileID(1, 2, 0)]
    for tile, part in parts.items():
        assert len(part.vertices) == 9
        assert len(part.triangles) == 8
        assert not part.has_tombstones()
        assert {t.tile for t in part.triangles} == {tile}
        assert check_mesh(part) == []


def test_output_paths(tmp_path: Path) -> None:
    tile = TileID(z=3, x=5, y=2)
    assert mesh_path(tmp_path, tile) == tmp_path / "meshes" / "3" / "5" / "2.mesh"
    assert terrain_path(tmp_path, tile) == tmp_path / "tiles" / "3" / "5" / "2.terrain"


def test_layer_json_describes_availability() -> None:
    layer = build_layer_json(rect=RECT, min_zoom=1, max_zoom=2, gzip_payload=True)

    assert layer["format"] == "quantized-mesh-1.0"
    assert layer["scheme"] == "tms"
    assert layer["projection"] == "EPSG:4326"
    assert layer["tiles"] == ["tiles/{z}/{x}/{y}.terrain"]
    assert layer["available"][0] == []
    assert layer["available"][1] == [{"startX": 1, "startY": 0, "endX": 2, "endY": 1}]
    assert layer["available"][2] == [{"startX": 3, "startY": 1, "endX": 4, "endY": 2}]
    assert layer["extensions"] == []
    assert layer["metadata"] == {"gzip_payload": True}

    left_up = build_layer_json(
        rect=GeoRect(-10.0, 10.0, 10.0, 20.0),
        min_zoom=2,
        max_zoom=2,
        gzip_payload=False,
        origin_is_left_up=True,
        include_normals=True,
    )
    assert left_up["scheme"] == "slippyMap"
    assert left_up["extensions"] == ["octvertexnormals"]
    assert left_up["available"][2] == [{"startX": 3, "startY": 1, "endX": 4, "endY": 1}]


def test_plan_tile_ranges_validates_depths() -> None:
    ranges = plan_tile_ranges(RECT, min_zoom=0, max_zoom=1)
    assert [(r.z, r.width, r.height) for r in ranges] == [(0, 2, 1), (1, 2, 2)]
    assert available_ranges(RECT, min_zoom=1, max_zoom=1)[0] == []

    with pytest.raises(ValueError, match="min_zoom must be <= max_zoom"):
        plan_tile_ranges(RECT, min_zoom=2, max_zoom=1)
    with pytest.raises(ValueError, match=">= 0"):
        plan_tile_ranges(RECT, min_zoom=-1, max_zoom=1)


@pytest.mark.integration
def test_generate_tileset_writes_meshes_tiles_and_layer(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    config = TerrainConfig(tiles=TilesConfig(grid_size=9, raster_size=33))
    out_dir = tmp_path / "out"

    with caplog.at_level(logging.INFO, logger="terrain"):
        stats = generate_tileset(
            source=_hill_source(),
            rect=RECT,
            out_dir=out_dir,
            min_zoom=0,
            max_zoom=1,
            config=config,
            gzip_payload=True,
            run_id="it-run",
            memory_probe=StaticMemoryProbe(0.0),
            sleep=lambda seconds: None,
        )

    assert stats.tile_count == 6
    assert stats.failed_rasters == 0
    assert stats.total_bytes > 0
    assert stats.avg_bytes_per_tile == pytest.approx(stats.total_bytes / 6)
    assert sum(stats.stop_reasons.values()) == 6
    assert "memory_pressure" not in stats.stop_reasons

    expected = [TileID(0, 0, 0), TileID(0, 1, 0)] + list(
        TileRange.for_rectangle(RECT, 1).tiles()
    )
    for tile in expected:
        payload = terrain_path(out_dir, tile).read_bytes()
        assert payload[:2] == b"\x1f\x8b"
        mesh = load_mesh(mesh_path(out_dir, tile))
        assert mesh.triangles
        assert {t.tile for t in mesh.triangles} == {tile}
        assert check_mesh(mesh) == []

    # The hill peaks at the origin, which every depth-1 tile touches.
    corner = load_mesh(mesh_path(out_dir, TileID(1, 1, 0)))
    assert max(v.z for v in corner.vertices) == pytest.approx(2000.0, rel=0.05)

    layer = json.loads((out_dir / "layer.json").read_text(encoding="utf-8"))
    assert layer["minzoom"] == 0 and layer["maxzoom"] == 1
    assert layer["metadata"] == {"gzip_payload": True}

    assert any(r.getMessage() == "tile_matrix_finished" for r in caplog.records)
    assert all(getattr(r, "run_id", "it-run") == "it-run" for r in caplog.records)


def test_raster_failures_are_isolated_to_their_tiles(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    class BrokenSource:
        def sample_grid(self, rect: GeoRect, *, grid_size: int, fill_value: float = 0.0):
            raise OSError("mount lost")

    config = TerrainConfig(tiles=TilesConfig(grid_size=3, raster_size=5))

    with caplog.at_level(logging.ERROR, logger="terrain"):
        stats = generate_tileset(
            source=BrokenSource(),
            rect=RECT,
            out_dir=tmp_path,
            min_zoom=0,
            max_zoom=0,
            config=config,
            memory_probe=StaticMemoryProbe(0.0),
            sleep=lambda seconds: None,
        )

    assert stats.tile_count == 0
    assert stats.failed_rasters == 2
    assert stats.failed_tiles == 2
    assert (tmp_path / "layer.json").is_file()
    assert sum(r.getMessage() == "tile_matrix_failed" for r in caplog.records) == 2
