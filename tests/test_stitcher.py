from __future__ import annotations

import logging

import pytest

from terrain.config import MeshConfig
from terrain.mesh import NONE, TerrainMesh
from terrain.stitcher import TileStitcher
from terrain.tile_builder import build_tile_mesh
from terrain.tile_pyramid import TileGeometry, TileID, TileRange
from terrain.topology import check_mesh, check_outgoing_edges


def _tile_mesh(
    z: int, x: int, y: int, *, grid_size: int = 3, geometry: TileGeometry | None = None
) -> TerrainMesh:
    return build_tile_mesh(
        TileID(z=z, x=x, y=y),
        geometry=geometry or TileGeometry(),
        oracle=None,
        grid_size=grid_size,
    )


def _twinless(mesh: TerrainMesh) -> int:
    return sum(1 for e in mesh.active_half_edges() if mesh.half_edges[e].twin == NONE)


def test_stitch_horizontal_merges_shared_border() -> None:
    left = _tile_mesh(1, 0, 0)
    right = _tile_mesh(1, 1, 0)

    report = TileStitcher().stitch_horizontal(left, right)

    assert report.paired == 2
    assert not report.mismatched
    assert len(left.vertices) == 9 + 9 - 3
    assert len(left.triangles) == 16
    assert _twinless(left) == 2 * (4 + 2)
    assert check_mesh(left) == []
    assert check_outgoing_edges(left)
    assert {t.tile for t in left.triangles} == {TileID(1, 0, 0), TileID(1, 1, 0)}


def test_stitch_vertical_merges_rows() -> None:
    south = _tile_mesh(1, 0, 0)
    north = _tile_mesh(1, 0, 1)

    report = TileStitcher().stitch_vertical(south, north)

    assert report.paired == 2
    assert len(south.vertices) == 15
    assert _twinless(south) == 2 * (2 + 4)
    assert check_mesh(south) == []


@pytest.mark.parametrize("origin_is_left_up", [False, True])
def test_consolidate_three_by_three_matrix(origin_is_left_up: bool) -> None:
    geometry = TileGeometry(origin_is_left_up=origin_is_left_up)
    tile_range = TileRange.for_tile(TileID(z=2, x=3, y=1)).expanded(1)
    rows = [
        [_tile_mesh(t.z, t.x, t.y, geometry=geometry) for t in row]
        for row in tile_range.rows()
    ]

    mesh = TileStitcher(origin_is_left_up=origin_is_left_up).consolidate(rows)

    assert mesh is not None
    assert len(mesh.vertices) == 7 * 7
    assert len(mesh.triangles) == 9 * 8
    assert _twinless(mesh) == 4 * 6
    assert check_mesh(mesh) == []
    assert check_mesh(mesh, require_conforming=True) == []
    assert check_outgoing_edges(mesh)
    assert len(mesh.triangles_by_tile()) == 9


def test_consolidate_empty_matrix_returns_none() -> None:
    assert TileStitcher().consolidate([]) is None
    assert TileStitcher().consolidate([[]]) is None


def test_mismatched_borders_are_stitched_by_position(caplog: pytest.LogCaptureFixture) -> None:
    left = _tile_mesh(1, 0, 0, grid_size=3)
    right = _tile_mesh(1, 1, 0, grid_size=5)

    with caplog.at_level(logging.WARNING, logger="terrain.stitcher"):
        report = TileStitcher().stitch_horizontal(left, right)

    assert report.mismatched
    assert (report.count_a, report.count_b) == (2, 4)
    assert report.paired == 2
    assert any(r.getMessage() == "stitch_edge_count_mismatch" for r in caplog.records)
    assert not left.has_tombstones()


def test_missing_border_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    left = _tile_mesh(1, 0, 0)
    empty = TerrainMesh()

    with caplog.at_level(logging.WARNING, logger="terrain.stitcher"):
        report = TileStitcher().stitch_horizontal(left, empty)

    assert report.paired == 0
    assert any(r.getMessage() == "stitch_missing_border" for r in caplog.records)


def test_stitcher_reads_severe_thresholds_from_mesh_config(
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.ERROR, logger="terrain.stitcher"):
        TileStitcher.from_config(MeshConfig()).stitch_horizontal(
            _tile_mesh(1, 1, 0), _tile_mesh(1, 2, 0)
        )
    assert not any(r.getMessage() == "stitch_severe_corruption" for r in caplog.records)

    # Stitched grid vertices carry six spokes.
    strict = TileStitcher.from_config(MeshConfig(stitch_severe_max_edges=5))
    with caplog.at_level(logging.ERROR, logger="terrain.stitcher"):
        strict.stitch_horizontal(_tile_mesh(1, 1, 0), _tile_mesh(1, 2, 0))
    severe = [r for r in caplog.records if r.getMessage() == "stitch_severe_corruption"]
    assert len(severe) == 1
    assert severe[0].max_edges == 6
