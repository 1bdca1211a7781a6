from __future__ import annotations

import math

import pytest

from terrain.errors import MeshContractError
from terrain.mesh import NONE, ObjectStatus, TerrainMesh
from terrain.splitter import SplitStatus, TriangleSplitter
from terrain.tile_builder import build_tile_mesh
from terrain.tile_pyramid import TileGeometry, TileID
from terrain.topology import check_mesh, check_outgoing_edges

TILE = TileID(z=0, x=0, y=0)


class NanOracle:
    def elevation(self, tile: TileID, lon: float, lat: float) -> float:
        return math.nan


def _active_count(mesh: TerrainMesh) -> int:
    return sum(1 for _ in mesh.active_triangles())


def test_paired_split_of_unit_square(unit_square_mesh: TerrainMesh, constant_oracle) -> None:
    mesh = unit_square_mesh
    oracle = constant_oracle(7.5)
    splitter = TriangleSplitter(mesh, oracle)

    out: list[int] = []
    result = splitter.split(0, out)

    assert result.status is SplitStatus.SPLIT
    assert result.split
    assert len(result.new_triangles) == 4
    assert out == list(result.new_triangles)
    assert _active_count(mesh) == 4
    assert splitter.counters.paired_splits == 1

    midpoint = len(mesh.vertices) - 1
    assert mesh.vertices[midpoint].position == (0.5, 0.5, 7.5)
    assert oracle.calls == [(TILE, 0.5, 0.5)]
    assert all(mesh.triangles[t].split_depth == 1 for t in out)

    mesh.remove_deleted_objects()
    assert check_mesh(mesh) == []
    assert check_outgoing_edges(mesh)
    assert len(mesh.vertices) == 5
    twinned = [e for e in mesh.active_half_edges() if mesh.half_edges[e].twin != NONE]
    assert len(twinned) == 8


def test_border_split_of_lone_triangle() -> None:
    mesh = TerrainMesh()
    a = mesh.new_vertex(0.0, 0.0, 0.0)
    b = mesh.new_vertex(2.0, 0.0, 4.0)
    c = mesh.new_vertex(0.0, 1.0, 0.0)
    t = mesh.add_triangle(a, b, c, tile=TILE)
    mesh.set_outgoing_from_half_edges()
    mesh.determine_half_edge_types()

    splitter = TriangleSplitter(mesh, NanOracle())
    result = splitter.split(t)

    assert result.status is SplitStatus.SPLIT
    assert len(result.new_triangles) == 2
    assert splitter.counters.border_splits == 1
    # The longest edge runs from b to c (sqrt 5 against 2 for a-b). Without
    # elevation data the midpoint takes the average of the edge ends.
    midpoint = mesh.vertices[len(mesh.vertices) - 1]
    assert (midpoint.x, midpoint.y, midpoint.z) == (1.0, 0.5, 2.0)

    mesh.remove_deleted_objects()
    assert check_mesh(mesh) == []
    assert check_outgoing_edges(mesh)


def test_split_without_oracle_uses_average_elevation(unit_square_mesh: TerrainMesh) -> None:
    mesh = unit_square_mesh
    mesh.vertices[0].z = 10.0
    mesh.vertices[2].z = 20.0
    TriangleSplitter(mesh, None).split(1)
    assert mesh.vertices[-1].position == (0.5, 0.5, 15.0)


def test_splitting_inactive_triangle_is_a_contract_violation(unit_square_mesh: TerrainMesh) -> None:
    mesh = unit_square_mesh
    splitter = TriangleSplitter(mesh, None)
    splitter.split(0)
    assert mesh.triangles[0].status is ObjectStatus.DELETED
    with pytest.raises(MeshContractError, match="inactive triangle 0"):
        splitter.split(0)


def test_degenerate_triangle_is_removed_instead_of_split() -> None:
    mesh = TerrainMesh()
    v = [mesh.new_vertex(3.0, 3.0, float(i)) for i in range(3)]
    t = mesh.add_triangle(*v, tile=TILE)
    mesh.set_outgoing_from_half_edges()

    splitter = TriangleSplitter(mesh, None)
    result = splitter.split(t)
    assert result.status is SplitStatus.DEGENERATE
    assert result.new_triangles == ()
    assert not result.split
    assert mesh.triangles[t].status is ObjectStatus.DELETED
    assert splitter.counters.degenerate_removed == 1


def test_neighbour_is_split_first_when_longest_edges_differ() -> None:
    mesh = build_tile_mesh(TILE, geometry=TileGeometry(), oracle=None, grid_size=3)
    splitter = TriangleSplitter(mesh, None)

    # The third child borders the next cell, whose diagonal runs the other way.
    first = splitter.split(0)
    assert len(first.new_triangles) == 4
    child = first.new_triangles[2]
    before = _active_count(mesh)

    result = splitter.split(child)
    assert result.split
    assert _active_count(mesh) > before + 1
    assert splitter.counters.paired_splits >= 2

    mesh.remove_deleted_objects()
    assert check_mesh(mesh) == []
    assert check_outgoing_edges(mesh)


def test_repeated_splitting_keeps_topology_consistent() -> None:
    mesh = build_tile_mesh(TILE, geometry=TileGeometry(), oracle=None, grid_size=5)
    splitter = TriangleSplitter(mesh, None)

    for _ in range(3):
        for t in list(mesh.active_triangles()):
            if mesh.triangle_active(t):
                splitter.split(t)
        mesh.remove_deleted_objects()
        assert check_mesh(mesh) == []
        assert check_outgoing_edges(mesh)

    assert len(mesh.triangles) > 32 * 4


def test_recursion_depth_limit_marks_triangle_corrupted() -> None:
    mesh = build_tile_mesh(TILE, geometry=TileGeometry(), oracle=None, grid_size=3)
    splitter = TriangleSplitter(mesh, None, max_recursion_depth=0)
    first = splitter.split(0)
    assert first.split

    result = splitter.split(first.new_triangles[2])
    # The neighbour needs a recursive split, which the limit forbids.
    assert splitter.counters.depth_aborts >= 1
    assert result.status in (SplitStatus.SPLIT, SplitStatus.CORRUPTED)

    mesh.remove_deleted_objects()
    assert check_mesh(mesh) == []


def test_negative_recursion_depth_is_rejected(unit_square_mesh: TerrainMesh) -> None:
    with pytest.raises(ValueError, match="max_recursion_depth"):
        TriangleSplitter(unit_square_mesh, None, max_recursion_depth=-1)
