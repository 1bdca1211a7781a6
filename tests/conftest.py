import sys
from pathlib import Path

import pytest

SRC = Path(__file__).resolve().parents[1] / "src"

sys.path.insert(0, str(SRC))


@pytest.fixture
def unit_square_mesh():
    """Two CCW triangles over the unit square, twins linked and types derived."""

    from terrain.mesh import TerrainMesh
    from terrain.tile_pyramid import TileID

    tile = TileID(z=0, x=0, y=0)
    mesh = TerrainMesh()
    v0 = mesh.new_vertex(0.0, 0.0, 0.0)
    v1 = mesh.new_vertex(1.0, 0.0, 0.0)
    v2 = mesh.new_vertex(1.0, 1.0, 0.0)
    v3 = mesh.new_vertex(0.0, 1.0, 0.0)
    mesh.add_triangle(v0, v1, v2, tile=tile)
    mesh.add_triangle(v0, v2, v3, tile=tile)
    mesh.set_twins()
    mesh.set_outgoing_from_half_edges()
    mesh.determine_half_edge_types()
    return mesh


class ConstantOracle:
    def __init__(self, value: float) -> None:
        self.value = value
        self.calls: list[tuple] = []

    def elevation(self, tile, lon: float, lat: float) -> float:
        self.calls.append((tile, lon, lat))
        return self.value


@pytest.fixture
def constant_oracle():
    return ConstantOracle
