from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from .elevation import ElevationOracle
from .mesh import VERTEX_COINCIDENT_ERROR, TerrainMesh
from .tile_pyramid import TileGeometry, TileID

logger = logging.getLogger(__name__)


def _build_grid_triangles(n: int) -> list[int]:
    indices: list[int] = []
    for j in range(n - 1):
        for i in range(n - 1):
            sw = j * n + i
            se = sw + 1
            nw = (j + 1) * n + i
            ne = nw + 1
            indices.extend([sw, se, nw, se, ne, nw])
    return indices


def build_tile_mesh(
    tile: TileID,
    *,
    geometry: TileGeometry,
    oracle: Optional[ElevationOracle],
    grid_size: int = 17,
    mesh_id: int = 0,
    tolerance: float = VERTEX_COINCIDENT_ERROR,
) -> TerrainMesh:
    """Build the initial regular-grid mesh of one tile.

    The grid has ``grid_size`` nodes per edge, two counter-clockwise
    triangles per cell, elevations from the oracle (0.0 where it has none)
    and boundary half-edges classified by the side of the tile they lie on.
    """

    if grid_size < 2:
        raise ValueError("grid_size must be >= 2")

    rect = geometry.rectangle(tile)
    n = int(grid_size)
    lons = np.linspace(rect.west, rect.east, n, dtype=np.float64)
    lats = np.linspace(rect.south, rect.north, n, dtype=np.float64)

    mesh = TerrainMesh(mesh_id=mesh_id)
    missing = 0
    for lat in lats:
        for lon in lons:
            z = math.nan
            if oracle is not None:
                z = float(oracle.elevation(tile, float(lon), float(lat)))
            if math.isnan(z):
                missing += 1
                z = 0.0
            mesh.new_vertex(float(lon), float(lat), z)

    indices = _build_grid_triangles(n)
    for k in range(0, len(indices), 3):
        mesh.add_triangle(indices[k], indices[k + 1], indices[k + 2], tile=tile, split_depth=0)

    mesh.set_twins()
    mesh.set_outgoing_from_half_edges()
    mesh.determine_half_edge_types(tolerance)

    if missing:
        logger.debug(
            "tile_mesh_missing_elevations",
            extra={"tile": tile.key(), "missing": missing, "vertices": n * n},
        )
    return mesh
