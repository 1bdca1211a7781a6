"""Binary persistence of a compacted half-edge mesh.

Layout (big-endian throughout)::

    int32 mesh_id
    int32 vertex_count
      int32 id, float64 x, float64 y, float64 z, int32 outgoing_half_edge
    int32 triangle_count
      int32 id, int32 half_edge, int32 tile_x, int32 tile_y, int32 tile_z, int32 split_depth
    int32 half_edge_count
      int32 id, int32 type, int32 start_vertex, int32 triangle, int32 next, int32 twin

Missing relations (and a triangle without a tile) are written as -1.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Final, Union

from .errors import MeshContractError, MeshDecodeError
from .mesh import NONE, HalfEdge, HalfEdgeType, TerrainMesh, Triangle, Vertex
from .tile_pyramid import TileID

logger = logging.getLogger(__name__)

_COUNT: Final[struct.Struct] = struct.Struct(">i")
_VERTEX: Final[struct.Struct] = struct.Struct(">idddi")
_TRIANGLE: Final[struct.Struct] = struct.Struct(">iiiiii")
_HALF_EDGE: Final[struct.Struct] = struct.Struct(">iiiiii")


def encode_mesh(mesh: TerrainMesh) -> bytes:
    """Encode a mesh whose tombstones have already been compacted away."""

    if mesh.has_tombstones():
        raise MeshContractError("Mesh must be compacted before encoding")

    parts: list[bytes] = [_COUNT.pack(mesh.mesh_id), _COUNT.pack(len(mesh.vertices))]
    for i, vertex in enumerate(mesh.vertices):
        parts.append(_VERTEX.pack(i, vertex.x, vertex.y, vertex.z, vertex.outgoing))

    parts.append(_COUNT.pack(len(mesh.triangles)))
    for i, triangle in enumerate(mesh.triangles):
        tile = triangle.tile
        if tile is None:
            tile_x, tile_y, tile_z = NONE, NONE, NONE
        else:
            tile_x, tile_y, tile_z = tile.x, tile.y, tile.z
        parts.append(
            _TRIANGLE.pack(i, triangle.half_edge, tile_x, tile_y, tile_z, triangle.split_depth)
        )

    parts.append(_COUNT.pack(len(mesh.half_edges)))
    for i, edge in enumerate(mesh.half_edges):
        parts.append(
            _HALF_EDGE.pack(i, int(edge.type), edge.start, edge.triangle, edge.next, edge.twin)
        )
    return b"".join(parts)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self.offset = 0

    def read(self, layout: struct.Struct, what: str) -> tuple:
        end = self.offset + layout.size
        if end > len(self._data):
            raise MeshDecodeError(
                f"Truncated mesh data while reading {what} at byte {self.offset}"
            )
        values = layout.unpack_from(self._data, self.offset)
        self.offset = end
        return values

    def read_count(self, what: str) -> int:
        (value,) = self.read(_COUNT, what)
        if value < 0:
            raise MeshDecodeError(f"Negative {what}: {value}")
        return value

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset


def _check_ref(value: int, count: int, what: str, *, optional: bool = True) -> int:
    if value == NONE and optional:
        return NONE
    if not (0 <= value < count):
        raise MeshDecodeError(f"{what} out of range: {value} (count {count})")
    return value


def decode_mesh(data: bytes) -> TerrainMesh:
    reader = _Reader(data)
    (mesh_id,) = reader.read(_COUNT, "mesh id")

    vertex_count = reader.read_count("vertex count")
    raw_vertices = [reader.read(_VERTEX, "vertex") for _ in range(vertex_count)]
    triangle_count = reader.read_count("triangle count")
    raw_triangles = [reader.read(_TRIANGLE, "triangle") for _ in range(triangle_count)]
    edge_count = reader.read_count("half-edge count")
    raw_edges = [reader.read(_HALF_EDGE, "half-edge") for _ in range(edge_count)]
    if reader.remaining:
        raise MeshDecodeError(f"Unexpected {reader.remaining} trailing bytes after mesh data")

    mesh = TerrainMesh(mesh_id=mesh_id)

    for expected, (vid, x, y, z, outgoing) in enumerate(raw_vertices):
        if vid != expected:
            raise MeshDecodeError(f"Vertex ids must be dense: expected {expected}, got {vid}")
        mesh.vertices.append(
            Vertex(x, y, z, outgoing=_check_ref(outgoing, edge_count, "vertex outgoing half-edge"))
        )

    for expected, (tid, half_edge, tile_x, tile_y, tile_z, split_depth) in enumerate(raw_triangles):
        if tid != expected:
            raise MeshDecodeError(f"Triangle ids must be dense: expected {expected}, got {tid}")
        tile = None
        if (tile_x, tile_y, tile_z) != (NONE, NONE, NONE):
            try:
                tile = TileID(z=tile_z, x=tile_x, y=tile_y)
            except ValueError as exc:
                raise MeshDecodeError(f"Invalid tile for triangle {tid}: {exc}") from exc
        mesh.triangles.append(
            Triangle(
                half_edge=_check_ref(half_edge, edge_count, "triangle half-edge"),
                tile=tile,
                split_depth=split_depth,
            )
        )

    for expected, (eid, edge_type, start, triangle, nxt, twin) in enumerate(raw_edges):
        if eid != expected:
            raise MeshDecodeError(f"Half-edge ids must be dense: expected {expected}, got {eid}")
        try:
            kind = HalfEdgeType(edge_type)
        except ValueError as exc:
            raise MeshDecodeError(f"Unknown half-edge type {edge_type} for half-edge {eid}") from exc
        mesh.half_edges.append(
            HalfEdge(
                start=_check_ref(start, vertex_count, "half-edge start vertex"),
                triangle=_check_ref(triangle, triangle_count, "half-edge triangle"),
                next=_check_ref(nxt, edge_count, "half-edge next"),
                twin=_check_ref(twin, edge_count, "half-edge twin"),
                type=kind,
            )
        )

    logger.debug(
        "mesh_decoded",
        extra={"mesh_id": mesh_id, "vertices": vertex_count, "triangles": triangle_count},
    )
    return mesh


def save_mesh(mesh: TerrainMesh, path: Union[str, Path]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encode_mesh(mesh))
    return target


def load_mesh(path: Union[str, Path]) -> TerrainMesh:
    return decode_mesh(Path(path).read_bytes())
