from __future__ import annotations

import gzip
import io
import struct
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .globe import CelestialBody, geographic_to_cartesian
from .mesh import TerrainMesh
from .tile_pyramid import GeoRect

QUANTIZED_RANGE = 32767
OCT_NORMALS_EXTENSION_ID = 1

# center, min/max height, bounding sphere, horizon occlusion point
_HEADER = struct.Struct("<3d2f4d3d")
_COUNT = struct.Struct("<I")
_EXTENSION = struct.Struct("<BI")


def zigzag_encode(value: int) -> int:
    v = int(value)
    return (v << 1) ^ (v >> 63)


def zigzag_decode(value: int) -> int:
    v = int(value)
    return (v >> 1) ^ -(v & 1)


def delta_zigzag_encode(values: Sequence[int]) -> list[int]:
    deltas = np.diff(np.asarray(values, dtype=np.int64), prepend=0)
    return ((deltas << 1) ^ (deltas >> 63)).tolist()


def delta_zigzag_decode(values: Sequence[int]) -> list[int]:
    codes = np.asarray(values, dtype=np.int64)
    return np.cumsum((codes >> 1) ^ -(codes & 1)).tolist()


def high_water_mark_encode(indices: Sequence[int]) -> list[int]:
    """Encode triangle indices relative to the next unseen vertex.

    Indices must introduce vertices in increasing order; a code of zero
    means "the next new vertex".
    """

    codes: list[int] = []
    next_new = 0
    for index in indices:
        code = next_new - int(index)
        if code < 0:
            raise ValueError("Indices are not suitable for high-water mark encoding")
        codes.append(code)
        next_new += code == 0
    return codes


def high_water_mark_decode(codes: Sequence[int]) -> list[int]:
    indices: list[int] = []
    next_new = 0
    for code in codes:
        indices.append(next_new - int(code))
        next_new += int(code) == 0
    return indices


@dataclass(frozen=True)
class QuantizedMeshOptions:
    gzip: bool = False
    gzip_level: int = 9
    include_normals: bool = False


@dataclass(frozen=True)
class _QuantizedVertices:
    u: np.ndarray
    v: np.ndarray
    h: np.ndarray
    min_height: float
    max_height: float


def _scale(values: np.ndarray, low: float, high: float) -> np.ndarray:
    q = np.rint((values - low) / (high - low) * QUANTIZED_RANGE)
    return np.clip(q, 0, QUANTIZED_RANGE).astype(np.int64)


def _quantize(mesh: TerrainMesh, rect: GeoRect) -> _QuantizedVertices:
    coords = np.asarray([(v.x, v.y, v.z) for v in mesh.vertices], dtype=np.float64)
    heights = coords[:, 2]
    valid = np.isfinite(heights)
    low = float(heights[valid].min()) if valid.any() else 0.0
    high = float(heights[valid].max()) if valid.any() else 0.0
    # A flat tile still needs a non-empty height range.
    if high <= low:
        high = low + 1.0
    return _QuantizedVertices(
        u=_scale(coords[:, 0], rect.west, rect.east),
        v=_scale(coords[:, 1], rect.south, rect.north),
        h=_scale(np.where(valid, heights, low), low, high),
        min_height=low,
        max_height=high,
    )


def _first_use_order(
    triangle_indices: np.ndarray, vertex_count: int
) -> tuple[np.ndarray, np.ndarray]:
    """Return (new_to_old, old_to_new) numbering vertices by first use in triangles."""

    used, first_seen = np.unique(triangle_indices, return_index=True)
    if used.size != vertex_count:
        raise ValueError(
            f"Mesh triangles did not reference all vertices (missing {vertex_count - used.size})"
        )
    new_to_old = used[np.argsort(first_seen, kind="stable")]
    old_to_new = np.empty(vertex_count, dtype=np.int64)
    old_to_new[new_to_old] = np.arange(vertex_count)
    return new_to_old, old_to_new


def _bounding_sphere(
    rect: GeoRect, min_height: float, max_height: float, body: CelestialBody
) -> tuple[tuple[float, float, float], float]:
    lon, lat = rect.center
    center = geographic_to_cartesian(lon, lat, (min_height + max_height) / 2.0, body=body)
    corners = np.asarray(
        [
            geographic_to_cartesian(x, y, h, body=body)
            for x in (rect.west, rect.east)
            for y in (rect.south, rect.north)
            for h in (min_height, max_height)
        ]
    )
    radius = float(np.linalg.norm(corners - np.asarray(center), axis=1).max())
    return center, radius


def _oct_encode(normals: np.ndarray) -> np.ndarray:
    """Octahedral encoding of unit normals into two bytes each."""

    l1 = np.abs(normals).sum(axis=1)
    l1[l1 == 0.0] = 1.0
    p = normals[:, :2] / l1[:, None]
    below = normals[:, 2] < 0.0
    signs = np.where(p >= 0.0, 1.0, -1.0)
    folded = (1.0 - np.abs(p[:, ::-1])) * signs
    p = np.where(below[:, None], folded, p)
    return np.rint((np.clip(p, -1.0, 1.0) * 0.5 + 0.5) * 255.0).astype(np.uint8)


def encode_tile_mesh(
    mesh: TerrainMesh,
    rect: GeoRect,
    *,
    body: CelestialBody = CelestialBody.EARTH,
    options: Optional[QuantizedMeshOptions] = None,
) -> bytes:
    """Encode one finished tile mesh as a Cesium quantized-mesh-1.0 tile."""

    options = options or QuantizedMeshOptions()
    if mesh.has_tombstones():
        mesh.remove_deleted_objects()

    vertex_count = len(mesh.vertices)
    if vertex_count == 0 or not mesh.triangles:
        raise ValueError("Cannot encode an empty mesh")

    triangles = np.asarray(
        [mesh.triangle_vertices(t) for t in range(len(mesh.triangles))], dtype=np.int64
    ).ravel()
    new_to_old, old_to_new = _first_use_order(triangles, vertex_count)
    quantized = _quantize(mesh, rect)

    edges = [
        mesh.left_vertices_sorted_up_to_down(),
        mesh.down_vertices_sorted_left_to_right(),
        mesh.right_vertices_sorted_down_to_up(),
        mesh.up_vertices_sorted_right_to_left(),
    ]

    center, radius = _bounding_sphere(rect, quantized.min_height, quantized.max_height, body)
    occlusion = (
        center[0] / body.equatorial_radius,
        center[1] / body.equatorial_radius,
        center[2] / body.polar_radius,
    )

    wide = vertex_count > 65536
    index_dtype = "<u4" if wide else "<u2"

    out = io.BytesIO()
    out.write(
        _HEADER.pack(
            *center, quantized.min_height, quantized.max_height, *center, radius, *occlusion
        )
    )
    out.write(_COUNT.pack(vertex_count))
    for channel in (quantized.u, quantized.v, quantized.h):
        out.write(np.asarray(delta_zigzag_encode(channel[new_to_old]), dtype="<u2").tobytes())

    alignment = 4 if wide else 2
    out.write(b"\x00" * (-out.tell() % alignment))

    out.write(_COUNT.pack(triangles.size // 3))
    out.write(
        np.asarray(high_water_mark_encode(old_to_new[triangles]), dtype=index_dtype).tobytes()
    )
    for edge in edges:
        out.write(_COUNT.pack(len(edge)))
        out.write(old_to_new[np.asarray(edge, dtype=np.int64)].astype(index_dtype).tobytes())

    if options.include_normals:
        if any(v.normal is None for v in mesh.vertices):
            mesh.calculate_normals(body=body)
        normals = np.asarray(
            [mesh.vertices[old].normal or (0.0, 0.0, 1.0) for old in new_to_old],
            dtype=np.float64,
        )
        encoded = _oct_encode(normals).tobytes()
        out.write(_EXTENSION.pack(OCT_NORMALS_EXTENSION_ID, len(encoded)))
        out.write(encoded)

    raw = out.getvalue()
    if options.gzip:
        return gzip.compress(raw, compresslevel=int(options.gzip_level))
    return raw
