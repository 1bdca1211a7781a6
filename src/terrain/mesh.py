"""Half-edge terrain mesh store.

Vertices, triangles and half-edges live in three arenas (plain lists) and
refer to each other by index. ``NONE`` marks a missing relation. Deleted
records stay in place as tombstones until :meth:`TerrainMesh.remove_deleted_objects`
compacts the arenas; that pass is the only place indices change.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Iterable, Iterator, Optional, Sequence

from .geometry import BoundingBox, Rectangle, normalize, unit_normal
from .globe import CelestialBody, geographic_to_cartesian
from .tile_pyramid import TileID, TileRange

logger = logging.getLogger(__name__)

NONE: Final[int] = -1
VERTEX_COINCIDENT_ERROR: Final[float] = 1e-13


class ObjectStatus(IntEnum):
    ACTIVE = 0
    DELETED = 1


class HalfEdgeType(IntEnum):
    INTERIOR = 0
    LEFT = 1
    RIGHT = 2
    UP = 3
    DOWN = 4


@dataclass(slots=True)
class Vertex:
    x: float
    y: float
    z: float
    outgoing: int = NONE
    normal: Optional[tuple[float, float, float]] = None
    status: ObjectStatus = ObjectStatus.ACTIVE

    @property
    def position(self) -> tuple[float, float, float]:
        return self.x, self.y, self.z


@dataclass(slots=True)
class Triangle:
    half_edge: int = NONE
    tile: Optional[TileID] = None
    split_depth: int = 0
    refine_checked: bool = False
    normal: Optional[tuple[float, float, float]] = None
    status: ObjectStatus = ObjectStatus.ACTIVE


@dataclass(slots=True)
class HalfEdge:
    start: int
    triangle: int = NONE
    next: int = NONE
    twin: int = NONE
    type: HalfEdgeType = HalfEdgeType.INTERIOR
    status: ObjectStatus = ObjectStatus.ACTIVE


@dataclass(frozen=True)
class MergeOffsets:
    vertices: int
    triangles: int
    half_edges: int


def _remap(index: int, mapping: Sequence[int]) -> int:
    if index == NONE:
        return NONE
    return mapping[index]


class TerrainMesh:
    def __init__(self, mesh_id: int = 0) -> None:
        self.mesh_id = mesh_id
        self.vertices: list[Vertex] = []
        self.triangles: list[Triangle] = []
        self.half_edges: list[HalfEdge] = []

    def __repr__(self) -> str:
        return (
            f"TerrainMesh(id={self.mesh_id}, vertices={len(self.vertices)}, "
            f"triangles={len(self.triangles)}, half_edges={len(self.half_edges)})"
        )

    # Creation -----------------------------------------------------------

    def new_vertex(self, x: float, y: float, z: float) -> int:
        self.vertices.append(Vertex(float(x), float(y), float(z)))
        return len(self.vertices) - 1

    def new_triangle(self, *, tile: Optional[TileID] = None, split_depth: int = 0) -> int:
        self.triangles.append(Triangle(tile=tile, split_depth=split_depth))
        return len(self.triangles) - 1

    def new_half_edge(self, start: int, edge_type: HalfEdgeType = HalfEdgeType.INTERIOR) -> int:
        self.half_edges.append(HalfEdge(start=start, type=edge_type))
        return len(self.half_edges) - 1

    def link_triangle(self, triangle: int, e0: int, e1: int, e2: int) -> None:
        """Close e0 -> e1 -> e2 into the next cycle owned by triangle."""

        for edge, nxt in ((e0, e1), (e1, e2), (e2, e0)):
            record = self.half_edges[edge]
            record.next = nxt
            record.triangle = triangle
        self.triangles[triangle].half_edge = e0

    def add_triangle(
        self,
        v0: int,
        v1: int,
        v2: int,
        *,
        tile: Optional[TileID] = None,
        split_depth: int = 0,
        types: Sequence[HalfEdgeType] = (
            HalfEdgeType.INTERIOR,
            HalfEdgeType.INTERIOR,
            HalfEdgeType.INTERIOR,
        ),
    ) -> int:
        """Create a triangle v0 -> v1 -> v2 with three fresh half-edges.

        ``types`` classifies the half-edges v0->v1, v1->v2 and v2->v0.
        """

        triangle = self.new_triangle(tile=tile, split_depth=split_depth)
        e0 = self.new_half_edge(v0, types[0])
        e1 = self.new_half_edge(v1, types[1])
        e2 = self.new_half_edge(v2, types[2])
        self.link_triangle(triangle, e0, e1, e2)
        return triangle

    def set_twin(self, a: int, b: int) -> None:
        self.half_edges[a].twin = b
        self.half_edges[b].twin = a

    # Status ---------------------------------------------------------------

    def vertex_active(self, v: int) -> bool:
        return v != NONE and self.vertices[v].status is ObjectStatus.ACTIVE

    def triangle_active(self, t: int) -> bool:
        return t != NONE and self.triangles[t].status is ObjectStatus.ACTIVE

    def half_edge_active(self, e: int) -> bool:
        return e != NONE and self.half_edges[e].status is ObjectStatus.ACTIVE

    def active_vertices(self) -> Iterator[int]:
        return (i for i, v in enumerate(self.vertices) if v.status is ObjectStatus.ACTIVE)

    def active_triangles(self) -> Iterator[int]:
        return (i for i, t in enumerate(self.triangles) if t.status is ObjectStatus.ACTIVE)

    def active_half_edges(self) -> Iterator[int]:
        return (i for i, e in enumerate(self.half_edges) if e.status is ObjectStatus.ACTIVE)

    def has_tombstones(self) -> bool:
        return any(
            record.status is not ObjectStatus.ACTIVE
            for arena in (self.vertices, self.triangles, self.half_edges)
            for record in arena
        )

    # Navigation -----------------------------------------------------------

    def end_vertex(self, e: int) -> int:
        nxt = self.half_edges[e].next
        if nxt == NONE:
            return NONE
        return self.half_edges[nxt].start

    def prev(self, e: int) -> int:
        nxt = self.half_edges[e].next
        if nxt == NONE:
            return NONE
        return self.half_edges[nxt].next

    def triangle_half_edges(self, t: int) -> list[int]:
        first = self.triangles[t].half_edge
        if first == NONE:
            return []
        edges = [first]
        current = self.half_edges[first].next
        while current != NONE and current != first and len(edges) < 3:
            edges.append(current)
            current = self.half_edges[current].next
        return edges

    def triangle_vertices(self, t: int) -> list[int]:
        return [self.half_edges[e].start for e in self.triangle_half_edges(t)]

    def triangle_positions(self, t: int) -> list[tuple[float, float, float]]:
        return [self.vertices[v].position for v in self.triangle_vertices(t)]

    def edge_length_xy(self, e: int) -> float:
        a = self.vertices[self.half_edges[e].start]
        b = self.vertices[self.end_vertex(e)]
        return math.hypot(b.x - a.x, b.y - a.y)

    def longest_half_edge(self, t: int) -> int:
        """Longest half-edge of a triangle in the xy plane, NONE if degenerate."""

        best = NONE
        best_length = 0.0
        for e in self.triangle_half_edges(t):
            length = self.edge_length_xy(e)
            if length > best_length:
                best = e
                best_length = length
        return best

    def midpoint(self, e: int) -> tuple[float, float, float]:
        a = self.vertices[self.half_edges[e].start]
        b = self.vertices[self.end_vertex(e)]
        return (a.x + b.x) * 0.5, (a.y + b.y) * 0.5, (a.z + b.z) * 0.5

    def is_possible_twin(
        self, a: int, b: int, tolerance: float = VERTEX_COINCIDENT_ERROR
    ) -> bool:
        """True when a and b run between coincident endpoints in opposite directions."""

        a_start = self.vertices[self.half_edges[a].start]
        a_end = self.vertices[self.end_vertex(a)]
        b_start = self.vertices[self.half_edges[b].start]
        b_end = self.vertices[self.end_vertex(b)]
        return (
            abs(a_start.x - b_end.x) < tolerance
            and abs(a_start.y - b_end.y) < tolerance
            and abs(a_end.x - b_start.x) < tolerance
            and abs(a_end.y - b_start.y) < tolerance
        )

    # Compaction and merge -----------------------------------------------

    def remove_deleted_objects(self) -> None:
        """Drop tombstones and renumber every surviving record densely."""

        vertex_map = [NONE] * len(self.vertices)
        triangle_map = [NONE] * len(self.triangles)
        edge_map = [NONE] * len(self.half_edges)

        vertices: list[Vertex] = []
        for i, vertex in enumerate(self.vertices):
            if vertex.status is ObjectStatus.ACTIVE:
                vertex_map[i] = len(vertices)
                vertices.append(vertex)
        triangles: list[Triangle] = []
        for i, triangle in enumerate(self.triangles):
            if triangle.status is ObjectStatus.ACTIVE:
                triangle_map[i] = len(triangles)
                triangles.append(triangle)
        half_edges: list[HalfEdge] = []
        for i, edge in enumerate(self.half_edges):
            if edge.status is ObjectStatus.ACTIVE:
                edge_map[i] = len(half_edges)
                half_edges.append(edge)

        for vertex in vertices:
            vertex.outgoing = _remap(vertex.outgoing, edge_map)
        for triangle in triangles:
            triangle.half_edge = _remap(triangle.half_edge, edge_map)
        for edge in half_edges:
            edge.start = _remap(edge.start, vertex_map)
            edge.triangle = _remap(edge.triangle, triangle_map)
            edge.next = _remap(edge.next, edge_map)
            edge.twin = _remap(edge.twin, edge_map)

        self.vertices = vertices
        self.triangles = triangles
        self.half_edges = half_edges

    def merge_mesh(self, other: "TerrainMesh") -> MergeOffsets:
        """Append the live records of other, returning the index offsets used.

        ``other`` is compacted in place and must not be used afterwards.
        """

        other.remove_deleted_objects()
        offsets = MergeOffsets(
            vertices=len(self.vertices),
            triangles=len(self.triangles),
            half_edges=len(self.half_edges),
        )

        def shift(index: int, offset: int) -> int:
            return NONE if index == NONE else index + offset

        for vertex in other.vertices:
            vertex.outgoing = shift(vertex.outgoing, offsets.half_edges)
            self.vertices.append(vertex)
        for triangle in other.triangles:
            triangle.half_edge = shift(triangle.half_edge, offsets.half_edges)
            self.triangles.append(triangle)
        for edge in other.half_edges:
            edge.start = shift(edge.start, offsets.vertices)
            edge.triangle = shift(edge.triangle, offsets.triangles)
            edge.next = shift(edge.next, offsets.half_edges)
            edge.twin = shift(edge.twin, offsets.half_edges)
            self.half_edges.append(edge)

        other.vertices = []
        other.triangles = []
        other.half_edges = []
        return offsets

    # Bounds and boundary classification ---------------------------------

    def bounding_box(self) -> BoundingBox:
        box = BoundingBox()
        for vertex in self.vertices:
            if vertex.status is ObjectStatus.ACTIVE:
                box.add_point(vertex.x, vertex.y, vertex.z)
        return box

    def bounding_rectangle(self) -> Rectangle:
        return self.bounding_box().rectangle()

    def determine_half_edge_types(self, tolerance: float = VERTEX_COINCIDENT_ERROR) -> None:
        """Classify every twinless half-edge by the bounding-rectangle side it lies on."""

        box = self.bounding_box()
        if box.is_empty:
            return
        rect = box.rectangle()
        for edge in self.half_edges:
            if edge.status is not ObjectStatus.ACTIVE:
                continue
            if edge.twin != NONE:
                edge.type = HalfEdgeType.INTERIOR
                continue

            a = self.vertices[edge.start]
            b = self.vertices[self.half_edges[edge.next].start]
            if abs(a.x - rect.min_x) < tolerance and abs(b.x - rect.min_x) < tolerance:
                edge.type = HalfEdgeType.LEFT
            elif abs(a.x - rect.max_x) < tolerance and abs(b.x - rect.max_x) < tolerance:
                edge.type = HalfEdgeType.RIGHT
            elif abs(a.y - rect.min_y) < tolerance and abs(b.y - rect.min_y) < tolerance:
                edge.type = HalfEdgeType.DOWN
            elif abs(a.y - rect.max_y) < tolerance and abs(b.y - rect.max_y) < tolerance:
                edge.type = HalfEdgeType.UP
            else:
                edge.type = HalfEdgeType.INTERIOR

    def half_edges_by_type(self, edge_type: HalfEdgeType) -> list[int]:
        """Active twinless half-edges of the given type."""

        return [
            i
            for i, edge in enumerate(self.half_edges)
            if edge.status is ObjectStatus.ACTIVE
            and edge.type == edge_type
            and edge.twin == NONE
        ]

    def _start_coord(self, e: int, axis: str) -> float:
        return getattr(self.vertices[self.half_edges[e].start], axis)

    def left_half_edges_sorted_up_to_down(self) -> list[int]:
        edges = self.half_edges_by_type(HalfEdgeType.LEFT)
        return sorted(edges, key=lambda e: self._start_coord(e, "y"), reverse=True)

    def down_half_edges_sorted_left_to_right(self) -> list[int]:
        edges = self.half_edges_by_type(HalfEdgeType.DOWN)
        return sorted(edges, key=lambda e: self._start_coord(e, "x"))

    def right_half_edges_sorted_down_to_up(self) -> list[int]:
        edges = self.half_edges_by_type(HalfEdgeType.RIGHT)
        return sorted(edges, key=lambda e: self._start_coord(e, "y"))

    def up_half_edges_sorted_right_to_left(self) -> list[int]:
        edges = self.half_edges_by_type(HalfEdgeType.UP)
        return sorted(edges, key=lambda e: self._start_coord(e, "x"), reverse=True)

    def _boundary_vertices(self, edge_type: HalfEdgeType) -> list[int]:
        seen: dict[int, None] = {}
        for e in self.half_edges_by_type(edge_type):
            seen[self.half_edges[e].start] = None
            seen[self.end_vertex(e)] = None
        return list(seen)

    def left_vertices_sorted_up_to_down(self) -> list[int]:
        return sorted(
            self._boundary_vertices(HalfEdgeType.LEFT),
            key=lambda v: self.vertices[v].y,
            reverse=True,
        )

    def down_vertices_sorted_left_to_right(self) -> list[int]:
        return sorted(
            self._boundary_vertices(HalfEdgeType.DOWN), key=lambda v: self.vertices[v].x
        )

    def right_vertices_sorted_down_to_up(self) -> list[int]:
        return sorted(
            self._boundary_vertices(HalfEdgeType.RIGHT), key=lambda v: self.vertices[v].y
        )

    def up_vertices_sorted_right_to_left(self) -> list[int]:
        return sorted(
            self._boundary_vertices(HalfEdgeType.UP),
            key=lambda v: self.vertices[v].x,
            reverse=True,
        )

    # Bulk relations -------------------------------------------------------

    def set_twins(self) -> int:
        """Pair twinless half-edges that run between the same vertices in opposite directions."""

        by_endpoints: dict[tuple[int, int], int] = {}
        for i, edge in enumerate(self.half_edges):
            if edge.status is not ObjectStatus.ACTIVE or edge.twin != NONE:
                continue
            by_endpoints.setdefault((edge.start, self.end_vertex(i)), i)

        paired = 0
        for (start, end), e in by_endpoints.items():
            if self.half_edges[e].twin != NONE:
                continue
            other = by_endpoints.get((end, start))
            if other is None or self.half_edges[other].twin != NONE:
                continue
            self.set_twin(e, other)
            paired += 1
        return paired

    def set_outgoing_from_half_edges(self) -> None:
        for i, edge in enumerate(self.half_edges):
            if edge.status is ObjectStatus.ACTIVE and edge.start != NONE:
                self.vertices[edge.start].outgoing = i

    def triangles_in_range(self, tile_range: TileRange) -> list[int]:
        return [
            i
            for i, triangle in enumerate(self.triangles)
            if triangle.status is ObjectStatus.ACTIVE and tile_range.contains(triangle.tile)
        ]

    def triangles_by_tile(self) -> dict[TileID, list[int]]:
        result: dict[TileID, list[int]] = {}
        for i, triangle in enumerate(self.triangles):
            if triangle.status is not ObjectStatus.ACTIVE or triangle.tile is None:
                continue
            result.setdefault(triangle.tile, []).append(i)
        return result

    def vertices_of_triangles(self, triangles: Iterable[int]) -> list[int]:
        seen: dict[int, None] = {}
        for t in triangles:
            for v in self.triangle_vertices(t):
                seen[v] = None
        return list(seen)

    # Normals --------------------------------------------------------------

    def triangle_normal(
        self, t: int, *, body: CelestialBody = CelestialBody.EARTH
    ) -> Optional[tuple[float, float, float]]:
        """Unit normal of a geographic triangle in body-fixed cartesian space."""

        points = [
            geographic_to_cartesian(x, y, z, body=body) for x, y, z in self.triangle_positions(t)
        ]
        if len(points) != 3:
            return None
        return unit_normal(points[0], points[1], points[2])

    def calculate_normals(self, *, body: CelestialBody = CelestialBody.EARTH) -> None:
        sums: dict[int, list[float]] = {}
        for t in self.active_triangles():
            normal = self.triangle_normal(t, body=body)
            self.triangles[t].normal = normal
            if normal is None:
                continue
            for v in self.triangle_vertices(t):
                acc = sums.setdefault(v, [0.0, 0.0, 0.0])
                acc[0] += normal[0]
                acc[1] += normal[1]
                acc[2] += normal[2]

        for v in self.active_vertices():
            averaged = normalize(sums[v]) if v in sums else None
            if averaged is None:
                logger.warning("vertex_normal_defaulted", extra={"vertex": v})
                averaged = (0.0, 0.0, 1.0)
            self.vertices[v].normal = averaged

    # Tile separation ------------------------------------------------------

    def extract_tile(self, tile: TileID) -> "TerrainMesh":
        """Copy the triangles owned by tile into a new, dense mesh.

        Twins are kept only when both sides belong to the tile; boundary
        half-edge types are re-derived from the copy's own extent.
        """

        result = TerrainMesh(mesh_id=self.mesh_id)
        vertex_map: dict[int, int] = {}
        edge_map: dict[int, int] = {}

        for t in self.triangles_by_tile().get(tile, []):
            source = self.triangles[t]
            copy_t = result.new_triangle(tile=source.tile, split_depth=source.split_depth)
            result.triangles[copy_t].refine_checked = source.refine_checked
            result.triangles[copy_t].normal = source.normal
            copied: list[int] = []
            for e in self.triangle_half_edges(t):
                edge = self.half_edges[e]
                v = edge.start
                if v not in vertex_map:
                    vertex = self.vertices[v]
                    vertex_map[v] = result.new_vertex(vertex.x, vertex.y, vertex.z)
                    result.vertices[vertex_map[v]].normal = vertex.normal
                copy_e = result.new_half_edge(vertex_map[v], edge.type)
                edge_map[e] = copy_e
                copied.append(copy_e)
            result.link_triangle(copy_t, copied[0], copied[1], copied[2])

        for source_e, copy_e in edge_map.items():
            twin = self.half_edges[source_e].twin
            if twin != NONE and twin in edge_map:
                result.half_edges[copy_e].twin = edge_map[twin]

        result.set_outgoing_from_half_edges()
        result.determine_half_edge_types()
        return result
