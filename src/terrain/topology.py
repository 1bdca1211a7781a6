"""Vertex edge-fan validation, repair and mesh integrity checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from .mesh import NONE, ObjectStatus, TerrainMesh

logger = logging.getLogger(__name__)

FAN_ITERATION_CAP: Final[int] = 100
MAX_EXPECTED_FAN_EDGES: Final[int] = 10
CRITICAL_FAN_EDGES: Final[int] = 15


class ClosureType(str, Enum):
    INTERIOR = "interior"
    BOUNDARY = "boundary"
    CORRUPTED = "corrupted"


@dataclass(frozen=True)
class FanValidation:
    edge_count: int
    closure: ClosureType
    valid: bool
    hit_limit: bool = False

    @property
    def has_multiple_loops(self) -> bool:
        # A walk that never closes within the cap is treated as tangled loops.
        return self.hit_limit


@dataclass(frozen=True)
class RepairSummary:
    repaired: int
    corrupted: int


@dataclass(frozen=True)
class TopologyHealth:
    total_vertices: int
    corrupted_vertices: int
    max_edges: int

    @property
    def corruption_ratio(self) -> float:
        if self.total_vertices == 0:
            return 0.0
        return self.corrupted_vertices / self.total_vertices


def _fan_start(mesh: TerrainMesh, v: int) -> int:
    outgoing = mesh.vertices[v].outgoing
    if not mesh.half_edge_active(outgoing) or mesh.half_edges[outgoing].start != v:
        return NONE
    return outgoing


def outgoing_half_edges(
    mesh: TerrainMesh, v: int, *, cap: int = FAN_ITERATION_CAP
) -> list[int]:
    """Collect the half-edges leaving v by walking its fan.

    The walk rotates with twin -> next until it closes or reaches an open
    boundary; an open fan is then walked the other way with prev -> twin.
    Both walks stop after ``cap`` steps, so a malformed cyclic fan yields a
    partial result instead of looping.
    """

    first = _fan_start(mesh, v)
    if first == NONE:
        return []

    edges = [first]
    seen = {first}
    current = first
    open_fan = False
    for _ in range(cap):
        twin = mesh.half_edges[current].twin
        if not mesh.half_edge_active(twin):
            open_fan = True
            break
        nxt = mesh.half_edges[twin].next
        if not mesh.half_edge_active(nxt):
            open_fan = True
            break
        if nxt == first or nxt in seen:
            # Closed, or a cycle that never returns to the entry edge.
            break
        edges.append(nxt)
        seen.add(nxt)
        current = nxt
    else:
        logger.warning("vertex_fan_iteration_cap_reached", extra={"vertex": v, "cap": cap})

    if not open_fan:
        return edges

    current = first
    for _ in range(cap):
        prev = mesh.prev(current)
        if not mesh.half_edge_active(prev):
            break
        twin = mesh.half_edges[prev].twin
        if not mesh.half_edge_active(twin) or twin in seen:
            break
        edges.append(twin)
        seen.add(twin)
        current = twin
    return edges


def validate_vertex(
    mesh: TerrainMesh,
    v: int,
    max_expected_edges: int = MAX_EXPECTED_FAN_EDGES,
    *,
    cap: int = FAN_ITERATION_CAP,
) -> FanValidation:
    """Walk the forward fan of v and classify it."""

    first = _fan_start(mesh, v)
    if first == NONE:
        return FanValidation(edge_count=0, closure=ClosureType.CORRUPTED, valid=False)

    edge_count = 1
    current = first
    interior = True
    hit_limit = False
    while True:
        twin = mesh.half_edges[current].twin
        if not mesh.half_edge_active(twin):
            interior = False
            break
        nxt = mesh.half_edges[twin].next
        if not mesh.half_edge_active(nxt):
            interior = False
            break
        if nxt == first:
            break
        edge_count += 1
        current = nxt
        if edge_count >= cap:
            hit_limit = True
            break

    if hit_limit:
        closure = ClosureType.CORRUPTED
    elif interior:
        closure = ClosureType.INTERIOR
    else:
        closure = ClosureType.BOUNDARY
    return FanValidation(
        edge_count=edge_count,
        closure=closure,
        valid=not hit_limit and edge_count <= max_expected_edges,
        hit_limit=hit_limit,
    )


def find_outgoing_half_edge(
    mesh: TerrainMesh, v: int, *, exclude_triangle: int = NONE
) -> int:
    """Exhaustively search for an active half-edge leaving v."""

    for i, edge in enumerate(mesh.half_edges):
        if (
            edge.start == v
            and edge.status is ObjectStatus.ACTIVE
            and edge.triangle != exclude_triangle
        ):
            return i
    return NONE


def _replacement_outgoing(mesh: TerrainMesh, e: int, exclude_triangle: int) -> int:
    """Another active half-edge leaving the start of e, neighbours first."""

    v = mesh.half_edges[e].start

    def usable(candidate: int) -> bool:
        return (
            mesh.half_edge_active(candidate)
            and mesh.half_edges[candidate].start == v
            and mesh.half_edges[candidate].triangle != exclude_triangle
        )

    prev = mesh.prev(e)
    if prev != NONE:
        candidate = mesh.half_edges[prev].twin
        if candidate != NONE and usable(candidate):
            return candidate
    twin = mesh.half_edges[e].twin
    if twin != NONE:
        candidate = mesh.half_edges[twin].next
        if candidate != NONE and usable(candidate):
            return candidate
    return find_outgoing_half_edge(mesh, v, exclude_triangle=exclude_triangle)


def release_triangle(mesh: TerrainMesh, t: int) -> None:
    """Tombstone a triangle and its half-edges without leaving dangling references.

    Vertices whose outgoing half-edge belonged to t are re-pointed at another
    live half-edge; a vertex left without any is tombstoned as well. Twins on
    neighbouring triangles that still point into t are cleared.
    """

    edges = mesh.triangle_half_edges(t)
    for e in edges:
        v = mesh.half_edges[e].start
        if not mesh.vertex_active(v) or mesh.vertices[v].outgoing != e:
            continue
        replacement = _replacement_outgoing(mesh, e, t)
        if replacement != NONE:
            mesh.vertices[v].outgoing = replacement
        else:
            logger.debug("vertex_isolated", extra={"vertex": v, "triangle": t})
            mesh.vertices[v].outgoing = NONE
            mesh.vertices[v].status = ObjectStatus.DELETED

    for e in edges:
        twin = mesh.half_edges[e].twin
        if twin != NONE and mesh.half_edges[twin].twin == e:
            mesh.half_edges[twin].twin = NONE
        mesh.half_edges[e].twin = NONE
        mesh.half_edges[e].status = ObjectStatus.DELETED
    mesh.triangles[t].status = ObjectStatus.DELETED


def repair_vertex(
    mesh: TerrainMesh,
    v: int,
    max_expected_edges: int = MAX_EXPECTED_FAN_EDGES,
    *,
    cap: int = FAN_ITERATION_CAP,
) -> bool:
    """Try to restore a usable fan for v; tombstone v when nothing leaves it.

    An outgoing reference that is inactive or starts at another vertex is
    replaced by any active half-edge leaving v.
    """

    if not mesh.vertex_active(v):
        return False

    validation = validate_vertex(mesh, v, max_expected_edges, cap=cap)
    if validation.valid:
        return True

    if _fan_start(mesh, v) == NONE:
        candidate = find_outgoing_half_edge(mesh, v)
        if candidate == NONE:
            logger.warning("vertex_repair_failed_no_outgoing", extra={"vertex": v})
            mesh.vertices[v].outgoing = NONE
            mesh.vertices[v].status = ObjectStatus.DELETED
            return False
        mesh.vertices[v].outgoing = candidate
        logger.info("vertex_outgoing_reassigned", extra={"vertex": v, "half_edge": candidate})

    validation = validate_vertex(mesh, v, max_expected_edges, cap=cap)
    if not validation.valid:
        # The fan starts at v, so only an oversized or unclosed fan is left:
        # accepted as a non-manifold seam vertex.
        logger.warning(
            "vertex_non_manifold_accepted",
            extra={
                "vertex": v,
                "edge_count": validation.edge_count,
                "multiple_loops": validation.has_multiple_loops,
            },
        )
    return True


def repair_mesh_topology(
    mesh: TerrainMesh,
    max_expected_edges: int = MAX_EXPECTED_FAN_EDGES,
    *,
    cap: int = FAN_ITERATION_CAP,
) -> RepairSummary:
    repaired = 0
    corrupted = 0
    for v in list(mesh.active_vertices()):
        validation = validate_vertex(mesh, v, max_expected_edges, cap=cap)
        if validation.valid:
            continue
        corrupted += 1
        if repair_vertex(mesh, v, max_expected_edges, cap=cap):
            repaired += 1

    if corrupted:
        logger.info(
            "mesh_topology_repaired",
            extra={"corrupted": corrupted, "repaired": repaired},
        )
    return RepairSummary(repaired=repaired, corrupted=corrupted)


def check_topology_health(
    mesh: TerrainMesh,
    *,
    max_expected_edges: int = MAX_EXPECTED_FAN_EDGES,
    critical_edges: int = CRITICAL_FAN_EDGES,
    cap: int = FAN_ITERATION_CAP,
) -> TopologyHealth:
    total = 0
    corrupted = 0
    max_edges = 0
    worst_vertex: Optional[int] = None
    for v in mesh.active_vertices():
        total += 1
        edge_count = len(outgoing_half_edges(mesh, v, cap=cap))
        if edge_count > max_edges:
            max_edges = edge_count
            worst_vertex = v
        if edge_count > max_expected_edges:
            corrupted += 1
            if edge_count > critical_edges:
                logger.warning(
                    "vertex_fan_critical",
                    extra={"vertex": v, "edge_count": edge_count, "threshold": critical_edges},
                )

    health = TopologyHealth(total_vertices=total, corrupted_vertices=corrupted, max_edges=max_edges)
    if corrupted:
        logger.warning(
            "topology_health_degraded",
            extra={
                "corrupted_vertices": corrupted,
                "total_vertices": total,
                "corruption_ratio": health.corruption_ratio,
                "max_edges": max_edges,
                "worst_vertex": worst_vertex,
            },
        )
    return health


def check_outgoing_edges(mesh: TerrainMesh) -> bool:
    """True when every active vertex has an active outgoing half-edge that starts at it."""

    for v in mesh.active_vertices():
        outgoing = mesh.vertices[v].outgoing
        if not mesh.half_edge_active(outgoing) or mesh.half_edges[outgoing].start != v:
            return False
    return True


def check_mesh(mesh: TerrainMesh, *, require_conforming: bool = False) -> list[str]:
    """Return human readable descriptions of every broken invariant.

    With ``require_conforming`` a triangle whose longest edge borders a
    triangle of the same split depth must be that triangle's longest edge
    too, as holds for freshly built tile grids.
    """

    issues: list[str] = []
    for t in mesh.active_triangles():
        edges = mesh.triangle_half_edges(t)
        if len(edges) != 3 or mesh.half_edges[edges[-1]].next != edges[0]:
            issues.append(f"triangle {t}: next cycle is not a 3-cycle")
            continue
        for e in edges:
            edge = mesh.half_edges[e]
            if edge.status is not ObjectStatus.ACTIVE:
                issues.append(f"triangle {t}: half-edge {e} is deleted")
            if edge.triangle != t:
                issues.append(f"half-edge {e}: triangle {edge.triangle} != {t}")
            if edge.twin != NONE:
                if not mesh.half_edge_active(edge.twin):
                    issues.append(f"half-edge {e}: twin {edge.twin} is deleted")
                elif mesh.half_edges[edge.twin].twin != e:
                    issues.append(f"half-edge {e}: twin {edge.twin} is not symmetric")
            if not mesh.vertex_active(edge.start):
                issues.append(f"half-edge {e}: start vertex {edge.start} is not active")

        longest = mesh.longest_half_edge(t)
        if longest == NONE:
            issues.append(f"triangle {t}: degenerate")
            continue
        if not require_conforming:
            continue
        twin = mesh.half_edges[longest].twin
        if twin == NONE or not mesh.half_edge_active(twin):
            continue
        adjacent = mesh.half_edges[twin].triangle
        if not mesh.triangle_active(adjacent):
            issues.append(f"triangle {t}: adjacent triangle {adjacent} is deleted")
            continue
        if mesh.triangles[adjacent].split_depth == mesh.triangles[t].split_depth:
            if mesh.longest_half_edge(adjacent) != twin:
                issues.append(
                    f"triangle {t}: longest edge is not shared with adjacent triangle {adjacent}"
                )

    for v in mesh.active_vertices():
        outgoing = mesh.vertices[v].outgoing
        if not mesh.half_edge_active(outgoing):
            issues.append(f"vertex {v}: outgoing half-edge {outgoing} is not active")
        elif mesh.half_edges[outgoing].start != v:
            issues.append(f"vertex {v}: outgoing half-edge {outgoing} starts elsewhere")
    return issues
