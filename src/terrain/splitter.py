"""Longest-edge bisection of mesh triangles.

A triangle is always bisected along its longest plan-view edge. When that
edge is shared with a neighbour whose own longest edge is the same pair, both
triangles are bisected together around one midpoint (four new triangles).
Otherwise the neighbour is split first, recursively, until the pair matches
or the neighbour can no longer be resolved, in which case the triangle is
bisected alone as if it sat on a tile border.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from .elevation import ElevationOracle
from .errors import MeshContractError
from .mesh import NONE, VERTEX_COINCIDENT_ERROR, HalfEdgeType, TerrainMesh
from .topology import release_triangle

logger = logging.getLogger(__name__)

MAX_RECURSION_DEPTH: Final[int] = 50


class SplitStatus(str, Enum):
    SPLIT = "split"
    DEGENERATE = "degenerate"
    CORRUPTED = "corrupted"


@dataclass(frozen=True)
class SplitResult:
    status: SplitStatus
    new_triangles: tuple[int, ...] = ()

    @property
    def split(self) -> bool:
        return self.status is SplitStatus.SPLIT and bool(self.new_triangles)


@dataclass
class SplitCounters:
    border_splits: int = 0
    paired_splits: int = 0
    forced_border_splits: int = 0
    degenerate_removed: int = 0
    depth_aborts: int = 0


class TriangleSplitter:
    def __init__(
        self,
        mesh: TerrainMesh,
        oracle: Optional[ElevationOracle],
        *,
        max_recursion_depth: int = MAX_RECURSION_DEPTH,
        tolerance: float = VERTEX_COINCIDENT_ERROR,
    ) -> None:
        if max_recursion_depth < 0:
            raise ValueError("max_recursion_depth must be >= 0")
        self._mesh = mesh
        self._oracle = oracle
        self._max_depth = int(max_recursion_depth)
        self._tolerance = float(tolerance)
        self.counters = SplitCounters()

    @property
    def mesh(self) -> TerrainMesh:
        return self._mesh

    def split(self, t: int, out: Optional[list[int]] = None) -> SplitResult:
        """Bisect an active triangle, splitting neighbours first when required.

        The triangles produced by bisecting ``t`` (and its partner, for a
        paired split) are appended to ``out`` when given.
        """

        if not self._mesh.triangle_active(t):
            raise MeshContractError(f"Cannot split inactive triangle {t}")
        result = self._split(t, set(), 0)
        if out is not None:
            out.extend(result.new_triangles)
        return result

    # Recursion -------------------------------------------------------------

    def _split(self, t: int, in_flight: set[int], depth: int) -> SplitResult:
        mesh = self._mesh
        if depth > self._max_depth:
            logger.warning(
                "split_recursion_depth_exceeded",
                extra={"triangle": t, "max_depth": self._max_depth},
            )
            self.counters.depth_aborts += 1
            release_triangle(mesh, t)
            return SplitResult(SplitStatus.CORRUPTED)

        longest = mesh.longest_half_edge(t)
        if longest == NONE:
            logger.warning("split_degenerate_triangle", extra={"triangle": t})
            self.counters.degenerate_removed += 1
            release_triangle(mesh, t)
            return SplitResult(SplitStatus.DEGENERATE)

        in_flight.add(t)
        try:
            adjacent = self._splittable_adjacent(t, in_flight, depth)
            if not mesh.triangle_active(t):
                # Released while resolving its neighbourhood.
                return SplitResult(SplitStatus.CORRUPTED)
            longest = mesh.longest_half_edge(t)
            if longest == NONE:
                self.counters.degenerate_removed += 1
                release_triangle(mesh, t)
                return SplitResult(SplitStatus.DEGENERATE)
            if adjacent is None:
                if mesh.half_edge_active(mesh.half_edges[longest].twin):
                    self.counters.forced_border_splits += 1
                else:
                    self.counters.border_splits += 1
                return SplitResult(SplitStatus.SPLIT, self._split_border(t, longest))
            self.counters.paired_splits += 1
            return SplitResult(SplitStatus.SPLIT, self._split_pair(t, longest, adjacent))
        finally:
            in_flight.discard(t)

    def _splittable_adjacent(self, t: int, in_flight: set[int], depth: int) -> Optional[int]:
        """The neighbour sharing t's longest edge as its own longest edge.

        Returns None when t must be split alone: no neighbour, a neighbour
        already being split further up the call stack, or a neighbour that
        cannot be brought into a matching shape.
        """

        mesh = self._mesh
        for _ in range(self._max_depth + 1):
            if not mesh.triangle_active(t):
                return None
            longest = mesh.longest_half_edge(t)
            if longest == NONE:
                return None
            twin = mesh.half_edges[longest].twin
            if not mesh.half_edge_active(twin):
                return None
            adjacent = mesh.half_edges[twin].triangle
            if not mesh.triangle_active(adjacent):
                return None
            if adjacent in in_flight:
                logger.debug(
                    "split_cycle_detected",
                    extra={"triangle": t, "adjacent": adjacent},
                )
                return None

            adjacent_longest = mesh.longest_half_edge(adjacent)
            if adjacent_longest == NONE:
                logger.warning("split_degenerate_adjacent", extra={"triangle": t, "adjacent": adjacent})
                self.counters.degenerate_removed += 1
                release_triangle(mesh, adjacent)
                return None
            if adjacent_longest == twin:
                return adjacent
            if mesh.is_possible_twin(adjacent_longest, longest, self._tolerance):
                logger.warning(
                    "split_unlinked_twin",
                    extra={"triangle": t, "adjacent": adjacent},
                )
                return None

            result = self._split(adjacent, in_flight, depth + 1)
            if result.status is not SplitStatus.SPLIT:
                return None
        return None

    # Midpoint ----------------------------------------------------------------

    def _midpoint_vertex(self, t: int, e: int) -> int:
        mesh = self._mesh
        x, y, average_z = mesh.midpoint(e)
        z = math.nan
        tile = mesh.triangles[t].tile
        if self._oracle is not None and tile is not None:
            z = float(self._oracle.elevation(tile, x, y))
        if math.isnan(z):
            logger.debug("split_midpoint_elevation_fallback", extra={"triangle": t})
            z = average_z
        return mesh.new_vertex(x, y, z)

    # Topology surgery --------------------------------------------------------

    def _attach(self, a: int, external: int) -> None:
        if self._mesh.half_edge_active(external):
            self._mesh.set_twin(a, external)
        else:
            self._mesh.half_edges[a].twin = NONE

    def _split_border(self, t: int, e: int) -> tuple[int, ...]:
        mesh = self._mesh
        n = mesh.half_edges[e].next
        p = mesh.half_edges[n].next
        s = mesh.half_edges[e].start
        end = mesh.half_edges[n].start
        o = mesh.half_edges[p].start
        e_type = mesh.half_edges[e].type
        n_twin = mesh.half_edges[n].twin
        p_twin = mesh.half_edges[p].twin
        source = mesh.triangles[t]

        m = self._midpoint_vertex(t, e)
        a = mesh.add_triangle(
            s, m, o,
            tile=source.tile,
            split_depth=source.split_depth + 1,
            types=(e_type, HalfEdgeType.INTERIOR, mesh.half_edges[p].type),
        )
        b = mesh.add_triangle(
            m, end, o,
            tile=source.tile,
            split_depth=source.split_depth + 1,
            types=(e_type, mesh.half_edges[n].type, HalfEdgeType.INTERIOR),
        )
        a1, a2, a3 = mesh.triangle_half_edges(a)
        _b1, b2, b3 = mesh.triangle_half_edges(b)

        mesh.set_twin(a2, b3)
        self._attach(a3, p_twin)
        self._attach(b2, n_twin)

        mesh.vertices[s].outgoing = a1
        mesh.vertices[end].outgoing = b2
        mesh.vertices[o].outgoing = a3
        mesh.vertices[m].outgoing = a2

        release_triangle(mesh, t)
        return a, b

    def _split_pair(self, t: int, e: int, adjacent: int) -> tuple[int, ...]:
        mesh = self._mesh
        n = mesh.half_edges[e].next
        p = mesh.half_edges[n].next
        f = mesh.half_edges[e].twin
        fn = mesh.half_edges[f].next
        fp = mesh.half_edges[fn].next

        s = mesh.half_edges[e].start
        end = mesh.half_edges[n].start
        o = mesh.half_edges[p].start
        oa = mesh.half_edges[fp].start

        n_twin = mesh.half_edges[n].twin
        p_twin = mesh.half_edges[p].twin
        fn_twin = mesh.half_edges[fn].twin
        fp_twin = mesh.half_edges[fp].twin

        source = mesh.triangles[t]
        other = mesh.triangles[adjacent]
        e_type = mesh.half_edges[e].type
        f_type = mesh.half_edges[f].type

        m = self._midpoint_vertex(t, e)
        a = mesh.add_triangle(
            s, m, o,
            tile=source.tile,
            split_depth=source.split_depth + 1,
            types=(e_type, HalfEdgeType.INTERIOR, mesh.half_edges[p].type),
        )
        b = mesh.add_triangle(
            m, end, o,
            tile=source.tile,
            split_depth=source.split_depth + 1,
            types=(e_type, mesh.half_edges[n].type, HalfEdgeType.INTERIOR),
        )
        c = mesh.add_triangle(
            m, s, oa,
            tile=other.tile,
            split_depth=other.split_depth + 1,
            types=(f_type, mesh.half_edges[fn].type, HalfEdgeType.INTERIOR),
        )
        d = mesh.add_triangle(
            end, m, oa,
            tile=other.tile,
            split_depth=other.split_depth + 1,
            types=(f_type, HalfEdgeType.INTERIOR, mesh.half_edges[fp].type),
        )
        a1, a2, a3 = mesh.triangle_half_edges(a)
        b1, b2, b3 = mesh.triangle_half_edges(b)
        c1, c2, c3 = mesh.triangle_half_edges(c)
        d1, d2, d3 = mesh.triangle_half_edges(d)

        mesh.set_twin(a2, b3)
        mesh.set_twin(c3, d2)
        mesh.set_twin(a1, c1)
        mesh.set_twin(b1, d1)
        self._attach(a3, p_twin)
        self._attach(b2, n_twin)
        self._attach(c2, fn_twin)
        self._attach(d3, fp_twin)

        mesh.vertices[s].outgoing = a1
        mesh.vertices[end].outgoing = b2
        mesh.vertices[o].outgoing = a3
        mesh.vertices[oa].outgoing = c3
        mesh.vertices[m].outgoing = a2

        release_triangle(mesh, t)
        release_triangle(mesh, adjacent)
        return a, b, c, d
