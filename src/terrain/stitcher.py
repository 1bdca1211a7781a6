"""Consolidation of independently built tile meshes into one mesh."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import MeshConfig
from .mesh import NONE, HalfEdgeType, ObjectStatus, TerrainMesh
from .topology import (
    CRITICAL_FAN_EDGES,
    FAN_ITERATION_CAP,
    MAX_EXPECTED_FAN_EDGES,
    check_topology_health,
    repair_mesh_topology,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StitchReport:
    paired: int
    count_a: int
    count_b: int

    @property
    def mismatched(self) -> bool:
        return self.count_a != self.count_b


def stitch_half_edges_inverse_order(
    mesh: TerrainMesh, edges_a: Sequence[int], edges_b: Sequence[int]
) -> StitchReport:
    """Twin two boundary sequences of one mesh that run in opposite directions.

    ``edges_a[i]`` is paired with ``edges_b[n - 1 - i]`` where ``n`` is the
    shorter length. Every half-edge starting at a vertex of the second edge
    is moved onto the coincident vertex of the first, and the emptied vertex
    is tombstoned. Sequences of unequal length are paired by position only.
    """

    count_a = len(edges_a)
    count_b = len(edges_b)
    min_count = min(count_a, count_b)
    if count_a != count_b:
        logger.warning(
            "stitch_edge_count_mismatch",
            extra={"count_a": count_a, "count_b": count_b, "paired": min_count},
        )

    by_start: dict[int, list[int]] = {}
    for e in mesh.active_half_edges():
        by_start.setdefault(mesh.half_edges[e].start, []).append(e)

    def redirect(src: int, dst: int) -> None:
        if src == dst or src == NONE:
            return
        moved = by_start.pop(src, [])
        for e in moved:
            mesh.half_edges[e].start = dst
        by_start.setdefault(dst, []).extend(moved)
        vertex = mesh.vertices[src]
        vertex.outgoing = NONE
        vertex.status = ObjectStatus.DELETED

    def fix_outgoing(v: int) -> None:
        if not mesh.vertex_active(v):
            return
        outgoing = mesh.vertices[v].outgoing
        if mesh.half_edge_active(outgoing) and mesh.half_edges[outgoing].start == v:
            return
        for e in by_start.get(v, []):
            if mesh.half_edge_active(e):
                mesh.vertices[v].outgoing = e
                return
        logger.debug("stitch_vertex_without_outgoing", extra={"vertex": v})
        mesh.vertices[v].outgoing = NONE
        mesh.vertices[v].status = ObjectStatus.DELETED

    paired = 0
    for i in range(min_count):
        a = edges_a[i]
        b = edges_b[min_count - 1 - i]
        if not (mesh.half_edge_active(a) and mesh.half_edge_active(b)):
            continue
        if mesh.half_edges[a].twin != NONE or mesh.half_edges[b].twin != NONE:
            continue

        start_a = mesh.half_edges[a].start
        end_a = mesh.end_vertex(a)
        start_b = mesh.half_edges[b].start
        end_b = mesh.end_vertex(b)

        redirect(start_b, end_a)
        redirect(end_b, start_a)

        mesh.set_twin(a, b)
        mesh.half_edges[a].type = HalfEdgeType.INTERIOR
        mesh.half_edges[b].type = HalfEdgeType.INTERIOR
        paired += 1

        fix_outgoing(start_a)
        fix_outgoing(end_a)

    return StitchReport(paired=paired, count_a=count_a, count_b=count_b)


class TileStitcher:
    """Stitches tile meshes along shared borders, row by row."""

    def __init__(
        self,
        *,
        origin_is_left_up: bool = False,
        severe_ratio: float = 0.20,
        severe_max_edges: int = 50,
        max_expected_edges: int = MAX_EXPECTED_FAN_EDGES,
        critical_edges: int = CRITICAL_FAN_EDGES,
        fan_iteration_cap: int = FAN_ITERATION_CAP,
    ) -> None:
        self._origin_is_left_up = origin_is_left_up
        self._severe_ratio = float(severe_ratio)
        self._severe_max_edges = int(severe_max_edges)
        self._max_expected_edges = int(max_expected_edges)
        self._critical_edges = int(critical_edges)
        self._fan_iteration_cap = int(fan_iteration_cap)

    @classmethod
    def from_config(
        cls, config: MeshConfig, *, origin_is_left_up: bool = False
    ) -> "TileStitcher":
        return cls(
            origin_is_left_up=origin_is_left_up,
            severe_ratio=config.stitch_severe_corruption_ratio,
            severe_max_edges=config.stitch_severe_max_edges,
            max_expected_edges=config.max_expected_fan_edges,
            critical_edges=config.critical_fan_edges,
            fan_iteration_cap=config.fan_iteration_cap,
        )

    def stitch_horizontal(self, left: TerrainMesh, right: TerrainMesh) -> StitchReport:
        """Merge right into left, twinning left's RIGHT border with right's LEFT border."""

        left.remove_deleted_objects()
        right.remove_deleted_objects()
        edges_a = left.right_half_edges_sorted_down_to_up()
        edges_b = right.left_half_edges_sorted_up_to_down()
        if not edges_a or not edges_b:
            logger.warning(
                "stitch_missing_border",
                extra={"direction": "horizontal", "count_a": len(edges_a), "count_b": len(edges_b)},
            )
        offsets = left.merge_mesh(right)
        edges_b = [e + offsets.half_edges for e in edges_b]
        report = stitch_half_edges_inverse_order(left, edges_a, edges_b)
        self._after_stitch(left, "horizontal", report)
        return report

    def stitch_vertical(self, result: TerrainMesh, row: TerrainMesh) -> StitchReport:
        """Merge a row mesh into the accumulated result along their shared border."""

        result.remove_deleted_objects()
        row.remove_deleted_objects()
        if self._origin_is_left_up:
            # Rows advance southward: the result sits above the new row.
            edges_a = result.down_half_edges_sorted_left_to_right()
            edges_b = row.up_half_edges_sorted_right_to_left()
        else:
            edges_a = result.up_half_edges_sorted_right_to_left()
            edges_b = row.down_half_edges_sorted_left_to_right()
        if not edges_a or not edges_b:
            logger.warning(
                "stitch_missing_border",
                extra={"direction": "vertical", "count_a": len(edges_a), "count_b": len(edges_b)},
            )
        offsets = result.merge_mesh(row)
        edges_b = [e + offsets.half_edges for e in edges_b]
        report = stitch_half_edges_inverse_order(result, edges_a, edges_b)
        self._after_stitch(result, "vertical", report)
        return report

    def consolidate(self, rows: Sequence[Sequence[TerrainMesh]]) -> Optional[TerrainMesh]:
        """Stitch a matrix of tile meshes (rows ordered by increasing tile y)."""

        row_meshes: list[TerrainMesh] = []
        for row in rows:
            if not row:
                continue
            row_mesh = row[0]
            for tile_mesh in row[1:]:
                self.stitch_horizontal(row_mesh, tile_mesh)
            row_meshes.append(row_mesh)

        if not row_meshes:
            return None
        result = row_meshes[0]
        for row_mesh in row_meshes[1:]:
            self.stitch_vertical(result, row_mesh)
        return result

    def _after_stitch(self, mesh: TerrainMesh, direction: str, report: StitchReport) -> None:
        mesh.remove_deleted_objects()
        health = check_topology_health(
            mesh,
            max_expected_edges=self._max_expected_edges,
            critical_edges=self._critical_edges,
            cap=self._fan_iteration_cap,
        )
        if health.corruption_ratio > self._severe_ratio or health.max_edges > self._severe_max_edges:
            logger.error(
                "stitch_severe_corruption",
                extra={
                    "direction": direction,
                    "corruption_ratio": health.corruption_ratio,
                    "max_edges": health.max_edges,
                },
            )
        repair = repair_mesh_topology(
            mesh, self._max_expected_edges, cap=self._fan_iteration_cap
        )
        logger.debug(
            "stitch_completed",
            extra={
                "direction": direction,
                "paired": report.paired,
                "count_a": report.count_a,
                "count_b": report.count_b,
                "repaired": repair.repaired,
                "corrupted": repair.corrupted,
            },
        )
