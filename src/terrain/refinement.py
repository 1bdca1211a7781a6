"""Error-driven refinement of a consolidated mesh over a tile range."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import numpy as np

from .config import MeshConfig, RefinementConfig, SplitterConfig
from .elevation import DemGrid, ElevationOracle
from .geometry import BoundingBox, Plane, barycenter
from .globe import cosine_between_unit_vectors, geographic_to_cartesian, normal_at_cartesian
from .memory import MemoryPressureProbe, MemoryState, MemoryThresholds, SystemMemoryProbe
from .mesh import TerrainMesh
from .splitter import TriangleSplitter
from .tile_pyramid import GeoRect, TileGeometry, TileID, TileRange
from .topology import TopologyHealth, check_topology_health

logger = logging.getLogger(__name__)


class TileRasterSource(ElevationOracle, Protocol):
    @property
    def coverage(self) -> Optional[GeoRect]:
        ...

    def raster_for(self, tile: TileID) -> Optional[DemGrid]:
        ...


class StopReason(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    NO_PROGRESS = "no_progress"
    SEVERE_CORRUPTION = "severe_corruption"
    MEMORY_PRESSURE = "memory_pressure"


@dataclass(frozen=True)
class RefinementResult:
    iterations: int
    splits: int
    stop_reason: StopReason
    triangle_count: int
    vertex_count: int

    @property
    def degraded(self) -> bool:
        return self.stop_reason not in (StopReason.CONVERGED, StopReason.MAX_ITERATIONS)


class RefinementDriver:
    """Repeatedly splits triangles whose plane deviates too far from the terrain.

    Every stop condition ends the loop gracefully and leaves the mesh as the
    best result produced so far.
    """

    def __init__(
        self,
        *,
        geometry: TileGeometry,
        rasters: TileRasterSource,
        config: Optional[RefinementConfig] = None,
        splitter_config: Optional[SplitterConfig] = None,
        mesh_config: Optional[MeshConfig] = None,
        memory_probe: Optional[MemoryPressureProbe] = None,
    ) -> None:
        self._geometry = geometry
        self._rasters = rasters
        self._config = config or RefinementConfig()
        self._splitter_config = splitter_config or SplitterConfig()
        self._mesh_config = mesh_config or MeshConfig()
        self._memory_probe = memory_probe or SystemMemoryProbe()
        self._memory_thresholds = MemoryThresholds(
            warning=self._config.memory_warning_pressure,
            critical=self._config.memory_critical_pressure,
        )

    @property
    def config(self) -> RefinementConfig:
        return self._config

    # Predicate ---------------------------------------------------------------

    def _slope_cosine(self, mesh: TerrainMesh, t: int, raster: DemGrid) -> float:
        normal = mesh.triangle_normal(t, body=self._geometry.body)
        if normal is None:
            return 1.0
        lon, lat = raster.rect.center
        center = geographic_to_cartesian(lon, lat, 0.0, body=self._geometry.body)
        up = normal_at_cartesian(*center, body=self._geometry.body)
        return abs(cosine_between_unit_vectors(normal, up))

    def must_refine_triangle(self, mesh: TerrainMesh, t: int) -> bool:
        triangle = mesh.triangles[t]
        if triangle.refine_checked:
            return False
        tile = triangle.tile
        if tile is None:
            triangle.refine_checked = True
            return False

        positions = mesh.triangle_positions(t)
        box = BoundingBox.from_points(positions)
        radius = self._geometry.body.equatorial_radius
        bbox_length_m = math.radians(box.longest_distance_xy()) * radius
        scale = 0.8 * (bbox_length_m / self._geometry.tile_size_m(tile.z)) + 0.2
        max_diff = self._geometry.max_error_m(tile.z) * scale

        max_edge_m = max(
            math.radians(mesh.edge_length_xy(e)) * radius for e in mesh.triangle_half_edges(t)
        )
        if max_edge_m < self._geometry.min_triangle_size_m(tile.z):
            triangle.refine_checked = True
            return False
        if max_edge_m > self._geometry.max_triangle_size_m(tile.z):
            return True

        coverage = self._rasters.coverage
        if coverage is None or not coverage.intersects(box.min_x, box.min_y, box.max_x, box.max_y):
            # Outside the data only the vertices themselves can be checked.
            return any(z > max_diff for _, _, z in positions)

        raster = self._rasters.raster_for(tile)
        if raster is None:
            return False

        cos_angle = 1.0
        if tile.z > self._config.slope_correction_min_depth:
            cos_angle = self._slope_cosine(mesh, t, raster)

        plane = Plane.fit(positions)
        cx, cy, _ = barycenter(positions)
        col = raster.column(cx)
        row = raster.row(cy)
        elevation = raster.value(col, row)
        distance = abs(elevation - plane.value_z(raster.lon_of(col), raster.lat_of(row))) * cos_angle
        if distance > max_diff:
            logger.debug(
                "refine_barycenter_exceeds_error",
                extra={"triangle": t, "depth": tile.z, "distance": distance, "max_diff": max_diff},
            )
            return True

        start_col = raster.column(box.min_x)
        start_row = raster.row(box.min_y)
        end_col = raster.column(box.max_x)
        end_row = raster.row(box.max_y)
        window = self._config.min_raster_window
        if end_col - start_col + 1 < window or end_row - start_row + 1 < window:
            triangle.refine_checked = True
            return False

        if self._raster_window_exceeds(raster, positions, plane, cos_angle, max_diff, (start_col, start_row, end_col, end_row)):
            logger.debug(
                "refine_raster_exceeds_error",
                extra={"triangle": t, "depth": tile.z, "max_diff": max_diff},
            )
            return True

        triangle.refine_checked = True
        return False

    @staticmethod
    def _raster_window_exceeds(
        raster: DemGrid,
        positions: list[tuple[float, float, float]],
        plane: Plane,
        cos_angle: float,
        max_diff: float,
        window: tuple[int, int, int, int],
    ) -> bool:
        start_col, start_row, end_col, end_row = window
        (x1, y1), (x2, y2), (x3, y3) = (
            (raster.column(x), raster.row(y)) for x, y, _ in positions
        )
        delta_y_bc = y2 - y3
        delta_y_ca = y3 - y1
        delta_y_ac = y1 - y2
        delta_x_cb = x3 - x2
        delta_x_ac = x1 - x3
        denominator = float(delta_y_bc * delta_x_ac + delta_x_cb * delta_y_ac)
        if denominator == 0.0:
            return False

        cols, rows = np.meshgrid(
            np.arange(start_col, end_col + 1), np.arange(start_row, end_row + 1), indexing="ij"
        )
        corner = ((cols == start_col) | (cols == end_col)) & ((rows == start_row) | (rows == end_row))

        alpha = (delta_y_bc * (cols - x3) + delta_x_cb * (rows - y3)) / denominator
        beta = (delta_y_ca * (cols - x3) + delta_x_ac * (rows - y3)) / denominator
        gamma = 1.0 - alpha - beta
        inside = (
            ~corner
            & (alpha >= 0.0) & (alpha <= 1.0)
            & (beta >= 0.0) & (beta <= 1.0)
            & (gamma >= 0.0) & (gamma <= 1.0)
        )
        if not inside.any():
            return False

        sel_cols = cols[inside]
        sel_rows = rows[inside]
        elevations = raster.heights_m[sel_rows, sel_cols].astype(np.float64)
        lons = raster.west + sel_cols * raster.delta_lon
        lats = raster.south + sel_rows * raster.delta_lat
        distances = np.abs(elevations - plane.values_z(lons, lats)) * cos_angle
        return bool(np.any(np.isfinite(distances) & (distances > max_diff)))

    # Loop --------------------------------------------------------------------

    def refine_pass(self, mesh: TerrainMesh, tile_range: TileRange) -> int:
        """Split every flagged triangle in range once; returns the number of splits."""

        splitter = TriangleSplitter(
            mesh,
            self._rasters,
            max_recursion_depth=self._splitter_config.max_recursion_depth,
            tolerance=self._mesh_config.vertex_coincident_error,
        )
        splits = 0
        count = len(mesh.triangles)
        for t in range(count):
            if not mesh.triangle_active(t):
                continue
            if not tile_range.contains(mesh.triangles[t].tile):
                continue
            if not self.must_refine_triangle(mesh, t):
                continue
            # Splitting an earlier triangle may have consumed this one.
            if not mesh.triangle_active(t):
                continue
            result = splitter.split(t)
            if result.new_triangles:
                splits += 1

        if splits:
            mesh.remove_deleted_objects()
        return splits

    def _check_memory(self, iteration: int, mesh: TerrainMesh) -> MemoryState:
        pressure = self._memory_probe.pressure()
        state = self._memory_thresholds.classify(pressure)
        if state is MemoryState.CRITICAL:
            logger.error(
                "refine_memory_critical",
                extra={
                    "iteration": iteration,
                    "pressure": pressure,
                    "triangles": len(mesh.triangles),
                    "vertices": len(mesh.vertices),
                },
            )
        elif state is MemoryState.WARNING and iteration % self._config.memory_warning_every == 0:
            logger.warning(
                "refine_memory_warning",
                extra={"iteration": iteration, "pressure": pressure, "triangles": len(mesh.triangles)},
            )
        return state

    def _check_health(self, iteration: int, mesh: TerrainMesh) -> TopologyHealth:
        health = check_topology_health(
            mesh,
            max_expected_edges=self._mesh_config.max_expected_fan_edges,
            critical_edges=self._mesh_config.critical_fan_edges,
            cap=self._mesh_config.fan_iteration_cap,
        )
        ratio = health.corruption_ratio
        if ratio > self._config.severe_corruption_ratio or health.max_edges > self._config.severe_max_edges:
            logger.error(
                "refine_severe_corruption",
                extra={"iteration": iteration, "corruption_ratio": ratio, "max_edges": health.max_edges},
            )
        elif ratio > self._config.moderate_corruption_ratio:
            logger.warning(
                "refine_moderate_corruption",
                extra={"iteration": iteration, "corruption_ratio": ratio, "max_edges": health.max_edges},
            )
        return health

    def _is_severe(self, health: TopologyHealth) -> bool:
        return (
            health.total_vertices > 0
            and (
                health.corruption_ratio > self._config.severe_corruption_ratio
                or health.max_edges > self._config.severe_max_edges
            )
        )

    def refine(self, mesh: TerrainMesh, tile_range: TileRange) -> RefinementResult:
        mesh.remove_deleted_objects()
        max_iterations = self._config.max_iterations
        logger.info(
            "refine_started",
            extra={
                "depth": tile_range.z,
                "triangles": len(mesh.triangles),
                "max_error_m": self._geometry.max_error_m(tile_range.z),
                "max_iterations": max_iterations,
            },
        )

        iterations = 0
        total_splits = 0
        no_progress = 0
        stop_reason = StopReason.CONVERGED
        previous_count = len(mesh.triangles)

        while True:
            if self._check_memory(iterations, mesh) is MemoryState.CRITICAL:
                stop_reason = StopReason.MEMORY_PRESSURE
                break

            splits = self.refine_pass(mesh, tile_range)
            if splits == 0:
                stop_reason = StopReason.CONVERGED
                logger.info("refine_converged", extra={"iterations": iterations})
                break

            iterations += 1
            total_splits += splits
            current_count = len(mesh.triangles)
            added = current_count - previous_count

            if iterations % self._config.health_check_every == 0 or added <= 0:
                health = self._check_health(iterations, mesh)
                if self._is_severe(health):
                    stop_reason = StopReason.SEVERE_CORRUPTION
                    break

            if added <= 0:
                no_progress += 1
                logger.warning(
                    "refine_no_progress",
                    extra={
                        "iteration": iterations,
                        "triangles": current_count,
                        "consecutive": no_progress,
                        "window": self._config.convergence_window,
                    },
                )
                if no_progress >= self._config.convergence_window:
                    stop_reason = StopReason.NO_PROGRESS
                    break
            else:
                no_progress = 0
                logger.info(
                    "refine_iteration",
                    extra={
                        "iteration": iterations,
                        "splits": splits,
                        "added": added,
                        "triangles": current_count,
                        "vertices": len(mesh.vertices),
                    },
                )
            previous_count = current_count

            if iterations >= max_iterations:
                stop_reason = StopReason.MAX_ITERATIONS
                logger.warning(
                    "refine_max_iterations_reached",
                    extra={"iterations": iterations, "triangles": current_count},
                )
                break

        result = RefinementResult(
            iterations=iterations,
            splits=total_splits,
            stop_reason=stop_reason,
            triangle_count=len(mesh.triangles),
            vertex_count=len(mesh.vertices),
        )
        logger.info(
            "refine_finished",
            extra={
                "iterations": result.iterations,
                "splits": result.splits,
                "stop_reason": result.stop_reason.value,
                "triangles": result.triangle_count,
            },
        )
        return result
