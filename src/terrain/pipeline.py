from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .config import TerrainConfig
from .elevation import ElevationOracle, ElevationSource, TileRasterManager
from .errors import RasterUnavailableError
from .memory import MemoryPressureProbe
from .mesh import TerrainMesh
from .observability import bind_run_id
from .quantized_mesh import QuantizedMeshOptions, encode_tile_mesh
from .refinement import RefinementDriver, RefinementResult, StopReason
from .scheduler import ExponentialBackoff, RasterScheduler, RasterWorker
from .serializer import save_mesh
from .stitcher import TileStitcher
from .tile_builder import build_tile_mesh
from .tile_pyramid import GeoRect, TileGeometry, TileID, TileRange

logger = logging.getLogger(__name__)


def recalculate_elevation(
    mesh: TerrainMesh,
    tile_range: TileRange,
    oracle: ElevationOracle,
    *,
    geometry: TileGeometry,
) -> int:
    """Re-sample the elevation of every vertex used by a triangle in range.

    Each vertex is looked up in the tile at the range depth that contains it;
    vertices without data keep their elevation. Returns the number updated.
    """

    updated = 0
    for v in mesh.vertices_of_triangles(mesh.triangles_in_range(tile_range)):
        vertex = mesh.vertices[v]
        tile = geometry.select_tile(tile_range.z, vertex.x, vertex.y)
        z = float(oracle.elevation(tile, vertex.x, vertex.y))
        if math.isnan(z):
            continue
        vertex.z = z
        updated += 1
    return updated


def separate_by_tile(mesh: TerrainMesh) -> dict[TileID, TerrainMesh]:
    """Split a consolidated mesh into one dense mesh per owning tile."""

    return {tile: mesh.extract_tile(tile) for tile in sorted(mesh.triangles_by_tile())}


def mesh_path(out_dir: Path, tile: TileID) -> Path:
    return out_dir / "meshes" / str(tile.z) / str(tile.x) / f"{tile.y}.mesh"


def terrain_path(out_dir: Path, tile: TileID) -> Path:
    return out_dir / "tiles" / str(tile.z) / str(tile.x) / f"{tile.y}.terrain"


@dataclass(frozen=True)
class TileMatrixResult:
    tile_range: TileRange
    refinement: Optional[RefinementResult]
    tiles_written: tuple[str, ...]
    total_bytes: int


@dataclass
class TileMatrixJob:
    """Build, stitch, refine and write the tiles of one tile range.

    The neighbourhood one tile wide around the range is built and stitched
    too, so the range's border triangles are refined against real
    neighbours; only the tiles inside the range are written.
    """

    tile_range: TileRange
    config: TerrainConfig
    rasters: TileRasterManager
    out_dir: Path
    options: QuantizedMeshOptions = field(default_factory=QuantizedMeshOptions)
    memory_probe: Optional[MemoryPressureProbe] = None
    compute_normals: bool = False

    def build_matrix(self) -> list[list[TerrainMesh]]:
        geometry = self.rasters.geometry
        grid_size = self.config.tiles.grid_size
        tolerance = self.config.mesh.vertex_coincident_error
        rows: list[list[TerrainMesh]] = []
        for row in self.tile_range.expanded(1).rows():
            rows.append(
                [
                    build_tile_mesh(
                        tile,
                        geometry=geometry,
                        oracle=self.rasters,
                        grid_size=grid_size,
                        tolerance=tolerance,
                    )
                    for tile in row
                ]
            )
        return rows

    def run(self) -> TileMatrixResult:
        geometry = self.rasters.geometry
        stitcher = TileStitcher.from_config(
            self.config.mesh, origin_is_left_up=geometry.origin_is_left_up
        )
        mesh = stitcher.consolidate(self.build_matrix())
        if mesh is None:
            logger.warning("tile_matrix_empty", extra={"z": self.tile_range.z})
            return TileMatrixResult(self.tile_range, None, (), 0)

        updated = recalculate_elevation(mesh, self.tile_range, self.rasters, geometry=geometry)
        logger.debug("tile_matrix_elevation_recalculated", extra={"vertices": updated})

        driver = RefinementDriver(
            geometry=geometry,
            rasters=self.rasters,
            config=self.config.refinement,
            splitter_config=self.config.splitter,
            mesh_config=self.config.mesh,
            memory_probe=self.memory_probe,
        )
        refinement = driver.refine(mesh, self.tile_range)
        if self.compute_normals or self.options.include_normals:
            mesh.calculate_normals(body=geometry.body)

        parts = separate_by_tile(mesh)
        written: list[str] = []
        total_bytes = 0
        for tile in self.tile_range.tiles():
            tile_mesh = parts.get(tile)
            if tile_mesh is None or not tile_mesh.triangles:
                logger.warning("tile_mesh_missing", extra={"tile": tile.key()})
                continue
            save_mesh(tile_mesh, mesh_path(self.out_dir, tile))
            payload = encode_tile_mesh(
                tile_mesh, geometry.rectangle(tile), body=geometry.body, options=self.options
            )
            path = terrain_path(self.out_dir, tile)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
            written.append(tile.key())
            total_bytes += len(payload)

        logger.info(
            "tile_matrix_finished",
            extra={
                "z": self.tile_range.z,
                "tiles": len(written),
                "stop_reason": refinement.stop_reason.value,
                "triangles": refinement.triangle_count,
            },
        )
        return TileMatrixResult(self.tile_range, refinement, tuple(written), total_bytes)


@dataclass(frozen=True)
class TilesetStats:
    tile_count: int
    total_bytes: int
    elapsed_s: float
    failed_rasters: int = 0
    failed_tiles: int = 0
    stop_reasons: dict[str, int] = field(default_factory=dict)

    @property
    def avg_bytes_per_tile(self) -> float:
        return self.total_bytes / max(1, self.tile_count)

    @property
    def avg_tiles_per_s(self) -> float:
        return self.tile_count / max(1e-9, self.elapsed_s)


def available_ranges(
    rect: GeoRect, *, min_zoom: int, max_zoom: int, origin_is_left_up: bool = False
) -> list[list[dict[str, int]]]:
    """Cesium `layer.json` availability: `available[z] = [{startX, startY, endX, endY}]`."""

    levels: list[list[dict[str, int]]] = []
    for z in range(0, max_zoom + 1):
        if z < min_zoom:
            levels.append([])
            continue
        tile_range = TileRange.for_rectangle(rect, z, origin_is_left_up=origin_is_left_up)
        levels.append(
            [
                {
                    "startX": tile_range.x_min,
                    "startY": tile_range.y_min,
                    "endX": tile_range.x_max,
                    "endY": tile_range.y_max,
                }
            ]
        )
    return levels


def build_layer_json(
    *,
    rect: GeoRect,
    min_zoom: int,
    max_zoom: int,
    gzip_payload: bool,
    origin_is_left_up: bool = False,
    include_normals: bool = False,
    tiles_template: str = "tiles/{z}/{x}/{y}.terrain",
) -> dict[str, Any]:
    return {
        "tilejson": "2.1.0",
        "format": "quantized-mesh-1.0",
        "version": "1.0.0",
        "scheme": "slippyMap" if origin_is_left_up else "tms",
        "projection": "EPSG:4326",
        "minzoom": int(min_zoom),
        "maxzoom": int(max_zoom),
        "bounds": [rect.west, rect.south, rect.east, rect.north],
        "tiles": [tiles_template],
        "available": available_ranges(
            rect, min_zoom=min_zoom, max_zoom=max_zoom, origin_is_left_up=origin_is_left_up
        ),
        "extensions": ["octvertexnormals"] if include_normals else [],
        "metadata": {"gzip_payload": bool(gzip_payload)},
    }


def write_layer_json(path: Path, *, layer: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(layer, ensure_ascii=False, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def plan_tile_ranges(
    rect: GeoRect, *, min_zoom: int, max_zoom: int, origin_is_left_up: bool = False
) -> list[TileRange]:
    if min_zoom < 0 or max_zoom < 0:
        raise ValueError("min_zoom/max_zoom must be >= 0")
    if min_zoom > max_zoom:
        raise ValueError("min_zoom must be <= max_zoom")
    return [
        TileRange.for_rectangle(rect, z, origin_is_left_up=origin_is_left_up)
        for z in range(min_zoom, max_zoom + 1)
    ]


def generate_tileset(
    *,
    source: ElevationSource,
    rect: GeoRect,
    out_dir: Path,
    min_zoom: int,
    max_zoom: int,
    config: TerrainConfig,
    gzip_payload: bool = False,
    include_normals: bool = False,
    run_id: Optional[str] = None,
    memory_probe: Optional[MemoryPressureProbe] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TilesetStats:
    """Generate every tile over rect for each depth, one tile matrix job per tile."""

    ranges = plan_tile_ranges(
        rect,
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        origin_is_left_up=config.tiles.origin_is_left_up,
    )
    out_dir.mkdir(parents=True, exist_ok=True)
    geometry = config.tile_geometry()
    options = QuantizedMeshOptions(gzip=bool(gzip_payload), include_normals=include_normals)

    started = time.perf_counter()
    tile_count = 0
    total_bytes = 0
    failed_rasters = 0
    failed_tiles = 0
    stop_reasons: dict[str, int] = {}

    with bind_run_id(run_id) as bound_run_id:
        for tile_range in ranges:
            rasters = TileRasterManager(
                source, geometry=geometry, raster_size=config.tiles.raster_size
            )
            scheduler_config = config.scheduler
            worker = RasterWorker(
                rasters.handle_job,
                max_retries=scheduler_config.max_retries,
                backoff=ExponentialBackoff(**scheduler_config.backoff.model_dump()),
                sleep=sleep,
            )
            scheduler = RasterScheduler(
                worker=worker,
                max_workers=scheduler_config.max_workers,
                progress_log_every=scheduler_config.progress_log_every,
            )
            summary = rasters.preload(
                tile_range.expanded(1).tiles(), scheduler=scheduler, run_id=bound_run_id
            )
            failed_rasters += summary.failed

            for tile in tile_range.tiles():
                job = TileMatrixJob(
                    tile_range=TileRange.for_tile(tile),
                    config=config,
                    rasters=rasters,
                    out_dir=out_dir,
                    options=options,
                    memory_probe=memory_probe,
                )
                try:
                    result = job.run()
                except RasterUnavailableError as exc:
                    failed_tiles += 1
                    logger.error("tile_matrix_failed", extra={"tile": tile.key(), "error": str(exc)})
                    continue
                tile_count += len(result.tiles_written)
                total_bytes += result.total_bytes
                if result.refinement is not None:
                    reason = result.refinement.stop_reason.value
                    stop_reasons[reason] = stop_reasons.get(reason, 0) + 1
                    if result.refinement.stop_reason is StopReason.MEMORY_PRESSURE:
                        logger.error("tileset_memory_pressure", extra={"tile": tile.key()})
            rasters.clear()

        layer = build_layer_json(
            rect=rect,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            gzip_payload=gzip_payload,
            origin_is_left_up=config.tiles.origin_is_left_up,
            include_normals=include_normals,
        )
        write_layer_json(out_dir / "layer.json", layer=layer)

    elapsed_s = time.perf_counter() - started
    return TilesetStats(
        tile_count=tile_count,
        total_bytes=total_bytes,
        elapsed_s=elapsed_s,
        failed_rasters=failed_rasters,
        failed_tiles=failed_tiles,
        stop_reasons=stop_reasons,
    )
