from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol

import numpy as np

from .errors import RasterUnavailableError
from .tile_pyramid import GeoRect, TileGeometry, TileID

if TYPE_CHECKING:
    from .scheduler.scheduler import RasterBatchSummary, RasterScheduler
    from .scheduler.worker import RasterJob

logger = logging.getLogger(__name__)


class ElevationOracle(Protocol):
    def elevation(self, tile: TileID, lon: float, lat: float) -> float:
        """Bilinear elevation in meters, NaN outside covered data."""


class ElevationSource(Protocol):
    def sample_grid(self, rect: GeoRect, *, grid_size: int, fill_value: float = 0.0) -> np.ndarray:
        ...


def _node_grid(rect: GeoRect, grid_size: int) -> tuple[np.ndarray, np.ndarray]:
    if grid_size < 2:
        raise ValueError("grid_size must be >= 2")
    lons = np.linspace(rect.west, rect.east, grid_size, dtype=np.float64)
    lats = np.linspace(rect.south, rect.north, grid_size, dtype=np.float64)
    lon_grid, lat_grid = np.meshgrid(lons, lats)
    return lon_grid, lat_grid


@dataclass(frozen=True)
class DemGrid:
    """A regularly-spaced DEM grid in EPSG:4326 degrees.

    Heights are meters in a (ny, nx) array, rows running south to north and
    columns west to east. Node (row, col) sits at
    (west + col * delta_lon, south + row * delta_lat). NaN marks missing data.
    """

    west: float
    south: float
    east: float
    north: float
    heights_m: np.ndarray
    nodata: Optional[float] = None

    def __post_init__(self) -> None:
        if self.heights_m.ndim != 2:
            raise ValueError("heights_m must be a 2D array")
        if not (self.west < self.east and self.south < self.north):
            raise ValueError("Invalid bounds for DemGrid")
        if self.heights_m.shape[0] < 2 or self.heights_m.shape[1] < 2:
            raise ValueError("heights_m must be at least 2x2")

    @property
    def shape(self) -> tuple[int, int]:
        return int(self.heights_m.shape[0]), int(self.heights_m.shape[1])

    @property
    def rect(self) -> GeoRect:
        return GeoRect(west=self.west, south=self.south, east=self.east, north=self.north)

    @property
    def delta_lon(self) -> float:
        return (self.east - self.west) / (self.shape[1] - 1)

    @property
    def delta_lat(self) -> float:
        return (self.north - self.south) / (self.shape[0] - 1)

    def contains(self, lon: float, lat: float) -> bool:
        return (self.west <= lon <= self.east) and (self.south <= lat <= self.north)

    def covers(self, lons: np.ndarray, lats: np.ndarray) -> np.ndarray:
        return (lons >= self.west) & (lons <= self.east) & (lats >= self.south) & (lats <= self.north)

    def column(self, lon: float) -> int:
        """Node column at or west of lon, clamped to the grid."""

        clamped = max(self.west, min(self.east, float(lon)))
        col = int((clamped - self.west) / self.delta_lon)
        return max(0, min(self.shape[1] - 1, col))

    def row(self, lat: float) -> int:
        """Node row at or south of lat, clamped to the grid."""

        clamped = max(self.south, min(self.north, float(lat)))
        row = int((clamped - self.south) / self.delta_lat)
        return max(0, min(self.shape[0] - 1, row))

    def lon_of(self, col: int) -> float:
        return self.west + col * self.delta_lon

    def lat_of(self, row: int) -> float:
        return self.south + row * self.delta_lat

    def value(self, col: int, row: int) -> float:
        ny, nx = self.shape
        if not (0 <= col < nx and 0 <= row < ny):
            return math.nan
        return float(self.heights_m[row, col])

    def sample_points(
        self, lons: np.ndarray, lats: np.ndarray, *, fill_value: float = 0.0
    ) -> np.ndarray:
        """Bilinear heights at many points at once.

        Points outside the grid, or whose surrounding cell has a missing
        corner, get fill_value.
        """

        lons = np.asarray(lons, dtype=np.float64)
        lats = np.asarray(lats, dtype=np.float64)
        out = np.full(lons.shape, float(fill_value), dtype=np.float64)
        inside = self.covers(lons, lats)
        if not inside.any():
            return out

        ny, nx = self.shape
        x = (lons[inside] - self.west) / (self.east - self.west) * (nx - 1)
        y = (lats[inside] - self.south) / (self.north - self.south) * (ny - 1)
        x0 = np.minimum(np.floor(x).astype(np.intp), nx - 1)
        y0 = np.minimum(np.floor(y).astype(np.intp), ny - 1)
        x1 = np.minimum(x0 + 1, nx - 1)
        y1 = np.minimum(y0 + 1, ny - 1)
        dx = x - x0
        dy = y - y0

        h = self.heights_m
        south_row = h[y0, x0] * (1.0 - dx) + h[y0, x1] * dx
        north_row = h[y1, x0] * (1.0 - dx) + h[y1, x1] * dx
        values = south_row * (1.0 - dy) + north_row * dy
        out[inside] = np.where(np.isfinite(values), values, float(fill_value))
        return out

    def sample(self, lon: float, lat: float, *, fill_value: float = 0.0) -> float:
        point = self.sample_points(np.array([lon]), np.array([lat]), fill_value=fill_value)
        return float(point[0])

    def sample_grid(self, rect: GeoRect, *, grid_size: int, fill_value: float = 0.0) -> np.ndarray:
        lons, lats = _node_grid(rect, grid_size)
        return self.sample_points(lons, lats, fill_value=fill_value).astype(np.float32)

    @staticmethod
    def from_geotiff(path: Path) -> "DemGrid":
        """Load a single-band EPSG:4326 GeoTIFF using rasterio (optional dependency)."""

        try:
            import rasterio  # type: ignore[import-not-found]
        except ModuleNotFoundError as exc:
            raise RuntimeError(
                "rasterio is required to load GeoTIFF DEMs. Install the 'geotiff' extra."
            ) from exc

        with rasterio.open(path) as ds:
            if ds.count < 1:
                raise ValueError(f"No raster bands found: {path}")
            if ds.crs is None or ds.crs.to_epsg() != 4326:
                raise ValueError(f"Expected EPSG:4326 DEM, got {ds.crs}: {path}")
            heights = ds.read(1, masked=True).astype(np.float32).filled(np.nan)
            if ds.transform.e < 0:
                heights = np.flipud(heights)
            bounds = ds.bounds
            return DemGrid(
                west=float(bounds.left),
                south=float(bounds.bottom),
                east=float(bounds.right),
                north=float(bounds.top),
                heights_m=np.ascontiguousarray(heights),
                nodata=None if ds.nodata is None else float(ds.nodata),
            )


@dataclass(frozen=True)
class DemMosaic:
    """Several DEM grids sampled as one surface.

    Where grids overlap or touch, the grid lying furthest north, then east,
    answers.
    """

    grids: tuple[DemGrid, ...]

    def __post_init__(self) -> None:
        ordered = sorted(self.grids, key=lambda g: (g.south, g.west), reverse=True)
        object.__setattr__(self, "grids", tuple(ordered))

    @property
    def bounds(self) -> Optional[GeoRect]:
        if not self.grids:
            return None
        return GeoRect(
            west=min(g.west for g in self.grids),
            south=min(g.south for g in self.grids),
            east=max(g.east for g in self.grids),
            north=max(g.north for g in self.grids),
        )

    def sample_points(
        self, lons: np.ndarray, lats: np.ndarray, *, fill_value: float = 0.0
    ) -> np.ndarray:
        lons = np.asarray(lons, dtype=np.float64)
        lats = np.asarray(lats, dtype=np.float64)
        out = np.full(lons.shape, float(fill_value), dtype=np.float64)
        pending = np.ones(lons.shape, dtype=bool)
        for grid in self.grids:
            hit = pending & grid.covers(lons, lats)
            if hit.any():
                out[hit] = grid.sample_points(lons[hit], lats[hit], fill_value=fill_value)
                pending &= ~hit
        return out

    def sample(self, lon: float, lat: float, *, fill_value: float = 0.0) -> float:
        point = self.sample_points(np.array([lon]), np.array([lat]), fill_value=fill_value)
        return float(point[0])

    def sample_grid(self, rect: GeoRect, *, grid_size: int, fill_value: float = 0.0) -> np.ndarray:
        lons, lats = _node_grid(rect, grid_size)
        return self.sample_points(lons, lats, fill_value=fill_value).astype(np.float32)

    @staticmethod
    def from_grids(grids: Iterable[DemGrid]) -> "DemMosaic":
        return DemMosaic(grids=tuple(grids))

    @staticmethod
    def from_geotiffs(paths: Iterable[Path]) -> "DemMosaic":
        return DemMosaic.from_grids(DemGrid.from_geotiff(path) for path in paths)


class TileRasterManager:
    """Per-tile elevation rasters resampled from a DEM source.

    Rasters are built lazily and cached; :meth:`preload` builds a batch in
    parallel through a :class:`RasterScheduler`. Every tile raster is built
    independently, so concurrent builds only share the cache dictionary.
    """

    def __init__(
        self,
        source: ElevationSource,
        *,
        geometry: TileGeometry,
        raster_size: int = 129,
        coverage: Optional[GeoRect] = None,
    ) -> None:
        if raster_size < 2:
            raise ValueError("raster_size must be >= 2")
        self._source = source
        self._geometry = geometry
        self._raster_size = int(raster_size)
        if coverage is None:
            bounds = getattr(source, "bounds", None)
            if isinstance(bounds, GeoRect):
                coverage = bounds
            elif isinstance(source, DemGrid):
                coverage = source.rect
        self._coverage = coverage
        self._rasters: dict[TileID, DemGrid] = {}
        self._lock = threading.Lock()

    @property
    def geometry(self) -> TileGeometry:
        return self._geometry

    @property
    def coverage(self) -> Optional[GeoRect]:
        return self._coverage

    @property
    def raster_size(self) -> int:
        return self._raster_size

    def cached_tiles(self) -> list[TileID]:
        with self._lock:
            return sorted(self._rasters)

    def _build_raster(self, tile: TileID) -> DemGrid:
        rect = self._geometry.rectangle(tile)
        try:
            heights = self._source.sample_grid(
                rect, grid_size=self._raster_size, fill_value=math.nan
            )
        except (OSError, ValueError) as exc:
            raise RasterUnavailableError(f"Failed to build raster for tile {tile.key()}: {exc}") from exc
        return DemGrid(
            west=rect.west,
            south=rect.south,
            east=rect.east,
            north=rect.north,
            heights_m=np.asarray(heights, dtype=np.float32),
        )

    def raster_for(self, tile: TileID) -> DemGrid:
        with self._lock:
            cached = self._rasters.get(tile)
        if cached is not None:
            return cached
        raster = self._build_raster(tile)
        with self._lock:
            return self._rasters.setdefault(tile, raster)

    def elevation(self, tile: TileID, lon: float, lat: float) -> float:
        return self.raster_for(tile).sample(lon, lat, fill_value=math.nan)

    def handle_job(self, job: "RasterJob") -> dict[str, Any]:
        """Raster job handler: build and cache the raster of job.tile."""

        raster = self.raster_for(job.tile)
        finite = np.isfinite(raster.heights_m)
        return {"tile": job.tile.key(), "covered_nodes": int(finite.sum())}

    def preload(
        self,
        tiles: Iterable[TileID],
        *,
        scheduler: "RasterScheduler",
        run_id: str,
    ) -> "RasterBatchSummary":
        from .scheduler.worker import build_raster_job

        jobs = [build_raster_job(run_id=run_id, tile=tile) for tile in tiles]
        logger.info("tile_raster_preload", extra={"run_id": run_id, "tiles": len(jobs)})
        return scheduler.run(run_id=run_id, jobs=jobs)

    def clear(self) -> None:
        with self._lock:
            self._rasters.clear()
