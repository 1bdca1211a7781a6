from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Final, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .globe import CelestialBody
from .settings import DEFAULT_CONFIG_FILE_NAME, _resolve_config_dir
from .tile_pyramid import TileGeometry

DEFAULT_TERRAIN_CONFIG_NAME: Final[str] = DEFAULT_CONFIG_FILE_NAME
DEFAULT_TERRAIN_CONFIG_ENV: Final[str] = "TERRAIN_CONFIG"


class MeshConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vertex_coincident_error: float = Field(default=1e-13, gt=0)
    fan_iteration_cap: int = Field(default=100, gt=0)
    max_expected_fan_edges: int = Field(default=10, gt=0)
    critical_fan_edges: int = Field(default=15, gt=0)
    stitch_severe_corruption_ratio: float = Field(default=0.20, ge=0, le=1)
    stitch_severe_max_edges: int = Field(default=50, gt=0)

    @model_validator(mode="after")
    def _validate_fan_limits(self) -> "MeshConfig":
        if self.critical_fan_edges < self.max_expected_fan_edges:
            raise ValueError("critical_fan_edges must be >= max_expected_fan_edges")
        return self


class SplitterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_recursion_depth: int = Field(default=50, ge=0)


class RefinementConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=30, gt=0)
    convergence_window: int = Field(default=7, gt=0)
    health_check_every: int = Field(default=3, gt=0)
    severe_corruption_ratio: float = Field(default=0.05, ge=0, le=1)
    severe_max_edges: int = Field(default=20, gt=0)
    moderate_corruption_ratio: float = Field(default=0.02, ge=0, le=1)
    memory_critical_pressure: float = Field(default=0.90, gt=0, le=1)
    memory_warning_pressure: float = Field(default=0.80, gt=0, le=1)
    memory_warning_every: int = Field(default=5, gt=0)
    slope_correction_min_depth: int = Field(default=10, ge=0)
    min_raster_window: int = Field(default=6, ge=1)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "RefinementConfig":
        if self.moderate_corruption_ratio > self.severe_corruption_ratio:
            raise ValueError("moderate_corruption_ratio must be <= severe_corruption_ratio")
        if self.memory_warning_pressure > self.memory_critical_pressure:
            raise ValueError("memory_warning_pressure must be <= memory_critical_pressure")
        return self


class TilesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    origin_is_left_up: bool = False
    grid_size: int = Field(default=17, ge=2)
    raster_size: int = Field(default=129, ge=2)
    error_ratio: float = Field(default=0.0005, gt=0)
    min_error_m: float = Field(default=0.5, ge=0)
    min_triangle_ratio: float = Field(default=0.008, gt=0)
    max_triangle_ratio: float = Field(default=0.25, gt=0)
    max_error_m: dict[int, float] = Field(default_factory=dict)
    min_triangle_m: dict[int, float] = Field(default_factory=dict)
    max_triangle_m: dict[int, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_tiles(self) -> "TilesConfig":
        if self.min_triangle_ratio >= self.max_triangle_ratio:
            raise ValueError("min_triangle_ratio must be < max_triangle_ratio")
        for name in ("max_error_m", "min_triangle_m", "max_triangle_m"):
            for depth, value in getattr(self, name).items():
                if depth < 0 or value <= 0:
                    raise ValueError(f"{name} overrides need depth >= 0 and value > 0")
        return self


class BackoffConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_seconds: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_seconds: float = Field(default=60.0, ge=0)


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(default=4, gt=0)
    max_retries: int = Field(default=2, ge=0)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    progress_log_every: int = Field(default=50, gt=0)


class TerrainConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    body: str = "earth"
    mesh: MeshConfig = Field(default_factory=MeshConfig)
    splitter: SplitterConfig = Field(default_factory=SplitterConfig)
    refinement: RefinementConfig = Field(default_factory=RefinementConfig)
    tiles: TilesConfig = Field(default_factory=TilesConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @field_validator("body")
    @classmethod
    def _validate_body(cls, value: str) -> str:
        return CelestialBody.from_string(value).label

    @property
    def celestial_body(self) -> CelestialBody:
        return CelestialBody.from_string(self.body)

    def tile_geometry(self) -> TileGeometry:
        tiles = self.tiles
        return TileGeometry(
            origin_is_left_up=tiles.origin_is_left_up,
            body=self.celestial_body,
            error_ratio=tiles.error_ratio,
            min_error_m=tiles.min_error_m,
            min_triangle_ratio=tiles.min_triangle_ratio,
            max_triangle_ratio=tiles.max_triangle_ratio,
            max_error_overrides=dict(tiles.max_error_m),
            min_triangle_overrides=dict(tiles.min_triangle_m),
            max_triangle_overrides=dict(tiles.max_triangle_m),
        )


class TerrainConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    terrain: TerrainConfig


def _resolve_config_path(path: Optional[Union[str, Path]]) -> Path:
    if path is not None:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate

    explicit = os.environ.get(DEFAULT_TERRAIN_CONFIG_ENV)
    if explicit:
        candidate = Path(explicit).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate

    config_dir = _resolve_config_dir(os.environ)
    return config_dir / DEFAULT_TERRAIN_CONFIG_NAME


def _parse_yaml(text: str, *, source: Path) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to load terrain YAML: {source}") from exc

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError(f"terrain config must be a mapping: {source}")
    return data


def load_terrain_config(path: Optional[Union[str, Path]] = None) -> TerrainConfig:
    config_path = _resolve_config_path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"terrain config file not found: {config_path}")

    raw = config_path.read_text(encoding="utf-8")
    data = dict(_parse_yaml(raw, source=config_path))

    try:
        parsed = TerrainConfigFile.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid terrain config ({config_path}): {exc}") from exc

    return parsed.terrain


@lru_cache(maxsize=8)
def _get_terrain_config_cached(
    config_path: str, mtime_ns: int, size: int
) -> TerrainConfig:
    _ = (mtime_ns, size)
    return load_terrain_config(config_path)


def get_terrain_config(path: Optional[Union[str, Path]] = None) -> TerrainConfig:
    resolved = _resolve_config_path(path)
    try:
        stat = resolved.stat()
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"terrain config file not found: {resolved}") from exc

    return _get_terrain_config_cached(str(resolved), stat.st_mtime_ns, stat.st_size)


get_terrain_config.cache_clear = _get_terrain_config_cached.cache_clear  # type: ignore[attr-defined]
