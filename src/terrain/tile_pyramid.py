from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, Mapping

from .globe import CelestialBody

_LIMITS = {"west": 180.0, "east": 180.0, "south": 90.0, "north": 90.0}


@dataclass(frozen=True)
class GeoRect:
    """A geographic rectangle in degrees in EPSG:4326."""

    west: float
    south: float
    east: float
    north: float

    def __post_init__(self) -> None:
        for name, limit in _LIMITS.items():
            value = float(getattr(self, name))
            if not -limit <= value <= limit:
                raise ValueError(f"{name} out of range: {value}")
        if self.west >= self.east:
            raise ValueError(f"Expected west < east, got {self.west} >= {self.east}")
        if self.south >= self.north:
            raise ValueError(f"Expected south < north, got {self.south} >= {self.north}")

    @property
    def center(self) -> tuple[float, float]:
        return (self.west + self.east) / 2.0, (self.south + self.north) / 2.0

    def intersects(self, west: float, south: float, east: float, north: float) -> bool:
        return (
            west <= self.east and east >= self.west and south <= self.north and north >= self.south
        )

    def contains(self, lon: float, lat: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north


def _check_zoom(z: int) -> int:
    if z < 0:
        raise ValueError(f"Invalid zoom: {z}")
    return int(z)


def num_tiles_x(z: int) -> int:
    """Columns at depth z; the geodetic pyramid starts with two root tiles."""

    return 2 << _check_zoom(z)


def num_tiles_y(z: int) -> int:
    return 1 << _check_zoom(z)


@dataclass(frozen=True, order=True)
class TileID:
    """Geodetic tile coordinates (EPSG:4326, 2x1 tiles at depth 0)."""

    z: int
    x: int
    y: int

    def __post_init__(self) -> None:
        for axis, count in (("x", num_tiles_x(self.z)), ("y", num_tiles_y(self.z))):
            value = getattr(self, axis)
            if value < 0 or value >= count:
                raise ValueError(f"{axis} out of range at z={self.z}: {value}")

    def key(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


def tile_bounds_deg(tile: TileID, *, origin_is_left_up: bool = False) -> GeoRect:
    """Return the bounds in degrees of a tile.

    With the default TMS convention row 0 touches the south pole; with
    ``origin_is_left_up`` row 0 touches the north pole.
    """

    step_lon = 360.0 / num_tiles_x(tile.z)
    step_lat = 180.0 / num_tiles_y(tile.z)

    # Neighbouring tiles must agree bit for bit on their shared border.
    west, east = -180.0 + tile.x * step_lon, -180.0 + (tile.x + 1) * step_lon
    if origin_is_left_up:
        south, north = 90.0 - (tile.y + 1) * step_lat, 90.0 - tile.y * step_lat
    else:
        south, north = -90.0 + tile.y * step_lat, -90.0 + (tile.y + 1) * step_lat
    return GeoRect(west=west, south=south, east=east, north=north)


def _clamp(index: int, count: int) -> int:
    return min(max(int(index), 0), count - 1)


def _cell(value: float, origin: float, extent: float, count: int) -> int:
    return _clamp(math.floor((value - origin) / extent * count), count)


def select_tile(
    z: int, lon: float, lat: float, *, origin_is_left_up: bool = False
) -> TileID:
    """Return the tile at depth z containing a point (east/north edges clamp)."""

    x = _cell(float(lon), -180.0, 360.0, num_tiles_x(z))
    if origin_is_left_up:
        y = _cell(90.0 - float(lat), 0.0, 180.0, num_tiles_y(z))
    else:
        y = _cell(float(lat), -90.0, 180.0, num_tiles_y(z))
    return TileID(z=z, x=x, y=y)


def tile_size_m(z: int, *, body: CelestialBody = CelestialBody.EARTH) -> float:
    """Approximate north-south extent of a tile at depth z in meters."""

    return math.radians(180.0 / num_tiles_y(z)) * body.equatorial_radius


def _span(low: float, high: float, origin: float, extent: float, count: int) -> tuple[int, int]:
    # [low, high): a rectangle ending exactly on a tile border does not reach the next tile.
    first = _cell(low, origin, extent, count)
    last = _clamp(math.ceil((high - origin) / extent * count) - 1, count)
    return first, max(first, last)


@dataclass(frozen=True)
class TileRange:
    """An inclusive block of tiles at one depth."""

    z: int
    x_min: int
    x_max: int
    y_min: int
    y_max: int

    def __post_init__(self) -> None:
        if self.x_min > self.x_max or self.y_min > self.y_max:
            raise ValueError(f"Empty tile range: {self}")

    @classmethod
    def for_tile(cls, tile: TileID) -> "TileRange":
        return cls(z=tile.z, x_min=tile.x, x_max=tile.x, y_min=tile.y, y_max=tile.y)

    @classmethod
    def for_rectangle(
        cls, rect: GeoRect, z: int, *, origin_is_left_up: bool = False
    ) -> "TileRange":
        x_min, x_max = _span(rect.west, rect.east, -180.0, 360.0, num_tiles_x(z))
        y_min, y_max = _span(rect.south, rect.north, -90.0, 180.0, num_tiles_y(z))
        if origin_is_left_up:
            ny = num_tiles_y(z)
            y_min, y_max = ny - 1 - y_max, ny - 1 - y_min
        return cls(z=z, x_min=x_min, x_max=x_max, y_min=y_min, y_max=y_max)

    @property
    def width(self) -> int:
        return self.x_max - self.x_min + 1

    @property
    def height(self) -> int:
        return self.y_max - self.y_min + 1

    def contains(self, tile: TileID | None) -> bool:
        if tile is None or tile.z != self.z:
            return False
        return self.x_min <= tile.x <= self.x_max and self.y_min <= tile.y <= self.y_max

    def expanded(self, margin: int = 1) -> "TileRange":
        """Grow the range by margin tiles on every side, clamped to the grid."""

        nx = num_tiles_x(self.z)
        ny = num_tiles_y(self.z)
        return TileRange(
            z=self.z,
            x_min=_clamp(self.x_min - margin, nx),
            x_max=_clamp(self.x_max + margin, nx),
            y_min=_clamp(self.y_min - margin, ny),
            y_max=_clamp(self.y_max + margin, ny),
        )

    def rows(self) -> Iterator[list[TileID]]:
        """Yield tile rows in increasing y, each ordered by increasing x."""

        for y in range(self.y_min, self.y_max + 1):
            yield [TileID(z=self.z, x=x, y=y) for x in range(self.x_min, self.x_max + 1)]

    def tiles(self) -> Iterator[TileID]:
        for row in self.rows():
            yield from row


@dataclass(frozen=True)
class TileGeometry:
    """Per-depth tile extents and refinement tolerances.

    Tolerances default to fractions of the tile size at each depth; explicit
    per-depth overrides (meters) win over the ratios.
    """

    origin_is_left_up: bool = False
    body: CelestialBody = CelestialBody.EARTH
    error_ratio: float = 0.0005
    min_error_m: float = 0.5
    min_triangle_ratio: float = 0.008
    max_triangle_ratio: float = 0.25
    max_error_overrides: Mapping[int, float] = field(default_factory=dict)
    min_triangle_overrides: Mapping[int, float] = field(default_factory=dict)
    max_triangle_overrides: Mapping[int, float] = field(default_factory=dict)

    def rectangle(self, tile: TileID) -> GeoRect:
        return tile_bounds_deg(tile, origin_is_left_up=self.origin_is_left_up)

    def select_tile(self, z: int, lon: float, lat: float) -> TileID:
        return select_tile(z, lon, lat, origin_is_left_up=self.origin_is_left_up)

    def tile_size_m(self, z: int) -> float:
        return tile_size_m(z, body=self.body)

    def max_error_m(self, z: int) -> float:
        if z in self.max_error_overrides:
            return float(self.max_error_overrides[z])
        return max(self.min_error_m, self.tile_size_m(z) * self.error_ratio)

    def min_triangle_size_m(self, z: int) -> float:
        if z in self.min_triangle_overrides:
            return float(self.min_triangle_overrides[z])
        return self.tile_size_m(z) * self.min_triangle_ratio

    def max_triangle_size_m(self, z: int) -> float:
        if z in self.max_triangle_overrides:
            return float(self.max_triangle_overrides[z])
        return self.tile_size_m(z) * self.max_triangle_ratio
