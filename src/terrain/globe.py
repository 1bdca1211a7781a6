from __future__ import annotations

import math
from enum import Enum
from typing import Sequence


class CelestialBody(Enum):
    """Reference surfaces terrain can be generated for."""

    # name, equatorial radius (m), polar radius (m), first eccentricity squared, crs
    EARTH = ("earth", 6378137.0, 6356752.3142, 6.69437999014e-3, "EPSG:4326")
    MOON = ("moon", 1737400.0, 1737400.0, 0.0, "IAU:30100")

    def __init__(
        self,
        label: str,
        equatorial_radius: float,
        polar_radius: float,
        first_eccentricity_squared: float,
        crs: str,
    ) -> None:
        self.label = label
        self.equatorial_radius = equatorial_radius
        self.polar_radius = polar_radius
        self.first_eccentricity_squared = first_eccentricity_squared
        self.crs = crs

    @classmethod
    def from_string(cls, value: str) -> "CelestialBody":
        normalized = (value or "").strip().lower()
        if normalized == "":
            raise ValueError("Celestial body value must not be empty")
        for body in cls:
            if body.label == normalized:
                return body
        raise ValueError(
            f"Unknown celestial body: {value!r}; expected one of: "
            f"{', '.join(body.label for body in cls)}"
        )


def geographic_to_cartesian(
    lon_deg: float,
    lat_deg: float,
    height_m: float,
    *,
    body: CelestialBody = CelestialBody.EARTH,
) -> tuple[float, float, float]:
    lon = math.radians(float(lon_deg))
    lat = math.radians(float(lat_deg))
    sin_lat = math.sin(lat)
    cos_lat = math.cos(lat)
    sin_lon = math.sin(lon)
    cos_lon = math.cos(lon)

    e2 = body.first_eccentricity_squared
    n = body.equatorial_radius / math.sqrt(1.0 - e2 * sin_lat * sin_lat)
    x = (n + height_m) * cos_lat * cos_lon
    y = (n + height_m) * cos_lat * sin_lon
    z = (n * (1.0 - e2) + height_m) * sin_lat
    return x, y, z


def normal_at_cartesian(
    x: float, y: float, z: float, *, body: CelestialBody = CelestialBody.EARTH
) -> tuple[float, float, float]:
    """Outward surface normal of the body's ellipsoid at a cartesian point."""

    a2 = body.equatorial_radius * body.equatorial_radius
    b2 = body.polar_radius * body.polar_radius
    nx = x / a2
    ny = y / a2
    nz = z / b2
    length = math.sqrt(nx * nx + ny * ny + nz * nz)
    if length == 0.0:
        return 0.0, 0.0, 1.0
    return nx / length, ny / length, nz / length


def cosine_between_unit_vectors(u: Sequence[float], v: Sequence[float]) -> float:
    dot = u[0] * v[0] + u[1] * v[1] + u[2] * v[2]
    return max(-1.0, min(1.0, dot))
