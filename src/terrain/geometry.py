from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

Point3 = tuple[float, float, float]


@dataclass(frozen=True)
class Rectangle:
    """An axis-aligned rectangle in the xy plane."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> tuple[float, float]:
        return (self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


@dataclass
class BoundingBox:
    """A 3D axis-aligned box grown incrementally from points."""

    min_x: float = math.inf
    min_y: float = math.inf
    min_z: float = math.inf
    max_x: float = -math.inf
    max_y: float = -math.inf
    max_z: float = -math.inf

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]]) -> "BoundingBox":
        box = cls()
        for point in points:
            box.add_point(point[0], point[1], point[2])
        return box

    @property
    def is_empty(self) -> bool:
        return self.min_x > self.max_x

    def add_point(self, x: float, y: float, z: float) -> None:
        self.min_x = min(self.min_x, x)
        self.min_y = min(self.min_y, y)
        self.min_z = min(self.min_z, z)
        self.max_x = max(self.max_x, x)
        self.max_y = max(self.max_y, y)
        self.max_z = max(self.max_z, z)

    def longest_distance_xy(self) -> float:
        if self.is_empty:
            return 0.0
        return max(self.max_x - self.min_x, self.max_y - self.min_y)

    def rectangle(self) -> Rectangle:
        if self.is_empty:
            raise ValueError("Empty bounding box has no rectangle")
        return Rectangle(self.min_x, self.min_y, self.max_x, self.max_y)


@dataclass(frozen=True)
class Plane:
    """Height plane z = a*x + b*y + c."""

    a: float
    b: float
    c: float

    @classmethod
    def fit(cls, points: Sequence[Sequence[float]]) -> "Plane":
        """Least-squares plane through at least three (x, y, z) points."""

        arr = np.asarray(points, dtype=np.float64)
        if arr.ndim != 2 or arr.shape[1] != 3 or arr.shape[0] < 3:
            raise ValueError("Plane.fit expects at least three (x, y, z) points")
        # Center the samples so geographic coordinates keep their precision.
        cx, cy = float(arr[:, 0].mean()), float(arr[:, 1].mean())
        design = np.column_stack(
            [arr[:, 0] - cx, arr[:, 1] - cy, np.ones(arr.shape[0], dtype=np.float64)]
        )
        solution, *_ = np.linalg.lstsq(design, arr[:, 2], rcond=None)
        a, b, c0 = (float(v) for v in solution)
        return cls(a=a, b=b, c=c0 - a * cx - b * cy)

    def value_z(self, x: float, y: float) -> float:
        return self.a * x + self.b * y + self.c

    def values_z(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        return self.a * xs + self.b * ys + self.c


def barycenter(points: Sequence[Sequence[float]]) -> Point3:
    n = float(len(points))
    return (
        sum(p[0] for p in points) / n,
        sum(p[1] for p in points) / n,
        sum(p[2] for p in points) / n,
    )


def unit_normal(p0: Sequence[float], p1: Sequence[float], p2: Sequence[float]) -> Optional[Point3]:
    """Unit normal of a counter-clockwise triangle, or None when degenerate."""

    u = np.subtract(p1, p0, dtype=np.float64)
    v = np.subtract(p2, p0, dtype=np.float64)
    n = np.cross(u, v)
    length = float(np.linalg.norm(n))
    if length == 0.0 or not math.isfinite(length):
        return None
    return float(n[0] / length), float(n[1] / length), float(n[2] / length)


def normalize(v: Sequence[float]) -> Optional[Point3]:
    length = math.sqrt(v[0] * v[0] + v[1] * v[1] + v[2] * v[2])
    if length == 0.0:
        return None
    return v[0] / length, v[1] / length, v[2] / length
