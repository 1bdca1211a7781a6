from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

DEFAULT_WARNING_PRESSURE = 0.8
DEFAULT_CRITICAL_PRESSURE = 0.9


class MemoryPressureProbe(Protocol):
    def pressure(self) -> float:
        """Fraction of memory in use, between 0.0 and 1.0."""


@dataclass(frozen=True)
class StaticMemoryProbe:
    value: float = 0.0

    def pressure(self) -> float:
        return float(self.value)


class SystemMemoryProbe:
    """Physical memory pressure from sysconf; reports 0.0 where unsupported."""

    def pressure(self) -> float:
        try:
            available = os.sysconf("SC_AVPHYS_PAGES")
            total = os.sysconf("SC_PHYS_PAGES")
        except (ValueError, OSError, AttributeError):
            return 0.0
        if total <= 0:
            return 0.0
        return max(0.0, min(1.0, 1.0 - available / total))


class MemoryState(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MemoryThresholds:
    warning: float = DEFAULT_WARNING_PRESSURE
    critical: float = DEFAULT_CRITICAL_PRESSURE

    def __post_init__(self) -> None:
        if not (0.0 < self.warning <= self.critical <= 1.0):
            raise ValueError(
                f"Expected 0 < warning <= critical <= 1, got {self.warning}, {self.critical}"
            )

    def classify(self, pressure: float) -> MemoryState:
        if pressure >= self.critical:
            return MemoryState.CRITICAL
        if pressure >= self.warning:
            return MemoryState.WARNING
        return MemoryState.OK
