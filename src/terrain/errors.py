from __future__ import annotations


class TerrainError(RuntimeError):
    """Base class for terrain mesh failures."""


class MeshContractError(TerrainError):
    """Raised when a mesh operation is called with arguments it cannot accept."""


class MeshDecodeError(TerrainError):
    """Raised when a binary mesh payload is truncated or inconsistent."""


class RasterUnavailableError(TerrainError):
    """Raised when a tile raster cannot be produced from the elevation source."""
