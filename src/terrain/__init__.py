"""Half-edge terrain meshes: tile construction, refinement, stitching, serialization."""

from .config import TerrainConfig
from .config import get_terrain_config
from .config import load_terrain_config
from .elevation import DemGrid
from .elevation import DemMosaic
from .elevation import TileRasterManager
from .errors import MeshContractError
from .errors import MeshDecodeError
from .errors import RasterUnavailableError
from .errors import TerrainError
from .mesh import TerrainMesh
from .pipeline import TileMatrixJob
from .pipeline import generate_tileset
from .refinement import RefinementDriver
from .refinement import StopReason
from .serializer import decode_mesh
from .serializer import encode_mesh
from .splitter import TriangleSplitter
from .stitcher import TileStitcher
from .tile_pyramid import GeoRect
from .tile_pyramid import TileGeometry
from .tile_pyramid import TileID
from .tile_pyramid import TileRange

__all__ = [
    "DemGrid",
    "DemMosaic",
    "decode_mesh",
    "encode_mesh",
    "GeoRect",
    "generate_tileset",
    "get_terrain_config",
    "load_terrain_config",
    "MeshContractError",
    "MeshDecodeError",
    "RasterUnavailableError",
    "RefinementDriver",
    "StopReason",
    "TerrainConfig",
    "TerrainError",
    "TerrainMesh",
    "TileGeometry",
    "TileID",
    "TileMatrixJob",
    "TileRange",
    "TileRasterManager",
    "TileStitcher",
    "TriangleSplitter",
]
