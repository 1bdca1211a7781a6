from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Sequence

from .config import load_terrain_config
from .elevation import DemMosaic
from .observability import configure_logging
from .pipeline import generate_tileset, plan_tile_ranges
from .settings import DEFAULT_CONFIG_FILE_NAME, TerrainSettings
from .tile_pyramid import GeoRect


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terrain",
        description="DEM -> refined half-edge terrain meshes + Cesium quantized-mesh tiles (EPSG:4326).",
    )
    parser.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        metavar=("WEST", "SOUTH", "EAST", "NORTH"),
        required=True,
        help="Region bounds in degrees",
    )
    parser.add_argument("--min-depth", type=int, default=0, help="Min tile depth (default: 0)")
    parser.add_argument("--max-depth", type=int, default=8, help="Max tile depth (default: 8)")
    parser.add_argument(
        "--dem-path",
        type=Path,
        action="append",
        default=[],
        help="DEM GeoTIFF in EPSG:4326 (repeatable)",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        required=True,
        help="Output directory for layer.json, meshes/ and tiles/",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Terrain config YAML (default: <config dir>/{DEFAULT_CONFIG_FILE_NAME})",
    )
    parser.add_argument(
        "--gzip",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Write gzipped .terrain payloads (default: false)",
    )
    parser.add_argument(
        "--normals",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Compute vertex normals and write the oct-encoded normals extension",
    )
    parser.add_argument("--run-id", default=None, help="Run id attached to every log record")
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Print planned tile counts without generating files",
    )
    return parser


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    settings = TerrainSettings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    try:
        rect = GeoRect(
            west=float(args.bbox[0]),
            south=float(args.bbox[1]),
            east=float(args.bbox[2]),
            north=float(args.bbox[3]),
        )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    config_path = args.config
    if config_path is None:
        config_path = settings.resolved_config_dir() / DEFAULT_CONFIG_FILE_NAME
    try:
        config = load_terrain_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(str(exc)) from exc

    try:
        ranges = plan_tile_ranges(
            rect,
            min_zoom=int(args.min_depth),
            max_zoom=int(args.max_depth),
            origin_is_left_up=config.tiles.origin_is_left_up,
        )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    summary = {
        "bbox": [rect.west, rect.south, rect.east, rect.north],
        "min_depth": int(args.min_depth),
        "max_depth": int(args.max_depth),
        "grid_size": config.tiles.grid_size,
        "body": config.body,
    }
    if args.dry_run:
        _print_json(
            {
                **summary,
                "tile_count": sum(r.width * r.height for r in ranges),
                "tiles_per_depth": {str(r.z): r.width * r.height for r in ranges},
            }
        )
        return 0

    if not args.dem_path:
        raise SystemExit("--dem-path is required unless --dry-run is set")

    source = DemMosaic.from_geotiffs(args.dem_path)
    stats = generate_tileset(
        source=source,
        rect=rect,
        out_dir=args.out_dir,
        min_zoom=int(args.min_depth),
        max_zoom=int(args.max_depth),
        config=config,
        gzip_payload=bool(args.gzip),
        include_normals=bool(args.normals),
        run_id=args.run_id,
    )
    _print_json(
        {
            **summary,
            "gzip": bool(args.gzip),
            **asdict(stats),
            "avg_bytes_per_tile": stats.avg_bytes_per_tile,
            "avg_tiles_per_s": stats.avg_tiles_per_s,
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
