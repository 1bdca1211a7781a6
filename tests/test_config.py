from __future__ import annotations

from pathlib import Path

import pytest
import yaml

REPO_ROOT = Path(__file__).resolve().parents[1]
REPO_CONFIG = REPO_ROOT / "config" / "terrain.yaml"


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


def test_loads_repo_default_terrain_config() -> None:
    from terrain.config import load_terrain_config
    from terrain.globe import CelestialBody

    config = load_terrain_config(REPO_CONFIG)
    assert config.celestial_body is CelestialBody.EARTH
    assert config.mesh.fan_iteration_cap == 100
    assert config.mesh.critical_fan_edges == 15
    assert config.mesh.stitch_severe_corruption_ratio == 0.20
    assert config.mesh.stitch_severe_max_edges == 50
    assert config.splitter.max_recursion_depth == 50
    assert config.refinement.max_iterations == 30
    assert config.refinement.convergence_window == 7
    assert config.tiles.grid_size == 17
    assert config.tiles.raster_size == 129
    assert config.tiles.origin_is_left_up is False
    assert config.scheduler.backoff.max_seconds == 60.0


def test_config_path_can_come_from_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    from terrain.config import DEFAULT_TERRAIN_CONFIG_ENV, get_terrain_config

    path = tmp_path / "custom.yaml"
    _write_yaml(path, {"terrain": {"body": "Moon", "tiles": {"grid_size": 9}}})
    monkeypatch.setenv(DEFAULT_TERRAIN_CONFIG_ENV, str(path))

    get_terrain_config.cache_clear()
    config = get_terrain_config()
    assert config.body == "moon"
    assert config.tiles.grid_size == 9
    assert config.refinement.max_iterations == 30
    assert get_terrain_config() is config


def test_config_dir_lookup_uses_terrain_yaml(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TERRAIN_CONFIG", raising=False)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    monkeypatch.setenv("TERRAIN_CONFIG_DIR", str(config_dir))
    _write_yaml(config_dir / "terrain.yaml", {"terrain": {"scheduler": {"max_workers": 8}}})

    from terrain.config import get_terrain_config

    get_terrain_config.cache_clear()
    assert get_terrain_config().scheduler.max_workers == 8


def test_reports_yaml_errors(tmp_path: Path) -> None:
    from terrain.config import load_terrain_config

    path = tmp_path / "terrain.yaml"
    path.write_text("terrain: [", encoding="utf-8")
    with pytest.raises(ValueError, match="Failed to load terrain YAML"):
        load_terrain_config(path)

    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="terrain config must be a mapping"):
        load_terrain_config(path)

    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid terrain config"):
        load_terrain_config(path)


def test_rejects_unknown_keys_and_bad_values(tmp_path: Path) -> None:
    from terrain.config import load_terrain_config

    path = tmp_path / "terrain.yaml"
    _write_yaml(path, {"terrain": {"tiles": {"grid_size": 9, "tile_px": 256}}})
    with pytest.raises(ValueError, match="Invalid terrain config"):
        load_terrain_config(path)

    _write_yaml(path, {"terrain": {"body": "mars"}})
    with pytest.raises(ValueError, match="Invalid terrain config"):
        load_terrain_config(path)

    _write_yaml(
        path,
        {"terrain": {"refinement": {"memory_warning_pressure": 0.95, "memory_critical_pressure": 0.9}}},
    )
    with pytest.raises(ValueError, match="memory_warning_pressure"):
        load_terrain_config(path)

    _write_yaml(path, {"terrain": {"tiles": {"max_triangle_m": {3: -1.0}}}})
    with pytest.raises(ValueError, match="overrides"):
        load_terrain_config(path)

    _write_yaml(path, {"terrain": {"mesh": {"max_expected_fan_edges": 12, "critical_fan_edges": 8}}})
    with pytest.raises(ValueError, match="critical_fan_edges"):
        load_terrain_config(path)


def test_get_terrain_config_raises_when_missing(tmp_path: Path) -> None:
    from terrain.config import get_terrain_config, load_terrain_config

    get_terrain_config.cache_clear()
    with pytest.raises(FileNotFoundError, match="terrain config file not found"):
        get_terrain_config(tmp_path / "missing.yaml")
    with pytest.raises(FileNotFoundError, match="terrain config file not found"):
        load_terrain_config(tmp_path / "missing.yaml")


def test_tile_geometry_reflects_tile_settings(tmp_path: Path) -> None:
    from terrain.config import load_terrain_config
    from terrain.globe import CelestialBody

    path = tmp_path / "terrain.yaml"
    _write_yaml(
        path,
        {
            "terrain": {
                "body": "moon",
                "tiles": {"origin_is_left_up": True, "max_triangle_m": {2: 1234.0}},
            }
        },
    )
    geometry = load_terrain_config(path).tile_geometry()

    assert geometry.origin_is_left_up is True
    assert geometry.body is CelestialBody.MOON
    assert geometry.max_triangle_size_m(2) == 1234.0
    assert geometry.max_triangle_size_m(3) == pytest.approx(geometry.tile_size_m(3) * 0.25)


def test_settings_normalize_log_level(monkeypatch: pytest.MonkeyPatch) -> None:
    from terrain.settings import TerrainSettings

    monkeypatch.setenv("TERRAIN_LOG_LEVEL", " debug ")
    assert TerrainSettings().log_level == "DEBUG"

    monkeypatch.setenv("TERRAIN_LOG_LEVEL", "chatty")
    with pytest.raises(ValueError, match="Invalid TERRAIN_LOG_LEVEL"):
        TerrainSettings()


def test_config_dir_resolution(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from terrain.settings import TerrainSettings, _resolve_config_dir

    assert _resolve_config_dir({"TERRAIN_CONFIG_DIR": str(tmp_path)}) == tmp_path

    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "terrain.yaml").write_text("terrain: {}\n", encoding="utf-8")
    monkeypatch.chdir(nested)
    assert _resolve_config_dir({"HOME": "/nowhere"}) == tmp_path / "config"

    monkeypatch.setenv("TERRAIN_CONFIG_DIR", "relative")
    assert TerrainSettings().resolved_config_dir() == nested / "relative"
