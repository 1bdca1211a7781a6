from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TERRAIN_PREFIX = "TERRAIN_"
DEFAULT_CONFIG_FILE_NAME = "terrain.yaml"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _resolve_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = environ or os.environ
    explicit = environ.get(f"{_TERRAIN_PREFIX}CONFIG_DIR")
    if explicit:
        explicit_path = Path(explicit).expanduser()
        if not explicit_path.is_absolute():
            explicit_path = (Path.cwd() / explicit_path).resolve()
        return explicit_path

    cwd = Path.cwd()
    for candidate_root in (cwd, *cwd.parents):
        config_dir = candidate_root / "config"
        if (config_dir / DEFAULT_CONFIG_FILE_NAME).is_file():
            return config_dir

    return cwd / "config"


class TerrainSettings(BaseSettings):
    """Process-level settings read from ``TERRAIN_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix=_TERRAIN_PREFIX, extra="ignore")

    config_dir: Optional[Path] = None
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = (value or "").strip().upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid TERRAIN_LOG_LEVEL={value!r}; expected one of: {', '.join(sorted(_LOG_LEVELS))}"
            )
        return normalized

    def resolved_config_dir(self) -> Path:
        if self.config_dir is not None:
            candidate = self.config_dir.expanduser()
            if not candidate.is_absolute():
                candidate = (Path.cwd() / candidate).resolve()
            return candidate
        return _resolve_config_dir(os.environ)
