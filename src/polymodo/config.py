"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (POLYMODO__COORDINATOR__FANOUT_DEADLINE_MS=150)
  2. polymodo.yaml          (searched in cwd, then the user config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_APP_NAME = "polymodo"
_DEFAULT_CACHE_DIR = platformdirs.user_cache_dir(_APP_NAME)
_DEFAULT_DB_PATH = str(Path(_DEFAULT_CACHE_DIR) / "entries.db")
_DEFAULT_SOCKET_PATH = str(Path(platformdirs.user_runtime_dir(_APP_NAME)) / "polymodo.sock")


def _find_config_file() -> str | None:
    """Return the path of the first polymodo.yaml found, or None."""
    candidates = [
        Path("polymodo.yaml"),
        Path(platformdirs.user_config_dir(_APP_NAME)) / "polymodo.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


def default_application_dirs() -> list[str]:
    """XDG ``applications`` directories, user data dir first."""
    data_dirs = [platformdirs.user_data_dir()]
    data_dirs.extend(platformdirs.site_data_dir(multipath=True).split(os.pathsep))
    return [str(Path(d) / "applications") for d in data_dirs if d]


class ScannerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    directories: list[str] = Field(default_factory=default_application_dirs)
    rescan_interval_seconds: float = Field(default=900.0, ge=0)  # 0 disables the timer
    watch: bool = True
    watch_debounce_ms: int = Field(default=300, ge=0)


class MatcherSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    top_k: int = Field(default=50, ge=1)
    chunk_size: int = Field(default=256, ge=1)
    score_floor: int = Field(default=1, ge=0)


class CoordinatorSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fanout_deadline_ms: int = Field(default=200, ge=1)
    score_ceiling: float = Field(default=1000.0, gt=0)


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    db_path: str = _DEFAULT_DB_PATH


class IpcSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    socket_path: str = _DEFAULT_SOCKET_PATH


class AppsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: list[str] = ["applications", "calculator"]


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "text"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: POLYMODO__MATCHER__TOP_K=20
        env_prefix="POLYMODO__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    scanner: ScannerSettings = ScannerSettings()
    matcher: MatcherSettings = MatcherSettings()
    coordinator: CoordinatorSettings = CoordinatorSettings()
    cache: CacheSettings = CacheSettings()
    ipc: IpcSettings = IpcSettings()
    apps: AppsSettings = AppsSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
