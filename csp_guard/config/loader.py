"""YAML + env var config loading with pydantic-settings."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from csp_guard.models.server import DEFAULT_LIVE_RELOAD_PORT, DEFAULT_PORT, ServerOptions

logger = structlog.get_logger()

_ENVIRONMENTS_KEY = "environments"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML config file, returning empty dict when missing or not a mapping."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        logger.warning("config_file_not_mapping", path=str(path), value_type=type(data).__name__)
        return {}
    return dict(data)


def _layer_environment(data: Mapping[str, Any], environment: str, path: Path) -> dict[str, Any]:
    """Overlay the ``environments.<environment>`` section onto the top level.

    The ``policy`` mapping is overlaid per directive; every other key is replaced.
    """
    merged = {key: value for key, value in data.items() if key != _ENVIRONMENTS_KEY}
    sections = data.get(_ENVIRONMENTS_KEY) or {}
    if not isinstance(sections, Mapping):
        logger.warning("config_environments_not_mapping", path=str(path))
        return merged
    override = sections.get(environment) or {}
    if not isinstance(override, Mapping):
        logger.warning("config_environment_not_mapping", path=str(path), environment=environment)
        return merged

    for key, value in override.items():
        base = merged.get(key)
        if key == "policy" and isinstance(base, Mapping) and isinstance(value, Mapping):
            merged[key] = {**base, **value}
        else:
            merged[key] = value
    return merged


def read_config(path: Path, environment: str) -> dict[str, Any]:
    """Read the CSP configuration file for one environment."""
    return _layer_environment(_load_yaml(path), environment, path)


# The application's environment configuration (legacy CSP keys) has the same layout
read_app_config = read_config


class CspSettings(BaseSettings):
    """Process configuration loaded from env vars and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="CSP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    project_root: str = "."
    config_file: str = "config/content-security-policy.yaml"
    app_config_file: str = "config/environment.yaml"
    log_level: str = "info"
    log_json: bool = True

    # Build
    include_tests: bool = False
    test_path_prefix: str = "/tests"
    server_rendering: bool = False
    static_dir: str = ""

    # Development server
    host: str | None = None
    port: int = DEFAULT_PORT
    ssl: bool = False
    live_reload: bool = False
    live_reload_host: str | None = None
    live_reload_port: int = DEFAULT_LIVE_RELOAD_PORT

    def config_path(self) -> Path:
        return Path(self.project_root) / self.config_file

    def app_config_path(self) -> Path:
        return Path(self.project_root) / self.app_config_file

    def server_options(self) -> ServerOptions:
        return ServerOptions(
            host=self.host or None,
            port=self.port,
            ssl=self.ssl,
            live_reload=self.live_reload,
            live_reload_host=self.live_reload_host or None,
            live_reload_port=self.live_reload_port,
        )


_settings: CspSettings | None = None


def get_settings() -> CspSettings:
    """Get or create the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def load_settings() -> CspSettings:
    """Load settings from env vars (env vars override model defaults)."""
    global _settings
    _settings = CspSettings()
    logger.info("config_loaded", environment=_settings.environment, project_root=_settings.project_root)
    return _settings
