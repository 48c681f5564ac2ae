#!/usr/bin/env python3
"""
MCP Bridge Configuration Module
Loads settings from an optional settings.toml and environment overrides
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent

# Environment variable -> settings field
ENV_OVERRIDES = {
    "OAUTH_REDIRECT_BASE_URL": "redirect_base_url",
    "DATABASE_PATH": "database_path",
    "OPENROUTER_API_KEY": "api_key",
    "MCP_BRIDGE_MODEL": "model",
    "HOST": "host",
    "PORT": "port",
    "CORS_ORIGIN": "cors_origin",
}


@dataclass
class Settings:
    """Runtime settings for the bridge"""
    redirect_base_url: str = "http://localhost:5173"
    database_path: str = "data/mcp_bridge.json"
    api_key: Optional[str] = None
    model: str = "openrouter/anthropic/claude-sonnet-4"
    temperature: float = 0.7
    max_tokens: int = 4096
    max_iterations: int = 10
    host: str = "localhost"
    port: int = 3001
    cors_origin: str = "http://localhost:5173"
    client_name: str = "MCP Bridge"
    connect_timeout: float = 30.0
    call_timeout: float = 60.0
    close_timeout: float = 5.0
    llm_timeout: float = 300.0
    stale_credentials_age: float = 86400.0

    @property
    def redirect_url(self) -> str:
        return f"{self.redirect_base_url.rstrip('/')}/oauth/callback"

    @property
    def store_path(self) -> Path:
        path = Path(self.database_path)
        if not path.is_absolute():
            path = ROOT_DIR / path
        return path

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Create Settings from a flat dictionary, coercing values to field types"""
        settings = cls()
        known = {f.name: f for f in fields(cls)}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            default = getattr(settings, key)
            setattr(settings, key, _coerce(key, value, default))
        return settings


def _coerce(key: str, value: Any, default: Any) -> Any:
    if value is None:
        return None
    try:
        if isinstance(default, bool):
            return str(value).lower() in ("1", "true", "yes")
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}") from e
    return str(value)


def load_settings(config_path: Optional[Union[str, Path]] = None,
                  environ: Optional[Dict[str, str]] = None) -> Settings:
    """Load settings.toml ([bridge] table) and apply environment overrides"""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    path = Path(config_path) if config_path else ROOT_DIR / "settings.toml"
    if path.exists():
        try:
            parsed = toml.load(path)
        except toml.TomlDecodeError as e:
            raise ConfigurationError(f"Invalid settings file {path}: {e}") from e
        data.update(parsed.get("bridge", {}))
        logger.info(f"Loaded settings from {path}")
    elif config_path:
        logger.warning(f"Settings file not found: {path}")

    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            data[key] = environ[env_name]

    return Settings.from_dict(data)
