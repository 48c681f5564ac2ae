#!/usr/bin/env python3
"""Settings loading"""

import pytest

from mcp_bridge.config import Settings, load_settings
from mcp_bridge.errors import ConfigurationError


def test_defaults(tmp_path):
    settings = load_settings(tmp_path / "missing.toml", environ={})

    assert settings.port == 3001
    assert settings.temperature == 0.7
    assert settings.max_tokens == 4096
    assert settings.max_iterations == 10
    assert settings.api_key is None
    assert settings.redirect_url == "http://localhost:5173/oauth/callback"


def test_toml_then_environment(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text(
        '[bridge]\n'
        'port = 4000\n'
        'max_iterations = 5\n'
        'redirect_base_url = "https://app.example.com/"\n'
        'database_path = "db/store.json"\n'
    )

    settings = load_settings(path, environ={"PORT": "4100", "OPENROUTER_API_KEY": "sk-env"})

    assert settings.port == 4100
    assert settings.max_iterations == 5
    assert settings.api_key == "sk-env"
    assert settings.redirect_url == "https://app.example.com/oauth/callback"
    assert settings.store_path.name == "store.json"
    assert settings.store_path.is_absolute()


def test_invalid_values(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.toml", environ={"PORT": "not-a-port"})

    path = tmp_path / "broken.toml"
    path.write_text("[bridge\nport = ")
    with pytest.raises(ConfigurationError):
        load_settings(path, environ={})


def test_unknown_keys_ignored():
    settings = Settings.from_dict({"port": "5000", "colour": "blue"})

    assert settings.port == 5000
    assert not hasattr(settings, "colour")
