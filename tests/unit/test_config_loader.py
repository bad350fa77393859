"""Tests for the profile-aware config loader."""

from __future__ import annotations

import pytest

from backend.app.config import load_settings
from backend.app.config.loader import (
    DEFAULT_ALLOWED_ORIGINS,
    DEFAULT_DATABASE_URL,
    DEFAULT_LIST_WINDOW_DAYS,
    DEFAULT_MAX_START_ATTEMPTS,
)

pytestmark = [pytest.mark.config]


@pytest.fixture(autouse=True)
def _clear_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_load_settings_falls_back_to_defaults(monkeypatch, tmp_path):
    """Missing profiles should default to the built-in dev configuration."""

    monkeypatch.setenv("CLOCKOUT_CONFIG_PROFILE", "missing")
    monkeypatch.setenv("CLOCKOUT_CONFIG_DIR", str(tmp_path))
    settings = load_settings()

    assert settings.environment == "dev"
    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.entries.max_start_attempts == DEFAULT_MAX_START_ATTEMPTS
    assert settings.entries.list_window_days == DEFAULT_LIST_WINDOW_DAYS
    assert settings.allowed_origins == DEFAULT_ALLOWED_ORIGINS
    assert settings.logging == {"level": "INFO", "json": True}


def test_load_settings_reads_yaml_profile(monkeypatch, tmp_path):
    """Config loader should parse YAML profiles and expose entry settings."""

    profiles_dir = tmp_path / "profiles"
    profiles_dir.mkdir()
    (profiles_dir / "staging.yaml").write_text(
        """
environment: staging

database:
  url: "sqlite:///tmp/clockout.db"

entries:
  max_start_attempts: 5
  list_window_days: 14

notifier:
  listener_queue_size: 8

logging:
  level: DEBUG
  json: false

cors:
  allowed_origins:
    - https://clock.example.com
""",
        encoding="utf-8",
    )

    settings = load_settings(profile="staging", config_dir=profiles_dir)

    assert settings.environment == "staging"
    assert settings.database_url == "sqlite:///tmp/clockout.db"
    assert settings.entries.max_start_attempts == 5
    assert settings.entries.list_window_days == 14
    assert settings.notifier.listener_queue_size == 8
    assert settings.logging == {"level": "DEBUG", "json": False}
    assert settings.allowed_origins == ["https://clock.example.com"]
    assert settings.raw["environment"] == "staging"


def test_database_url_env_overrides_profile(monkeypatch, tmp_path):
    (tmp_path / "dev.yml").write_text(
        "database:\n  url: postgresql+psycopg://ignored/db\n", encoding="utf-8"
    )
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")

    settings = load_settings(profile="dev", config_dir=tmp_path)

    assert settings.database_url == "sqlite:///override.db"
    assert settings.entries.max_start_attempts == DEFAULT_MAX_START_ATTEMPTS


@pytest.mark.parametrize(
    "body",
    [
        "entries:\n  max_start_attempts: 0\n",
        "entries:\n  list_window_days: 0\n",
        "- just\n- a\n- list\n",
        "environment: [unclosed\n",
    ],
)
def test_invalid_profiles_raise(tmp_path, body):
    (tmp_path / "broken.yaml").write_text(body, encoding="utf-8")

    with pytest.raises(RuntimeError):
        load_settings(profile="broken", config_dir=tmp_path)
