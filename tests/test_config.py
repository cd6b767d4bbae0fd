"""Tests for timeflow.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from timeflow.config import (
    ConfigError,
    TimeflowConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)
from timeflow.models import ProviderKind, SyncMode

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[sync]
auto_sync_interval_minutes = 10
debounce_seconds = 2.5
window_months = 6
request_timeout_seconds = 15
mode = "bidirectional"
parallel = true

[providers.google]
client_id = "google-client"
client_secret = "${TEST_GOOGLE_SECRET}"
calendar_id = "work@example.com"

[providers.microsoft]
client_id = "ms-client"
tenant = "contoso"

[database]
url = "postgres://sync:pw@db:5432/timeflow"
max_pool_size = 4

[logging]
level = "debug"
format = "json"
file = "logs/sync.jsonl"

[api]
host = "0.0.0.0"
port = 9100
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "timeflow.toml"
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_GOOGLE_SECRET", "from-env")
    config = load_config(_write_toml(tmp_path, FULL_TOML))

    assert config.sync.auto_sync_interval_minutes == 10
    assert config.sync.debounce_seconds == 2.5
    assert config.sync.window_months == 6
    assert config.sync.request_timeout_seconds == 15
    assert config.sync.mode is SyncMode.BIDIRECTIONAL
    assert config.sync.parallel is True

    assert config.google is not None
    assert config.google.client_secret == "from-env"
    assert config.google.calendar_id == "work@example.com"
    assert config.microsoft is not None
    assert config.microsoft.client_secret is None
    assert config.microsoft.tenant == "contoso"
    assert config.enabled_providers == [ProviderKind.GOOGLE, ProviderKind.MICROSOFT]

    assert config.database.url == "postgres://sync:pw@db:5432/timeflow"
    assert config.database.max_pool_size == 4
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.file == "logs/sync.jsonl"
    assert config.api.host == "0.0.0.0"
    assert config.api.port == 9100


def test_empty_config_uses_defaults():
    config = parse_config({})
    assert isinstance(config, TimeflowConfig)
    assert config.sync.auto_sync_interval_minutes == 5
    assert config.sync.debounce_seconds == 1.0
    assert config.sync.window_months == 3
    assert config.sync.mode is SyncMode.IMPORT_ONLY
    assert config.sync.parallel is False
    assert config.enabled_providers == []
    assert config.database.url is None
    assert config.logging.format == "text"
    assert config.api.port == 8080


def test_google_calendar_defaults_to_primary():
    config = parse_config({"providers": {"google": {"client_id": "a", "client_secret": "b"}}})
    assert config.google is not None
    assert config.google.calendar_id == "primary"


def test_provider_config_repr_hides_secret():
    config = parse_config(
        {
            "providers": {
                "google": {"client_id": "a", "client_secret": "very-secret"},
                "microsoft": {"client_id": "c", "client_secret": "also-secret"},
            }
        }
    )
    assert "very-secret" not in repr(config.google)
    assert "also-secret" not in repr(config.microsoft)


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TF_HOST", "db.internal")
        data = {"a": ["postgres://${TF_HOST}/x", 3], "b": {"c": True}}
        assert resolve_env_vars(data) == {"a": ["postgres://db.internal/x", 3], "b": {"c": True}}

    def test_missing_vars_reported_together(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("TF_MISSING_ONE", raising=False)
        monkeypatch.delenv("TF_MISSING_TWO", raising=False)
        with pytest.raises(ConfigError, match="TF_MISSING_ONE, TF_MISSING_TWO"):
            resolve_env_vars("${TF_MISSING_ONE}:${TF_MISSING_TWO}")


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[sync\nmode ="))


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"sync": {"mode": "two_way"}}, "sync.mode"),
        ({"sync": {"auto_sync_interval_minutes": 0}}, "must be positive"),
        ({"sync": {"debounce_seconds": -1}}, "must be positive"),
        ({"sync": {"request_timeout_seconds": "fast"}}, "must be a number"),
        ({"sync": {"window_months": 0}}, "window_months"),
        ({"sync": {"window_months": 1.5}}, "window_months"),
        ({"sync": {"parallel": "yes"}}, "sync.parallel"),
        ({"sync": "fast"}, r"\[sync\] must be a table"),
        ({"providers": {"google": {"client_id": "a"}}}, "providers.google.client_secret"),
        ({"providers": {"microsoft": {}}}, "providers.microsoft.client_id"),
        ({"providers": {"outlook": {}}}, "Unsupported provider"),
        ({"logging": {"format": "xml"}}, "logging.format"),
        ({"api": {"port": 70000}}, "api.port"),
    ],
)
def test_invalid_values(data, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(data)
