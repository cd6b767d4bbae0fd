"""TimeFlow sync configuration loading and validation.

Reads ``timeflow.toml``, resolves ``${VAR}`` references against the process
environment, and returns a validated :class:`TimeflowConfig` dataclass.

Example::

    [sync]
    auto_sync_interval_minutes = 5
    mode = "import_only"

    [providers.google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"

    [database]
    url = "${DATABASE_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from timeflow.models import ProviderKind, SyncMode

DEFAULT_CONFIG_PATH = Path("timeflow.toml")

# Pattern matching ${VAR_NAME} (alphanumeric and underscore names).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class SyncSettings:
    """Engine settings from the ``[sync]`` section."""

    auto_sync_interval_minutes: float = 5
    debounce_seconds: float = 1.0
    window_months: int = 3
    request_timeout_seconds: float = 30.0
    mode: SyncMode = SyncMode.IMPORT_ONLY
    parallel: bool = False


@dataclass
class GoogleProviderConfig:
    """OAuth client for Google from ``[providers.google]``."""

    client_id: str
    client_secret: str
    calendar_id: str = "primary"

    def __repr__(self) -> str:
        return (
            f"GoogleProviderConfig(client_id={self.client_id!r}, "
            f"client_secret='***', calendar_id={self.calendar_id!r})"
        )


@dataclass
class MicrosoftProviderConfig:
    """OAuth client for Microsoft from ``[providers.microsoft]``.

    ``client_secret`` is optional for public (PKCE) clients.
    """

    client_id: str
    client_secret: str | None = None
    tenant: str = "common"

    def __repr__(self) -> str:
        secret = "'***'" if self.client_secret else "None"
        return (
            f"MicrosoftProviderConfig(client_id={self.client_id!r}, "
            f"client_secret={secret}, tenant={self.tenant!r})"
        )


@dataclass
class DatabaseConfig:
    url: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from ``[logging]``."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class TimeflowConfig:
    """Parsed ``timeflow.toml``."""

    sync: SyncSettings = field(default_factory=SyncSettings)
    google: GoogleProviderConfig | None = None
    microsoft: MicrosoftProviderConfig | None = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @property
    def enabled_providers(self) -> list[ProviderKind]:
        enabled: list[ProviderKind] = []
        if self.google is not None:
            enabled.append(ProviderKind.GOOGLE)
        if self.microsoft is not None:
            enabled.append(ProviderKind.MICROSOFT)
        return enabled


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The original value is not echoed since it may sit next to a secret.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_number(section: dict[str, Any], key: str, default: float, label: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{label}.{key} must be a number")
    if raw <= 0:
        raise ConfigError(f"{label}.{key} must be positive, got {raw}")
    return raw


def _required_str(section: dict[str, Any], key: str, label: str) -> str:
    raw = section.get(key)
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"Missing required field: {label}.{key}")
    return raw.strip()


def _optional_str(section: dict[str, Any], key: str, label: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{label}.{key} must be a string")
    return raw.strip() or None


def _parse_sync(data: dict[str, Any]) -> SyncSettings:
    section = _section(data, "sync")
    defaults = SyncSettings()

    mode_raw = section.get("mode", defaults.mode.value)
    try:
        mode = SyncMode(str(mode_raw))
    except ValueError as exc:
        allowed = ", ".join(m.value for m in SyncMode)
        raise ConfigError(f"Invalid sync.mode {mode_raw!r}; expected one of: {allowed}") from exc

    window_months = section.get("window_months", defaults.window_months)
    if isinstance(window_months, bool) or not isinstance(window_months, int) or window_months < 1:
        raise ConfigError("sync.window_months must be a positive integer")

    parallel = section.get("parallel", defaults.parallel)
    if not isinstance(parallel, bool):
        raise ConfigError("sync.parallel must be a boolean")

    return SyncSettings(
        auto_sync_interval_minutes=_positive_number(
            section, "auto_sync_interval_minutes", defaults.auto_sync_interval_minutes, "sync"
        ),
        debounce_seconds=_positive_number(
            section, "debounce_seconds", defaults.debounce_seconds, "sync"
        ),
        window_months=window_months,
        request_timeout_seconds=_positive_number(
            section, "request_timeout_seconds", defaults.request_timeout_seconds, "sync"
        ),
        mode=mode,
        parallel=parallel,
    )


def parse_config(data: dict[str, Any]) -> TimeflowConfig:
    """Validate already-decoded TOML data (env vars are resolved here)."""
    data = resolve_env_vars(data)

    providers = _section(data, "providers")
    google: GoogleProviderConfig | None = None
    google_section = providers.get("google")
    if google_section is not None:
        if not isinstance(google_section, dict):
            raise ConfigError("[providers.google] must be a table")
        google = GoogleProviderConfig(
            client_id=_required_str(google_section, "client_id", "providers.google"),
            client_secret=_required_str(google_section, "client_secret", "providers.google"),
            calendar_id=_optional_str(google_section, "calendar_id", "providers.google")
            or "primary",
        )

    microsoft: MicrosoftProviderConfig | None = None
    microsoft_section = providers.get("microsoft")
    if microsoft_section is not None:
        if not isinstance(microsoft_section, dict):
            raise ConfigError("[providers.microsoft] must be a table")
        microsoft = MicrosoftProviderConfig(
            client_id=_required_str(microsoft_section, "client_id", "providers.microsoft"),
            client_secret=_optional_str(microsoft_section, "client_secret", "providers.microsoft"),
            tenant=_optional_str(microsoft_section, "tenant", "providers.microsoft") or "common",
        )

    unknown = set(providers) - {kind.value for kind in ProviderKind}
    if unknown:
        raise ConfigError(f"Unsupported provider section(s): {', '.join(sorted(unknown))}")

    db_section = _section(data, "database")
    database = DatabaseConfig(
        url=_optional_str(db_section, "url", "database"),
        min_pool_size=int(db_section.get("min_pool_size", 1)),
        max_pool_size=int(db_section.get("max_pool_size", 10)),
    )

    logging_section = _section(data, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format {log_format!r}; expected 'text' or 'json'")

    api_section = _section(data, "api")
    port = api_section.get("port", 8080)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError("api.port must be an integer between 1 and 65535")

    return TimeflowConfig(
        sync=_parse_sync(data),
        google=google,
        microsoft=microsoft,
        database=database,
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            file=_optional_str(logging_section, "file", "logging"),
        ),
        api=ApiConfig(host=str(api_section.get("host", "127.0.0.1")), port=port),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> TimeflowConfig:
    """Load and validate a ``timeflow.toml``.

    Parameters
    ----------
    path:
        Path to the TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
