"""Process configuration loading and validation.

Reads ``tasksync.toml``, resolves ``${VAR}`` references against the
environment, fills unset values from the well-known environment variables,
and returns a :class:`TasksyncConfig` dataclass. Scheduling settings are not
here; they live in the database (see :mod:`tasksync.settings`).
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tasksync.db import Database

DEFAULT_CONFIG_FILENAME = "tasksync.toml"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration or credentials are missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    url: str | None = None
    name: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5

    def build(self) -> Database:
        """Return a :class:`Database` for this section, falling back to ``POSTGRES_*``."""
        pool_kwargs = {"min_pool_size": self.min_pool_size, "max_pool_size": self.max_pool_size}
        try:
            if self.url:
                return Database.from_url(self.url, self.name, **pool_kwargs)
            return Database.from_env(self.name, **pool_kwargs)
        except ValueError as exc:
            raise ConfigError(f"Invalid database settings: {exc}") from exc


@dataclass
class TududiConfig:
    api_url: str | None = None
    api_key: str | None = None

    def require(self) -> tuple[str, str]:
        """Return ``(api_url, api_key)`` or raise when either is missing."""
        if not self.api_url:
            raise ConfigError("Missing Tududi API URL: set [tududi].api_url or TUDUDI_API_URL")
        if not self.api_key:
            raise ConfigError("Missing Tududi API key: set [tududi].api_key or TUDUDI_API_KEY")
        return self.api_url, self.api_key


@dataclass
class GoogleConfig:
    credentials_json: str | None = None
    credentials_file: str | None = None

    def require_credentials_json(self) -> str:
        """Return the raw OAuth credential JSON from the inline value or the file."""
        if self.credentials_json:
            return self.credentials_json
        if self.credentials_file:
            path = Path(self.credentials_file)
            try:
                return path.read_text()
            except OSError as exc:
                raise ConfigError(f"Cannot read Google credentials file {path}: {exc}") from exc
        raise ConfigError(
            "Missing Google Calendar credentials: set [google].credentials_json, "
            "[google].credentials_file or GOOGLE_CALENDAR_CREDENTIALS_JSON"
        )


@dataclass
class TasksyncConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    tududi: TududiConfig = field(default_factory=TududiConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    lease_timeout_minutes: int = 10
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR_NAME}`` references in string values.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing one at once."""
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _positive_int(section: dict[str, Any], key: str, path: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected one of {_LOG_FORMATS}.")
    return LoggingConfig(
        level=level, format=fmt, log_root=_optional_str(section, "log_root", "logging")
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    min_pool = _positive_int(section, "min_pool_size", "database", 1)
    max_pool = _positive_int(section, "max_pool_size", "database", 5)
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        url=_optional_str(section, "url", "database") or os.environ.get("DATABASE_URL"),
        name=_optional_str(section, "name", "database"),
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_tududi(data: dict[str, Any]) -> TududiConfig:
    section = _section(data, "tududi")
    api_url = _optional_str(section, "api_url", "tududi") or os.environ.get("TUDUDI_API_URL")
    if api_url and not api_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid tududi.api_url: {api_url!r}. Expected an http(s) URL.")
    return TududiConfig(
        api_url=api_url.rstrip("/") if api_url else None,
        api_key=_optional_str(section, "api_key", "tududi") or os.environ.get("TUDUDI_API_KEY"),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    return GoogleConfig(
        credentials_json=(
            _optional_str(section, "credentials_json", "google")
            or os.environ.get("GOOGLE_CALENDAR_CREDENTIALS_JSON")
        ),
        credentials_file=_optional_str(section, "credentials_file", "google"),
    )


def load_config(path: Path | None = None) -> TasksyncConfig:
    """Load ``tasksync.toml`` and apply environment fallbacks.

    When *path* is ``None`` the file is looked up in the working directory and
    may be absent, in which case only the environment is used. An explicit
    *path* that does not exist is an error.

    Raises
    ------
    ConfigError
        If the file is missing or invalid, or a referenced variable is unset.
    """
    explicit = path is not None
    toml_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILENAME)

    data: dict[str, Any] = {}
    source: Path | None = None
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        source = toml_path
    elif explicit:
        raise ConfigError(f"Config file not found: {toml_path}")

    data = resolve_env_vars(data)

    sync_section = _section(data, "sync")
    return TasksyncConfig(
        database=_parse_database(data),
        tududi=_parse_tududi(data),
        google=_parse_google(data),
        logging=_parse_logging(data),
        lease_timeout_minutes=_positive_int(sync_section, "lease_timeout_minutes", "sync", 10),
        source=source,
    )
