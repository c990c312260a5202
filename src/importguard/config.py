"""importguard configuration loading and validation.

Reads ``importguard.toml``, resolves ``${VAR}`` environment references and
returns a validated :class:`ImportGuardConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "importguard.toml"
DEFAULT_DB_NAME = "importguard"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [importguard.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ImportGuardConfig:
    """Parsed and validated importguard configuration."""

    db_name: str = DEFAULT_DB_NAME
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in parsed TOML values.

    Dicts and lists are walked; non-string leaves pass through unchanged.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return result


def _parse_db(section: Any) -> tuple[str, str | None]:
    if section is None:
        return DEFAULT_DB_NAME, None
    if not isinstance(section, dict):
        raise ConfigError("importguard.db must be a table")

    db_name = str(section.get("name", DEFAULT_DB_NAME)).strip()
    if not db_name:
        raise ConfigError("importguard.db.name must be a non-empty string")

    schema_raw = section.get("schema")
    if schema_raw is None:
        return db_name, None
    if not isinstance(schema_raw, str):
        raise ConfigError("importguard.db.schema must be a string when set")
    schema = schema_raw.strip()
    if not schema:
        raise ConfigError("importguard.db.schema must be a non-empty string when set")
    if _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
        raise ConfigError(
            f"Invalid importguard.db.schema: {schema_raw!r}. "
            "Expected a valid SQL identifier-style value."
        )
    return db_name, schema


def _parse_logging(section: Any) -> LoggingConfig:
    if section is None:
        return LoggingConfig()
    if not isinstance(section, dict):
        raise ConfigError("importguard.logging must be a table")

    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(
            f"Invalid importguard.logging.level: {level!r}. "
            f"Expected one of {', '.join(_LOG_LEVELS)}"
        )
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid importguard.logging.format: {fmt!r}. Expected 'text' or 'json'")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("importguard.logging.log_root must be a string when set")
    return LoggingConfig(level=level, format=fmt, log_root=log_root or None)


def parse_config(data: dict[str, Any]) -> ImportGuardConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    section = data.get("importguard", {})
    if not isinstance(section, dict):
        raise ConfigError("[importguard] must be a table")

    db_name, db_schema = _parse_db(section.get("db"))
    return ImportGuardConfig(
        db_name=db_name,
        db_schema=db_schema,
        logging=_parse_logging(section.get("logging")),
    )


def load_config(path: Path | None = None) -> ImportGuardConfig:
    """Load configuration from *path*.

    *path* may point at the TOML file itself or at a directory containing
    ``importguard.toml``. When *path* is ``None`` the defaults are returned,
    which is what the CLI does without ``--config``.

    Raises
    ------
    ConfigError
        If the file is missing, is not valid TOML, or fails validation.
    """
    if path is None:
        return ImportGuardConfig()

    toml_path = path / CONFIG_FILENAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
