"""Load run configuration from a TOML file and environment variables.

Usage:
    from sqlsync.config.loader import load_sync_config, validate_configuration

    config = load_sync_config(Path("sqlsync.toml"))
    validate_configuration(config)

The TOML file mirrors ``SyncConfiguration``::

    environment = "staging"

    [database]
    postgresql = true
    server = "db.internal"
    database_name = "inventory"

    [license]
    server_url = "https://license.internal"

    [deployment]
    skip_warning_phases = false
    custom_phase_order = "1,2,3"

Environment variables override file values (see ``ENV_OVERRIDES``).
"""

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sqlsync.config.models import PROVIDERS, SyncConfiguration
from sqlsync.errors import ConfigurationError

DEFAULT_CONFIG_FILE = "sqlsync.toml"

# Environment variable -> (section, field).  An empty section targets the root.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DATABASE_SQLSERVER": ("database", "sqlserver"),
    "DATABASE_POSTGRESQL": ("database", "postgresql"),
    "DATABASE_MYSQL": ("database", "mysql"),
    "DATABASE_ORACLE": ("database", "oracle"),
    "DATABASE_SQLITE": ("database", "sqlite"),
    "DATABASE_SERVER": ("database", "server"),
    "DATABASE_NAME": ("database", "database_name"),
    "DATABASE_SCHEMA": ("database", "schema_name"),
    "DATABASE_PORT": ("database", "port"),
    "DATABASE_USERNAME": ("database", "username"),
    "DATABASE_PASSWORD": ("database", "password"),
    "DATABASE_CONNECTION_STRING": ("database", "connection_string"),
    "DATABASE_COMMAND_TIMEOUT": ("database", "command_timeout_seconds"),
    "DATABASE_RETRY_ATTEMPTS": ("database", "retry_attempts"),
    "DATABASE_RETRY_INTERVAL": ("database", "retry_interval_seconds"),
    "LICENSE_SERVER": ("license", "server_url"),
    "TOOL_NAME": ("license", "tool_name"),
    "LICENSE_TIMEOUT": ("license", "request_timeout_seconds"),
    "LICENSE_RETRY_INTERVAL": ("license", "retry_interval_seconds"),
    "SKIP_WARNING_PHASES": ("deployment", "skip_warning_phases"),
    "CUSTOM_PHASE_ORDER": ("deployment", "custom_phase_order"),
    "BACKUP_BEFORE_DEPLOYMENT": ("backup", "backup_before_deployment"),
    "SKIP_BACKUP": ("operation", "skip_backup"),
    "MODE": ("operation", "mode"),
    "VERBOSE": ("logging", "verbose"),
    "LOG_LEVEL": ("logging", "level"),
    "ENVIRONMENT": ("", "environment"),
    "TRACK_ATTRIBUTE": ("", "track_attribute"),
}


def _apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Merge environment overrides into raw TOML data.

    Values stay strings; pydantic coerces ``"true"``/``"1"``/``"42"`` into
    the field types during validation.
    """
    for env_name, (section, field_name) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        if section:
            data.setdefault(section, {})[field_name] = value
        else:
            data[field_name] = value
    return data


def load_sync_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncConfiguration:
    """Load configuration from TOML and apply environment overrides.

    A missing file is not an error when ``config_path`` is omitted: the
    configuration then comes from environment variables alone.

    Args:
        config_path: Path to the TOML file (default: ``./sqlsync.toml``).
        environ: Environment mapping (default: ``os.environ``).

    Returns:
        Parsed ``SyncConfiguration``.

    Raises:
        ConfigurationError: If an explicitly given file does not exist, the
            TOML is malformed, or values fail validation.
    """
    environ = os.environ if environ is None else environ
    explicit = config_path is not None
    config_path = Path(config_path) if explicit else Path.cwd() / DEFAULT_CONFIG_FILE

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e
    elif explicit:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}\n"
            f"Copy sqlsync.toml.example to {config_path.name} and configure it."
        )

    data = _apply_env_overrides(data, environ)

    try:
        return SyncConfiguration(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def validate_configuration(config: SyncConfiguration) -> None:
    """Check cross-field rules that must hold before any work begins.

    Raises:
        ConfigurationError: If zero or several providers are selected, the
            connection details are incomplete, or licensing is enabled
            without a server URL.
    """
    database = config.database
    selected = database.selected_providers()
    if len(selected) != 1:
        found = ", ".join(selected) if selected else "none"
        raise ConfigurationError(
            f"Exactly one database provider must be selected "
            f"({', '.join(PROVIDERS)}); found: {found}"
        )

    provider = selected[0]
    if not database.connection_string:
        if provider == "sqlite":
            if not database.sqlite_file_path:
                raise ConfigurationError("SQLite requires database.sqlite_file_path")
        elif not database.server or not database.database_name:
            raise ConfigurationError(
                f"{provider} requires database.server and database.database_name"
            )

    if config.license.enabled and not config.license.server_url:
        raise ConfigurationError("License server URL is required (LICENSE_SERVER)")

    if database.retry_attempts < 1:
        raise ConfigurationError("database.retry_attempts must be at least 1")
    if config.license.retry_attempts < 1:
        raise ConfigurationError("license.retry_attempts must be at least 1")
