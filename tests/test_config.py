"""Tests for configuration loading and validation.

Verifies that:
- TOML sections map onto ``SyncConfiguration``
- Environment variables override file values
- ``custom_phase_order`` accepts a comma-separated string
- ``validate_configuration`` enforces exactly one provider and complete
  connection details
"""

from pathlib import Path

import pytest

from sqlsync.config.loader import ENV_OVERRIDES, load_sync_config, validate_configuration
from sqlsync.config.models import DatabaseConfiguration, SyncConfiguration
from sqlsync.errors import ConfigurationError, ExitCode


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "sqlsync.toml"
    path.write_text(text)
    return path


def _valid_config(**database) -> SyncConfiguration:
    fields = {"postgresql": True, "server": "localhost", "database_name": "app"}
    fields.update(database)
    config = SyncConfiguration(database=DatabaseConfiguration(**fields))
    config.license.server_url = "https://license.test"
    return config


# ------------------------------------------------------------------
# Loading
# ------------------------------------------------------------------


class TestLoadSyncConfig:
    """Test TOML loading and environment overrides."""

    def test_sections_parsed(self, tmp_path):
        """All sections of the TOML file land on the model."""
        path = _write(
            tmp_path,
            """
            environment = "staging"

            [database]
            sqlserver = true
            server = "db.internal"
            database_name = "inventory"

            [license]
            server_url = "https://license.internal"

            [deployment]
            skip_warning_phases = true

            [operation]
            mode = "deploy"
            """.replace("            ", ""),
        )
        config = load_sync_config(path, environ={})

        assert config.environment == "staging"
        assert config.database.sqlserver is True
        assert config.database.provider == "sqlserver"
        assert config.database.default_schema == "dbo"
        assert config.license.server_url == "https://license.internal"
        assert config.deployment.skip_warning_phases is True
        assert config.operation.mode == "deploy"

    def test_accepts_string_path(self, tmp_path):
        """A plain string path is accepted (as passed by the CLI)."""
        path = _write(tmp_path, "[database]\nsqlite = true\nsqlite_file_path = 'app.db'\n")
        config = load_sync_config(str(path), environ={})
        assert config.database.provider == "sqlite"

    def test_env_overrides_file(self, tmp_path):
        """Environment variables win over file values and are coerced."""
        path = _write(tmp_path, "[database]\npostgresql = true\nserver = 'from-file'\n")
        config = load_sync_config(
            path,
            environ={
                "DATABASE_SERVER": "from-env",
                "SKIP_WARNING_PHASES": "true",
                "CUSTOM_PHASE_ORDER": "12, 4,1",
                "ENVIRONMENT": "prod",
                "MODE": "validate",
            },
        )
        assert config.database.server == "from-env"
        assert config.deployment.skip_warning_phases is True
        assert config.deployment.custom_phase_order == [12, 4, 1]
        assert config.environment == "prod"
        assert config.operation.mode == "validate"

    def test_empty_env_value_ignored(self, tmp_path):
        """An empty environment variable does not clear a file value."""
        path = _write(tmp_path, "[database]\nserver = 'kept'\n")
        config = load_sync_config(path, environ={"DATABASE_SERVER": ""})
        assert config.database.server == "kept"

    def test_missing_explicit_file_raises(self, tmp_path):
        """An explicitly named file that does not exist is an error."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_sync_config(tmp_path / "nope.toml", environ={})
        assert exc_info.value.exit_code == ExitCode.INVALID_CONFIGURATION

    def test_missing_default_file_uses_env(self, tmp_path, monkeypatch):
        """Without ./sqlsync.toml the configuration comes from the environment."""
        monkeypatch.chdir(tmp_path)
        config = load_sync_config(environ={"DATABASE_MYSQL": "1", "DATABASE_NAME": "shop"})
        assert config.database.mysql is True
        assert config.database.database_name == "shop"

    def test_invalid_toml_raises(self, tmp_path):
        """Malformed TOML maps to ConfigurationError."""
        path = _write(tmp_path, "[database\npostgresql = true\n")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_sync_config(path, environ={})

    def test_invalid_value_raises(self, tmp_path):
        """Values that fail validation map to ConfigurationError."""
        path = _write(tmp_path, "[operation]\nmode = 'destroy'\n")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_sync_config(path, environ={})

    def test_invalid_phase_order_raises(self, tmp_path):
        """A non-numeric custom phase order is rejected."""
        path = _write(tmp_path, "[deployment]\ncustom_phase_order = '1,two'\n")
        with pytest.raises(ConfigurationError):
            load_sync_config(path, environ={})

    def test_env_overrides_known_names(self):
        """The original variable names are all mapped."""
        for name in (
            "DATABASE_SQLSERVER", "DATABASE_POSTGRESQL", "DATABASE_MYSQL",
            "DATABASE_ORACLE", "DATABASE_SQLITE", "LICENSE_SERVER", "TOOL_NAME",
            "SKIP_WARNING_PHASES", "CUSTOM_PHASE_ORDER", "MODE", "TRACK_ATTRIBUTE",
        ):
            assert name in ENV_OVERRIDES


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


class TestValidateConfiguration:
    """Test cross-field validation."""

    def test_valid_configuration_passes(self):
        validate_configuration(_valid_config())

    def test_no_provider_rejected(self):
        """Zero providers is rejected before any other check."""
        config = _valid_config(postgresql=False)
        with pytest.raises(ConfigurationError, match="Exactly one database provider"):
            validate_configuration(config)

    def test_two_providers_rejected(self):
        """Two providers is rejected and both are named."""
        config = _valid_config(sqlserver=True)
        with pytest.raises(ConfigurationError) as exc_info:
            validate_configuration(config)
        assert "sqlserver" in str(exc_info.value)
        assert "postgresql" in str(exc_info.value)

    def test_sqlite_requires_file_path(self):
        config = _valid_config(postgresql=False, sqlite=True)
        with pytest.raises(ConfigurationError, match="sqlite_file_path"):
            validate_configuration(config)

    def test_server_required_without_connection_string(self):
        config = _valid_config(server="")
        with pytest.raises(ConfigurationError, match="database.server"):
            validate_configuration(config)

    def test_connection_string_replaces_fields(self):
        """A connection string makes server and database name optional."""
        config = _valid_config(
            server="", database_name="", connection_string="postgresql://u:p@h/db"
        )
        validate_configuration(config)

    def test_license_server_required_when_enabled(self):
        config = _valid_config()
        config.license.server_url = ""
        with pytest.raises(ConfigurationError, match="LICENSE_SERVER"):
            validate_configuration(config)

    def test_license_server_optional_when_disabled(self):
        config = _valid_config()
        config.license.server_url = ""
        config.license.enabled = False
        validate_configuration(config)


class TestDatabaseConfiguration:
    """Test provider helpers on the database section."""

    def test_provider_requires_single_selection(self):
        with pytest.raises(ValueError):
            DatabaseConfiguration().provider

    def test_default_schema_per_provider(self):
        assert DatabaseConfiguration(postgresql=True).default_schema == "public"
        assert DatabaseConfiguration(sqlserver=True).default_schema == "dbo"
        assert DatabaseConfiguration(sqlite=True).default_schema == ""

    def test_explicit_schema_wins(self):
        config = DatabaseConfiguration(postgresql=True, schema_name="sales")
        assert config.default_schema == "sales"
