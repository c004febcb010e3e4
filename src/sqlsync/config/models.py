"""Pydantic models for run configuration loaded from sqlsync.toml."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator


PROVIDERS: tuple[str, ...] = ("sqlserver", "postgresql", "mysql", "oracle", "sqlite")

DEFAULT_SCHEMAS: dict[str, str] = {
    "sqlserver": "dbo",
    "postgresql": "public",
    "mysql": "",
    "oracle": "SYSTEM",
    "sqlite": "",
}

DEFAULT_PORTS: dict[str, int] = {
    "sqlserver": 1433,
    "postgresql": 5432,
    "mysql": 3306,
    "oracle": 1521,
}


# ============================================================================
# Section Models
# ============================================================================


class DatabaseConfiguration(BaseModel):
    """Target database connection settings.

    Exactly one of the five provider flags must be set.
    """

    sqlserver: bool = False
    postgresql: bool = False
    mysql: bool = False
    oracle: bool = False
    sqlite: bool = False

    server: str = ""
    database_name: str = ""
    schema_name: str = ""
    port: int | None = None
    username: str = ""
    password: str = ""
    connection_string: str = ""  # Full SQLAlchemy URL, wins over the fields above
    sqlite_file_path: str = ""
    oracle_service_name: str = ""
    schema_snapshot: str = ""  # JSON snapshot used instead of live introspection

    connection_timeout_seconds: int = 30
    command_timeout_seconds: int = 300
    retry_attempts: int = 3
    retry_interval_seconds: float = 5

    def selected_providers(self) -> list[str]:
        """Names of all provider flags that are set."""
        return [name for name in PROVIDERS if getattr(self, name)]

    def has_single_provider_selected(self) -> bool:
        """True if exactly one provider flag is set."""
        return len(self.selected_providers()) == 1

    @property
    def provider(self) -> str:
        """The selected provider name.

        Raises:
            ValueError: If zero or several providers are selected.
        """
        selected = self.selected_providers()
        if len(selected) != 1:
            raise ValueError(
                f"Exactly one database provider must be selected, got {len(selected)}"
            )
        return selected[0]

    @property
    def default_schema(self) -> str:
        """Configured schema name, or the provider's default schema."""
        if self.schema_name:
            return self.schema_name
        return DEFAULT_SCHEMAS.get(self.provider, "")


class LicenseConfiguration(BaseModel):
    """License server and burst-mode settings."""

    enabled: bool = True
    server_url: str = ""
    tool_name: str = "sqlsync"
    tool_version: str = ""  # Defaults to the package version
    request_timeout_seconds: float = 30
    retry_attempts: int = 3
    retry_interval_seconds: float = 30
    heartbeat_interval_seconds: float = 120
    session_duration_seconds: float = 300
    burst_allowance: int = 3
    burst_session_seconds: float = 3600
    burst_ledger_path: str = ".sqlsync-burst.json"


class DeploymentConfiguration(BaseModel):
    """Phase planning settings."""

    enable_phased_deployment: bool = True
    skip_warning_phases: bool = False
    custom_phase_order: list[int] = Field(default_factory=list)
    report_dir: str = "deployments"

    @field_validator("custom_phase_order", mode="before")
    @classmethod
    def _parse_phase_order(cls, value: object) -> object:
        """Accept ``"1,5,3"`` as well as a list of integers."""
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            try:
                return [int(p) for p in parts]
            except ValueError:
                raise ValueError(f"custom_phase_order must be comma-separated integers: {value!r}")
        return value


class BackupConfiguration(BaseModel):
    """Pre-deployment backup checkpoint settings."""

    backup_before_deployment: bool = True
    retention_days: int = 7
    restore_point_label: str = ""
    backup_dir: str = "backups"


class OperationConfiguration(BaseModel):
    """What a run is allowed to do.

    ``validate`` stops after diffing, ``plan`` builds and reports the plan
    without touching the database, ``deploy`` executes it.
    """

    mode: Literal["validate", "plan", "deploy"] = "plan"
    skip_backup: bool = False


class SchemaAnalysisConfiguration(BaseModel):
    """Target schema derivation and diff settings."""

    generate_indexes: bool = True
    generate_fk_indexes: bool = True
    enable_cross_schema_refs: bool = True
    tracked_tables: list[str] = Field(default_factory=list)


class LoggingConfiguration(BaseModel):
    """Logging verbosity."""

    verbose: bool = False
    level: str = "INFO"


# ============================================================================
# Root Model
# ============================================================================


class SyncConfiguration(BaseModel):
    """Complete run configuration from sqlsync.toml plus environment overrides."""

    environment: str = "dev"
    track_attribute: str = ""
    database: DatabaseConfiguration = Field(default_factory=DatabaseConfiguration)
    license: LicenseConfiguration = Field(default_factory=LicenseConfiguration)
    deployment: DeploymentConfiguration = Field(default_factory=DeploymentConfiguration)
    backup: BackupConfiguration = Field(default_factory=BackupConfiguration)
    operation: OperationConfiguration = Field(default_factory=OperationConfiguration)
    schema_analysis: SchemaAnalysisConfiguration = Field(
        default_factory=SchemaAnalysisConfiguration
    )
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)
