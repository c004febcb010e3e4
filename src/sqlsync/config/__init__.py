"""Configuration models and loader."""

from sqlsync.config.loader import load_sync_config, validate_configuration
from sqlsync.config.models import (
    BackupConfiguration,
    DatabaseConfiguration,
    DeploymentConfiguration,
    LicenseConfiguration,
    LoggingConfiguration,
    OperationConfiguration,
    SchemaAnalysisConfiguration,
    SyncConfiguration,
)

__all__ = [
    "load_sync_config",
    "validate_configuration",
    "BackupConfiguration",
    "DatabaseConfiguration",
    "DeploymentConfiguration",
    "LicenseConfiguration",
    "LoggingConfiguration",
    "OperationConfiguration",
    "SchemaAnalysisConfiguration",
    "SyncConfiguration",
]
