"""sqlsync: schema synchronization and phased, risk-gated deployment.

Diffs a discovered entity model against a live database schema, classifies
every change by risk, orders the changes into dependency-respecting phases
and executes them with per-phase rollback, approval gates and a licensed
session.

Usage:
    from sqlsync import load_sync_config, run_sync, EntityDiscoveryResult
    from sqlsync import diff_schema, classify_changes, plan_deployment
    from sqlsync import DeploymentExecutor, Approvals, ExitCode
"""

__version__ = "0.1.0"

# Adapters
from sqlsync.adapters.base import DatabaseClient
from sqlsync.adapters.database import AsyncSqlAlchemyAdapter

# Config
from sqlsync.config.loader import load_sync_config, validate_configuration
from sqlsync.config.models import SyncConfiguration

# Errors
from sqlsync.errors import (
    ConfigurationError,
    DatabaseConnectionError,
    DependencyCycleError,
    DeploymentExecutionError,
    DiscoveryError,
    ExitCode,
    LicenseUnavailableError,
    SchemaValidationError,
    SqlSyncError,
)

# Factory
from sqlsync.factory import build_database_url, get_adapter

# Schema
from sqlsync.schema.comparator import DiffOptions, diff_schema
from sqlsync.schema.models import (
    DatabaseSchema,
    DiscoveredEntity,
    DiscoveredProperty,
    EntityDiscoveryResult,
    RiskAssessment,
    RiskLevel,
    SchemaChange,
)
from sqlsync.schema.risk import assess_risk, classify_changes

# Deployment
from sqlsync.deploy.executor import DeploymentExecutor
from sqlsync.deploy.models import Approvals, DeploymentPlan, DeploymentResult, DeploymentStatus
from sqlsync.deploy.planner import plan_deployment

# License
from sqlsync.license.manager import LicenseSessionManager

# Run
from sqlsync.runner import RunResult, run_sync

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncSqlAlchemyAdapter",
    # Config
    "load_sync_config",
    "validate_configuration",
    "SyncConfiguration",
    # Errors
    "ConfigurationError",
    "DatabaseConnectionError",
    "DependencyCycleError",
    "DeploymentExecutionError",
    "DiscoveryError",
    "ExitCode",
    "LicenseUnavailableError",
    "SchemaValidationError",
    "SqlSyncError",
    # Factory
    "build_database_url",
    "get_adapter",
    # Schema
    "DiffOptions",
    "diff_schema",
    "DatabaseSchema",
    "DiscoveredEntity",
    "DiscoveredProperty",
    "EntityDiscoveryResult",
    "RiskAssessment",
    "RiskLevel",
    "SchemaChange",
    "assess_risk",
    "classify_changes",
    # Deployment
    "DeploymentExecutor",
    "Approvals",
    "DeploymentPlan",
    "DeploymentResult",
    "DeploymentStatus",
    "plan_deployment",
    # License
    "LicenseSessionManager",
    # Run
    "RunResult",
    "run_sync",
]
