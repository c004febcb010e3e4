"""Run orchestration: from discovered entities to a deployed schema.

``run_sync`` drives one run end to end:

1. Validate configuration (exactly one provider, complete connection details)
2. Acquire a license session
3. Validate the discovered entity model
4. Load the live schema (PostgreSQL introspection or JSON snapshot),
   retrying connectivity failures
5. Diff, classify, assess and plan
6. Persist the plan reports (JSON, compiled SQL, statement breakdown)
7. Stop here in ``validate`` / ``plan`` mode; otherwise check that the
   database answers (with the same retries) and execute the plan
   (approval check, validation, backup checkpoint, phases)
8. Release the license session, whatever happened

The outcome is returned as a ``RunResult`` carrying the exit code.  This is
the only place a terminal outcome becomes an ``ExitCode``.

Usage:
    from sqlsync.runner import run_sync

    result = await run_sync(config, discovery, approvals=Approvals(approvers=["alice"]))
    sys.exit(int(result.exit_code))
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import psycopg
from sqlalchemy.exc import ArgumentError

from sqlsync.adapters.base import DatabaseClient
from sqlsync.backup.checkpoint import affected_tables, create_checkpoint, prune_checkpoints
from sqlsync.config.loader import validate_configuration
from sqlsync.config.models import DatabaseConfiguration, SyncConfiguration
from sqlsync.deploy.executor import DeploymentExecutor
from sqlsync.deploy.models import Approvals, DeploymentPlan, DeploymentResult, DeploymentStatus
from sqlsync.deploy.planner import plan_deployment
from sqlsync.deploy.report import write_deployment_result, write_plan_report
from sqlsync.deploy.sql import SqlGenerator
from sqlsync.errors import (
    ConfigurationError,
    DatabaseConnectionError,
    ExitCode,
    SqlSyncError,
)
from sqlsync.factory import get_adapter, introspection_url
from sqlsync.license.manager import LicenseSessionManager
from sqlsync.schema.comparator import DiffOptions, diff_schema
from sqlsync.schema.introspector import SchemaIntrospector, load_schema_snapshot
from sqlsync.schema.models import (
    DatabaseSchema,
    EntityDiscoveryResult,
    RiskAssessment,
    SchemaChange,
)
from sqlsync.schema.risk import assess_risk, classify_changes
from sqlsync.schema.target import TargetOptions, validate_entities

logger = logging.getLogger(__name__)

SchemaLoader = Callable[[], Awaitable[DatabaseSchema]]

STATUS_EXIT_CODES: dict[DeploymentStatus, ExitCode] = {
    DeploymentStatus.SUCCEEDED: ExitCode.SUCCESS,
    DeploymentStatus.FAILED: ExitCode.DEPLOYMENT_EXECUTION_FAILURE,
    DeploymentStatus.CANCELLED: ExitCode.DEPLOYMENT_EXECUTION_FAILURE,
    DeploymentStatus.LICENSE_UNAVAILABLE: ExitCode.LICENSE_UNAVAILABLE,
    DeploymentStatus.WARNING_APPROVAL_REQUIRED: ExitCode.WARNING_APPROVAL_REQUIRED,
    DeploymentStatus.RISKY_DUAL_APPROVAL_REQUIRED: ExitCode.RISKY_DUAL_APPROVAL_REQUIRED,
}


@dataclass
class RunResult:
    """Outcome of one run.

    Attributes:
        exit_code: Process exit code for the run.
        changes: Classified changes (empty if the run stopped before diffing).
        assessment: Aggregate risk, once computed.
        plan: Deployment plan, once built.
        deployment: Execution result in ``deploy`` mode.
        error: Message of the failure that ended the run, if any.
        report_path: Path of the persisted plan report.
        compiled_sql_path: Path of the compiled deployment script.
        result_path: Path of the persisted deployment result.
    """

    exit_code: ExitCode = ExitCode.SUCCESS
    changes: list[SchemaChange] | None = None
    assessment: RiskAssessment | None = None
    plan: DeploymentPlan | None = None
    deployment: DeploymentResult | None = None
    error: str | None = None
    report_path: str | None = None
    compiled_sql_path: str | None = None
    result_path: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS


# ============================================================================
# Live schema
# ============================================================================


def _introspect_postgres(database: DatabaseConfiguration) -> DatabaseSchema:
    try:
        with SchemaIntrospector(
            introspection_url(database), connect_timeout=database.connection_timeout_seconds
        ) as introspector:
            return introspector.introspect(database.default_schema)
    except psycopg.Error as e:
        raise DatabaseConnectionError(f"Schema introspection failed: {e}") from e


def default_schema_loader(database: DatabaseConfiguration) -> SchemaLoader:
    """Loader for the configured live schema source.

    A configured ``schema_snapshot`` wins; otherwise PostgreSQL is
    introspected directly.

    Raises:
        ConfigurationError: For providers other than PostgreSQL without a
            snapshot.
    """
    if database.schema_snapshot:
        path = database.schema_snapshot

        async def load_snapshot() -> DatabaseSchema:
            return load_schema_snapshot(path)

        return load_snapshot

    if database.provider != "postgresql":
        raise ConfigurationError(
            f"Live introspection is not available for {database.provider}; "
            "set database.schema_snapshot to a JSON schema snapshot"
        )

    async def introspect() -> DatabaseSchema:
        return await asyncio.to_thread(_introspect_postgres, database)

    return introspect


async def load_live_schema(database: DatabaseConfiguration, loader: SchemaLoader) -> DatabaseSchema:
    """Run ``loader``, retrying connectivity failures.

    Raises:
        DatabaseConnectionError: After ``retry_attempts`` failed attempts.
    """
    attempts = database.retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            return await loader()
        except DatabaseConnectionError as e:
            if attempt == attempts:
                raise
            logger.warning(
                f"Loading live schema failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {database.retry_interval_seconds}s"
            )
            await asyncio.sleep(database.retry_interval_seconds)
    raise DatabaseConnectionError("Live schema could not be loaded")


def open_adapter(database: DatabaseConfiguration) -> DatabaseClient:
    """Build the execution adapter.

    Raises:
        DatabaseConnectionError: If the driver for the URL is not installed.
    """
    try:
        return get_adapter(database)
    except (ImportError, ArgumentError) as e:
        raise DatabaseConnectionError(
            f"No usable database driver for {database.provider}: {e}"
        ) from e


async def wait_for_database(adapter: DatabaseClient, database: DatabaseConfiguration) -> None:
    """Check that the database answers before anything is executed.

    Raises:
        DatabaseConnectionError: After ``retry_attempts`` failed attempts.
    """
    attempts = max(database.retry_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            await adapter.test_connection()
            return
        except Exception as e:
            if attempt == attempts:
                raise DatabaseConnectionError(
                    f"Database unreachable after {attempts} attempts: {e}"
                ) from e
            logger.warning(
                f"Connecting to the database failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {database.retry_interval_seconds}s"
            )
            await asyncio.sleep(database.retry_interval_seconds)


# ============================================================================
# Run
# ============================================================================


def _diff_options(config: SyncConfiguration, discovery: EntityDiscoveryResult) -> DiffOptions:
    analysis = config.schema_analysis
    return DiffOptions(
        provider=config.database.provider,
        default_schema=config.database.default_schema,
        target=TargetOptions(
            generate_indexes=analysis.generate_indexes,
            generate_fk_indexes=analysis.generate_fk_indexes,
            enable_cross_schema_refs=analysis.enable_cross_schema_refs,
        ),
        tracked_tables=list(analysis.tracked_tables),
        track_attribute=config.track_attribute or discovery.track_attribute,
    )


def _backup_fn(
    config: SyncConfiguration, adapter: DatabaseClient
) -> Callable[[DeploymentPlan], Awaitable[str]] | None:
    backup = config.backup
    if not backup.backup_before_deployment or config.operation.skip_backup:
        return None

    generator = SqlGenerator(config.database.provider, config.database.default_schema)

    async def checkpoint(plan: DeploymentPlan) -> str:
        prune_checkpoints(backup.backup_dir, backup.retention_days)
        return await create_checkpoint(
            adapter,
            affected_tables(plan),
            generator,
            output_dir=backup.backup_dir,
            label=backup.restore_point_label,
            metadata={"environment": config.environment, "provider": config.database.provider},
        )

    return checkpoint


async def run_sync(
    config: SyncConfiguration,
    discovery: EntityDiscoveryResult,
    schema_loader: SchemaLoader | None = None,
    adapter: DatabaseClient | None = None,
    license_manager: LicenseSessionManager | None = None,
    approvals: Approvals | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RunResult:
    """Run one schema synchronization.

    Args:
        config: Validated here before anything else happens.
        discovery: Discovered entity model.
        schema_loader: Async callable returning the live schema (default:
            snapshot or PostgreSQL introspection per configuration).
        adapter: Database adapter for execution (default: built from
            ``config.database``; closed at the end of the run).
        license_manager: License session manager (default: built from
            ``config.license`` when licensing is enabled).
        approvals: Approvals recorded for this run.
        cancel_event: Set to stop the deployment at the next boundary.

    Returns:
        ``RunResult``; failures are reported through ``exit_code`` and
        ``error``, not raised.
    """
    result = RunResult()

    try:
        validate_configuration(config)
    except ConfigurationError as e:
        logger.error(str(e))
        result.exit_code, result.error = e.exit_code, str(e)
        return result

    manager: LicenseSessionManager | None = None
    owns_manager = False
    if config.license.enabled:
        manager = license_manager or LicenseSessionManager(config.license)
        owns_manager = license_manager is None

    owns_adapter = False
    try:
        if manager is not None:
            await manager.acquire()

        provider = config.database.provider
        validate_entities(discovery.entities, provider, config.database.default_schema)
        logger.info(f"Discovered {len(discovery.entities)} entities")

        live = await load_live_schema(
            config.database, schema_loader or default_schema_loader(config.database)
        )
        logger.info(f"Live schema has {len(live.tables)} tables")

        changes = diff_schema(discovery.entities, live, _diff_options(config, discovery))
        classify_changes(changes)
        result.changes = changes
        result.assessment = assess_risk(changes)
        logger.info(f"{len(changes)} changes, overall risk {result.assessment.overall_risk_level.label}")

        if config.operation.mode == "validate":
            return result

        result.plan = plan_deployment(
            changes,
            config.deployment,
            provider=provider,
            default_schema=config.database.default_schema,
            environment=config.environment,
            backup=config.backup.backup_before_deployment and not config.operation.skip_backup,
        )
        files = write_plan_report(
            result.plan, result.assessment, changes, config.deployment.report_dir, provider
        )
        result.report_path, result.compiled_sql_path = files.report, files.compiled_sql
        logger.info(f"Plan report written to {files.report}")
        logger.info(f"Compiled deployment script written to {files.compiled_sql}")

        if config.operation.mode == "plan":
            return result
        if result.plan.is_empty:
            logger.info("Schema is up to date; nothing to deploy")
            return result

        if adapter is None:
            adapter = open_adapter(config.database)
            owns_adapter = True
        await wait_for_database(adapter, config.database)

        executor = DeploymentExecutor(
            adapter,
            command_timeout_seconds=config.database.command_timeout_seconds,
            license_gate=manager,
            backup_fn=_backup_fn(config, adapter),
            cancel_event=cancel_event,
        )
        result.deployment = await executor.execute(result.plan, approvals)
        result.result_path = write_deployment_result(
            result.deployment, config.deployment.report_dir
        )
        result.exit_code = STATUS_EXIT_CODES[result.deployment.status]
        result.error = result.deployment.error_message

    except SqlSyncError as e:
        logger.error(str(e))
        result.exit_code, result.error = e.exit_code, str(e)

    finally:
        if owns_adapter and adapter is not None:
            await adapter.close()
        if manager is not None:
            await manager.release()
            if owns_manager:
                await manager.close()

    return result
