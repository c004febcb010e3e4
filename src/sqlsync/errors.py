"""Exit codes and the exception hierarchy.

Every failure the engine can report maps onto one ``ExitCode``.  Components
raise the typed exceptions below; only the run orchestrator turns the
terminal outcome into an exit code, and only the CLI turns that into a
process exit status.

Usage:
    from sqlsync.errors import DiscoveryError, ExitCode

    try:
        validate_entities(entities, "postgresql")
    except DiscoveryError as e:
        assert e.exit_code is ExitCode.ENTITY_DISCOVERY_FAILURE
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes reported by a run."""

    SUCCESS = 0
    INVALID_CONFIGURATION = 1
    ENTITY_DISCOVERY_FAILURE = 2
    DATABASE_CONNECTION_FAILURE = 3
    SCHEMA_VALIDATION_FAILURE = 4
    DEPLOYMENT_EXECUTION_FAILURE = 5
    LICENSE_UNAVAILABLE = 6
    GIT_OPERATION_FAILURE = 7
    AUTHENTICATION_FAILURE = 8
    KEY_VAULT_ACCESS_FAILURE = 9
    WARNING_APPROVAL_REQUIRED = 10
    RISKY_DUAL_APPROVAL_REQUIRED = 11


class SqlSyncError(Exception):
    """Base class for all engine errors.

    Carries the exit code the failure maps to, plus optional context about
    the object, schema and phase involved.  The context is appended to the
    message so logs and reports stay readable without extra formatting.

    Args:
        message: Human-readable description of the failure.
        object_name: Database object the failure concerns, if any.
        schema_name: Schema of that object, if any.
        phase_number: Deployment phase the failure happened in, if any.
    """

    exit_code: ExitCode = ExitCode.DEPLOYMENT_EXECUTION_FAILURE

    def __init__(
        self,
        message: str,
        *,
        object_name: str | None = None,
        schema_name: str | None = None,
        phase_number: int | None = None,
    ) -> None:
        self.message = message
        self.object_name = object_name
        self.schema_name = schema_name
        self.phase_number = phase_number
        super().__init__(self._format())

    def _format(self) -> str:
        context: list[str] = []
        if self.phase_number is not None:
            context.append(f"phase {self.phase_number}")
        if self.object_name:
            qualified = (
                f"{self.schema_name}.{self.object_name}"
                if self.schema_name
                else self.object_name
            )
            context.append(f"object {qualified}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(SqlSyncError):
    """Configuration is missing, malformed or contradictory."""

    exit_code = ExitCode.INVALID_CONFIGURATION


class DiscoveryError(SqlSyncError):
    """The discovered entity model is malformed."""

    exit_code = ExitCode.ENTITY_DISCOVERY_FAILURE


class DatabaseConnectionError(SqlSyncError):
    """The target database could not be reached or introspected."""

    exit_code = ExitCode.DATABASE_CONNECTION_FAILURE


class SchemaValidationError(SqlSyncError):
    """A plan could not be built or violates its ordering guarantees."""

    exit_code = ExitCode.SCHEMA_VALIDATION_FAILURE


class DependencyCycleError(SchemaValidationError):
    """The change dependency graph contains a cycle.

    Attributes:
        cycle: Keys of the changes that form (or are blocked by) the cycle.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected between: {', '.join(cycle)}")


class DeploymentExecutionError(SqlSyncError):
    """A deployment could not be carried out."""

    exit_code = ExitCode.DEPLOYMENT_EXECUTION_FAILURE


class LicenseUnavailableError(SqlSyncError):
    """No license session could be obtained or the session was lost.

    Attributes:
        burst_events_exhausted: True when the failure is caused by an empty
            burst budget rather than a plain denial.
    """

    exit_code = ExitCode.LICENSE_UNAVAILABLE

    def __init__(self, message: str, *, burst_events_exhausted: bool = False) -> None:
        self.burst_events_exhausted = burst_events_exhausted
        super().__init__(message)
