"""Pydantic models for deployment plans, approvals and results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from sqlsync.schema.models import ChangeType, ObjectType, RiskLevel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Plan Models
# ============================================================================


class OperationKind(str, Enum):
    CHANGE = "change"
    VALIDATION = "validation"
    BACKUP = "backup"


class DeploymentOperation(BaseModel):
    """One executable step of a plan.

    Most operations are statements derived from a schema change.  The
    framing phases around them hold read-only validation queries and the
    backup checkpoint, which carry no ``change_type``/``object_type``.
    """

    change_key: str
    kind: OperationKind = OperationKind.CHANGE
    change_type: ChangeType | None = None
    object_type: ObjectType | None = None
    object_name: str
    schema_name: str = ""
    table_name: str = ""
    description: str = ""
    sql_command: str
    rollback_command: str | None = None
    risk_level: RiskLevel = RiskLevel.SAFE
    can_rollback: bool = True
    dependencies: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)


class DeploymentPhase(BaseModel):
    """A risk-homogeneous group of operations executed as one unit.

    ``phase_number`` is the 1-based position in the plan; ``slot`` is the
    catalog slot the phase was built from.
    """

    phase_number: int
    slot: int
    name: str
    description: str = ""
    risk_level: RiskLevel = RiskLevel.SAFE
    requires_approval: bool = False
    requires_dual_approval: bool = False
    can_rollback: bool = True
    operations: list[DeploymentOperation] = Field(default_factory=list)


class DeploymentPlan(BaseModel):
    """Ordered phases plus phases skipped by configuration.

    ``phases`` holds the schema changes.  The pre-deployment phases
    (environment check, backup checkpoint) run before them and the
    post-deployment phases after them; none of those change the schema.

    Example:
        >>> plan = plan_deployment(changes, DeploymentConfiguration(), "postgresql")
        >>> [p.name for p in plan.phases]
        ['Create Tables and Columns']
        >>> [p.name for p in plan.pre_deployment_phases]
        ['Pre-deployment Validation', 'Database Backup']
    """

    phases: list[DeploymentPhase] = Field(default_factory=list)
    skipped_phases: list[DeploymentPhase] = Field(default_factory=list)
    pre_deployment_phases: list[DeploymentPhase] = Field(default_factory=list)
    post_deployment_phases: list[DeploymentPhase] = Field(default_factory=list)
    overall_risk_level: RiskLevel = RiskLevel.SAFE
    phased_deployment: bool = True
    requires_approval: bool = False
    requires_dual_approval: bool = False
    created_time: datetime = Field(default_factory=_utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def operation_count(self) -> int:
        return sum(len(p.operations) for p in self.phases)

    @property
    def is_empty(self) -> bool:
        return not self.phases

    @property
    def includes_backup(self) -> bool:
        return any(
            op.kind == OperationKind.BACKUP
            for phase in self.pre_deployment_phases
            for op in phase.operations
        )

    def ordered_phases(self) -> list[DeploymentPhase]:
        """Every phase that runs, in execution order."""
        return self.pre_deployment_phases + self.phases + self.post_deployment_phases


# ============================================================================
# Approvals
# ============================================================================


class Approvals(BaseModel):
    """Approvals recorded for a run.

    A Warning phase needs one approver; a Risky phase needs two distinct
    approvers.

    Example:
        >>> Approvals(approvers=["alice", "bob"]).covers(RiskLevel.RISKY)
        True
    """

    approvers: list[str] = Field(default_factory=list)

    @property
    def distinct_approvers(self) -> set[str]:
        return {a.strip().lower() for a in self.approvers if a.strip()}

    def covers(self, risk_level: RiskLevel) -> bool:
        """True if these approvals allow a phase of ``risk_level`` to run."""
        count = len(self.distinct_approvers)
        if risk_level == RiskLevel.RISKY:
            return count >= 2
        if risk_level == RiskLevel.WARNING:
            return count >= 1
        return True


# ============================================================================
# Result Models
# ============================================================================


class PhaseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WARNING_APPROVAL_REQUIRED = "warning_approval_required"
    RISKY_DUAL_APPROVAL_REQUIRED = "risky_dual_approval_required"
    LICENSE_UNAVAILABLE = "license_unavailable"


class PhaseResult(BaseModel):
    """Outcome of one phase."""

    phase_number: int
    phase_name: str
    status: PhaseStatus = PhaseStatus.PENDING
    success: bool = False
    operations_executed: int = 0
    operations_rolled_back: int = 0
    rollback_errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    error_message: str | None = None


class DeploymentResult(BaseModel):
    """Outcome of executing a plan."""

    status: DeploymentStatus = DeploymentStatus.SUCCEEDED
    success: bool = False
    phase_results: list[PhaseResult] = Field(default_factory=list)
    pre_deployment_results: list[PhaseResult] = Field(default_factory=list)
    post_deployment_results: list[PhaseResult] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=_utc_now)
    end_time: datetime | None = None
    duration_seconds: float = 0.0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def ordered_results(self) -> list[PhaseResult]:
        return self.pre_deployment_results + self.phase_results + self.post_deployment_results

    def format_report(self) -> str:
        """Format the result as a human-readable report."""
        lines = [f"Deployment {self.status.value} in {self.duration_seconds:.2f}s"]
        for result in self.ordered_results():
            label = f"Phase {result.phase_number}" if result.phase_number else "Step"
            line = (
                f"  {label}: {result.phase_name} -- {result.status.value} "
                f"({result.operations_executed} executed"
            )
            if result.operations_rolled_back:
                line += f", {result.operations_rolled_back} rolled back"
            lines.append(line + ")")
            if result.error_message:
                lines.append(f"      {result.error_message}")
        if self.error_message:
            lines.append(f"  Error: {self.error_message}")
        return "\n".join(lines)
