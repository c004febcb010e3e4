"""Deployment planning, SQL generation, execution and reports."""

from sqlsync.deploy.executor import DeploymentExecutor
from sqlsync.deploy.models import (
    Approvals,
    DeploymentOperation,
    DeploymentPhase,
    DeploymentPlan,
    DeploymentResult,
    DeploymentStatus,
    OperationKind,
    PhaseResult,
    PhaseStatus,
)
from sqlsync.deploy.planner import PHASE_CATALOG, plan_deployment, validate_plan
from sqlsync.deploy.sql import SqlGenerator

__all__ = [
    "DeploymentExecutor",
    "Approvals",
    "DeploymentOperation",
    "DeploymentPhase",
    "DeploymentPlan",
    "DeploymentResult",
    "DeploymentStatus",
    "OperationKind",
    "PhaseResult",
    "PhaseStatus",
    "PHASE_CATALOG",
    "plan_deployment",
    "validate_plan",
    "SqlGenerator",
]
