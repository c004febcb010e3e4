"""Plan and deployment reports.

Renders a ``DeploymentPlan`` for the console (rich tables) or as plain
text, and persists the plan (JSON, compiled SQL script, statement
breakdown, text summary) and the deployment result so a reviewer can
inspect the exact statements before re-running with approvals.

Usage:
    from rich.console import Console
    from sqlsync.deploy.report import render_plan, write_plan_report

    render_plan(plan, Console())
    files = write_plan_report(plan, assessment, changes, "deployments")
    print(files.compiled_sql)
"""

import json
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sqlsync.deploy.models import DeploymentPlan, DeploymentResult, OperationKind, PhaseStatus
from sqlsync.errors import ConfigurationError, DeploymentExecutionError
from sqlsync.schema.models import RiskAssessment, RiskLevel, SchemaChange

_RISK_STYLES = {
    RiskLevel.SAFE: "green",
    RiskLevel.WARNING: "yellow",
    RiskLevel.RISKY: "bold red",
}

_STATUS_STYLES = {
    PhaseStatus.PENDING: "dim",
    PhaseStatus.APPROVED: "cyan",
    PhaseStatus.EXECUTING: "cyan",
    PhaseStatus.SUCCEEDED: "green",
    PhaseStatus.FAILED: "bold red",
    PhaseStatus.CANCELLED: "yellow",
    PhaseStatus.SKIPPED: "dim",
}


def _risk(level: RiskLevel) -> str:
    style = _RISK_STYLES[level]
    return f"[{style}]{level.label}[/{style}]"


def _approval(requires_approval: bool, requires_dual: bool) -> str:
    if requires_dual:
        return "two approvers"
    if requires_approval:
        return "one approver"
    return "none"


# ============================================================================
# Console / text rendering
# ============================================================================


def render_plan(plan: DeploymentPlan, console: Console, show_sql: bool = False) -> None:
    """Print the plan as a phase table (and optionally each statement)."""
    if plan.is_empty and not plan.skipped_phases:
        console.print("[bold green]v[/bold green] Schema is up to date - nothing to deploy")
        return

    table = Table(title="Deployment Plan", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Risk")
    table.add_column("Ops", justify="right")
    table.add_column("Approval")
    table.add_column("Rollback")

    for phase in plan.ordered_phases():
        table.add_row(
            str(phase.phase_number) if phase.phase_number else "",
            phase.name,
            _risk(phase.risk_level),
            str(len(phase.operations)),
            _approval(phase.requires_approval, phase.requires_dual_approval),
            "yes" if phase.can_rollback else "[yellow]partial[/yellow]",
        )
    for phase in plan.skipped_phases:
        table.add_row(
            "-",
            f"[dim]{phase.name} (skipped)[/dim]",
            _risk(phase.risk_level),
            str(len(phase.operations)),
            "-",
            "-",
        )
    console.print(table)

    if show_sql:
        for phase in plan.ordered_phases():
            label = f"Phase {phase.phase_number}: {phase.name}" if phase.phase_number else phase.name
            console.print(f"\n[bold]{escape(label)}[/bold]")
            for op in phase.operations:
                if op.kind == OperationKind.BACKUP:
                    console.print("  [dim]-- backup checkpoint[/dim]")
                    continue
                console.print(f"  [dim]-- {escape(op.change_key)}[/dim]")
                console.print(f"  {op.sql_command};", markup=False)

    console.print(
        f"\nOverall risk: {_risk(plan.overall_risk_level)}  "
        f"Operations: {plan.operation_count}  "
        f"Approval: {_approval(plan.requires_approval, plan.requires_dual_approval)}"
    )


def format_plan(plan: DeploymentPlan) -> str:
    """Format the plan as plain text, one statement per line.

    Example:
        >>> print(format_plan(plan))
        Deployment plan: 1 phases, 3 operations, overall risk Safe
        Before: Pre-deployment Validation
        Phase 1: Create Tables and Columns [Safe]
          CREATE TABLE "Location" (...)
          ...
        After: Post-deployment Validation
    """
    lines = [
        f"Deployment plan: {len(plan.phases)} phases, {plan.operation_count} operations, "
        f"overall risk {plan.overall_risk_level.label}"
    ]
    if plan.requires_dual_approval:
        lines.append("Requires two independent approvals")
    elif plan.requires_approval:
        lines.append("Requires one approval")

    for phase in plan.pre_deployment_phases:
        lines.append(f"Before: {phase.name}")
    for phase in plan.phases:
        lines.append(f"Phase {phase.phase_number}: {phase.name} [{phase.risk_level.label}]")
        for op in phase.operations:
            lines.append(f"  {op.sql_command}")
    for phase in plan.post_deployment_phases:
        lines.append(f"After: {phase.name}")
    for phase in plan.skipped_phases:
        lines.append(f"Skipped: {phase.name} ({len(phase.operations)} operations)")
    return "\n".join(lines)


def render_result(result: DeploymentResult, console: Console) -> None:
    """Print the per-phase outcome of a deployment."""
    table = Table(title="Deployment Result", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Executed", justify="right")
    table.add_column("Rolled back", justify="right")
    table.add_column("Seconds", justify="right")

    for phase in result.ordered_results():
        style = _STATUS_STYLES[phase.status]
        table.add_row(
            str(phase.phase_number) if phase.phase_number else "",
            phase.phase_name,
            f"[{style}]{phase.status.value}[/{style}]",
            str(phase.operations_executed),
            str(phase.operations_rolled_back),
            f"{phase.duration_seconds:.2f}",
        )
    console.print(table)
    if result.error_message:
        console.print(f"[bold red]x[/bold red] {escape(result.error_message)}")


# ============================================================================
# Compiled script and statement breakdown
# ============================================================================


def compile_plan_sql(plan: DeploymentPlan, provider: str = "") -> str:
    """Render every phase of the plan as one annotated SQL script.

    Validation queries are included as statements; the backup checkpoint
    is taken by the runner, so it appears as a comment only.  Skipped
    phases are listed at the end, commented out.
    """
    lines = [
        "-- sqlsync compiled deployment",
        f"-- Generated: {plan.created_time.isoformat()}",
    ]
    if provider:
        lines.append(f"-- Provider: {provider}")
    lines.append(
        f"-- Phases: {len(plan.phases)}  Operations: {plan.operation_count}  "
        f"Overall risk: {plan.overall_risk_level.label}"
    )

    for phase in plan.ordered_phases():
        lines.append("")
        if phase.phase_number:
            lines.append(f"-- Phase {phase.phase_number}: {phase.name} [{phase.risk_level.label}]")
        else:
            lines.append(f"-- {phase.name}")
        for op in phase.operations:
            if op.kind == OperationKind.BACKUP:
                lines.append("-- Backup checkpoint of the affected tables (taken by sqlsync)")
                continue
            if op.kind == OperationKind.CHANGE:
                lines.append(f"-- {op.change_key}")
            lines.append(f"{op.sql_command};")

    for phase in plan.skipped_phases:
        lines.append("")
        lines.append(f"-- Skipped: {phase.name} [{phase.risk_level.label}]")
        for op in phase.operations:
            lines.append(f"-- {op.sql_command};")
    return "\n".join(lines) + "\n"


def statement_breakdown(plan: DeploymentPlan) -> dict:
    """Count the plan's statements per phase, change type, object type and risk.

    Example:
        >>> statement_breakdown(plan)["by_change_type"]
        {'CREATE': 3}
    """
    by_change_type: Counter[str] = Counter()
    by_object_type: Counter[str] = Counter()
    by_risk_level: Counter[str] = Counter()
    phases = []
    validation_statements = 0

    for phase in plan.ordered_phases():
        statements = [op for op in phase.operations if op.kind != OperationKind.BACKUP]
        phases.append({
            "phase_number": phase.phase_number,
            "slot": phase.slot,
            "name": phase.name,
            "risk_level": phase.risk_level.label,
            "statements": len(statements),
        })
        for op in statements:
            if op.kind == OperationKind.VALIDATION:
                validation_statements += 1
                continue
            by_change_type[op.change_type.value] += 1
            by_object_type[op.object_type.value] += 1
            by_risk_level[op.risk_level.label] += 1

    return {
        "total_statements": sum(p["statements"] for p in phases),
        "change_statements": plan.operation_count,
        "validation_statements": validation_statements,
        "includes_backup": plan.includes_backup,
        "skipped_statements": sum(len(p.operations) for p in plan.skipped_phases),
        "by_phase": phases,
        "by_change_type": dict(by_change_type),
        "by_object_type": dict(by_object_type),
        "by_risk_level": dict(by_risk_level),
    }


# ============================================================================
# Report files
# ============================================================================


@dataclass
class PlanReportFiles:
    """Paths of the files written for one plan."""

    report: str
    compiled_sql: str
    breakdown: str
    summary: str


def _report_dir(report_dir: str | Path) -> Path:
    directory = Path(report_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f"Cannot create report directory {directory}: {e}") from e
    return directory


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d-%H%M%S")


def write_plan_report(
    plan: DeploymentPlan,
    assessment: RiskAssessment,
    changes: list[SchemaChange],
    report_dir: str | Path = "deployments",
    provider: str = "",
) -> PlanReportFiles:
    """Write the plan reports for one run.

    Files, sharing one timestamp:

    - ``plan-*.json``: plan, risk assessment and changes
    - ``compiled-deployment-*.sql``: the script of every phase
    - ``statement-breakdown-*.json``: statement counts
    - ``plan-summary-*.txt``: plain-text plan and risk assessment

    Raises:
        ConfigurationError: If the report directory cannot be written.
    """
    directory = _report_dir(report_dir)
    timestamp = _timestamp()
    report = {
        "plan": plan.model_dump(mode="json"),
        "assessment": assessment.model_dump(mode="json"),
        "changes": [c.model_dump(mode="json") | {"key": c.key} for c in changes],
    }
    files = PlanReportFiles(
        report=str(directory / f"plan-{timestamp}.json"),
        compiled_sql=str(directory / f"compiled-deployment-{timestamp}.sql"),
        breakdown=str(directory / f"statement-breakdown-{timestamp}.json"),
        summary=str(directory / f"plan-summary-{timestamp}.txt"),
    )
    try:
        with open(files.report, "w") as f:
            json.dump(report, f, indent=2, default=str)
        with open(files.compiled_sql, "w") as f:
            f.write(compile_plan_sql(plan, provider))
        with open(files.breakdown, "w") as f:
            json.dump(statement_breakdown(plan), f, indent=2)
        with open(files.summary, "w") as f:
            f.write(format_plan(plan) + "\n\n" + assessment.format_report() + "\n")
    except OSError as e:
        raise ConfigurationError(f"Cannot write plan report to {directory}: {e}") from e
    return files


def write_deployment_result(result: DeploymentResult, report_dir: str | Path = "deployments") -> str:
    """Write a deployment result to a JSON report file and return its path.

    Raises:
        DeploymentExecutionError: If the file cannot be written.
    """
    path = _report_dir(report_dir) / f"result-{_timestamp()}.json"
    try:
        with open(path, "w") as f:
            json.dump(result.model_dump(mode="json"), f, indent=2, default=str)
    except OSError as e:
        raise DeploymentExecutionError(f"Cannot write deployment result to {path}: {e}") from e
    return str(path)
