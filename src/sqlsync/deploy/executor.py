"""Deployment execution -- run plan phases against a database.

Phases run strictly in order, framed by read-only validation phases and
the backup checkpoint.  Before the first statement every phase that
needs approval must be covered; at each phase boundary the license and the
cancellation signal are checked.  Each phase keeps an undo stack of the
rollback statements of its completed operations and unwinds it in reverse
when an operation fails, times out or the run is cancelled.  Completed
phases are never undone and DDL is never retried.

Usage:
    from sqlsync.deploy.executor import DeploymentExecutor
    from sqlsync.deploy.models import Approvals

    executor = DeploymentExecutor(adapter, command_timeout_seconds=300)
    result = await executor.execute(plan, Approvals(approvers=["alice"]))
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

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
from sqlsync.errors import DeploymentExecutionError, LicenseUnavailableError
from sqlsync.schema.models import RiskLevel

if TYPE_CHECKING:
    from sqlsync.adapters.base import DatabaseClient

logger = logging.getLogger(__name__)

_AWAITING_APPROVAL = (
    DeploymentStatus.WARNING_APPROVAL_REQUIRED,
    DeploymentStatus.RISKY_DUAL_APPROVAL_REQUIRED,
)


class LicenseGate(Protocol):
    """Anything that can vouch for a live license at a phase boundary."""

    def ensure_active(self) -> None:
        """Raise ``LicenseUnavailableError`` if the license is not usable."""
        ...


class DeploymentExecutor:
    """Execute a ``DeploymentPlan`` phase by phase.

    Args:
        adapter: Database adapter implementing ``DatabaseClient``.
        command_timeout_seconds: Timeout for each statement.
        license_gate: Checked before every phase; ``None`` disables the check.
        backup_fn: Optional async callback that takes the backup checkpoint.
            Awaited by the plan's backup phase, or once before the first
            change phase when the plan has none.  Signature:
            ``backup_fn(plan) -> backup_handle``.
        cancel_event: Optional event; when set, the run stops at the next
            phase boundary or before the next operation.
    """

    def __init__(
        self,
        adapter: "DatabaseClient",
        command_timeout_seconds: float = 300,
        license_gate: LicenseGate | None = None,
        backup_fn: Callable[[DeploymentPlan], Awaitable[str]] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.adapter = adapter
        self.command_timeout_seconds = command_timeout_seconds
        self.license_gate = license_gate
        self.backup_fn = backup_fn
        self.cancel_event = cancel_event or asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self, plan: DeploymentPlan, approvals: Approvals | None = None
    ) -> DeploymentResult:
        """Execute the plan.

        Order: approval check, pre-deployment phases (environment check,
        backup checkpoint), change phases, post-deployment phases.  Phases
        that never start because the run stopped are reported as skipped.

        Returns:
            ``DeploymentResult`` whose ``status`` is the terminal state of the
            run.  Failures are reported in the result, not raised.
        """
        approvals = approvals or Approvals()
        started = time.monotonic()
        result = DeploymentResult(
            phase_results=[
                PhaseResult(phase_number=p.phase_number, phase_name=p.name)
                for p in plan.phases
            ],
            pre_deployment_results=[
                PhaseResult(phase_number=0, phase_name=p.name) for p in plan.pre_deployment_phases
            ],
            post_deployment_results=[
                PhaseResult(phase_number=0, phase_name=p.name) for p in plan.post_deployment_phases
            ],
        )
        # Phases skipped by configuration are reported after the executed ones
        result.phase_results.extend(
            PhaseResult(phase_number=0, phase_name=p.name, status=PhaseStatus.SKIPPED)
            for p in plan.skipped_phases
        )

        unapproved = [
            p for p in plan.phases
            if p.requires_approval and not approvals.covers(p.risk_level)
        ]
        if unapproved:
            dual = any(p.risk_level == RiskLevel.RISKY for p in unapproved)
            status = (
                DeploymentStatus.RISKY_DUAL_APPROVAL_REQUIRED
                if dual
                else DeploymentStatus.WARNING_APPROVAL_REQUIRED
            )
            numbers = ", ".join(str(p.phase_number) for p in unapproved)
            result.error_message = (
                f"{'Two independent approvals are' if dual else 'An approval is'} "
                f"required before executing phase(s) {numbers}"
            )
            return self._finish(result, status, started)

        for phase, phase_result in zip(plan.pre_deployment_phases, result.pre_deployment_results):
            if self.cancel_event.is_set():
                result.error_message = f"Cancelled before {phase.name}"
                return self._finish(result, DeploymentStatus.CANCELLED, started)
            if not self._licensed(result, phase.name):
                return self._finish(result, DeploymentStatus.LICENSE_UNAVAILABLE, started)
            await self._execute_framing(plan, phase, phase_result, result)
            if not phase_result.success:
                result.error_message = phase_result.error_message
                return self._finish(result, DeploymentStatus.FAILED, started)

        if self.backup_fn is not None and plan.phases and not plan.includes_backup:
            try:
                await self._checkpoint(plan, result)
            except Exception as e:
                result.error_message = f"Backup checkpoint failed: {e}"
                logger.error(result.error_message)
                return self._finish(result, DeploymentStatus.FAILED, started)

        for phase, phase_result in zip(plan.phases, result.phase_results):
            if self.cancel_event.is_set():
                result.error_message = f"Cancelled before phase {phase.phase_number}"
                return self._finish(result, DeploymentStatus.CANCELLED, started)

            if not self._licensed(result, f"Phase {phase.phase_number}"):
                return self._finish(result, DeploymentStatus.LICENSE_UNAVAILABLE, started)

            phase_result.status = PhaseStatus.APPROVED
            await self._execute_phase(phase, phase_result)

            if phase_result.status == PhaseStatus.CANCELLED:
                result.error_message = phase_result.error_message
                return self._finish(result, DeploymentStatus.CANCELLED, started)
            if phase_result.status == PhaseStatus.FAILED:
                result.error_message = phase_result.error_message
                return self._finish(result, DeploymentStatus.FAILED, started)

        for phase, phase_result in zip(plan.post_deployment_phases, result.post_deployment_results):
            await self._execute_framing(plan, phase, phase_result, result)
            if not phase_result.success:
                result.error_message = phase_result.error_message
                return self._finish(result, DeploymentStatus.FAILED, started)

        return self._finish(result, DeploymentStatus.SUCCEEDED, started)

    # ------------------------------------------------------------------
    # Phase execution
    # ------------------------------------------------------------------

    def _licensed(self, result: DeploymentResult, step: str) -> bool:
        if self.license_gate is None:
            return True
        try:
            self.license_gate.ensure_active()
        except LicenseUnavailableError as e:
            result.error_message = f"{step} not started: {e}"
            logger.error(result.error_message)
            return False
        return True

    async def _run(self, sql: str) -> None:
        await asyncio.wait_for(self.adapter.execute(sql), timeout=self.command_timeout_seconds)

    async def _checkpoint(self, plan: DeploymentPlan, result: DeploymentResult) -> None:
        if self.backup_fn is None:
            raise DeploymentExecutionError("The plan includes a backup but no backup callback is set")
        handle = await self.backup_fn(plan)
        result.metadata["backup_handle"] = handle
        logger.info(f"Backup checkpoint created: {handle}")

    async def _execute_framing(
        self,
        plan: DeploymentPlan,
        phase: DeploymentPhase,
        phase_result: PhaseResult,
        result: DeploymentResult,
    ) -> None:
        """Run a validation or backup phase.  These change nothing, so
        there is nothing to roll back."""
        started = time.monotonic()
        phase_result.status = PhaseStatus.EXECUTING
        logger.info(f"{phase.name} ({len(phase.operations)} operations)")

        try:
            for operation in phase.operations:
                if operation.kind == OperationKind.BACKUP:
                    await self._checkpoint(plan, result)
                else:
                    logger.debug(f"Executing {operation.change_key}: {operation.sql_command}")
                    await self._run(operation.sql_command)
                phase_result.operations_executed += 1
        except asyncio.TimeoutError:
            phase_result.status = PhaseStatus.FAILED
            phase_result.error_message = (
                f"{phase.name} timed out after {self.command_timeout_seconds}s"
            )
        except Exception as e:
            phase_result.status = PhaseStatus.FAILED
            phase_result.error_message = f"{phase.name} failed: {e}"
        else:
            phase_result.status = PhaseStatus.SUCCEEDED
            phase_result.success = True
        finally:
            phase_result.duration_seconds = time.monotonic() - started

        if not phase_result.success:
            logger.error(phase_result.error_message)

    async def _execute_phase(self, phase: DeploymentPhase, phase_result: PhaseResult) -> None:
        """Run one phase, unwinding its completed operations on failure."""
        started = time.monotonic()
        phase_result.status = PhaseStatus.EXECUTING
        undo: list[DeploymentOperation] = []
        logger.info(
            f"Phase {phase.phase_number}: {phase.name} "
            f"({len(phase.operations)} operations, {phase.risk_level.label})"
        )

        try:
            for operation in phase.operations:
                if self.cancel_event.is_set():
                    phase_result.status = PhaseStatus.CANCELLED
                    phase_result.error_message = (
                        f"Cancelled in phase {phase.phase_number} before {operation.change_key}"
                    )
                    break

                logger.debug(f"Executing {operation.change_key}: {operation.sql_command}")
                try:
                    await self._run(operation.sql_command)
                except asyncio.TimeoutError:
                    phase_result.status = PhaseStatus.FAILED
                    phase_result.error_message = (
                        f"{operation.change_key} timed out after "
                        f"{self.command_timeout_seconds}s (phase {phase.phase_number})"
                    )
                    break
                except Exception as e:
                    phase_result.status = PhaseStatus.FAILED
                    phase_result.error_message = (
                        f"{operation.change_key} failed in phase {phase.phase_number}: {e}"
                    )
                    break

                undo.append(operation)
                phase_result.operations_executed += 1
            else:
                phase_result.status = PhaseStatus.SUCCEEDED
                phase_result.success = True
        except asyncio.CancelledError:
            phase_result.status = PhaseStatus.CANCELLED
            phase_result.error_message = f"Cancelled during phase {phase.phase_number}"
            await self._rollback(undo, phase_result)
            raise
        finally:
            phase_result.duration_seconds = time.monotonic() - started

        if not phase_result.success:
            logger.error(phase_result.error_message)
            await self._rollback(undo, phase_result)
            phase_result.duration_seconds = time.monotonic() - started

    async def _rollback(self, undo: list[DeploymentOperation], phase_result: PhaseResult) -> None:
        """Run rollback statements in reverse; failures are recorded, not raised."""
        for operation in reversed(undo):
            if operation.rollback_command is None:
                phase_result.rollback_errors.append(
                    f"{operation.change_key}: no rollback statement available"
                )
                continue
            try:
                await self._run(operation.rollback_command)
            except Exception as e:
                message = f"{operation.change_key}: rollback failed: {e}"
                logger.error(message)
                phase_result.rollback_errors.append(message)
                continue
            phase_result.operations_rolled_back += 1

    def _finish(
        self, result: DeploymentResult, status: DeploymentStatus, started: float
    ) -> DeploymentResult:
        result.status = status
        result.success = status == DeploymentStatus.SUCCEEDED
        if status not in _AWAITING_APPROVAL:
            for phase_result in result.ordered_results():
                if phase_result.status == PhaseStatus.PENDING:
                    phase_result.status = PhaseStatus.SKIPPED
        result.end_time = datetime.now(timezone.utc)
        result.duration_seconds = time.monotonic() - started
        log = logger.info if result.success else logger.warning
        log(f"Deployment finished: {status.value}")
        return result
