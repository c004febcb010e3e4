"""Tests for the deployment executor.

Verifies that:
- Phases run in order and completed phases are never undone
- A failing operation rolls back its phase's completed operations in reverse
- Approval gates are checked before any statement runs
- License loss, cancellation and timeouts stop the run at the right point
- Validation and backup phases frame the change phases; phases that never start are skipped
- A real SQLite database ends up with the planned schema
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqlsync.adapters.database import AsyncSqlAlchemyAdapter
from sqlsync.deploy.executor import DeploymentExecutor
from sqlsync.deploy.models import (
    Approvals,
    DeploymentOperation,
    DeploymentPhase,
    DeploymentPlan,
    DeploymentStatus,
    OperationKind,
    PhaseStatus,
)
from sqlsync.deploy.planner import plan_deployment
from sqlsync.errors import LicenseUnavailableError
from sqlsync.schema.comparator import DiffOptions, diff_schema
from sqlsync.schema.models import ChangeType, DatabaseSchema, ObjectType, RiskLevel
from sqlsync.schema.risk import classify_changes


def _op(name: str, risk: RiskLevel = RiskLevel.SAFE, rollback: str | None = "") -> DeploymentOperation:
    return DeploymentOperation(
        change_key=f"CREATE:COLUMN:T.{name}",
        change_type=ChangeType.CREATE,
        object_type=ObjectType.COLUMN,
        object_name=name,
        table_name="T",
        sql_command=f"DO {name}",
        rollback_command=f"UNDO {name}" if rollback == "" else rollback,
        risk_level=risk,
    )


def _phase(number: int, *ops: DeploymentOperation, risk: RiskLevel = RiskLevel.SAFE) -> DeploymentPhase:
    return DeploymentPhase(
        phase_number=number,
        slot=number,
        name=f"Phase {number}",
        risk_level=risk,
        requires_approval=risk > RiskLevel.SAFE,
        requires_dual_approval=risk == RiskLevel.RISKY,
        operations=list(ops),
    )


def _plan(*phases: DeploymentPhase) -> DeploymentPlan:
    return DeploymentPlan(phases=list(phases))


def _make_mock_adapter(*fail_on: str) -> AsyncMock:
    """Adapter whose execute records statements and fails on any of ``fail_on``."""
    adapter = AsyncMock()
    adapter.executed = []

    async def execute(sql, params=None):
        adapter.executed.append(sql)
        if sql in fail_on:
            raise RuntimeError(f"boom: {sql}")

    adapter.execute.side_effect = execute
    return adapter


# ------------------------------------------------------------------
# Success and failure
# ------------------------------------------------------------------


class TestExecute:
    """Test phase execution and rollback."""

    async def test_all_phases_succeed(self):
        adapter = _make_mock_adapter()
        plan = _plan(_phase(1, _op("a"), _op("b")), _phase(2, _op("c")))

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.SUCCEEDED
        assert result.success is True
        assert adapter.executed == ["DO a", "DO b", "DO c"]
        assert [r.status for r in result.phase_results] == [PhaseStatus.SUCCEEDED] * 2
        assert result.end_time is not None

    async def test_failure_rolls_back_current_phase_only(self):
        """Op 3 of phase 2 fails: phase 1 kept, ops 1-2 of phase 2 undone, phase 3 skipped."""
        adapter = _make_mock_adapter("DO p2c")
        plan = _plan(
            _phase(1, _op("p1a"), _op("p1b")),
            _phase(2, _op("p2a"), _op("p2b"), _op("p2c"), _op("p2d")),
            _phase(3, _op("p3a")),
        )

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.FAILED
        assert result.success is False
        assert adapter.executed == [
            "DO p1a", "DO p1b",
            "DO p2a", "DO p2b", "DO p2c",
            "UNDO p2b", "UNDO p2a",
        ]
        phase1, phase2, phase3 = result.phase_results
        assert phase1.status == PhaseStatus.SUCCEEDED
        assert phase1.operations_rolled_back == 0
        assert phase2.status == PhaseStatus.FAILED
        assert phase2.operations_executed == 2
        assert phase2.operations_rolled_back == 2
        assert "CREATE:COLUMN:T.p2c" in phase2.error_message
        assert phase3.status == PhaseStatus.SKIPPED
        assert phase3.operations_executed == 0
        assert result.error_message == phase2.error_message

    async def test_missing_rollback_statement_recorded(self):
        adapter = _make_mock_adapter("DO b")
        plan = _plan(_phase(1, _op("a", rollback=None), _op("b")))

        result = await DeploymentExecutor(adapter).execute(plan)

        phase = result.phase_results[0]
        assert phase.operations_rolled_back == 0
        assert phase.rollback_errors == ["CREATE:COLUMN:T.a: no rollback statement available"]

    async def test_rollback_failure_recorded_and_continues(self):
        adapter = _make_mock_adapter("DO c", "UNDO b")
        plan = _plan(_phase(1, _op("a"), _op("b"), _op("c")))

        result = await DeploymentExecutor(adapter).execute(plan)

        phase = result.phase_results[0]
        assert adapter.executed[-2:] == ["UNDO b", "UNDO a"]
        assert phase.operations_rolled_back == 1
        assert len(phase.rollback_errors) == 1
        assert "rollback failed" in phase.rollback_errors[0]

    async def test_timeout_fails_phase(self):
        adapter = AsyncMock()

        async def execute(sql, params=None):
            if sql == "DO slow":
                await asyncio.sleep(1)

        adapter.execute.side_effect = execute
        plan = _plan(_phase(1, _op("fast"), _op("slow")))

        result = await DeploymentExecutor(adapter, command_timeout_seconds=0.05).execute(plan)

        assert result.status == DeploymentStatus.FAILED
        assert "timed out" in result.error_message
        assert result.phase_results[0].operations_rolled_back == 1

    async def test_empty_plan_succeeds(self):
        adapter = _make_mock_adapter()
        result = await DeploymentExecutor(adapter).execute(_plan())
        assert result.status == DeploymentStatus.SUCCEEDED
        adapter.execute.assert_not_called()


# ------------------------------------------------------------------
# Approvals
# ------------------------------------------------------------------


class TestApprovals:
    """Test approval gates."""

    async def test_warning_phase_without_approval(self):
        adapter = _make_mock_adapter()
        plan = _plan(_phase(1, _op("a")), _phase(2, _op("b", RiskLevel.WARNING), risk=RiskLevel.WARNING))

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.WARNING_APPROVAL_REQUIRED
        adapter.execute.assert_not_called()
        assert all(r.status == PhaseStatus.PENDING for r in result.phase_results)

    async def test_warning_phase_with_one_approval(self):
        adapter = _make_mock_adapter()
        plan = _plan(_phase(1, _op("b", RiskLevel.WARNING), risk=RiskLevel.WARNING))
        result = await DeploymentExecutor(adapter).execute(plan, Approvals(approvers=["alice"]))
        assert result.status == DeploymentStatus.SUCCEEDED

    async def test_risky_phase_needs_two_distinct_approvers(self):
        adapter = _make_mock_adapter()
        plan = _plan(_phase(1, _op("drop", RiskLevel.RISKY), risk=RiskLevel.RISKY))

        result = await DeploymentExecutor(adapter).execute(plan, Approvals(approvers=["alice", "Alice "]))

        assert result.status == DeploymentStatus.RISKY_DUAL_APPROVAL_REQUIRED
        adapter.execute.assert_not_called()

    async def test_risky_status_wins_over_warning(self):
        adapter = _make_mock_adapter()
        plan = _plan(
            _phase(1, _op("w", RiskLevel.WARNING), risk=RiskLevel.WARNING),
            _phase(2, _op("r", RiskLevel.RISKY), risk=RiskLevel.RISKY),
        )
        result = await DeploymentExecutor(adapter).execute(plan)
        assert result.status == DeploymentStatus.RISKY_DUAL_APPROVAL_REQUIRED

    async def test_risky_phase_with_two_approvers_runs(self):
        adapter = _make_mock_adapter()
        plan = _plan(_phase(1, _op("drop", RiskLevel.RISKY), risk=RiskLevel.RISKY))
        result = await DeploymentExecutor(adapter).execute(plan, Approvals(approvers=["alice", "bob"]))
        assert result.status == DeploymentStatus.SUCCEEDED


# ------------------------------------------------------------------
# License, backup and cancellation
# ------------------------------------------------------------------


class TestRunControls:
    """Test license gate, backup hook and cancellation."""

    async def test_license_lost_before_second_phase(self):
        adapter = _make_mock_adapter()
        gate = MagicMock()
        gate.ensure_active.side_effect = [None, LicenseUnavailableError("heartbeat failed")]
        plan = _plan(_phase(1, _op("a")), _phase(2, _op("b")))

        result = await DeploymentExecutor(adapter, license_gate=gate).execute(plan)

        assert result.status == DeploymentStatus.LICENSE_UNAVAILABLE
        assert adapter.executed == ["DO a"]
        assert result.phase_results[0].status == PhaseStatus.SUCCEEDED
        assert result.phase_results[1].status == PhaseStatus.SKIPPED
        assert "heartbeat failed" in result.error_message

    async def test_backup_handle_recorded(self):
        adapter = _make_mock_adapter()
        backup_fn = AsyncMock(return_value="/backups/checkpoint-1.json")
        plan = _plan(_phase(1, _op("a")))

        result = await DeploymentExecutor(adapter, backup_fn=backup_fn).execute(plan)

        backup_fn.assert_awaited_once_with(plan)
        assert result.metadata["backup_handle"] == "/backups/checkpoint-1.json"
        assert result.status == DeploymentStatus.SUCCEEDED

    async def test_backup_failure_stops_run(self):
        adapter = _make_mock_adapter()
        backup_fn = AsyncMock(side_effect=OSError("disk full"))

        result = await DeploymentExecutor(adapter, backup_fn=backup_fn).execute(_plan(_phase(1, _op("a"))))

        assert result.status == DeploymentStatus.FAILED
        assert "disk full" in result.error_message
        adapter.execute.assert_not_called()

    async def test_cancel_before_start(self):
        adapter = _make_mock_adapter()
        event = asyncio.Event()
        event.set()

        result = await DeploymentExecutor(adapter, cancel_event=event).execute(_plan(_phase(1, _op("a"))))

        assert result.status == DeploymentStatus.CANCELLED
        adapter.execute.assert_not_called()

    async def test_cancel_mid_phase_rolls_back(self):
        event = asyncio.Event()
        adapter = _make_mock_adapter()

        async def execute(sql, params=None):
            adapter.executed.append(sql)
            if sql == "DO a":
                event.set()

        adapter.execute.side_effect = execute
        plan = _plan(_phase(1, _op("a"), _op("b")), _phase(2, _op("c")))

        result = await DeploymentExecutor(adapter, cancel_event=event).execute(plan)

        assert result.status == DeploymentStatus.CANCELLED
        assert adapter.executed == ["DO a", "UNDO a"]
        assert result.phase_results[0].status == PhaseStatus.CANCELLED
        assert result.phase_results[0].operations_rolled_back == 1
        assert result.phase_results[1].status == PhaseStatus.SKIPPED


# ------------------------------------------------------------------
# Validation and backup phases
# ------------------------------------------------------------------


def _framing(name: str, kind: OperationKind, sql: str = "") -> DeploymentPhase:
    return DeploymentPhase(
        phase_number=0,
        slot=0,
        name=name,
        operations=[
            DeploymentOperation(
                change_key=f"{kind.value.upper()}:{name}", kind=kind, object_name=name, sql_command=sql,
            )
        ],
    )


def _framed_plan(*phases: DeploymentPhase, backup: bool = True) -> DeploymentPlan:
    pre = [_framing("Pre-deployment Validation", OperationKind.VALIDATION, "CHECK env")]
    if backup:
        pre.append(_framing("Database Backup", OperationKind.BACKUP))
    return DeploymentPlan(
        phases=list(phases),
        pre_deployment_phases=pre,
        post_deployment_phases=[_framing("Post-deployment Validation", OperationKind.VALIDATION, "CHECK tables")],
    )


class TestFramingPhases:
    """Test the validation and backup phases around the change phases."""

    async def test_run_order(self):
        adapter = _make_mock_adapter()
        backup_fn = AsyncMock(return_value="/backups/checkpoint-2.json")
        plan = _framed_plan(_phase(1, _op("a")))

        result = await DeploymentExecutor(adapter, backup_fn=backup_fn).execute(plan)

        assert result.status == DeploymentStatus.SUCCEEDED
        assert adapter.executed == ["CHECK env", "DO a", "CHECK tables"]
        backup_fn.assert_awaited_once_with(plan)
        assert result.metadata["backup_handle"] == "/backups/checkpoint-2.json"
        assert [r.status for r in result.ordered_results()] == [PhaseStatus.SUCCEEDED] * 4
        assert [r.phase_name for r in result.pre_deployment_results] == [
            "Pre-deployment Validation", "Database Backup",
        ]

    async def test_backup_failure_skips_every_later_phase(self):
        adapter = _make_mock_adapter()
        backup_fn = AsyncMock(side_effect=OSError("disk full"))
        plan = _framed_plan(_phase(1, _op("a")), _phase(2, _op("b")))

        result = await DeploymentExecutor(adapter, backup_fn=backup_fn).execute(plan)

        assert result.status == DeploymentStatus.FAILED
        assert "disk full" in result.error_message
        assert adapter.executed == ["CHECK env"]
        assert result.pre_deployment_results[1].status == PhaseStatus.FAILED
        assert [r.status for r in result.phase_results] == [PhaseStatus.SKIPPED] * 2
        assert result.post_deployment_results[0].status == PhaseStatus.SKIPPED

    async def test_backup_phase_needs_callback(self):
        adapter = _make_mock_adapter()

        result = await DeploymentExecutor(adapter).execute(_framed_plan(_phase(1, _op("a"))))

        assert result.status == DeploymentStatus.FAILED
        assert "no backup callback" in result.error_message
        assert "DO a" not in adapter.executed

    async def test_environment_check_failure_stops_run(self):
        adapter = _make_mock_adapter("CHECK env")
        backup_fn = AsyncMock(return_value="unused")

        result = await DeploymentExecutor(adapter, backup_fn=backup_fn).execute(
            _framed_plan(_phase(1, _op("a")))
        )

        assert result.status == DeploymentStatus.FAILED
        assert result.error_message.startswith("Pre-deployment Validation failed")
        backup_fn.assert_not_awaited()
        assert adapter.executed == ["CHECK env"]

    async def test_post_validation_failure_keeps_completed_phases(self):
        adapter = _make_mock_adapter("CHECK tables")

        result = await DeploymentExecutor(adapter).execute(
            _framed_plan(_phase(1, _op("a")), backup=False)
        )

        assert result.status == DeploymentStatus.FAILED
        assert adapter.executed == ["CHECK env", "DO a", "CHECK tables"]
        assert result.phase_results[0].status == PhaseStatus.SUCCEEDED
        assert result.post_deployment_results[0].status == PhaseStatus.FAILED

    async def test_configured_skips_reported(self):
        adapter = _make_mock_adapter()
        skipped = _phase(0, _op("w", RiskLevel.WARNING), risk=RiskLevel.WARNING)
        plan = DeploymentPlan(phases=[_phase(1, _op("a"))], skipped_phases=[skipped])

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.SUCCEEDED
        assert adapter.executed == ["DO a"]
        assert [r.status for r in result.phase_results] == [PhaseStatus.SUCCEEDED, PhaseStatus.SKIPPED]

    async def test_approval_halt_leaves_phases_pending(self):
        adapter = _make_mock_adapter()
        plan = _framed_plan(_phase(1, _op("w", RiskLevel.WARNING), risk=RiskLevel.WARNING))

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.WARNING_APPROVAL_REQUIRED
        assert all(r.status == PhaseStatus.PENDING for r in result.ordered_results())
        adapter.execute.assert_not_called()

    async def test_license_checked_before_environment_check(self):
        adapter = _make_mock_adapter()
        gate = MagicMock()
        gate.ensure_active.side_effect = LicenseUnavailableError("session lost")

        result = await DeploymentExecutor(adapter, license_gate=gate).execute(
            _framed_plan(_phase(1, _op("a")), backup=False)
        )

        assert result.status == DeploymentStatus.LICENSE_UNAVAILABLE
        assert result.error_message == "Pre-deployment Validation not started: session lost"
        assert adapter.executed == []
        assert [r.status for r in result.ordered_results()] == [PhaseStatus.SKIPPED] * 3


# ------------------------------------------------------------------
# SQLite integration
# ------------------------------------------------------------------


class TestSqliteDeployment:
    """Deploy a real plan against a temporary SQLite file."""

    @pytest.fixture
    async def adapter(self, tmp_path):
        adapter = AsyncSqlAlchemyAdapter(f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
        yield adapter
        await adapter.close()

    async def test_location_deployed(self, adapter, location_entity):
        changes = classify_changes(
            diff_schema([location_entity], DatabaseSchema(provider="sqlite"), DiffOptions(provider="sqlite"))
        )
        plan = plan_deployment(changes, provider="sqlite")

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.SUCCEEDED
        assert [r.phase_name for r in result.pre_deployment_results] == ["Pre-deployment Validation"]
        assert [r.status for r in result.post_deployment_results] == [PhaseStatus.SUCCEEDED]
        await adapter.execute(
            'INSERT INTO "Location" ("Title", "Latitude") VALUES (:title, :lat)',
            {"title": "Harbour", "lat": 59.9},
        )
        rows = await adapter.select('"Location"')
        assert rows == [{"Id": 1, "Title": "Harbour", "Latitude": 59.9}]

    async def test_failed_phase_leaves_no_partial_columns(self, adapter, location_entity):
        changes = classify_changes(
            diff_schema([location_entity], DatabaseSchema(provider="sqlite"), DiffOptions(provider="sqlite"))
        )
        plan = plan_deployment(changes, provider="sqlite")
        await adapter.execute('CREATE TABLE "Location" ("Id" INTEGER PRIMARY KEY, "Latitude" REAL)')
        # Skip CREATE TABLE so the run fails on the duplicate Latitude column
        plan.phases[0].operations = plan.phases[0].operations[1:]

        result = await DeploymentExecutor(adapter).execute(plan)

        assert result.status == DeploymentStatus.FAILED
        assert result.phase_results[0].operations_rolled_back == 1
        assert result.post_deployment_results[0].status == PhaseStatus.SKIPPED
        rows = await adapter.select("pragma_table_info('Location')", columns="name")
        assert [r["name"] for r in rows] == ["Id", "Latitude"]
