"""Tests for the sqlsync command line interface.

``main(argv)`` is called directly; the run itself is either executed for
real against a schema snapshot (plan mode, licensing disabled) or patched.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from sqlsync.cli import build_parser, main
from sqlsync.errors import ExitCode
from sqlsync.runner import RunResult
from sqlsync.schema.introspector import save_schema_snapshot
from sqlsync.schema.models import DatabaseSchema, EntityDiscoveryResult


def _write_config(tmp_path, extra: str = "") -> str:
    path = tmp_path / "sqlsync.toml"
    path.write_text(
        "[database]\n"
        "postgresql = true\n"
        "server = 'localhost'\n"
        "database_name = 'app'\n"
        f"schema_snapshot = '{(tmp_path / 'live.json').as_posix()}'\n"
        "[license]\n"
        "enabled = false\n"
        "[deployment]\n"
        f"report_dir = '{(tmp_path / 'deployments').as_posix()}'\n"
        "[backup]\n"
        f"backup_dir = '{(tmp_path / 'backups').as_posix()}'\n"
        + extra
    )
    return str(path)


def _write_entities(tmp_path, *entities) -> str:
    path = tmp_path / "entities.json"
    path.write_text(EntityDiscoveryResult(entities=list(entities)).model_dump_json())
    return str(path)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("MODE", "DATABASE_SQLSERVER", "DATABASE_MYSQL", "LICENSE_SERVER", "SKIP_BACKUP"):
        monkeypatch.delenv(name, raising=False)


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_deploy_collects_approvers(self):
        args = build_parser().parse_args(
            ["deploy", "--entities", "e.json", "--approve", "alice", "--approve", "bob"]
        )
        assert args.approve == ["alice", "bob"]
        assert args.skip_backup is False

    def test_plan_requires_entities(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["plan"])


class TestCheckConfig:
    def test_valid(self, tmp_path):
        assert main(["--config", _write_config(tmp_path), "check-config"]) == 0

    def test_missing_file(self, tmp_path):
        assert main(["--config", str(tmp_path / "nope.toml"), "check-config"]) == ExitCode.INVALID_CONFIGURATION

    def test_two_providers(self, tmp_path):
        path = tmp_path / "sqlsync.toml"
        path.write_text("[database]\npostgresql = true\nmysql = true\n[license]\nenabled = false\n")
        assert main(["--config", str(path), "check-config"]) == 1


class TestPlanAndDeploy:
    """Test plan and deploy commands."""

    def test_plan_against_snapshot(self, tmp_path, location_entity, capsys):
        save_schema_snapshot(DatabaseSchema(provider="postgresql"), tmp_path / "live.json")
        config = _write_config(tmp_path)
        entities = _write_entities(tmp_path, location_entity)

        exit_code = main(["--config", config, "plan", "--entities", entities, "--show-sql"])

        assert exit_code == 0
        out = capsys.readouterr().out
        assert "Create Tables and Columns" in out
        assert "CREATE TABLE" in out
        reports = list((tmp_path / "deployments").glob("plan-*.json"))
        assert len(reports) == 1
        assert json.loads(reports[0].read_text())["plan"]["phases"][0]["slot"] == 13

    def test_plan_command_line_snapshot_wins(self, tmp_path, location_entity):
        other = tmp_path / "other.json"
        save_schema_snapshot(DatabaseSchema(provider="postgresql"), other)
        entities = _write_entities(tmp_path, location_entity)
        exit_code = main([
            "--config", _write_config(tmp_path), "plan",
            "--entities", entities, "--schema-snapshot", str(other),
        ])
        assert exit_code == 0

    def test_missing_snapshot_is_connection_failure(self, tmp_path, location_entity):
        config = _write_config(tmp_path, "")
        Path(config).write_text(Path(config).read_text().replace("[license]", "retry_attempts = 1\n[license]"))
        entities = _write_entities(tmp_path, location_entity)
        assert main(["--config", config, "plan", "--entities", entities]) == ExitCode.DATABASE_CONNECTION_FAILURE

    def test_missing_entities_file(self, tmp_path):
        exit_code = main(["--config", _write_config(tmp_path), "plan", "--entities", str(tmp_path / "none.json")])
        assert exit_code == ExitCode.ENTITY_DISCOVERY_FAILURE

    def test_invalid_entities_file(self, tmp_path):
        entities = tmp_path / "entities.json"
        entities.write_text('{"entities": "nope"}')
        exit_code = main(["--config", _write_config(tmp_path), "plan", "--entities", str(entities)])
        assert exit_code == ExitCode.ENTITY_DISCOVERY_FAILURE

    def test_deploy_passes_approvals_and_exit_code(self, tmp_path, location_entity):
        run = AsyncMock(return_value=RunResult(
            exit_code=ExitCode.RISKY_DUAL_APPROVAL_REQUIRED, error="Two independent approvals are required",
        ))
        entities = _write_entities(tmp_path, location_entity)

        with patch("sqlsync.cli.run_sync", run):
            exit_code = main([
                "--config", _write_config(tmp_path), "deploy",
                "--entities", entities, "--approve", "alice", "--skip-backup",
            ])

        assert exit_code == 11
        config, discovery = run.await_args.args
        assert config.operation.mode == "deploy"
        assert config.operation.skip_backup is True
        assert [e.name for e in discovery.entities] == ["Location"]
        assert run.await_args.kwargs["approvals"].approvers == ["alice"]


class TestCheckpointCommands:
    def test_validate_checkpoint(self, tmp_path):
        path = tmp_path / "checkpoint-a.json"
        path.write_text(json.dumps({"metadata": {"version": "1.0", "tables": []}, "tables": {}}))
        assert main(["validate-checkpoint", str(path)]) == 0

    def test_validate_checkpoint_invalid(self, tmp_path):
        path = tmp_path / "checkpoint-a.json"
        path.write_text("{}")
        assert main(["validate-checkpoint", str(path)]) == ExitCode.DEPLOYMENT_EXECUTION_FAILURE

    def test_prune_checkpoints(self, tmp_path):
        (tmp_path / "backups").mkdir()
        assert main(["--config", _write_config(tmp_path), "prune-checkpoints"]) == 0
