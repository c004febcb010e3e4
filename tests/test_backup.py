"""Tests for backup checkpoints: affected tables, export, validation, pruning."""

import json
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from sqlsync.backup.checkpoint import (
    CHECKPOINT_VERSION,
    affected_tables,
    create_checkpoint,
    prune_checkpoints,
    validate_checkpoint,
)
from sqlsync.deploy.models import DeploymentOperation, DeploymentPhase, DeploymentPlan
from sqlsync.deploy.sql import SqlGenerator
from sqlsync.schema.models import ChangeType, ObjectType


def _op(change_type: ChangeType, object_type: ObjectType, table: str, name: str = "x",
        schema: str = "public") -> DeploymentOperation:
    return DeploymentOperation(
        change_key=f"{change_type.value}:{object_type.value}:{schema}.{table}.{name}",
        change_type=change_type,
        object_type=object_type,
        object_name=table if object_type == ObjectType.TABLE else name,
        schema_name=schema,
        table_name=table,
        sql_command="SELECT 1",
    )


def _plan(*ops: DeploymentOperation) -> DeploymentPlan:
    return DeploymentPlan(phases=[DeploymentPhase(phase_number=1, slot=12, name="All", operations=list(ops))])


def _make_mock_adapter(rows_by_table: dict[str, list[dict]]) -> AsyncMock:
    adapter = AsyncMock()

    async def select(table, columns="*", filters=None, order_by=None):
        return rows_by_table[table]

    adapter.select.side_effect = select
    return adapter


class TestAffectedTables:
    def test_new_tables_excluded(self):
        plan = _plan(
            _op(ChangeType.CREATE, ObjectType.TABLE, "Location"),
            _op(ChangeType.CREATE, ObjectType.COLUMN, "Location", "Title"),
            _op(ChangeType.DROP, ObjectType.COLUMN, "Photo", "PhotoPath"),
            _op(ChangeType.CREATE, ObjectType.INDEX, "Album", "IX_Album_Name"),
        )
        assert affected_tables(plan) == [("public", "Album"), ("public", "Photo")]

    def test_dropped_table_included(self):
        plan = _plan(_op(ChangeType.DROP, ObjectType.TABLE, "Legacy"))
        assert affected_tables(plan) == [("public", "Legacy")]


class TestCreateCheckpoint:
    """Test checkpoint export."""

    async def test_rows_and_metadata_written(self, tmp_path):
        adapter = _make_mock_adapter({'"Photo"': [{"Id": 1}, {"Id": 2}]})

        path = await create_checkpoint(
            adapter,
            [("public", "Photo")],
            SqlGenerator("postgresql", "public"),
            output_dir=tmp_path,
            label="pre-release",
            metadata={"environment": "staging"},
        )

        assert path.endswith("-pre-release.json")
        data = json.loads(Path(path).read_text())
        assert data["tables"]["public.Photo"] == [{"Id": 1}, {"Id": 2}]
        assert data["metadata"]["public.Photo_count"] == 2
        assert data["metadata"]["version"] == CHECKPOINT_VERSION
        assert data["metadata"]["environment"] == "staging"
        assert validate_checkpoint(path)["valid"] is True

    async def test_qualifies_non_default_schema(self, tmp_path):
        adapter = _make_mock_adapter({"[sales].[Order]": []})
        await create_checkpoint(adapter, [("sales", "Order")], SqlGenerator("sqlserver", "dbo"), tmp_path)
        adapter.select.assert_awaited_once_with("[sales].[Order]", columns="*")

    async def test_read_failure_writes_nothing(self, tmp_path):
        adapter = AsyncMock()
        adapter.select.side_effect = RuntimeError("permission denied")
        with pytest.raises(RuntimeError):
            await create_checkpoint(adapter, [("public", "Photo")], SqlGenerator("postgresql"), tmp_path)
        assert list(tmp_path.iterdir()) == []


class TestValidateCheckpoint:
    """Test checkpoint validation."""

    def _write(self, tmp_path, data) -> str:
        path = tmp_path / "checkpoint-test.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return str(path)

    def test_missing_file(self, tmp_path):
        report = validate_checkpoint(tmp_path / "nope.json")
        assert report["valid"] is False
        assert "not found" in report["errors"][0]

    def test_invalid_json(self, tmp_path):
        report = validate_checkpoint(self._write(tmp_path, "{nope"))
        assert report["errors"][0].startswith("Invalid JSON")

    def test_missing_keys(self, tmp_path):
        report = validate_checkpoint(self._write(tmp_path, {"metadata": {}}))
        assert report["errors"] == ["Missing required key: tables"]

    def test_wrong_version(self, tmp_path):
        report = validate_checkpoint(self._write(tmp_path, {"metadata": {"version": "0.1"}, "tables": {}}))
        assert report["valid"] is False
        assert "Unsupported checkpoint version" in report["errors"][0]

    def test_missing_table_data(self, tmp_path):
        data = {"metadata": {"version": CHECKPOINT_VERSION, "tables": ["Photo"]}, "tables": {}}
        report = validate_checkpoint(self._write(tmp_path, data))
        assert report["errors"] == ["Table listed in metadata but missing from data: Photo"]

    def test_count_mismatch_is_warning(self, tmp_path):
        data = {
            "metadata": {"version": CHECKPOINT_VERSION, "tables": ["Photo"], "Photo_count": 3},
            "tables": {"Photo": [{"Id": 1}]},
        }
        report = validate_checkpoint(self._write(tmp_path, data))
        assert report["valid"] is True
        assert report["warnings"] == ["Row count mismatch for Photo"]


class TestPruneCheckpoints:
    def test_old_checkpoints_removed(self, tmp_path):
        old = tmp_path / "checkpoint-2020-01-01-000000.json"
        new = tmp_path / "checkpoint-2099-01-01-000000.json"
        other = tmp_path / "notes.json"
        for path in (old, new, other):
            path.write_text("{}")
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))
        os.utime(other, (ten_days_ago, ten_days_ago))

        removed = prune_checkpoints(tmp_path, retention_days=7)

        assert removed == [old]
        assert new.exists()
        assert other.exists()

    def test_zero_retention_keeps_everything(self, tmp_path):
        path = tmp_path / "checkpoint-a.json"
        path.write_text("{}")
        os.utime(path, (0, 0))
        assert prune_checkpoints(tmp_path, retention_days=0) == []

    def test_missing_directory(self, tmp_path):
        assert prune_checkpoints(tmp_path / "missing", retention_days=7) == []
