"""Pre-deployment backup checkpoints.

Before the first phase runs, the rows of every existing table the plan
touches are exported to a JSON checkpoint file.  The file path is the
backup handle recorded in the deployment result; restoring from it is a
manual operator step.

Usage:
    from sqlsync.backup.checkpoint import affected_tables, create_checkpoint

    tables = affected_tables(plan)
    path = await create_checkpoint(adapter, tables, generator, "backups")

    # Validate (sync -- local file read only)
    report = validate_checkpoint(path)
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sqlsync.adapters.base import DatabaseClient
from sqlsync.deploy.models import DeploymentPlan
from sqlsync.deploy.sql import SqlGenerator
from sqlsync.schema.models import ChangeType, ObjectType

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = "1.0"
CHECKPOINT_PREFIX = "checkpoint-"


def affected_tables(plan: DeploymentPlan) -> list[tuple[str, str]]:
    """Existing tables touched by the plan, as sorted ``(schema, table)`` pairs.

    Tables the plan creates hold no data yet and are left out.
    """
    created: set[tuple[str, str]] = set()
    touched: set[tuple[str, str]] = set()
    for phase in plan.phases:
        for op in phase.operations:
            if op.object_type == ObjectType.TABLE:
                key = (op.schema_name, op.object_name)
                if op.change_type == ChangeType.CREATE:
                    created.add(key)
                else:
                    touched.add(key)
            elif op.object_type in (ObjectType.COLUMN, ObjectType.INDEX, ObjectType.CONSTRAINT):
                touched.add((op.schema_name, op.table_name))
    return sorted(t for t in touched - created if t[1])


async def create_checkpoint(
    adapter: DatabaseClient,
    tables: list[tuple[str, str]],
    generator: SqlGenerator,
    output_dir: str | Path = "backups",
    label: str = "",
    metadata: dict | None = None,
) -> str:
    """Export the rows of ``tables`` to a JSON checkpoint file.

    Args:
        adapter: Database adapter implementing ``DatabaseClient`` Protocol.
        tables: ``(schema, table)`` pairs to export.
        generator: SQL generator used to quote table names for the target
            provider.
        output_dir: Directory for checkpoint files.
        label: Optional restore point label, stored in the metadata and
            appended to the file name.
        metadata: Optional extra metadata merged into the file's
            ``metadata`` section.

    Returns:
        Absolute path to the created checkpoint file.

    Raises:
        Exception: Driver error if a table cannot be read; no file is
            written in that case.
    """
    now = datetime.now(timezone.utc)
    checkpoint: dict[str, Any] = {
        "metadata": {
            "created_at": now.isoformat(),
            "label": label,
            "version": CHECKPOINT_VERSION,
            "tables": [f"{s}.{t}" if s else t for s, t in tables],
        },
        "tables": {},
    }
    if metadata:
        checkpoint["metadata"].update(metadata)

    for schema_name, table_name in tables:
        rows = await adapter.select(generator.qualify(schema_name, table_name), columns="*")
        name = f"{schema_name}.{table_name}" if schema_name else table_name
        checkpoint["tables"][name] = rows
        checkpoint["metadata"][f"{name}_count"] = len(rows)

    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    suffix = f"-{label}" if label else ""
    path = directory / f"{CHECKPOINT_PREFIX}{now:%Y-%m-%d-%H%M%S}{suffix}.json"

    with open(path, "w") as f:
        json.dump(checkpoint, f, indent=2, default=str)

    logger.info(f"Checkpoint of {len(tables)} tables written to {path}")
    return str(path.resolve())


def validate_checkpoint(path: str | Path) -> dict:
    """Validate a checkpoint file's format.

    Returns:
        Dict with ``valid`` (bool), ``errors`` (list[str]) and
        ``warnings`` (list[str]).
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        errors.append(f"Checkpoint file not found: {path}")
        return {"valid": False, "errors": errors, "warnings": warnings}
    except json.JSONDecodeError as e:
        errors.append(f"Invalid JSON: {e}")
        return {"valid": False, "errors": errors, "warnings": warnings}

    for key in ("metadata", "tables"):
        if key not in data:
            errors.append(f"Missing required key: {key}")
    if errors:
        return {"valid": False, "errors": errors, "warnings": warnings}

    metadata = data["metadata"]
    if metadata.get("version") != CHECKPOINT_VERSION:
        errors.append(
            f"Unsupported checkpoint version '{metadata.get('version')}' "
            f"(expected '{CHECKPOINT_VERSION}')"
        )
    for name in metadata.get("tables", []):
        if name not in data["tables"]:
            errors.append(f"Table listed in metadata but missing from data: {name}")
        elif metadata.get(f"{name}_count") != len(data["tables"][name]):
            warnings.append(f"Row count mismatch for {name}")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def prune_checkpoints(output_dir: str | Path, retention_days: int) -> list[Path]:
    """Delete checkpoint files older than ``retention_days``.

    Returns:
        The deleted paths.  A missing directory deletes nothing.
    """
    directory = Path(output_dir)
    if retention_days <= 0 or not directory.is_dir():
        return []

    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    removed: list[Path] = []
    for path in sorted(directory.glob(f"{CHECKPOINT_PREFIX}*.json")):
        modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        if modified < cutoff:
            path.unlink()
            removed.append(path)
    if removed:
        logger.info(f"Pruned {len(removed)} checkpoints older than {retention_days} days")
    return removed
