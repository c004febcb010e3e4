"""Pre-deployment backup checkpoints."""

from sqlsync.backup.checkpoint import (
    affected_tables,
    create_checkpoint,
    prune_checkpoints,
    validate_checkpoint,
)

__all__ = [
    "affected_tables",
    "create_checkpoint",
    "prune_checkpoints",
    "validate_checkpoint",
]
