"""CLI for schema synchronization and phased deployment.

Usage:
    sqlsync check-config
    sqlsync plan --entities entities.json
    sqlsync plan --entities entities.json --schema-snapshot live.json --show-sql
    sqlsync deploy --entities entities.json --approve alice --approve bob
    sqlsync validate-checkpoint backups/checkpoint-2026-10-17-101500.json
    sqlsync prune-checkpoints

Commands:
    check-config         - Load and validate configuration
    plan                 - Diff, classify and print the deployment plan
    deploy               - Plan and execute against the target database
    validate-checkpoint  - Check a backup checkpoint file
    prune-checkpoints    - Delete checkpoints past the retention period

The process exit status is the run's exit code (0-11).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from sqlsync.backup.checkpoint import prune_checkpoints, validate_checkpoint
from sqlsync.config.loader import load_sync_config, validate_configuration
from sqlsync.config.models import SyncConfiguration
from sqlsync.deploy.models import Approvals
from sqlsync.deploy.report import render_plan, render_result
from sqlsync.errors import ConfigurationError, DiscoveryError, ExitCode
from sqlsync.runner import RunResult, run_sync
from sqlsync.schema.models import EntityDiscoveryResult

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def configure_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Route log records through rich at ``level`` (DEBUG when verbose)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config(args: argparse.Namespace) -> SyncConfiguration:
    config = load_sync_config(args.config)
    if args.verbose:
        config.logging.verbose = True
    configure_logging(config.logging.verbose, config.logging.level)
    return config


def _load_entities(path: str) -> EntityDiscoveryResult:
    """Read an ``EntityDiscoveryResult`` JSON file.

    Raises:
        DiscoveryError: If the file is missing or malformed.
    """
    entities_path = Path(path)
    if not entities_path.exists():
        raise DiscoveryError(f"Entities file not found: {entities_path}")
    try:
        return EntityDiscoveryResult.model_validate_json(entities_path.read_text())
    except ValidationError as e:
        raise DiscoveryError(f"Invalid entities file {entities_path}: {e}") from e


def _print_outcome(result: RunResult) -> None:
    if result.exit_code == ExitCode.SUCCESS:
        console.print("[bold green]v[/bold green] Done")
    else:
        message = escape(result.error or "run failed")
        console.print(
            f"[bold red]x[/bold red] {message} "
            f"[dim](exit {int(result.exit_code)}: {result.exit_code.name})[/dim]"
        )


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_run(args: argparse.Namespace, mode: str) -> int:
    """Shared implementation of ``plan`` and ``deploy``."""
    try:
        config = _load_config(args)
        discovery = _load_entities(args.entities)
    except (ConfigurationError, DiscoveryError) as e:
        console.print(f"[bold red]x[/bold red] {escape(str(e))}")
        return int(e.exit_code)

    config.operation.mode = mode
    if args.schema_snapshot:
        config.database.schema_snapshot = args.schema_snapshot
    if getattr(args, "skip_backup", False):
        config.operation.skip_backup = True

    approvals = Approvals(approvers=getattr(args, "approve", None) or [])
    result = await run_sync(config, discovery, approvals=approvals)

    if result.assessment is not None and config.logging.verbose:
        console.print(result.assessment.format_report())
    if result.plan is not None:
        render_plan(result.plan, console, show_sql=getattr(args, "show_sql", False))
    if result.report_path:
        console.print(f"[dim]Plan report: {escape(result.report_path)}[/dim]")
    if result.compiled_sql_path:
        console.print(f"[dim]Compiled script: {escape(result.compiled_sql_path)}[/dim]")
    if result.deployment is not None:
        render_result(result.deployment, console)
        if result.deployment.metadata.get("backup_handle"):
            console.print(
                f"[dim]Backup checkpoint: {escape(result.deployment.metadata['backup_handle'])}[/dim]"
            )

    _print_outcome(result)
    return int(result.exit_code)


# ============================================================================
# Command wrappers
# ============================================================================


def cmd_check_config(args: argparse.Namespace) -> int:
    """Load and validate configuration without touching any server.

    Returns:
        0 if valid, 1 otherwise.
    """
    try:
        config = _load_config(args)
        validate_configuration(config)
    except ConfigurationError as e:
        console.print(f"[bold red]x[/bold red] {escape(str(e))}")
        return int(e.exit_code)

    table = Table(title="Configuration", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Provider", f"[bold cyan]{config.database.provider}[/bold cyan]")
    table.add_row("Schema", config.database.default_schema or "(none)")
    table.add_row("Environment", config.environment)
    table.add_row("Mode", config.operation.mode)
    table.add_row("Phased deployment", str(config.deployment.enable_phased_deployment))
    table.add_row("Skip Warning phases", str(config.deployment.skip_warning_phases))
    table.add_row("License server", config.license.server_url if config.license.enabled else "disabled")
    table.add_row(
        "Backup",
        "skipped" if config.operation.skip_backup or not config.backup.backup_before_deployment
        else escape(config.backup.backup_dir),
    )
    console.print(table)
    console.print("[bold green]v[/bold green] Configuration is valid")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Diff and plan without executing.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_run(args, "plan"))


def cmd_deploy(args: argparse.Namespace) -> int:
    """Plan and execute the deployment.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_run(args, "deploy"))


def cmd_validate_checkpoint(args: argparse.Namespace) -> int:
    """Validate a checkpoint file (local file read only).

    Returns:
        0 if valid, 5 otherwise.
    """
    report = validate_checkpoint(args.path)
    for warning in report["warnings"]:
        console.print(f"[yellow]![/yellow] {escape(warning)}")
    if report["errors"]:
        for error in report["errors"]:
            console.print(f"[bold red]x[/bold red] {escape(error)}")
        return int(ExitCode.DEPLOYMENT_EXECUTION_FAILURE)
    console.print("[bold green]v[/bold green] Checkpoint is valid")
    return 0


def cmd_prune_checkpoints(args: argparse.Namespace) -> int:
    """Delete checkpoints older than the configured retention period."""
    try:
        config = _load_config(args)
    except ConfigurationError as e:
        console.print(f"[bold red]x[/bold red] {escape(str(e))}")
        return int(e.exit_code)

    removed = prune_checkpoints(config.backup.backup_dir, config.backup.retention_days)
    console.print(f"Removed {len(removed)} checkpoint(s) from {escape(config.backup.backup_dir)}")
    return 0


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sqlsync",
        description="Schema synchronization and phased, risk-gated deployment",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: ./sqlsync.toml if present)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Debug logging and full risk report",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_check = subparsers.add_parser("check-config", help="Validate configuration")
    p_check.set_defaults(func=cmd_check_config)

    p_plan = subparsers.add_parser("plan", help="Diff and print the deployment plan")
    p_deploy = subparsers.add_parser("deploy", help="Plan and execute the deployment")
    for sub in (p_plan, p_deploy):
        sub.add_argument(
            "--entities",
            required=True,
            help="Path to the entity discovery result (JSON)",
        )
        sub.add_argument(
            "--schema-snapshot",
            default=None,
            help="Path to a JSON schema snapshot used instead of live introspection",
        )
    p_plan.add_argument(
        "--show-sql",
        action="store_true",
        help="Print every statement of the plan",
    )
    p_plan.set_defaults(func=cmd_plan)

    p_deploy.add_argument(
        "--approve",
        action="append",
        default=[],
        metavar="NAME",
        help="Record an approval (repeat for a second, independent approver)",
    )
    p_deploy.add_argument(
        "--skip-backup",
        action="store_true",
        help="Do not create a backup checkpoint before deploying",
    )
    p_deploy.set_defaults(func=cmd_deploy)

    p_validate = subparsers.add_parser("validate-checkpoint", help="Validate a checkpoint file")
    p_validate.add_argument("path", help="Path to the checkpoint JSON file")
    p_validate.set_defaults(func=cmd_validate_checkpoint)

    p_prune = subparsers.add_parser("prune-checkpoints", help="Delete expired checkpoints")
    p_prune.set_defaults(func=cmd_prune_checkpoints)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code of the command (see ``sqlsync.errors.ExitCode``).
    """
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
