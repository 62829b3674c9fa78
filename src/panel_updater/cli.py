"""
Command-line interface for the panel updater.

Subcommands:
    check-version    Compare the local code with the published code
    update           Back up, pull, install and rebuild
    list-backups     List snapshots, newest first
    create-backup    Create a snapshot on demand
    rollback         Restore a snapshot and re-install dependencies
    delete-backup    Delete a snapshot
    serve            Run the HTTP server

Exit codes: 0 on success, 1 when the operation failed, 2 for invalid input
or an unknown snapshot, 3 when another operation is in progress.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable

import uvicorn
import yaml
from pydantic import ValidationError

from panel_updater import __version__
from panel_updater.config import AppConfig, build_arg_parser, cli_overrides, load_config
from panel_updater.context import UpdaterContext
from panel_updater.errors import UpdaterError
from panel_updater.logging import get_logger, setup_logging
from panel_updater.updates.orchestrator import (
    Operation,
    create_snapshot,
    delete_snapshot,
    run_version_check,
)
from panel_updater.updates.progress import CallbackProgressChannel, ProgressEvent
from panel_updater.updates.supervisor import ProcessSupervisor
from panel_updater.updates.version import VersionStatus

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_BUSY = 3

_EXIT_CODES = {
    "invalid_name": EXIT_INVALID,
    "not_found": EXIT_INVALID,
    "operation_in_progress": EXIT_BUSY,
}


def exit_code_for(error: UpdaterError) -> int:
    """Map an error code to a process exit code."""
    return _EXIT_CODES.get(error.error_code, EXIT_FAILED)


def format_size(size: float) -> str:
    """Format bytes as a human-readable size."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def print_event(event: ProgressEvent) -> None:
    """Print one progress event: log lines to stdout, warnings to stderr."""
    if event.log is not None:
        if event.level == "warning":
            print(f"WARNING: {event.log}", file=sys.stderr, flush=True)
        else:
            print(event.log, flush=True)
    elif event.status in ("success", "restarting") and event.message:
        print(event.message, flush=True)
    elif event.status == "error" and event.message:
        print(f"Error: {event.message}", file=sys.stderr, flush=True)


def _context(config: AppConfig) -> UpdaterContext:
    # No stream to flush here, so the restart follows immediately.
    supervisor = ProcessSupervisor(
        config.supervisor.kind,
        config.supervisor.services,
        restart_delay=0,
        timeout=config.supervisor.timeout_seconds,
    )
    return UpdaterContext.from_config(config, supervisor=supervisor)


def cmd_check_version(config: AppConfig, args: argparse.Namespace) -> int:
    """Check whether an update is available."""
    ctx = _context(config)
    channel = CallbackProgressChannel(print_event if not args.json else lambda e: None)
    state = asyncio.run(run_version_check(ctx.oracle, channel))

    if args.json:
        print(json.dumps(state.to_dict(), indent=2))
    else:
        print(f"Local:  {state.local_ref or '-'}")
        print(f"Remote: {state.remote_ref or '-'}")
        print(f"Status: {state.status.value}")

    return EXIT_FAILED if state.status is VersionStatus.ERROR else EXIT_OK


async def _run_operation(
    ctx: UpdaterContext,
    runner: Callable[..., Awaitable[Operation]],
    *args: str,
) -> int:
    operation = await runner(CallbackProgressChannel(print_event), *args)
    if ctx.updater.supervisor is not None:
        await ctx.updater.supervisor.drain()
    return EXIT_OK if operation.succeeded else EXIT_FAILED


def cmd_update(config: AppConfig, args: argparse.Namespace) -> int:
    """Back up, pull the latest code and re-install dependencies."""
    ctx = _context(config)
    return asyncio.run(_run_operation(ctx, ctx.updater.run))


def cmd_rollback(config: AppConfig, args: argparse.Namespace) -> int:
    """Restore a snapshot."""
    ctx = _context(config)
    return asyncio.run(_run_operation(ctx, ctx.rollback.run, args.backup))


def cmd_list_backups(config: AppConfig, args: argparse.Namespace) -> int:
    """List snapshots, newest first."""
    ctx = _context(config)
    snapshots = ctx.store.list()

    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in snapshots], indent=2))
        return EXIT_OK

    if not snapshots:
        print("No backups found.")
        return EXIT_OK

    for snapshot in snapshots:
        created = snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        print(f"{snapshot.name}  {format_size(snapshot.size_bytes):>10}  {created}")
    return EXIT_OK


def cmd_create_backup(config: AppConfig, args: argparse.Namespace) -> int:
    """Create a snapshot on demand."""
    ctx = _context(config)
    snapshot = asyncio.run(create_snapshot(ctx.store, ctx.lock))
    print(f"Backup created: {snapshot.name} ({format_size(snapshot.size_bytes)})")
    return EXIT_OK


def cmd_delete_backup(config: AppConfig, args: argparse.Namespace) -> int:
    """Delete a snapshot."""
    ctx = _context(config)
    asyncio.run(delete_snapshot(ctx.store, ctx.lock, args.backup))
    print(f"Backup deleted: {args.backup}")
    return EXIT_OK


def cmd_serve(config: AppConfig, args: argparse.Namespace) -> int:
    """Run the HTTP server."""
    from panel_updater.server import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with every subcommand."""
    parser = argparse.ArgumentParser(
        prog="panel-updater",
        description="Panel self-update and rollback orchestrator",
    )
    build_arg_parser(parser)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check-version", help="Check for updates")
    check.add_argument("--json", action="store_true", help="Print the state as JSON")
    check.set_defaults(func=cmd_check_version)

    update = subparsers.add_parser("update", help="Update to the latest code")
    update.set_defaults(func=cmd_update)

    list_backups = subparsers.add_parser("list-backups", help="List backups")
    list_backups.add_argument("--json", action="store_true", help="Print JSON")
    list_backups.set_defaults(func=cmd_list_backups)

    create = subparsers.add_parser("create-backup", help="Create a backup")
    create.set_defaults(func=cmd_create_backup)

    rollback = subparsers.add_parser("rollback", help="Restore a backup")
    rollback.add_argument("--backup", required=True, help="Backup file name")
    rollback.set_defaults(func=cmd_rollback)

    delete = subparsers.add_parser("delete-backup", help="Delete a backup")
    delete.add_argument("--backup", required=True, help="Backup file name")
    delete.set_defaults(func=cmd_delete_backup)

    serve = subparsers.add_parser("serve", help="Run the HTTP server")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point of the ``panel-updater`` command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(cli_args=cli_overrides(args))
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_INVALID

    setup_logging(config.logging, stream=sys.stderr)

    try:
        return args.func(config, args)
    except UpdaterError as e:
        logger.info("Command failed", extra={"command": args.command, "error": e.to_dict()})
        print(f"Error: {e.message}", file=sys.stderr)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_FAILED
