"""Entry point for the updateguard command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api.server import create_app
from .backups.models import BackupMetadata
from .config import settings
from .errors import RestoreError
from .runtime import UpdateSafetyRuntime, init_update_safety, recover_after_update

console = Console()


def _with_runtime(fn: Callable[[UpdateSafetyRuntime], Awaitable[bool]]) -> bool:
    runtime = init_update_safety(settings)
    try:
        return asyncio.run(fn(runtime))
    finally:
        runtime.close()


def _backup_table(title: str, backups: list[BackupMetadata]) -> Table:
    table = Table(title=title)
    table.add_column("Timestamp")
    table.add_column("Version")
    table.add_column("Size", justify="right")
    table.add_column("Files")
    table.add_column("Notes")
    for b in backups:
        table.add_row(b.timestamp, b.version, f"{b.size:,}", ", ".join(b.files), b.notes or "")
    return table


# ── Commands ─────────────────────────────────────────────────────────────────


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting updateguard API Server", style="bold green"))
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


async def cmd_health(runtime: UpdateSafetyRuntime, quick: bool) -> bool:
    if quick:
        healthy = await runtime.checker.quick_health_check()
        console.print(f"Quick check: {'[green]ok[/green]' if healthy else '[red]failed[/red]'}")
        return healthy

    result = await runtime.checker.run_health_check()
    table = Table(title=f"Health: {result.database_path}")
    table.add_column("Probe")
    table.add_column("Result")
    for probe, passed in vars(result.checks).items():
        table.add_row(probe, "[green]pass[/green]" if passed else "[red]fail[/red]")
    console.print(table)
    for error in result.errors:
        console.print(f"[red]error:[/red] {error}")
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if result.database_size is not None:
        console.print(f"[dim]Database size: {result.database_size:,} bytes[/dim]")
    return result.is_healthy


async def cmd_backup(runtime: UpdateSafetyRuntime, notes: str | None) -> bool:
    with console.status("[bold green]Creating backup..."):
        result = await runtime.store.create_backup(notes)
    if not result.success:
        console.print(Panel(str(result.error), title="Backup failed", style="bold red"))
        return False
    console.print(f"[green]Backup created:[/green] {result.path}")
    return True


async def cmd_list(runtime: UpdateSafetyRuntime, pre_update: bool) -> bool:
    if pre_update:
        console.print(_backup_table("Pre-update backups", await runtime.store.list_pre_update_backups()))
    else:
        console.print(_backup_table("Backups", await runtime.store.list_backups()))
    return True


async def cmd_pre_update(runtime: UpdateSafetyRuntime, version: str) -> bool:
    with console.status(f"[bold green]Backing up before update to {version}..."):
        result = await runtime.coordinator.create_pre_update_backup(version)
    if not result.success:
        console.print(Panel(str(result.error), title="Pre-update backup failed", style="bold red"))
        return False
    console.print(f"[green]Pre-update backup created:[/green] {result.backup_path}")
    return True


async def cmd_gate(runtime: UpdateSafetyRuntime) -> bool:
    ready = await runtime.coordinator.verify_backup_exists()
    if ready:
        console.print("[green]Update may proceed[/green]")
    else:
        console.print("[red]Update blocked: no valid pre-update backup[/red]")
    return ready


async def cmd_verify(runtime: UpdateSafetyRuntime) -> bool:
    ok = await runtime.coordinator.verify_post_update_integrity()
    if ok:
        console.print("[green]Post-update integrity verified[/green]")
    else:
        kind = runtime.coordinator.last_failure
        console.print(f"[red]Post-update verification failed ({kind.value if kind else 'unknown'})[/red]")
    return ok


async def cmd_rollback(runtime: UpdateSafetyRuntime) -> bool:
    with console.status("[bold yellow]Rolling back to the latest pre-update backup..."):
        result = await runtime.coordinator.handle_update_failure()
    if not result.success:
        console.print(Panel(str(result.error), title="Rollback failed", style="bold red"))
        return False
    console.print(f"[green]Database restored from[/green] {result.backup_path}")
    return True


async def cmd_restore(runtime: UpdateSafetyRuntime, timestamp: str | None, file: str | None) -> bool:
    with console.status("[bold yellow]Restoring..."):
        if file:
            result = await runtime.store.restore_from_backup_file(file)
        else:
            result = await runtime.store.restore_backup(timestamp or "")
    if not result.success:
        console.print(Panel(str(result.error), title="Restore failed", style="bold red"))
        return False
    console.print(f"[green]Restored from[/green] {result.path}")
    if result.corrupted_copy:
        console.print(f"[dim]Previous database kept at {result.corrupted_copy}[/dim]")
    return True


async def cmd_prune(runtime: UpdateSafetyRuntime, keep: int | None, pre_update: bool) -> bool:
    if pre_update:
        removed = await runtime.store.clean_old_pre_update_backups(
            keep if keep is not None else runtime.settings.pre_update_keep_count
        )
    else:
        removed = await runtime.store.clean_old_backups(
            keep if keep is not None else runtime.settings.backup_keep_count
        )
    console.print(f"Removed {removed} backup(s)")
    return True


async def cmd_boot(runtime: UpdateSafetyRuntime) -> bool:
    """Post-update verification and recovery, then record this startup."""
    try:
        await recover_after_update(runtime)
    except RestoreError as e:
        console.print(Panel(str(e), title="Update recovery failed", style="bold red"))
        return False
    await runtime.coordinator.record_startup(runtime.settings.app_version)
    console.print("[green]Startup recorded[/green]")
    return True


async def cmd_confirm_startup(runtime: UpdateSafetyRuntime) -> bool:
    result = await runtime.coordinator.record_successful_startup()
    if result is None:
        console.print("[red]Could not record successful startup[/red]")
        return False
    console.print("[green]Crash counter reset[/green]")
    return True


async def cmd_crash_status(runtime: UpdateSafetyRuntime) -> bool:
    history = await runtime.coordinator.crash_status()
    style = "bold red" if history.should_rollback else "bold blue"
    console.print(Panel(
        f"Crash count: {history.crash_count}\nRollback recommended: {history.should_rollback}",
        title="Crash detection",
        style=style,
    ))
    return True


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="updateguard - update safety & recovery")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")

    health = sub.add_parser("health", help="Run a database health check")
    health.add_argument("--quick", action="store_true", help="Connection + integrity only")

    backup = sub.add_parser("backup", help="Create a full backup")
    backup.add_argument("--notes", help="Free-form note stored in the backup metadata")

    list_parser = sub.add_parser("list", help="List backups")
    list_parser.add_argument("--pre-update", action="store_true", help="List pre-update backups")

    pre_update = sub.add_parser("pre-update", help="Back up the database before an update")
    pre_update.add_argument("version", help="Version about to be installed")

    sub.add_parser("gate", help="Check that a valid pre-update backup exists")
    sub.add_parser("verify", help="Verify database integrity after an update")
    sub.add_parser("rollback", help="Restore the latest pre-update backup")
    sub.add_parser("crash-status", help="Show the persisted crash counter")
    sub.add_parser("boot", help="Verify after an update, roll back if needed, record the startup")
    sub.add_parser("confirm-startup", help="Mark the running version as stable")

    restore = sub.add_parser("restore", help="Restore a backup")
    target = restore.add_mutually_exclusive_group(required=True)
    target.add_argument("timestamp", nargs="?", help="Timestamp of a full backup")
    target.add_argument("--file", help="Path to a backup artifact")

    prune = sub.add_parser("prune", help="Apply backup retention")
    prune.add_argument("--keep", type=int, help="Number of backups to keep")
    prune.add_argument("--pre-update", action="store_true", help="Prune pre-update backups")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
        return

    commands: dict[str, Callable[[UpdateSafetyRuntime], Awaitable[bool]]] = {
        "health": lambda rt: cmd_health(rt, args.quick),
        "backup": lambda rt: cmd_backup(rt, args.notes),
        "list": lambda rt: cmd_list(rt, args.pre_update),
        "pre-update": lambda rt: cmd_pre_update(rt, args.version),
        "gate": cmd_gate,
        "verify": cmd_verify,
        "rollback": cmd_rollback,
        "crash-status": cmd_crash_status,
        "boot": cmd_boot,
        "confirm-startup": cmd_confirm_startup,
        "restore": lambda rt: cmd_restore(rt, args.timestamp, args.file),
        "prune": lambda rt: cmd_prune(rt, args.keep, args.pre_update),
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    if not _with_runtime(command):
        sys.exit(1)


if __name__ == "__main__":
    main()
