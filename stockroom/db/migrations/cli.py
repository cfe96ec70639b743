"""CLI for database migrations.

Usage:
    stockroom-migrate up [--dry-run]
    stockroom-migrate status
    stockroom-migrate down "Add Product Analytics Fields"
    stockroom-migrate reset --yes
    stockroom-migrate create "Add supplier index" -d "Index products by supplier"
    stockroom-migrate validate

Also runnable as ``python -m stockroom.db.migrations``.
"""

import argparse
import asyncio
import logging
import sys
from textwrap import dedent
from typing import Optional

from rich.console import Console
from rich.table import Table

from ..config import is_surrealdb_enabled, require_db
from ..connection import close_all_pools
from .base import MigrationError, MigrationStatus, MigrationStatusEntry
from .config import MigrationConfig
from .manager import MigrationManager

logger = logging.getLogger(__name__)

console = Console(highlight=False)

STATUS_STYLES = {
    MigrationStatus.SUCCESS: ("APPLIED", "green"),
    MigrationStatus.FAILED: ("FAILED", "red"),
    MigrationStatus.PENDING: ("PENDING", "yellow"),
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_manager(args: argparse.Namespace) -> MigrationManager:
    return MigrationManager(MigrationConfig(), project_name=args.project)


def render_status_table(entries: list[MigrationStatusEntry]) -> Table:
    table = Table(title="Migration Status")
    table.add_column("Version", style="dim", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status", no_wrap=True)
    table.add_column("Applied At", no_wrap=True)
    table.add_column("Notes")

    for entry in entries:
        label, style = STATUS_STYLES.get(entry.status, (entry.status.value, "white"))
        notes = []
        if entry.orphaned:
            notes.append("file missing")
        if entry.checksum_mismatch:
            notes.append("changed since applied")
        if entry.error_message:
            notes.append(f"error: {entry.error_message}")

        table.add_row(
            entry.version,
            entry.name,
            f"[{style}]{label}[/{style}]",
            entry.applied_at.isoformat(timespec="seconds") if entry.applied_at else "-",
            "; ".join(notes),
        )
    return table


async def cmd_up(args: argparse.Namespace) -> int:
    """Apply pending migrations, or list them with --dry-run."""
    manager = build_manager(args)
    await manager.initialize()

    if args.dry_run:
        pending = await manager.get_pending_migrations()
        if not pending:
            console.print("No pending migrations found")
            return 0

        console.print(f"[DRY-RUN] {len(pending)} pending migration(s):", markup=False)
        for index, migration in enumerate(pending, start=1):
            console.print(
                f"{index}. {migration.name} (v{migration.version})", soft_wrap=True, markup=False
            )
            console.print(f"   Description: {migration.description}", soft_wrap=True, markup=False)
        return 0

    results = await manager.migrate()
    if not results:
        console.print("No pending migrations to run")
        return 0

    for result in results:
        if result.success:
            console.print(
                f"  + {result.name} ({result.execution_time_ms}ms)", soft_wrap=True, markup=False
            )
        else:
            console.print(f"  ! {result.name}: {result.error}", soft_wrap=True, markup=False)

    success_count = sum(1 for r in results if r.success)
    console.print(f"Migration completed: {success_count}/{len(results)} successful")
    return 0 if success_count == len(results) else 1


async def cmd_status(args: argparse.Namespace) -> int:
    """Show migration status."""
    manager = build_manager(args)
    entries = await manager.get_status()

    if not entries:
        console.print("No migrations found")
        return 0

    console.print(render_status_table(entries))

    applied = sum(1 for e in entries if e.status == MigrationStatus.SUCCESS)
    failed = sum(1 for e in entries if e.status == MigrationStatus.FAILED)
    pending = len(entries) - applied - failed
    console.print(f"Summary: {applied} applied, {pending} pending, {failed} failed")
    return 0


async def cmd_down(args: argparse.Namespace) -> int:
    """Roll back one migration."""
    manager = build_manager(args)
    result = await manager.rollback(args.name)

    if result.success:
        console.print(f"Rollback completed in {result.execution_time_ms}ms")
        return 0

    console.print(f"Rollback failed: {result.error}", soft_wrap=True, markup=False)
    return 1


async def cmd_reset(args: argparse.Namespace) -> int:
    """Roll back every applied migration, newest first."""
    if not args.yes:
        console.print("WARNING: This will rollback ALL migrations!")
        console.print("This action cannot be undone. Make sure you have a database backup.")
        console.print("Use --yes to confirm.")
        return 0

    manager = build_manager(args)
    results = await manager.reset()

    failed = [r for r in results if not r.success]
    if failed:
        console.print(
            f"Reset stopped at {failed[0].name}: {failed[0].error}", soft_wrap=True, markup=False
        )
        return 1

    console.print(f"All migrations have been reset ({len(results)} rolled back)")
    return 0


async def cmd_create(args: argparse.Namespace) -> int:
    """Create a new migration file."""
    manager = build_manager(args)
    path = await manager.create_migration(args.name, args.description)

    console.print(f"Created migration file: {path}", soft_wrap=True)
    console.print("Edit the file to add your migration logic.")
    return 0


async def cmd_validate(args: argparse.Namespace) -> int:
    """Load every migration and print file checksums."""
    manager = build_manager(args)
    manager.load_definitions()
    files = manager.get_migration_files()

    console.print("Validating migration files...")
    console.print("=" * 60)
    for info in files:
        console.print(info.filename, soft_wrap=True)
        console.print(f"   Version: {info.version}")
        console.print(f"   Name: {info.name}", soft_wrap=True)
        console.print(f"   Checksum: {info.checksum[:16]}...")
        console.print("")

    console.print(f"All {len(files)} migration files are valid")
    return 0


COMMANDS = {
    "up": cmd_up,
    "status": cmd_status,
    "down": cmd_down,
    "reset": cmd_reset,
    "create": cmd_create,
    "validate": cmd_validate,
}

# Commands that work without a database
OFFLINE_COMMANDS = {"create", "validate"}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockroom-migrate",
        description="Document store migration management for Stockroom",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=dedent("""
            Examples:
              stockroom-migrate up --dry-run
              stockroom-migrate status
              stockroom-migrate down "Add Product Analytics Fields"
              stockroom-migrate reset --yes
              stockroom-migrate create "Add supplier index" -d "Index products by supplier"
        """),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "-p", "--project",
        default=None,
        help="Project database (defaults to SURREAL_DATABASE)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    up_parser = subparsers.add_parser("up", help="Run all pending migrations")
    up_parser.add_argument(
        "-d", "--dry-run",
        action="store_true",
        help="Show which migrations would run without executing them",
    )

    subparsers.add_parser("status", help="Show migration status")

    down_parser = subparsers.add_parser("down", help="Rollback a specific migration")
    down_parser.add_argument("name", help="Migration name")

    reset_parser = subparsers.add_parser(
        "reset", help="Rollback all applied migrations, most recent first"
    )
    reset_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Confirm the reset",
    )

    create_cmd = subparsers.add_parser("create", help="Create a new migration file")
    create_cmd.add_argument("name", help='Migration name (e.g. "Add user roles")')
    create_cmd.add_argument(
        "-d", "--description",
        default="Auto-generated migration",
        help="Migration description",
    )

    subparsers.add_parser("validate", help="Validate all migration files")

    return parser


async def async_main(args: argparse.Namespace) -> int:
    """Dispatch a parsed command and map failures to exit codes."""
    needs_db = args.command not in OFFLINE_COMMANDS

    if needs_db:
        if not is_surrealdb_enabled():
            console.print("Error: SurrealDB is disabled (SURREAL_DISABLED=true)")
            return 1
        try:
            require_db()
        except Exception as e:
            console.print(f"Error: {e}", markup=False)
            return 1

    try:
        return await COMMANDS[args.command](args)
    except MigrationError as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"Error: {e}", soft_wrap=True, markup=False)
        return 1
    finally:
        if needs_db:
            await close_all_pools()


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    sys.exit(asyncio.run(async_main(args)))


if __name__ == "__main__":
    main()
