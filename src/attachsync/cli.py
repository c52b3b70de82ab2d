"""Command-line interface for attachsync.

Commands:
- serve: Run the HTTP service with the background scheduler
- reconcile: Pull missing attachments of one or more work items
- run-jobs: Drain the sync job queue once
- cleanup-sessions: Purge expired chunked upload sessions
- stats: Show sync statistics
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import click

from attachsync import __version__
from attachsync.core.config import ConfigError, RemoteConfig, SyncSettings
from attachsync.remote.transport import TransportError
from attachsync.server.database import Database
from attachsync.server.storage import create_storage
from attachsync.sync.engine import SyncEngine
from attachsync.sync.types import JobRunStats, SyncError

DEFAULT_DB_PATH = "attachsync.db"

db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: ATTACHSYNC_DB_PATH or ./attachsync.db).",
)


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("ATTACHSYNC_DB_PATH", DEFAULT_DB_PATH))


def _open_existing_db(db_path: str | None) -> Database:
    db_file = _resolve_db_path(db_path)
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the service has been run at least once.", err=True)
        sys.exit(1)
    return Database(db_file)


def _build_engine(db_path: str | None, storage_path: str | None) -> SyncEngine:
    """Create an engine from ATTACHSYNC_* settings."""
    from attachsync.server.app import build_storage_config

    config = build_storage_config()
    if storage_path:
        config = {"type": "local", "local_path": storage_path}
    try:
        remote = RemoteConfig.from_env()
        settings = SyncSettings.from_env()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    db = Database(_resolve_db_path(db_path))
    return SyncEngine.create(db, create_storage(config), remote, settings)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """attachsync - Attachment synchronization with a work-item tracker."""


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", default=8000, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run("attachsync.server.app:app_factory", factory=True, host=host, port=port)


@cli.command()
@click.argument("work_item_ids", nargs=-1, type=int, required=True)
@db_path_option
@click.option(
    "--storage-path",
    type=click.Path(),
    default=None,
    help="Local attachment storage (default: ATTACHSYNC_STORAGE_PATH or ./attachments).",
)
def reconcile(work_item_ids: tuple[int, ...], db_path: str | None, storage_path: str | None) -> None:
    """Pull missing attachments of WORK_ITEM_IDS from the remote service.

    Examples:

        attachsync reconcile 1234

        attachsync reconcile 1234 1235 --db-path /var/lib/attachsync/attachsync.db
    """
    engine = _build_engine(db_path, storage_path)

    async def _run() -> bool:
        ok = True
        try:
            for work_item_id in work_item_ids:
                try:
                    result = await engine.reconcile(work_item_id)
                except (SyncError, TransportError) as e:
                    click.echo(f"Work item {work_item_id}: error: {e}", err=True)
                    ok = False
                    continue
                click.echo(
                    f"Work item {work_item_id}: {len(result.added)} added, "
                    f"{len(result.already_synced)} already synced, "
                    f"{len(result.removed)} removed, {len(result.errors)} failed"
                )
                for error in result.errors:
                    click.echo(f"  {error.attachment_id}: {error.message}", err=True)
                ok = ok and result.success
        finally:
            await engine.aclose()
        return ok

    try:
        ok = asyncio.run(_run())
    finally:
        engine.db.close()
    if not ok:
        sys.exit(1)


@cli.command("run-jobs")
@click.option("--limit", type=int, default=None, help="Maximum jobs to run (default: batch size).")
@db_path_option
@click.option("--storage-path", type=click.Path(), default=None, help="Local attachment storage.")
def run_jobs(limit: int | None, db_path: str | None, storage_path: str | None) -> None:
    """Run queued sync jobs once."""
    engine = _build_engine(db_path, storage_path)

    async def _run() -> JobRunStats:
        try:
            return await engine.run_jobs(limit)
        finally:
            await engine.aclose()

    try:
        stats = asyncio.run(_run())
    finally:
        engine.db.close()
    click.echo(
        f"Processed {stats.processed} jobs: {stats.succeeded} succeeded, "
        f"{stats.requeued} requeued, {stats.failed} failed."
    )
    if stats.failed:
        sys.exit(1)


@cli.command("cleanup-sessions")
@db_path_option
def cleanup_sessions(db_path: str | None) -> None:
    """Purge expired chunked upload sessions."""
    db = _open_existing_db(db_path)
    try:
        deleted = db.cleanup_expired_sessions()
        if deleted > 0:
            click.echo(f"Deleted {deleted} expired upload sessions.")
        else:
            click.echo("No expired upload sessions.")
    finally:
        db.close()


@cli.command()
@db_path_option
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def stats(db_path: str | None, as_json: bool) -> None:
    """Show attachment, job and session statistics."""
    db = _open_existing_db(db_path)
    try:
        data = db.get_sync_stats()
    finally:
        db.close()

    if as_json:
        click.echo(json.dumps(data, indent=2, sort_keys=True))
        return

    attachments = data["attachments"]
    click.echo(f"Attachments:      {attachments['total']} ({attachments['total_size']} bytes)")
    for name, count in sorted(attachments["by_status"].items()):
        click.echo(f"  {name:<15} {count}")
    for name, count in sorted(attachments["by_source"].items()):
        click.echo(f"  from {name:<10} {count}")
    click.echo(f"  deleted         {attachments['deleted']}")
    click.echo(f"Upload sessions:  {data['upload_sessions']}")
    click.echo("Jobs:")
    for name, count in sorted(data["jobs"].items()):
        click.echo(f"  {name:<15} {count}")
    click.echo(f"Error events:     {data['error_events']}")


def main() -> None:
    """Entry point for the CLI."""
    cli()
