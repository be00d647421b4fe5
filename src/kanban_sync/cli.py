"""
Command line interface for kanban-sync.

    kanban-sync serve [--host --port --db-path --reload]
    kanban-sync seed FILE [--db-path]
    kanban-sync sweep-locks [--db-path]
"""

import asyncio
import logging
import os
import socket
import sys

import click
import uvicorn

from . import __version__
from .config import Settings
from .database import BoardDatabase
from .importer import import_seed_from_file
from .locks import LockManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``host:port`` can be bound right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def print_startup_banner(settings: Settings) -> None:
    click.echo(f"kanban-sync {__version__}")
    click.echo(f"  API:       http://{settings.host}:{settings.port}/api")
    click.echo(f"  WebSocket: ws://{settings.host}:{settings.port}/ws/board?user_id=<id>")
    click.echo(f"  Database:  {settings.database_path}")
    click.echo(f"  Lock TTL:  {settings.lock_ttl_seconds}s (sweep every {settings.lock_sweep_interval_seconds}s)")


@click.group()
@click.version_option(__version__, prog_name="kanban-sync")
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL or INFO)")
@click.pass_context
def main(ctx, log_level):
    """Collaborative kanban board service."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _settings(ctx, **overrides) -> Settings:
    settings = Settings.from_env(log_level=ctx.obj.get("log_level"), **overrides)
    configure_logging(settings.log_level)
    return settings


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to PORT or 8000)")
@click.option("--db-path", default=None, help="SQLite database file (defaults to DATABASE_PATH)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development only)")
@click.pass_context
def serve(ctx, host, port, db_path, reload):
    """Run the API and WebSocket server."""
    settings = _settings(ctx, host=host, port=port, database_path=db_path)

    if not check_port_available(settings.host, settings.port):
        raise click.ClickException(f"Port {settings.port} is already in use on {settings.host}")

    print_startup_banner(settings)
    logger.info(f"Starting server on {settings.host}:{settings.port} (database {settings.database_path})")

    if reload:
        # The reloader imports the app by path, so settings travel through the environment
        os.environ["DATABASE_PATH"] = settings.database_path
        uvicorn.run(
            "kanban_sync.api:app",
            host=settings.host,
            port=settings.port,
            reload=True,
            log_level=settings.log_level.lower()
        )
        return

    from .api import create_app
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--db-path", default=None, help="SQLite database file (defaults to DATABASE_PATH)")
@click.pass_context
def seed(ctx, file, db_path):
    """Import users, boards and tasks from a YAML FILE."""
    settings = _settings(ctx, database_path=db_path)

    with BoardDatabase(settings.database_path) as db:
        try:
            stats = import_seed_from_file(db, file)
        except (ValueError, RuntimeError) as e:
            raise click.ClickException(str(e))

    click.echo(
        f"Users: {stats['users_created']} created, {stats['users_updated']} updated; "
        f"boards: {stats['boards_created']} created, {stats['boards_updated']} updated; "
        f"tasks: {stats['tasks_created']} created, {stats['tasks_updated']} updated"
    )
    for error in stats["errors"]:
        click.echo(f"  error: {error}", err=True)
    if stats["errors"]:
        sys.exit(1)


@main.command("sweep-locks")
@click.option("--db-path", default=None, help="SQLite database file (defaults to DATABASE_PATH)")
@click.pass_context
def sweep_locks(ctx, db_path):
    """Reclaim expired edit locks once and exit."""
    settings = _settings(ctx, database_path=db_path)

    with BoardDatabase(settings.database_path) as db:
        # No server process here, so nobody to notify
        manager = LockManager(db, None, ttl_seconds=settings.lock_ttl_seconds)
        reclaimed = asyncio.run(manager.reclaim_expired())

    click.echo(f"Reclaimed {len(reclaimed)} expired lock(s)")
    for lock in reclaimed:
        click.echo(f"  task {lock['task_id']} (held by {lock['user_name']} since {lock['locked_at']})")


if __name__ == "__main__":
    main()
