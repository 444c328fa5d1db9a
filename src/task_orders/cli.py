"""
Command line interface for Task Orders.

Provides database initialization, YAML seeding, a leaderboard printout and
the HTTP API server (uvicorn).
"""

import logging
import socket
import sys

import click
import uvicorn

from .api import create_app
from .config import configure_logging, load_settings
from .database import OrderDatabase
from .exceptions import ConfigError, TaskOrdersError
from .importer import import_seed_from_file
from .service import OrderService

logger = logging.getLogger(__name__)


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='YAML configuration file')
@click.option('--db', 'db_path', help='SQLite database path (overrides config)')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                                               case_sensitive=False),
              help='Log level (overrides config)')
@click.pass_context
def main(ctx, config_path, db_path, log_level):
    """Task Orders: task assignment, solve tracking and user rating."""
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    overrides = {}
    if db_path:
        overrides["database_path"] = db_path
    if log_level:
        overrides["log_level"] = log_level.upper()
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level)
    ctx.obj = settings


@main.command('init-db')
@click.option('--drop', is_flag=True, help='Drop existing tables first')
@click.pass_obj
def init_db(settings, drop):
    """Create the database and apply schema migrations."""
    try:
        with OrderDatabase(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms) as db:
            if drop:
                db.initialize_fresh()
    except TaskOrdersError as e:
        raise click.ClickException(str(e))

    action = "Reinitialized" if drop else "Initialized"
    click.echo(f"{action} database at {settings.database_path}")


@main.command('import')
@click.argument('seed_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_command(settings, seed_file):
    """Import users and tasks from a YAML seed file."""
    try:
        with OrderDatabase(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms) as db:
            stats = import_seed_from_file(db, seed_file)
    except (ValueError, FileNotFoundError, TaskOrdersError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Users created: {stats['users_created']} (existing: {stats['users_existing']})")
    click.echo(f"Tasks created: {stats['tasks_created']} (updated: {stats['tasks_updated']})")
    for error in stats["errors"]:
        click.echo(f"  error: {error}", err=True)
    if stats["errors"]:
        sys.exit(1)


@main.command('top')
@click.option('--limit', type=click.IntRange(1, 100), default=None,
              help='Number of users to show (defaults to leaderboard_size)')
@click.pass_obj
def top(settings, limit):
    """Print the leaderboard."""
    try:
        service = OrderService.from_settings(settings)
    except TaskOrdersError as e:
        raise click.ClickException(str(e))

    try:
        entries = service.top_users(limit)
    except TaskOrdersError as e:
        raise click.ClickException(str(e))
    finally:
        service.close()

    if not entries:
        click.echo("No solved tasks yet.")
        return

    click.echo(f"{'#':>3}  {'login':<20} {'score':>10} {'solved':>7}")
    for position, entry in enumerate(entries, start=1):
        click.echo(f"{position:>3}  {entry.login:<20} {entry.score:>10.4f} {entry.solved_count:>7}")


@main.command('serve')
@click.option('--host', default=None, help='Bind address (overrides config)')
@click.option('--port', type=int, default=None, help='Port (overrides config)')
@click.pass_obj
def serve(settings, host, port):
    """Run the HTTP API with uvicorn."""
    host = host or settings.host
    port = port or settings.port

    if not check_port_available(host, port):
        raise click.ClickException(f"Port {port} on {host} is already in use")

    app = create_app(settings=settings)
    click.echo(f"Serving Task Orders API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == '__main__':
    main()
