"""
Command line entry point for Story Manager.

Runs the MCP server or the HTTP API against one SQLite store and offers a few
maintenance commands. Logging always goes to stderr so the stdio MCP
transport keeps stdout to itself.
"""

import json
import logging
import sys

import click
import uvicorn

from .api import app, connection_manager, set_database
from .config import LOG_LEVELS, Settings, load_settings
from .database import StoryDatabase, StoreError
from .importer import import_project_from_file, load_yaml_file
from .leases import LeaseManager
from .mcp_server import TRANSPORTS, create_mcp_server

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_FILE = "story-manager.yaml"


def open_database(settings: Settings) -> StoryDatabase:
    try:
        return StoryDatabase(
            str(settings.db_path),
            busy_timeout_ms=settings.busy_timeout_ms,
            default_lease_seconds=settings.lease_ttl_seconds,
        )
    except StoreError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--db-path", type=click.Path(dir_okay=False), default=None,
              help="SQLite database file (default: $STORY_MANAGER_DB_PATH or ~/.config/story-manager/db/story_manager.sqlite)")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None,
              help="Logging level (default: $STORY_MANAGER_LOG_LEVEL or INFO)")
@click.pass_context
def main(ctx, db_path, log_level):
    """Concurrent story and task management for multiple agents."""
    try:
        settings = load_settings(db_path=db_path, log_level=log_level)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = settings


@main.command()
@click.option("--transport", type=click.Choice(TRANSPORTS, case_sensitive=False), default="stdio",
              show_default=True, help="MCP transport")
@click.option("--host", default="127.0.0.1", show_default=True, help="Host for sse/http transports")
@click.option("--port", default=8000, type=int, show_default=True, help="Port for sse/http transports")
@click.pass_obj
def serve(settings: Settings, transport, host, port):
    """Run the MCP tool server."""
    db = open_database(settings)
    try:
        server = create_mcp_server(db, connection_manager)
        logger.info(f"Serving {settings.db_path} over {transport}")
        server.start_server_sync(transport=transport, host=host, port=port)
    finally:
        db.close()


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, type=int, show_default=True)
@click.pass_obj
def api(settings: Settings, host, port):
    """Run the HTTP/WebSocket API."""
    db = open_database(settings)
    set_database(db)
    try:
        uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    finally:
        set_database(None)
        db.close()


@main.command("register-project")
@click.argument("config_file", type=click.Path(dir_okay=False), default=DEFAULT_PROJECT_FILE)
@click.pass_obj
def register_project(settings: Settings, config_file):
    """Register the project described by CONFIG_FILE (project_id, name, root_path, config)."""
    try:
        data = load_yaml_file(config_file)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))

    project_id = data.get("project_id")
    name = data.get("name")
    if not project_id or not name:
        raise click.ClickException(f"{config_file} must define 'project_id' and 'name'")
    config = data.get("config") or {}
    if not isinstance(config, dict):
        raise click.ClickException("'config' must be a mapping")

    db = open_database(settings)
    try:
        result = db.register_project(str(project_id), str(name), data.get("root_path"), config)
    finally:
        db.close()
    click.echo(json.dumps(result))


@main.command("import")
@click.argument("file", type=click.Path(dir_okay=False))
@click.pass_obj
def import_command(settings: Settings, file):
    """Import a YAML project description from FILE."""
    db = open_database(settings)
    try:
        stats = import_project_from_file(db, file)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))
    finally:
        db.close()

    click.echo(
        f"Imported {stats['project_id']}: "
        f"{stats['epics_created']} epics created, {stats['epics_updated']} updated; "
        f"{stats['stories_created']} stories created, {stats['stories_updated']} updated; "
        f"{stats['tasks_created']} tasks created"
    )
    for error in stats["errors"]:
        click.echo(f"  error: {error}", err=True)
    if stats["errors"]:
        sys.exit(1)


@main.command()
@click.pass_obj
def sweep(settings: Settings):
    """Remove expired task reservations."""
    db = open_database(settings)
    try:
        count = LeaseManager(db).sweep_expired()
    finally:
        db.close()
    click.echo(f"Swept {count} expired reservations")


if __name__ == "__main__":
    main()
