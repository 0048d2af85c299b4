"""
Command-line interface for Project Hub.

Commands:
    serve     Run the REST API under uvicorn
    init-db   Create (or recreate) the database schema
    import    Load users/projects/tasks from a YAML file
    users     List users
    remind    Run one due-date reminder sweep
"""

import logging
import os
import sys

import click
import uvicorn

from .database import ProjectDatabase
from .importer import import_from_file
from .models import UserRole
from .monitoring import DUE_REMINDER_WINDOW_DAYS, run_due_reminder_sweep

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.option("--db-path", envvar="DATABASE_PATH", default="project_hub.db", show_default=True,
              help="SQLite database file")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False),
              default="INFO", show_default=True)
@click.pass_context
def main(ctx, db_path, log_level):
    """Project Hub: projects, tasks, calendar and team activity."""
    logging.basicConfig(level=getattr(logging, log_level.upper()))
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["log_level"] = log_level.lower()


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=click.IntRange(1, 65535))
@click.option("--reload", is_flag=True, help="Restart on code changes (development)")
@click.pass_context
def serve(ctx, host, port, reload):
    """Run the REST API."""
    # The app module reads DATABASE_PATH when uvicorn imports it
    os.environ["DATABASE_PATH"] = ctx.obj["db_path"]
    click.echo(f"Project Hub API on http://{host}:{port} (database: {ctx.obj['db_path']})")
    uvicorn.run(
        "project_hub.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=ctx.obj["log_level"],
    )


@main.command("init-db")
@click.option("--fresh", is_flag=True, help="Drop all existing tables first")
@click.pass_context
def init_db(ctx, fresh):
    """Create the database schema."""
    db_path = ctx.obj["db_path"]
    try:
        with ProjectDatabase(db_path) as db:
            if fresh:
                db.initialize_fresh()
    except RuntimeError as e:
        raise click.ClickException(str(e))
    click.echo(f"{'Recreated' if fresh else 'Initialized'} database at {db_path}")


@main.command("import")
@click.argument("yaml_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_command(ctx, yaml_file):
    """Import users, projects and tasks from YAML_FILE."""
    try:
        with ProjectDatabase(ctx.obj["db_path"]) as db:
            stats = import_from_file(db, yaml_file)
    except (ValueError, RuntimeError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Users:    {stats['users_created']} created, {stats['users_updated']} updated")
    click.echo(f"Projects: {stats['projects_created']} created, {stats['projects_updated']} updated")
    click.echo(f"Members:  {stats['members_added']} added")
    click.echo(f"Tasks:    {stats['tasks_created']} created, {stats['tasks_updated']} updated")
    for error in stats["errors"]:
        click.echo(f"  ! {error}", err=True)
    if stats["errors"]:
        sys.exit(1)


@main.command()
@click.option("--role", type=click.Choice([r.value for r in UserRole]), default=None)
@click.pass_context
def users(ctx, role):
    """List users with their project and task counts."""
    with ProjectDatabase(ctx.obj["db_path"]) as db:
        rows = db.list_users(role=role)
    if not rows:
        click.echo("No users found")
        return
    for row in rows:
        click.echo(
            f"{row['id']:>5}  {row['name']:<24} {row['email']:<32} {row['role']:<8} "
            f"projects={row['project_count']} tasks={row['task_count']}"
        )


@main.command()
@click.option("--window-days", default=DUE_REMINDER_WINDOW_DAYS, show_default=True,
              type=click.IntRange(0, None))
@click.pass_context
def remind(ctx, window_days):
    """Send task-due notifications once, outside the API server."""
    with ProjectDatabase(ctx.obj["db_path"]) as db:
        created = run_due_reminder_sweep(db, window_days)
    click.echo(f"Created {len(created)} due-date notifications")


if __name__ == "__main__":
    main()
