"""Typer CLI for Huddle."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    DEFAULTS,
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .lifecycle import refresh_event_statuses, vacuum_database
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import (
    ensure_root_token,
    fetch_root_token,
    init_db,
    rotate_root_token,
    upgrade_database,
)

app = typer.Typer(help="Huddle command-line interface")
config_app = typer.Typer(help="View or update huddle.toml")
app.add_typer(config_app, name="config")


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure the process can write to {settings.database_path} "
            "(run with sudo or adjust file ownership/permissions).",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("admin-token")
def admin_token() -> None:
    """Print the current root admin token."""
    init_db()
    token = fetch_root_token()
    typer.echo(token)


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Rotate the root admin token."""
    try:
        init_db()
        token = rotate_root_token()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the root admin token")
        raise
    typer.echo(token)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    ensure_root_token()
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("refresh-statuses")
def refresh_statuses(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after the refresh completes",
    ),
) -> None:
    """Persist due event status transitions now."""
    init_db()
    stats = refresh_event_statuses()
    typer.echo(f"Status refresh complete: {stats}")
    if vacuum:
        vacuum_database()
        typer.echo("Database vacuum complete.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "huddle.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Huddle on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    profiles: int = typer.Option(
        settings.seed_profiles, "--profiles", min=1, help="Number of profiles to create"
    ),
    sections: int = typer.Option(
        settings.seed_sections, "--sections", min=0, help="Number of sections to create"
    ),
    events: int = typer.Option(
        settings.seed_events_per_section,
        "--events",
        min=1,
        help="Maximum events to create in each section",
    ),
    rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
    private_percent: int = typer.Option(
        settings.seed_private_percent,
        "--private-percent",
        min=0,
        max=100,
        help="Percentage of events that should be private (0-100)",
    ),
):
    """Populate the database with fake profiles, sections, and events."""
    stats = seed_fake_data(
        profile_count=profiles,
        section_count=sections,
        max_events_per_section=events,
        max_rsvps_per_event=rsvps,
        private_percentage=private_percent,
    )
    typer.echo(
        f"Seed complete: {stats['profiles']} profiles, {stats['sections']} sections, "
        f"{stats['events']} events, {stats['rsvps']} RSVPs, "
        f"{stats['waitlisted']} waitlisted."
    )


@config_app.command("show")
def config_show(
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to huddle.toml (default: ./huddle.toml)"
    ),
) -> None:
    """Show the current effective configuration."""
    target_path = config_path or settings.config_path
    effective = settings_as_dict(load_settings(target_path))
    effective["config_path"] = str(target_path)
    typer.echo(json.dumps(effective, indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Configuration key, e.g. events_per_page"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to huddle.toml (default: ./huddle.toml)"
    ),
) -> None:
    """Persist one configuration value to huddle.toml."""
    target_path = config_path or settings.config_path
    try:
        updated = update_config_file({key: value}, path=target_path)
    except KeyError:
        typer.secho(
            f"Unknown setting {key!r}. Known keys: {', '.join(sorted(DEFAULTS))}",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.secho(f"Invalid value for {key}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Updated configuration in {target_path}")
    typer.echo(f"{key} = {getattr(updated, key)!r}")


if __name__ == "__main__":
    app()
