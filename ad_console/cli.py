"""Command line interface for the directory administration console."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .ad_client import DirectoryError
from .config import AppConfig, ConfigurationError, load_config
from .container import Services, build_services
from .database import Database
from .models import AuditAction, parse_datetime
from .scheduling import ValidationError
from .worker import run_forever

CLI_ACTOR = "cli"

app = typer.Typer(help="Administer directory accounts and scheduled vacation tasks.")
schedule_app = typer.Typer(help="Schedule, list and remove vacation tasks.")
worker_app = typer.Typer(help="Execute due scheduled tasks.")
audit_app = typer.Typer(help="Inspect the audit trail.")
users_app = typer.Typer(help="Search and manage directory user accounts.")
app.add_typer(schedule_app, name="schedule")
app.add_typer(worker_app, name="worker")
app.add_typer(audit_app, name="audit")
app.add_typer(users_app, name="users")

ConfigOption = typer.Option(
    None, "--config", help="Path to a specific settings file (overrides default)."
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _services(config_path: Optional[Path]) -> Services:
    return build_services(_load_configuration(config_path))


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


# Database ---------------------------------------------------------------
@app.command("init-db")
def init_db(config_path: Optional[Path] = ConfigOption) -> None:
    """Create the database tables if they do not exist yet."""

    config = _load_configuration(config_path)
    db = Database(config.database.url, echo=config.database.echo)
    db.init()
    db.dispose()
    typer.echo(f"Database ready at {config.database.url}")


# Schedule ---------------------------------------------------------------
@schedule_app.command("vacation")
def schedule_vacation(
    user_id: str = typer.Argument(..., help="sAMAccountName of the user going on vacation."),
    start_date: str = typer.Argument(..., help="ISO-8601 start of the vacation."),
    end_date: str = typer.Argument(..., help="ISO-8601 end of the vacation."),
    description: Optional[str] = typer.Option(None, "--description", help="Free-text note."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Disable the account at START_DATE and re-enable it at END_DATE."""

    start = parse_datetime(start_date)
    end = parse_datetime(end_date)
    if start is None or end is None or end <= start:
        _fail("Invalid dates")

    services = _services(config_path)
    details = {"startDate": start_date, "endDate": end_date}
    try:
        vacation_id = services.scheduler.schedule(user_id, start_date, end_date, description)
    except Exception as exc:
        services.audit.log(
            AuditAction.VACATION_SCHEDULE, CLI_ACTOR, user_id, details, success=False, error=str(exc)
        )
        if isinstance(exc, ValidationError):
            _fail(str(exc))
        raise
    services.audit.log(
        AuditAction.VACATION_SCHEDULE,
        CLI_ACTOR,
        user_id,
        {**details, "vacationId": vacation_id},
    )
    typer.echo(f"Scheduled vacation {vacation_id} for {user_id}.")


@schedule_app.command("list")
def list_schedule(config_path: Optional[Path] = ConfigOption) -> None:
    """Display every scheduled task."""

    services = _services(config_path)
    tasks = services.schedule.list()
    if not tasks:
        typer.echo("No scheduled tasks.")
        raise typer.Exit(code=0)

    for task in tasks:
        line = (
            f"- #{task.id} {task.type} {task.status.value} run_at={task.run_at.isoformat()} "
            f"{task.related_table}:{task.related_id}"
        )
        if task.error:
            line += f" error={task.error}"
        typer.echo(line)


@schedule_app.command("remove")
def remove_task(
    task_id: int = typer.Argument(..., help="Identifier of the scheduled task."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Delete a single scheduled task."""

    services = _services(config_path)
    if not services.schedule.remove(task_id):
        _fail(f"Scheduled task {task_id} not found.")
    typer.echo(f"Removed scheduled task {task_id}.")


@schedule_app.command("cancel")
def cancel_vacation(
    vacation_id: int = typer.Argument(..., help="Identifier of the vacation."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Delete a vacation together with its tasks."""

    services = _services(config_path)
    vacation = services.scheduler.get(vacation_id)
    target = vacation.user_id if vacation else None
    try:
        removed = services.scheduler.cancel(vacation_id)
    except Exception as exc:
        services.audit.log(
            AuditAction.VACATION_CANCEL,
            CLI_ACTOR,
            target,
            {"vacationId": vacation_id},
            success=False,
            error=str(exc),
        )
        if isinstance(exc, ValidationError):
            _fail(str(exc))
        raise
    services.audit.log(
        AuditAction.VACATION_CANCEL,
        CLI_ACTOR,
        target,
        {"vacationId": vacation_id, "tasksRemoved": removed},
    )
    typer.echo(f"Cancelled vacation {vacation_id} ({removed} task(s) removed).")


# Worker -----------------------------------------------------------------
@worker_app.command("run-once")
def worker_run_once(
    now: Optional[str] = typer.Option(
        None, "--now", help="Treat this ISO-8601 instant as the current time."
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Execute every task that is due and print a summary."""

    as_of = None
    if now:
        as_of = parse_datetime(now)
        if as_of is None:
            raise typer.BadParameter(f"Invalid timestamp: {now!r}", param_hint="--now")

    services = _services(config_path)
    summary = services.worker.run_once(as_of)
    _echo_json(summary.to_dict())


@worker_app.command("loop")
def worker_loop(
    interval: Optional[int] = typer.Option(
        None, "--interval", min=1, help="Seconds between polls (defaults to configuration)."
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Poll for due tasks until interrupted."""

    services = _services(config_path)
    scheduler = services.config.scheduler
    try:
        run_forever(
            services.worker,
            interval or scheduler.interval_seconds,
            run_on_start=scheduler.run_on_start,
        )
    except KeyboardInterrupt:
        typer.echo("Stopped.")
    finally:
        services.close()


# Audit ------------------------------------------------------------------
@audit_app.command("list")
def list_audit(
    since: Optional[str] = typer.Option(None, "--since", help="Only entries at or after this instant."),
    until: Optional[str] = typer.Option(None, "--until", help="Only entries at or before this instant."),
    action: Optional[AuditAction] = typer.Option(None, "--action", help="Filter by action."),
    actor: Optional[str] = typer.Option(None, "--actor", help="Filter by actor."),
    target: Optional[str] = typer.Option(None, "--target", help="Substring match on target."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum number of entries."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Display audit entries, newest first."""

    bounds = {}
    for name, raw in (("--since", since), ("--until", until)):
        if raw:
            parsed = parse_datetime(raw)
            if parsed is None:
                raise typer.BadParameter(f"Invalid timestamp: {raw!r}", param_hint=name)
            bounds[name] = parsed

    services = _services(config_path)
    entries = services.audit.list(
        since=bounds.get("--since"),
        until=bounds.get("--until"),
        action=action,
        actor=actor,
        target=target,
        limit=limit or services.config.audit.list_limit,
    )
    _echo_json([entry.to_dict() for entry in entries])


# Users ------------------------------------------------------------------
@users_app.command("search")
def search_users(
    query: str = typer.Argument("", help="Name, account or mail fragment."),
    disabled: bool = typer.Option(False, "--disabled", help="Only show disabled accounts."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Search user accounts."""

    services = _services(config_path)
    try:
        users = services.directory.search_users(query, disabled_only=disabled)
    except DirectoryError as exc:
        _fail(str(exc))
    _echo_json(users)


def _user_action(config_path: Optional[Path], verb: str, account: str, **kwargs) -> None:
    services = _services(config_path)
    operation = getattr(services.directory, f"{verb}_user")
    try:
        operation(CLI_ACTOR, account, **kwargs)
    except DirectoryError as exc:
        _fail(str(exc))
    typer.echo(f"{verb.capitalize()}d {account}.")


@users_app.command("disable")
def disable_user(
    account: str = typer.Argument(..., help="sAMAccountName of the user."),
    target_ou: Optional[str] = typer.Option(
        None, "--target-ou", help="Move the account into this OU after disabling."
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Disable a user account."""

    _user_action(config_path, "disable", account, target_ou=target_ou)


@users_app.command("enable")
def enable_user(
    account: str = typer.Argument(..., help="sAMAccountName of the user."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Enable a user account."""

    _user_action(config_path, "enable", account)


@users_app.command("unlock")
def unlock_user(
    account: str = typer.Argument(..., help="sAMAccountName of the user."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Clear the lockout on a user account."""

    services = _services(config_path)
    try:
        services.directory.unlock_user(CLI_ACTOR, account)
    except DirectoryError as exc:
        _fail(str(exc))
    typer.echo(f"Unlocked {account}.")


# Web --------------------------------------------------------------------
@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(5000, "--port", help="Port to listen on."),
    debug: bool = typer.Option(False, "--debug", help="Enable the Flask debugger."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run the JSON API with Flask's development server."""

    from .web import create_app

    flask_app = create_app(config_path)
    flask_app.run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
