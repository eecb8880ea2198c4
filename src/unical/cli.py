from __future__ import annotations

from datetime import date, timedelta
import json
import logging
import time

import typer
from rich import print
from sqlmodel import Session

from unical.calendar_service import CalendarSyncService
from unical.config import ConfigurationError, list_settings, upsert_setting
from unical.conflict_service import ConflictNotFoundError, conflict_event_ids
from unical.connections import add_connection, list_connections
from unical.db import get_engine, initialize_database
from unical.models import ConflictStatus, EventSource
from unical.scheduler import SyncInProgressError, SyncScheduler
from unical.sync_runner import SyncRunSummary
from unical.timeutil import TimeRange, day_bounds, now_utc, parse_date_ymd

app = typer.Typer(
    name="unical",
    help="Unified calendar sync and conflict detection.",
    no_args_is_help=True,
)
sync_app = typer.Typer(help="Run sync cycles.")
events_app = typer.Typer(help="Read unified events.")
conflicts_app = typer.Typer(help="Inspect and resolve scheduling conflicts.")
runs_app = typer.Typer(help="Inspect sync run history.")
connection_app = typer.Typer(help="Manage calendar connections.")
config_app = typer.Typer(help="Manage engine settings.")
app.add_typer(sync_app, name="sync")
app.add_typer(events_app, name="events")
app.add_typer(conflicts_app, name="conflicts")
app.add_typer(runs_app, name="runs")
app.add_typer(connection_app, name="connection")
app.add_typer(config_app, name="config")

_SOURCE_HELP = "Source: " + ", ".join(source.value for source in EventSource) + "."


def _parse_date(value: str, option: str) -> date:
    try:
        return parse_date_ymd(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid --{option} format. Expected YYYY-MM-DD.") from exc


def _parse_source(value: str) -> EventSource:
    try:
        return EventSource(value.strip())
    except ValueError as exc:
        raise typer.BadParameter(f"Unknown source: {value}. {_SOURCE_HELP}") from exc


def _build_service() -> CalendarSyncService:
    engine = get_engine(ensure_directory=True)
    try:
        return CalendarSyncService.from_engine(engine)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _print_summary(summary: SyncRunSummary) -> None:
    colour = {"success": "green", "partial": "yellow", "failed": "red"}[summary.status.value]
    print(
        f"[{colour}]Sync run {summary.run_id} {summary.status.value}.[/{colour}] "
        f"conflicts_found={summary.conflicts_found} elapsed_sec={summary.elapsed_sec:.2f}"
    )
    for source, outcome in sorted(summary.per_source.items(), key=lambda item: item[0].value):
        line = (
            f"  {source.value}: {outcome.status.value} fetched={outcome.events_fetched} "
            f"upserted={outcome.events_upserted} removed={outcome.events_removed} "
            f"normalization_errors={outcome.normalization_errors}"
        )
        if outcome.error:
            line += f" error={outcome.error}"
        typer.echo(line)


@app.callback()
def root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync activity to stderr."),
) -> None:
    """Unified calendar sync entrypoint."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def init() -> None:
    """Initialize DB, run migrations, and seed default settings."""
    db_path = initialize_database()
    print(f"[green]Initialized database:[/green] {db_path}")


@sync_app.command("run")
def sync_run(
    sources: list[str] = typer.Option(None, "--source", help=f"Limit to a source (repeatable). {_SOURCE_HELP}"),
    owners: list[str] = typer.Option(None, "--owner", help="Limit to an owner id (repeatable)."),
) -> None:
    """Run one sync cycle now."""
    scoped_sources = [_parse_source(value) for value in sources or []]
    service = _build_service()
    try:
        summary = service.run_sync(sources=scoped_sources or None, owner_ids=owners or None)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except SyncInProgressError as exc:
        print(f"[red]Sync not started:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    _print_summary(summary)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


@sync_app.command("daemon")
def sync_daemon(
    interval: int | None = typer.Option(None, "--interval", help="Seconds between cycles (default: sync_interval_sec)."),
    run_immediately: bool = typer.Option(True, "--run-immediately/--wait-first", help="Run a cycle on start."),
) -> None:
    """Run periodic sync cycles until interrupted."""
    if interval is not None and interval < 1:
        raise typer.BadParameter("--interval must be >= 1.")
    service = _build_service()
    service.scheduler = SyncScheduler(service.orchestrator, interval_sec=interval)
    service.start_scheduler(run_immediately=run_immediately)
    print(f"[green]Sync daemon started.[/green] interval_sec={service.scheduler.interval_sec}")
    try:
        while service.scheduler.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop_scheduler(timeout=5.0)
    print(f"Sync daemon stopped. skipped_ticks={service.scheduler.skipped_ticks}")


@sync_app.command("status")
def sync_status(
    owner: str | None = typer.Option(None, "--owner", help="Owner id."),
) -> None:
    """Show the latest outcome per owner and source."""
    service = _build_service()
    statuses = service.source_statuses(owner)
    if not statuses:
        typer.echo("No sync status recorded.")
        return
    for row in statuses:
        line = f"{row.owner_id} {row.source} {row.status} events={row.events_synced} at={row.last_sync_at}"
        if row.error_message:
            line += f" error={row.error_message}"
        typer.echo(line)


@events_app.command("list")
def events_list(
    owner: str = typer.Option(..., "--owner", help="Owner id."),
    from_value: str | None = typer.Option(None, "--from", help="First day YYYY-MM-DD (UTC, default today)."),
    to_value: str | None = typer.Option(None, "--to", help="Last day YYYY-MM-DD (UTC, default from + 6 days)."),
) -> None:
    """List live events for an owner, ordered by start."""
    first_day = _parse_date(from_value, "from") if from_value else now_utc().date()
    last_day = _parse_date(to_value, "to") if to_value else first_day + timedelta(days=6)
    if last_day < first_day:
        raise typer.BadParameter("--to must not be earlier than --from.")

    window = TimeRange(start=day_bounds(first_day)[0], end=day_bounds(last_day)[1])
    events = _build_service().list_events(owner, window)
    if not events:
        typer.echo("No events.")
        return
    for event in events:
        marker = " all-day" if event.all_day else ""
        typer.echo(
            f"{event.start_time}..{event.end_time} [{event.source}] {event.title or '(untitled)'}"
            f"{marker} status={event.sync_status} id={event.id}"
        )


@conflicts_app.command("list")
def conflicts_list(
    owner: str = typer.Option(..., "--owner", help="Owner id."),
    status: str | None = typer.Option(None, "--status", help="open or resolved."),
    include_inactive: bool = typer.Option(False, "--all", help="Include superseded or dissolved conflicts."),
) -> None:
    """List conflicts for an owner."""
    status_filter: ConflictStatus | None = None
    if status is not None:
        try:
            status_filter = ConflictStatus(status.strip().lower())
        except ValueError as exc:
            raise typer.BadParameter("Invalid --status. Expected open or resolved.") from exc

    conflicts = _build_service().list_conflicts(owner, status_filter, include_inactive=include_inactive)
    if not conflicts:
        typer.echo("No conflicts.")
        return
    for conflict in conflicts:
        inactive = "" if conflict.is_active else " inactive"
        typer.echo(
            f"{conflict.id} {conflict.status}{inactive} type={conflict.type} severity={conflict.severity} "
            f"{conflict.window_start}..{conflict.window_end} events={','.join(conflict_event_ids(conflict))}"
        )


@conflicts_app.command("show")
def conflicts_show(conflict_id: str) -> None:
    """Show a conflict and its member events."""
    try:
        conflict, events = _build_service().conflict_events(conflict_id.strip())
    except ConflictNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc

    inactive = "" if conflict.is_active else " inactive"
    print(
        f"[bold]{conflict.id}[/bold] {conflict.status}{inactive} type={conflict.type} "
        f"severity={conflict.severity} owner={conflict.owner_id}"
    )
    for event in events:
        removed = " removed" if event.is_deleted else ""
        typer.echo(
            f"  {event.start_time}..{event.end_time} [{event.source}] {event.title or '(untitled)'}{removed}"
        )


@conflicts_app.command("resolve")
def conflicts_resolve(
    conflict_id: str,
    resolved_by: str | None = typer.Option(None, "--by", help="Who resolved the conflict."),
) -> None:
    """Mark a conflict resolved."""
    try:
        conflict = _build_service().resolve_conflict(conflict_id.strip(), resolved_by=resolved_by)
    except ConflictNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    print(f"[green]Resolved:[/green] {conflict.id} at={conflict.resolved_at}")


@conflicts_app.command("reopen")
def conflicts_reopen(conflict_id: str) -> None:
    """Reopen a resolved conflict."""
    try:
        conflict = _build_service().reopen_conflict(conflict_id.strip())
    except ConflictNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    print(f"[yellow]Reopened:[/yellow] {conflict.id}")


@runs_app.command("list")
def runs_list(
    limit: int = typer.Option(20, "--limit", help="Number of most recent runs."),
) -> None:
    """Show recent sync runs, newest first."""
    try:
        runs = _build_service().list_sync_runs(limit)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if not runs:
        typer.echo("No sync runs.")
        return
    for run in runs:
        typer.echo(
            f"{run.id} {run.status} trigger={run.trigger} started={run.started_at} "
            f"finished={run.finished_at or '-'} conflicts={run.conflicts_found} sources={run.per_source_json}"
        )


@runs_app.command("prune")
def runs_prune(
    older_than_days: int = typer.Option(30, "--older-than-days", help="Delete runs started before this many days ago."),
) -> None:
    """Apply retention to sync run history."""
    if older_than_days < 0:
        raise typer.BadParameter("--older-than-days must be >= 0.")
    deleted = _build_service().prune_sync_runs(now_utc() - timedelta(days=older_than_days))
    print(f"[green]Pruned sync runs:[/green] {deleted}")


@connection_app.command("add")
def connection_add(
    owner: str = typer.Option(..., "--owner", help="Owner id."),
    source: str = typer.Option(..., "--source", help=_SOURCE_HELP),
    name: str | None = typer.Option(None, "--name", help="Display name."),
    config_json: str = typer.Option("{}", "--config", help="Provider settings as a JSON object."),
) -> None:
    """Add or replace the connection for an owner and source."""
    parsed_source = _parse_source(source)
    try:
        provider_config = json.loads(config_json)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter("--config must be valid JSON.") from exc
    if not isinstance(provider_config, dict):
        raise typer.BadParameter("--config must be a JSON object.")

    with Session(get_engine(ensure_directory=True)) as session:
        try:
            connection = add_connection(
                session,
                owner_id=owner,
                source=parsed_source,
                config=provider_config,
                connection_name=name,
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    print(f"[green]Connection saved:[/green] id={connection.id} owner={connection.owner_id} source={connection.source}")


@connection_app.command("list")
def connection_list(
    owner: str | None = typer.Option(None, "--owner", help="Owner id."),
) -> None:
    """List connections; credentials are not printed."""
    with Session(get_engine(ensure_directory=True)) as session:
        connections = list_connections(session, owner)
    if not connections:
        typer.echo("No connections.")
        return
    for connection in connections:
        state = "active" if connection.is_active and connection.sync_enabled else "disabled"
        typer.echo(
            f"{connection.id} {connection.owner_id} {connection.source} {state} "
            f"name={connection.connection_name or '-'} last_sync={connection.last_sync_at or '-'}"
        )


@config_app.command("show")
def config_show() -> None:
    """Print all settings as key=value, sorted by key."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = list_settings(session)

    for setting in settings:
        typer.echo(f"{setting.key}={setting.value}")


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Validate and upsert a setting."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            setting = upsert_setting(session, key=key, value=value)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    typer.echo(f"{setting.key}={setting.value}")
