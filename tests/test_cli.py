from __future__ import annotations

from urllib.error import HTTPError

from sqlmodel import Session, select
from typer.testing import CliRunner

from unical.cli import app
from unical.conflict_service import ConflictDetector
from unical.connectors.base import NormalizedEvent
from unical.db import get_engine
from unical.event_store import EventStore
from unical.models import EventSource, InternalBooking, SyncRun
from unical.timeutil import TimeRange, now_utc


def _init(tmp_path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("UNICAL_DB_PATH", str(tmp_path / "cli.sqlite"))
    runner = CliRunner()
    init_result = runner.invoke(app, ["init"])
    assert init_result.exit_code == 0
    assert "Initialized database" in init_result.output
    return runner


def test_config_show_and_set(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    shown = runner.invoke(app, ["config", "show"])
    assert shown.exit_code == 0
    assert "removal_mode=tombstone" in shown.output
    assert "sync_interval_sec=300" in shown.output

    updated = runner.invoke(app, ["config", "set", "lookahead_days", "14"])
    assert updated.exit_code == 0
    assert "lookahead_days=14" in updated.output

    rejected = runner.invoke(app, ["config", "set", "removal_mode", "archive"])
    assert rejected.exit_code == 2


def test_connection_add_and_list_hide_credentials(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    added = runner.invoke(
        app,
        [
            "connection",
            "add",
            "--owner",
            "U1",
            "--source",
            "providerA",
            "--name",
            "Booking page",
            "--config",
            '{"token": "very-secret", "user_uri": "https://api.test/users/U1"}',
        ],
    )
    assert added.exit_code == 0
    assert "Connection saved" in added.output

    listed = runner.invoke(app, ["connection", "list", "--owner", "U1"])
    assert listed.exit_code == 0
    assert "U1 providerA active name=Booking page" in listed.output
    assert "very-secret" not in listed.output

    assert runner.invoke(app, ["connection", "add", "--owner", "U1", "--source", "outlook"]).exit_code == 2
    assert runner.invoke(app, ["connection", "add", "--owner", "U1", "--source", "providerB", "--config", "[1]"]).exit_code == 2

    missing_token = runner.invoke(app, ["connection", "add", "--owner", "U1", "--source", "providerB"])
    assert missing_token.exit_code == 2
    assert "Provider-B connection needs a token." in missing_token.output
    insecure = runner.invoke(
        app,
        ["connection", "add", "--owner", "U1", "--source", "providerB", "--config", '{"token": "t", "base_url": "http://api.test"}'],
    )
    assert insecure.exit_code == 2
    assert "providerB" not in runner.invoke(app, ["connection", "list", "--owner", "U1"]).output


def test_sync_run_reports_partial_cycle_and_keeps_serving_reads(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)
    assert runner.invoke(app, ["connection", "add", "--owner", "U1", "--source", "internal"]).exit_code == 0
    assert runner.invoke(
        app,
        ["connection", "add", "--owner", "U1", "--source", "providerB", "--config", '{"token": "revoked"}'],
    ).exit_code == 0

    def _unauthorized(request, timeout):
        raise HTTPError(request.full_url, 401, "unauthorized", hdrs=None, fp=None)

    monkeypatch.setattr("unical.connectors.http.urlopen", _unauthorized)

    today = now_utc().date()
    with Session(get_engine(ensure_directory=True)) as session:
        session.add(
            InternalBooking(
                id="booking-1",
                owner_id="U1",
                title="Morning dive",
                operation_date=today.isoformat(),
                start_time="09:00",
                end_time="10:00",
            )
        )
        session.commit()

    result = runner.invoke(app, ["sync", "run"])

    assert result.exit_code == 2
    assert "partial" in result.output
    assert "internal: success fetched=1 upserted=1" in result.output
    assert "providerB: failed" in result.output
    assert "ConnectorAuthError: providerB authentication failed" in result.output
    assert "revoked" not in result.output

    events = runner.invoke(app, ["events", "list", "--owner", "U1", "--from", today.isoformat()])
    assert events.exit_code == 0
    assert "Morning dive" in events.output
    assert "status=synced" in events.output

    status = runner.invoke(app, ["sync", "status", "--owner", "U1"])
    assert status.exit_code == 0
    assert "U1 internal success events=1" in status.output
    assert "U1 providerB failed events=0" in status.output

    runs = runner.invoke(app, ["runs", "list"])
    assert runs.exit_code == 0
    assert "1 partial trigger=manual" in runs.output

    conflicts = runner.invoke(app, ["conflicts", "list", "--owner", "U1"])
    assert conflicts.exit_code == 0
    assert "No conflicts." in conflicts.output


def test_sync_run_rejects_unknown_or_unbound_sources(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    assert runner.invoke(app, ["sync", "run", "--source", "outlook"]).exit_code == 2
    assert runner.invoke(app, ["sync", "run"]).exit_code == 2


def test_conflict_commands_reject_unknown_ids(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    assert runner.invoke(app, ["conflicts", "resolve", "cfl_missing"]).exit_code == 2
    assert runner.invoke(app, ["conflicts", "reopen", "cfl_missing"]).exit_code == 2
    assert runner.invoke(app, ["conflicts", "list", "--owner", "U1", "--status", "closed"]).exit_code == 2


def test_runs_prune_deletes_finished_runs(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)
    assert runner.invoke(app, ["connection", "add", "--owner", "U1", "--source", "internal"]).exit_code == 0
    assert runner.invoke(app, ["sync", "run"]).exit_code == 0

    kept = runner.invoke(app, ["runs", "prune", "--older-than-days", "1"])
    assert kept.exit_code == 0
    assert "Pruned sync runs: 0" in kept.output

    with Session(get_engine(ensure_directory=True)) as session:
        run = session.exec(select(SyncRun)).one()
        run.started_at = "2020-01-01T00:00:00+00:00"
        session.add(run)
        session.commit()

    pruned = runner.invoke(app, ["runs", "prune", "--older-than-days", "1"])
    assert pruned.exit_code == 0
    assert "Pruned sync runs: 1" in pruned.output
    assert "No sync runs." in runner.invoke(app, ["runs", "list"]).output


def test_conflicts_show_lists_member_events_and_type(tmp_path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)
    engine = get_engine(ensure_directory=True)
    store = EventStore(engine)
    start = now_utc().replace(hour=9, minute=0, second=0, microsecond=0)
    end = start.replace(hour=10)
    for source, source_id in ((EventSource.INTERNAL, "op-1"), (EventSource.PROVIDER_A, "cal-1")):
        store.upsert(
            NormalizedEvent(
                source=source,
                source_id=source_id,
                owner_id="U1",
                start_time=start,
                end_time=end,
                title="Hull survey",
            )
        )
    detector = ConflictDetector(engine, store)
    detector.detect("U1", TimeRange(start=start.replace(hour=0), end=start.replace(hour=23)))
    (conflict,) = detector.list_conflicts("U1")

    listed = runner.invoke(app, ["conflicts", "list", "--owner", "U1"])
    assert f"{conflict.id} open type=duplicate severity=high" in listed.output

    shown = runner.invoke(app, ["conflicts", "show", conflict.id])
    assert shown.exit_code == 0
    assert "type=duplicate" in shown.output
    assert "[internal] Hull survey" in shown.output
    assert "[providerA] Hull survey" in shown.output

    store.delete(EventSource.PROVIDER_A, "cal-1")
    assert "[providerA] Hull survey removed" in runner.invoke(app, ["conflicts", "show", conflict.id]).output
    assert runner.invoke(app, ["conflicts", "show", "cfl_missing"]).exit_code == 2
