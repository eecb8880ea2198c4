from __future__ import annotations

import threading
import time

import pytest
from sqlmodel import Session, SQLModel, create_engine

from unical.config import ConfigurationError, EngineConfig
from unical.lease import StoreLease
from unical.models import SyncLease
from unical.scheduler import SyncInProgressError, SyncScheduler
from unical.sync_runner import TRIGGER_MANUAL, TRIGGER_PERIODIC


class FakeOrchestrator:
    def __init__(self, *, block: threading.Event | None = None, error: Exception | None = None) -> None:
        self.config = EngineConfig(sync_interval_sec=60)
        self.block = block
        self.error = error
        self.entered = threading.Event()
        self.calls: list[tuple[object, str]] = []

    def run_cycle(self, scope=None, *, trigger: str):
        self.calls.append((scope, trigger))
        self.entered.set()
        if self.block is not None:
            self.block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return f"summary-{len(self.calls)}"


def _create_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'scheduler.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def _wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_interval_defaults_to_configured_value() -> None:
    assert SyncScheduler(FakeOrchestrator()).interval_sec == 60
    assert SyncScheduler(FakeOrchestrator(), interval_sec=5).interval_sec == 5
    with pytest.raises(ValueError):
        SyncScheduler(FakeOrchestrator(), interval_sec=-1)


def test_tick_runs_a_periodic_cycle() -> None:
    orchestrator = FakeOrchestrator()
    scheduler = SyncScheduler(orchestrator)

    assert scheduler.tick() == "summary-1"
    assert orchestrator.calls == [(None, TRIGGER_PERIODIC)]
    assert scheduler.last_summary == "summary-1"
    assert scheduler.is_busy() is False


def test_overlapping_triggers_are_skipped_or_rejected() -> None:
    release = threading.Event()
    orchestrator = FakeOrchestrator(block=release)
    scheduler = SyncScheduler(orchestrator)

    worker = threading.Thread(target=scheduler.run_now, kwargs={"owner_ids": ["U1"]})
    worker.start()
    try:
        assert orchestrator.entered.wait(timeout=2)
        assert scheduler.is_busy() is True

        assert scheduler.tick() is None
        assert scheduler.tick() is None
        assert scheduler.skipped_ticks == 2
        with pytest.raises(SyncInProgressError):
            scheduler.run_now()
    finally:
        release.set()
        worker.join(timeout=5)

    assert len(orchestrator.calls) == 1
    scope, trigger = orchestrator.calls[0]
    assert trigger == TRIGGER_MANUAL
    assert scope.owner_ids == frozenset({"U1"})
    assert scheduler.is_busy() is False


def test_failing_tick_is_logged_and_releases_the_lock() -> None:
    scheduler = SyncScheduler(FakeOrchestrator(error=ConfigurationError("No calendar connections match the sync scope.")))

    assert scheduler.tick() is None
    assert scheduler.is_busy() is False
    assert scheduler.last_summary is None


def test_run_now_propagates_configuration_errors() -> None:
    scheduler = SyncScheduler(FakeOrchestrator())

    with pytest.raises(ConfigurationError):
        scheduler.run_now(sources=["outlook"])
    assert scheduler.is_busy() is False


def test_start_runs_immediately_and_stop_joins_the_thread() -> None:
    orchestrator = FakeOrchestrator()
    scheduler = SyncScheduler(orchestrator, interval_sec=3600, poll_sec=0.01)

    scheduler.start(run_immediately=True)
    try:
        assert _wait_until(lambda: len(orchestrator.calls) == 1)
        assert scheduler.is_running() is True
        scheduler.start()
    finally:
        scheduler.stop(timeout=2)

    assert scheduler.is_running() is False
    assert orchestrator.calls == [(None, TRIGGER_PERIODIC)]


def test_store_lease_keeps_schedulers_in_other_processes_from_overlapping(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    release = threading.Event()
    daemon_side = FakeOrchestrator(block=release)
    manual_side = FakeOrchestrator()
    daemon = SyncScheduler(daemon_side, lease=StoreLease(engine, ttl_sec=60, holder="daemon"))
    manual = SyncScheduler(manual_side, lease=StoreLease(engine, ttl_sec=60, holder="cli"))

    worker = threading.Thread(target=daemon.tick)
    worker.start()
    try:
        assert daemon_side.entered.wait(timeout=2)
        assert manual.is_busy() is True
        assert manual.tick() is None
        assert manual.skipped_ticks == 1
        with pytest.raises(SyncInProgressError):
            manual.run_now()
    finally:
        release.set()
        worker.join(timeout=5)

    assert manual_side.calls == []
    assert manual.is_busy() is False
    assert manual.run_now() == "summary-1"
    with Session(engine) as session:
        assert session.get(SyncLease, "sync_cycle") is None


def test_expired_lease_is_taken_over_and_only_its_holder_releases_it(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    crashed = StoreLease(engine, ttl_sec=60, holder="crashed")
    survivor = StoreLease(engine, ttl_sec=60, holder="survivor")

    assert crashed.acquire() is True
    assert crashed.acquire() is True
    assert survivor.acquire() is False
    assert survivor.current_holder() == "crashed"

    with Session(engine) as session:
        row = session.get(SyncLease, "sync_cycle")
        row.expires_at = "2020-01-01T00:00:00+00:00"
        session.add(row)
        session.commit()

    assert survivor.current_holder() is None
    assert survivor.acquire() is True
    crashed.release()
    assert survivor.current_holder() == "survivor"
    survivor.release()
    assert survivor.current_holder() is None
