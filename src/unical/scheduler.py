"""
Background trigger for sync cycles: a periodic ``schedule`` job plus on-demand runs.
"""
from __future__ import annotations

from collections.abc import Iterable
import logging
import threading
import time

import schedule

from unical.lease import StoreLease
from unical.models import EventSource
from unical.sync_runner import TRIGGER_MANUAL, TRIGGER_PERIODIC, RunScope, SyncOrchestrator, SyncRunSummary

logger = logging.getLogger(__name__)

DEFAULT_POLL_SEC = 1.0


class SyncInProgressError(RuntimeError):
    """Raised when an on-demand sync is requested while a cycle is running."""


class SyncScheduler:
    """Runs the orchestrator every ``interval_sec`` on a daemon thread.

    One global run-lock covers periodic and on-demand cycles. A periodic tick
    that finds the lock taken is skipped, not queued. With a ``lease`` the
    lock also spans processes sharing the store, so a manual ``sync run``
    never overlaps a daemon cycle.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_sec: int | None = None,
        poll_sec: float = DEFAULT_POLL_SEC,
        lease: StoreLease | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.lease = lease
        self.interval_sec = interval_sec or orchestrator.config.sync_interval_sec
        if self.interval_sec < 1:
            raise ValueError("interval_sec must be >= 1.")
        self.poll_sec = poll_sec
        self.skipped_ticks = 0
        self.last_summary: SyncRunSummary | None = None

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._scheduler = schedule.Scheduler()
        self._thread: threading.Thread | None = None

    def start(self, *, run_immediately: bool = False) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.info("sync_scheduler_already_running")
                return
            self._stop_event.clear()
            self._scheduler.clear()
            self._scheduler.every(self.interval_sec).seconds.do(self.tick)
            self._thread = threading.Thread(
                target=self._run_loop,
                kwargs={"run_immediately": run_immediately},
                name="unical-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info("sync_scheduler_started interval_sec=%s", self.interval_sec)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        with self._state_lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._scheduler.clear()
        logger.info("sync_scheduler_stopped skipped_ticks=%s", self.skipped_ticks)

    def is_running(self) -> bool:
        with self._state_lock:
            return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def is_busy(self) -> bool:
        if self._run_lock.locked():
            return True
        return self.lease is not None and self.lease.current_holder() is not None

    def _acquire_run(self, *, blocking: bool) -> bool:
        if not self._run_lock.acquire(blocking=blocking):
            return False
        if self.lease is None:
            return True
        try:
            while not self.lease.acquire():
                if not blocking:
                    self._run_lock.release()
                    return False
                time.sleep(self.poll_sec)
        except Exception:
            self._run_lock.release()
            raise
        return True

    def _release_run(self) -> None:
        try:
            if self.lease is not None:
                self.lease.release()
        finally:
            self._run_lock.release()

    def tick(self) -> SyncRunSummary | None:
        """Periodic job body; never raises so the loop survives failing cycles."""
        try:
            acquired = self._acquire_run(blocking=False)
        except Exception as exc:
            logger.error("sync_tick_failed error_type=%s", exc.__class__.__name__)
            return None
        if not acquired:
            with self._state_lock:
                self.skipped_ticks += 1
                skipped = self.skipped_ticks
            logger.warning("sync_tick_skipped reason=cycle_in_progress skipped_ticks=%s", skipped)
            return None

        try:
            summary = self.orchestrator.run_cycle(trigger=TRIGGER_PERIODIC)
        except Exception as exc:
            logger.error("sync_tick_failed error_type=%s", exc.__class__.__name__)
            return None
        finally:
            self._release_run()

        self.last_summary = summary
        return summary

    def run_now(
        self,
        sources: Iterable[EventSource | str] | None = None,
        owner_ids: Iterable[str] | None = None,
        *,
        wait: bool = False,
    ) -> SyncRunSummary:
        scope = RunScope.build(sources=sources, owner_ids=owner_ids)
        if not self._acquire_run(blocking=wait):
            raise SyncInProgressError("A sync cycle is already running.")
        try:
            summary = self.orchestrator.run_cycle(scope, trigger=TRIGGER_MANUAL)
        finally:
            self._release_run()
        self.last_summary = summary
        return summary

    def _run_loop(self, *, run_immediately: bool) -> None:
        if run_immediately:
            self.tick()
        while not self._stop_event.is_set():
            self._scheduler.run_pending()
            self._stop_event.wait(self.poll_sec)
        logger.info("sync_scheduler_loop_exited")
