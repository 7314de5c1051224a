"""
The scheduling loop.

A single loop thread owns every ScheduledEntry. Each firing is handed to its
own daemon worker thread, which executes the job, routes the outcome to the
notifier and posts a completion notice back to the loop. Only the loop
thread reads or writes entry state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from queue import Empty, Queue
from typing import Callable, List, Optional, Sequence

from elastic_cron.config import Job, Settings
from elastic_cron.executor import ExecutionOutcome, execute
from elastic_cron.logs import job_logger
from elastic_cron.notifier import Notifier
from elastic_cron.schedule import Schedule, parse

logger = logging.getLogger(__name__)
UTC = timezone.utc


@dataclass
class ScheduledEntry:
    job: Job
    schedule: Schedule
    next_fire: Optional[datetime] = None
    running: int = 0
    pending: bool = False


class Scheduler:
    def __init__(
        self,
        jobs: Sequence[Job],
        settings: Settings,
        notifier: Optional[Notifier] = None,
        executor: Callable[[Job], ExecutionOutcome] = execute,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.notifier = notifier or Notifier(timeout=settings.ping_timeout)
        self.executor = executor
        self.clock = clock or (lambda: datetime.now(tz=UTC))
        # Raises ScheduleSyntaxError before anything runs.
        self.entries: List[ScheduledEntry] = [
            ScheduledEntry(job=job, schedule=parse(job.schedule, settings.timezone)) for job in jobs
        ]
        self._completions: "Queue[Optional[int]]" = Queue()
        self._stop_event = threading.Event()

    def run(self) -> None:
        """Run the loop until stop() is called."""
        now = self.clock()
        for entry in self.entries:
            entry.next_fire = self._next_fire(entry, now)
        logger.info(
            "Starting scheduler with %s job(s), timezone=%s",
            len(self.entries),
            self.settings.timezone_name,
        )

        while not self._stop_event.is_set():
            now = self.clock()
            for index, entry in enumerate(self.entries):
                if entry.next_fire is not None and entry.next_fire <= now:
                    self._fire(index, entry)
                    entry.next_fire = self._next_fire(entry, now)
            self._wait(self._seconds_until_next(self.clock()))
        logger.info("Scheduler stopped.")

    def stop(self) -> None:
        self._stop_event.set()
        self._completions.put(None)

    def _next_fire(self, entry: ScheduledEntry, after: datetime) -> Optional[datetime]:
        nxt = entry.schedule.next_after(after)
        if nxt is None:
            logger.warning(
                "Job %s has no upcoming firing time for schedule %r; it will not run again.",
                entry.job.name,
                entry.job.schedule,
            )
            return None
        return nxt.astimezone(UTC)

    def _seconds_until_next(self, now: datetime) -> Optional[float]:
        upcoming = [entry.next_fire for entry in self.entries if entry.next_fire is not None]
        if not upcoming:
            return None
        return max((min(upcoming) - now).total_seconds(), 0.0)

    def _wait(self, timeout: Optional[float]) -> None:
        # Completion notices wake the loop early so queued runs start promptly.
        try:
            index = self._completions.get(timeout=timeout)
        except Empty:
            return
        while True:
            if index is not None:
                self._complete(index)
            try:
                index = self._completions.get_nowait()
            except Empty:
                return

    def _fire(self, index: int, entry: ScheduledEntry) -> None:
        job = entry.job
        if entry.running > 0:
            if job.overlap == "skip":
                logger.info("Skipping overlapping run for %s (running=%s)", job.name, entry.running)
                return
            if job.overlap == "queue":
                if not entry.pending:
                    entry.pending = True
                    logger.info("Queueing one pending run for %s", job.name)
                return
            logger.warning(
                "Job %s is still running (running=%s); starting an overlapping invocation.",
                job.name,
                entry.running,
            )
        self._dispatch(index, entry)

    def _dispatch(self, index: int, entry: ScheduledEntry) -> None:
        entry.running += 1
        job = entry.job
        logger.info("Dispatching %s (overlap=%s, running=%s)", job.name, job.overlap, entry.running)

        def worker() -> None:
            try:
                outcome = self.executor(job)
                self.notifier.notify(job, outcome, job_logger(job.name))
            except Exception:  # pragma: no cover - defensive
                logger.exception("Unexpected error while running %s", job.name)
            finally:
                self._completions.put(index)

        thread = threading.Thread(target=worker, daemon=True, name=f"elastic-cron-job-{job.name}")
        thread.start()

    def _complete(self, index: int) -> None:
        entry = self.entries[index]
        entry.running = max(entry.running - 1, 0)
        logger.info("Job %s finished; running=%s", entry.job.name, entry.running)
        if entry.running == 0 and entry.pending:
            entry.pending = False
            logger.info("Starting queued run for %s", entry.job.name)
            self._dispatch(index, entry)
