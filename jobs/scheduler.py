import logging
import threading
from datetime import datetime
from typing import Optional

from ledger.clock import Clock, SystemClock

from .base import BatchJob
from .schedule import CronSpec, next_run_after, parse_cron

logger = logging.getLogger(__name__)


class JobScheduler:
    """
    In-process polling scheduler.

    `tick()` runs every job whose cron time has passed and is public so tests
    can drive it with a manual clock. `start()` / `stop()` run ticks on a
    background thread.
    """

    def __init__(self, jobs: list[BatchJob], clock: Optional[Clock] = None, tick_seconds: float = 30.0):
        self.clock = clock or SystemClock()
        self.tick_seconds = tick_seconds
        self._jobs: dict[str, BatchJob] = {}
        self._specs: dict[str, CronSpec] = {}
        self._next_runs: dict[str, datetime] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        for job in jobs:
            self.add_job(job)

    def add_job(self, job: BatchJob) -> None:
        spec = parse_cron(job.schedule)
        self._jobs[job.name] = job
        self._specs[job.name] = spec
        self._schedule_next(job, self.clock.now())

    def get_job(self, name: str) -> Optional[BatchJob]:
        return self._jobs.get(name)

    def next_run(self, name: str) -> Optional[datetime]:
        return self._next_runs.get(name)

    def tick(self) -> int:
        now = self.clock.now()
        fired = 0
        for name, job in self._jobs.items():
            if self._stop_event.is_set():
                break
            if now < self._next_runs[name]:
                continue
            try:
                job.run()
                fired += 1
            except Exception:
                logger.exception(f"Scheduled run of {name} failed")
            self._schedule_next(job, now)
        return fired

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="job-scheduler", daemon=True)
        self._thread.start()
        logger.info("Job scheduler started", extra={"tick_seconds": self.tick_seconds, "jobs": list(self._jobs)})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Job scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self.tick_seconds)

    def _schedule_next(self, job: BatchJob, after: datetime) -> None:
        next_time = next_run_after(self._specs[job.name], after)
        self._next_runs[job.name] = next_time
        job.tracker.set_next_execution_time(job.name, next_time)
