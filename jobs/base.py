import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ledger.clock import Clock, SystemClock

from .tracker import JobExecutionTracker

logger = logging.getLogger(__name__)


class SkipItem(Exception):
    """Raised by a job for an item it deliberately leaves for a later run."""


class ItemFailed(Exception):
    """Raised for an item whose failure was already recorded by the domain."""


class JobRunResult(BaseModel):
    job_name: str
    skipped: bool = False
    skip_reason: Optional[str] = None
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    errors: list[dict] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None


class BatchJob(ABC):
    """
    One scheduled job: collect items, process each in isolation, report.

    A run that starts while the previous one is still going is skipped and
    logged, never queued. A failing item is recorded and the run moves on.
    """

    name: str = "batch-job"
    item_delay_seconds: float = 0.0

    def __init__(
        self,
        tracker: JobExecutionTracker,
        schedule: str,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.tracker = tracker
        self.schedule = schedule
        self.clock = clock or SystemClock()
        self.sleep = sleep or time.sleep
        self._running = threading.Lock()
        self.tracker.register_job(self.name, schedule)

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    @abstractmethod
    def prepare_items(self, now: datetime) -> list:
        ...

    @abstractmethod
    def execute_item(self, item: Any, now: datetime) -> None:
        """Process one item; raise SkipItem or ItemFailed to report anything but success."""
        ...

    def item_key(self, item: Any) -> str:
        return str(item)

    def run(self, force: bool = False) -> JobRunResult:
        started_at = self.clock.now()
        if not force and not self.tracker.is_active(self.name):
            logger.info(f"{self.name} is disabled, skipping run")
            return JobRunResult(job_name=self.name, skipped=True, skip_reason="disabled", started_at=started_at)
        if not self._running.acquire(blocking=False):
            logger.warning(f"{self.name} is already running, skipping this run")
            return JobRunResult(job_name=self.name, skipped=True, skip_reason="already running", started_at=started_at)

        try:
            return self._run(started_at)
        finally:
            self._running.release()

    def _run(self, started_at: datetime) -> JobRunResult:
        self.tracker.start_execution(self.name)
        result = JobRunResult(job_name=self.name, started_at=started_at)
        try:
            items = self.prepare_items(started_at)
        except Exception as e:
            logger.exception(f"{self.name} could not collect its work")
            self.tracker.fail_execution(self.name, str(e))
            raise

        for index, item in enumerate(items):
            if index and self.item_delay_seconds:
                self.sleep(self.item_delay_seconds)
            key = self.item_key(item)
            try:
                self.execute_item(item, self.clock.now())
            except SkipItem as e:
                result.skipped_count += 1
                logger.info(f"{self.name} skipped {key}: {e}")
            except ItemFailed as e:
                result.failure_count += 1
                result.errors.append({"id": key, "error": str(e)})
                logger.warning(f"{self.name} failed on {key}: {e}", extra={"job": self.name, "item": key})
            except Exception as e:
                result.failure_count += 1
                result.errors.append({"id": key, "error": str(e)})
                logger.exception(f"{self.name} failed on {key}", extra={"job": self.name, "item": key})
            else:
                result.success_count += 1

        result.total_processed = result.success_count + result.failure_count
        result.finished_at = self.clock.now()
        self.tracker.complete_execution(
            self.name,
            total_processed=result.total_processed,
            success_count=result.success_count,
            failure_count=result.failure_count,
            errors=result.errors,
        )
        logger.info(
            f"{self.name} finished: {result.success_count} succeeded, {result.failure_count} failed, "
            f"{result.skipped_count} skipped",
            extra={
                "job": self.name,
                "total_processed": result.total_processed,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "skipped_count": result.skipped_count,
            },
        )
        return result
