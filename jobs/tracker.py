"""
Execution bookkeeping for scheduled jobs.

Statistics are process-local and observational only; they are never used to
decide whether money moves. One tracker instance is created by the
application and handed to every job that reports into it.
"""
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ledger.clock import Clock, SystemClock
from ledger.errors import JobNotFoundError


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionError(BaseModel):
    id: str
    error: str


class ExecutionRecord(BaseModel):
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: list[ExecutionError] = Field(default_factory=list)


class JobStatistics(BaseModel):
    total_executions: int = 0
    total_processed: int = 0
    total_successful: int = 0
    total_failed: int = 0
    average_duration_seconds: float = 0.0
    success_rate: float = 100.0
    last_execution_time: Optional[datetime] = None
    next_execution_time: Optional[datetime] = None


class JobStats(BaseModel):
    job_name: str
    schedule: str
    is_active: bool = True
    last_execution: Optional[ExecutionRecord] = None
    executions: list[ExecutionRecord] = Field(default_factory=list)
    statistics: JobStatistics = Field(default_factory=JobStatistics)


class ExecutionSummary(BaseModel):
    job_name: str
    period_hours: int
    total_executions: int
    total_processed: int
    success_count: int
    failure_count: int
    average_duration_seconds: float
    success_rate: float


class TrackerDashboard(BaseModel):
    generated_at: datetime
    total_jobs: int
    active_jobs: int
    running_jobs: int
    jobs: list[JobStats]
    summaries: list[ExecutionSummary]


class JobExecutionTracker:
    def __init__(self, clock: Optional[Clock] = None, history_size: int = 50):
        self.clock = clock or SystemClock()
        self.history_size = history_size
        self._jobs: dict[str, JobStats] = {}
        self._lock = threading.Lock()

    def register_job(self, job_name: str, schedule: str) -> None:
        with self._lock:
            if job_name not in self._jobs:
                self._jobs[job_name] = JobStats(job_name=job_name, schedule=schedule)

    def start_execution(self, job_name: str) -> ExecutionRecord:
        with self._lock:
            job = self._get(job_name)
            job.last_execution = ExecutionRecord(start_time=self.clock.now())
            return job.last_execution.model_copy()

    def complete_execution(
        self,
        job_name: str,
        total_processed: int,
        success_count: int,
        failure_count: int,
        errors: Optional[list[dict]] = None,
    ) -> ExecutionRecord:
        with self._lock:
            record = self._finish(job_name, ExecutionStatus.COMPLETED)
            record.total_processed = total_processed
            record.success_count = success_count
            record.failure_count = failure_count
            record.errors = [ExecutionError(**e) for e in errors or []]
            return self._archive(job_name, record)

    def fail_execution(self, job_name: str, error: str) -> ExecutionRecord:
        """The run itself blew up; it counts as a single failure."""
        with self._lock:
            record = self._finish(job_name, ExecutionStatus.FAILED)
            record.total_processed = 0
            record.success_count = 0
            record.failure_count = 1
            record.errors = [ExecutionError(id="job-execution", error=error)]
            return self._archive(job_name, record)

    def set_next_execution_time(self, job_name: str, next_time: Optional[datetime]) -> None:
        with self._lock:
            self._get(job_name).statistics.next_execution_time = next_time

    def set_job_status(self, job_name: str, is_active: bool) -> None:
        with self._lock:
            self._get(job_name).is_active = is_active

    def is_active(self, job_name: str) -> bool:
        with self._lock:
            return self._get(job_name).is_active

    def get_job_stats(self, job_name: str) -> JobStats:
        with self._lock:
            return self._get(job_name).model_copy(deep=True)

    def get_all_job_stats(self) -> list[JobStats]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def get_recent_executions(self, job_name: str, limit: int = 10) -> list[ExecutionRecord]:
        with self._lock:
            return [r.model_copy() for r in self._get(job_name).executions[:limit]]

    def get_execution_summary(self, job_name: str, hours: int = 24) -> ExecutionSummary:
        cutoff = self.clock.now() - timedelta(hours=hours)
        with self._lock:
            recent = [r for r in self._get(job_name).executions if r.start_time >= cutoff]
        processed = sum(r.total_processed for r in recent)
        successes = sum(r.success_count for r in recent)
        durations = [r.duration_seconds for r in recent if r.duration_seconds is not None]
        return ExecutionSummary(
            job_name=job_name,
            period_hours=hours,
            total_executions=len(recent),
            total_processed=processed,
            success_count=successes,
            failure_count=sum(r.failure_count for r in recent),
            average_duration_seconds=sum(durations) / len(durations) if durations else 0.0,
            success_rate=successes / processed * 100 if processed else 0.0,
        )

    def get_dashboard(self, hours: int = 24) -> TrackerDashboard:
        jobs = self.get_all_job_stats()
        return TrackerDashboard(
            generated_at=self.clock.now(),
            total_jobs=len(jobs),
            active_jobs=sum(1 for j in jobs if j.is_active),
            running_jobs=sum(
                1 for j in jobs if j.last_execution and j.last_execution.status == ExecutionStatus.RUNNING
            ),
            jobs=jobs,
            summaries=[self.get_execution_summary(j.job_name, hours) for j in jobs],
        )

    def clear_job_history(self, job_name: str) -> None:
        with self._lock:
            job = self._get(job_name)
            job.executions = []
            job.last_execution = None
            job.statistics = JobStatistics(next_execution_time=job.statistics.next_execution_time)

    def _get(self, job_name: str) -> JobStats:
        job = self._jobs.get(job_name)
        if job is None:
            raise JobNotFoundError(f"Job '{job_name}' is not registered")
        return job

    def _finish(self, job_name: str, status: ExecutionStatus) -> ExecutionRecord:
        job = self._get(job_name)
        record = job.last_execution or ExecutionRecord(start_time=self.clock.now())
        record.end_time = self.clock.now()
        record.duration_seconds = (record.end_time - record.start_time).total_seconds()
        record.status = status
        return record

    def _archive(self, job_name: str, record: ExecutionRecord) -> ExecutionRecord:
        job = self._jobs[job_name]
        job.last_execution = record
        job.executions.insert(0, record)
        del job.executions[self.history_size:]
        self._update_statistics(job)
        return record.model_copy()

    def _update_statistics(self, job: JobStats) -> None:
        stats = job.statistics
        stats.total_executions = len(job.executions)
        stats.total_processed = sum(r.total_processed for r in job.executions)
        stats.total_successful = sum(r.success_count for r in job.executions)
        stats.total_failed = sum(r.failure_count for r in job.executions)
        durations = [r.duration_seconds for r in job.executions if r.duration_seconds is not None]
        if durations:
            stats.average_duration_seconds = sum(durations) / len(durations)
        if stats.total_processed > 0:
            stats.success_rate = stats.total_successful / stats.total_processed * 100
        if job.executions:
            stats.last_execution_time = job.executions[0].start_time
