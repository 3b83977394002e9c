"""
Unit Tests for the Job Execution Tracker
"""

import pytest
from datetime import timedelta

from jobs.tracker import ExecutionStatus, JobExecutionTracker
from ledger.errors import JobNotFoundError


@pytest.fixture
def tracker(clock):
    tracker = JobExecutionTracker(clock, history_size=3)
    tracker.register_job("balance-clearing", "0 0 * * *")
    return tracker


class TestExecutionRecording:
    """Tests for recording runs."""

    def test_complete_execution_updates_statistics(self, tracker, clock):
        """A completed run lands in history and rolls into the totals."""
        tracker.start_execution("balance-clearing")
        clock.advance(seconds=4)
        record = tracker.complete_execution("balance-clearing", total_processed=4, success_count=3, failure_count=1)

        stats = tracker.get_job_stats("balance-clearing")
        assert record.status == ExecutionStatus.COMPLETED
        assert record.duration_seconds == 4.0
        assert stats.statistics.total_executions == 1
        assert stats.statistics.total_processed == 4
        assert stats.statistics.success_rate == 75.0
        assert stats.statistics.average_duration_seconds == 4.0

    def test_failed_execution_counts_as_one_failure(self, tracker):
        """A run that blew up is one failure with the error attached."""
        tracker.start_execution("balance-clearing")
        record = tracker.fail_execution("balance-clearing", "database unreachable")

        assert record.status == ExecutionStatus.FAILED
        assert record.failure_count == 1
        assert record.errors[0].error == "database unreachable"
        assert tracker.get_job_stats("balance-clearing").statistics.total_failed == 1

    def test_history_is_capped_newest_first(self, tracker, clock):
        """Only the most recent executions are kept."""
        for processed in range(5):
            tracker.start_execution("balance-clearing")
            tracker.complete_execution("balance-clearing", processed, processed, 0)
            clock.advance(minutes=1)

        recent = tracker.get_recent_executions("balance-clearing", limit=10)
        assert [r.total_processed for r in recent] == [4, 3, 2]

    def test_unknown_job_is_reported(self, tracker):
        with pytest.raises(JobNotFoundError):
            tracker.start_execution("nope")


class TestQueries:
    """Tests for summaries and administration."""

    def test_summary_only_counts_recent_runs(self, tracker, clock):
        """The time-windowed summary ignores runs older than the window."""
        tracker.start_execution("balance-clearing")
        tracker.complete_execution("balance-clearing", 10, 10, 0)
        clock.advance(hours=30)
        tracker.start_execution("balance-clearing")
        tracker.complete_execution("balance-clearing", 2, 1, 1)

        summary = tracker.get_execution_summary("balance-clearing", hours=24)

        assert summary.total_executions == 1
        assert summary.total_processed == 2
        assert summary.success_rate == 50.0

    def test_status_next_run_and_reset(self, tracker, clock):
        """Jobs can be disabled, carry their next run time and have history cleared."""
        next_run = clock.now() + timedelta(hours=12)
        tracker.set_next_execution_time("balance-clearing", next_run)
        tracker.set_job_status("balance-clearing", False)
        tracker.start_execution("balance-clearing")
        tracker.complete_execution("balance-clearing", 1, 1, 0)

        tracker.clear_job_history("balance-clearing")

        stats = tracker.get_job_stats("balance-clearing")
        assert not tracker.is_active("balance-clearing")
        assert stats.executions == []
        assert stats.statistics.total_executions == 0
        assert stats.statistics.next_execution_time == next_run

    def test_dashboard(self, tracker):
        tracker.register_job("payout-execution", "0 * * * *")
        tracker.set_job_status("payout-execution", False)
        tracker.start_execution("balance-clearing")

        dashboard = tracker.get_dashboard()

        assert dashboard.total_jobs == 2
        assert dashboard.active_jobs == 1
        assert dashboard.running_jobs == 1
        assert {s.job_name for s in dashboard.summaries} == {"balance-clearing", "payout-execution"}

    def test_returned_stats_are_copies(self, tracker):
        """Callers cannot change tracker state through returned objects."""
        stats = tracker.get_job_stats("balance-clearing")
        stats.is_active = False

        assert tracker.is_active("balance-clearing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
