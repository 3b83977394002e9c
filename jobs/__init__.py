"""Scheduled balance clearing and payout execution with execution tracking."""

from .tracker import JobExecutionTracker
from .clearing import BalanceClearingJob
from .payouts import PayoutExecutionJob
from .scheduler import JobScheduler

__all__ = [
    "JobExecutionTracker",
    "BalanceClearingJob",
    "PayoutExecutionJob",
    "JobScheduler",
]
