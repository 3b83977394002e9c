import logging
from datetime import datetime
from typing import Callable, Optional

from ledger.clock import Clock
from ledger.errors import InvalidPayoutStateError, PayoutNotDueError
from payouts.engine import PayoutEngine
from payouts.models import Payout, PayoutStatus
from payouts.processor import ProcessorUnavailableError

from .base import BatchJob, ItemFailed, SkipItem
from .tracker import JobExecutionTracker

logger = logging.getLogger(__name__)


class PayoutExecutionJob(BatchJob):
    """Executes every pending payout whose scheduled date has arrived, one at a time."""

    name = "payout-execution"

    def __init__(
        self,
        engine: PayoutEngine,
        tracker: JobExecutionTracker,
        schedule: str = "0 * * * *",
        delay_seconds: float = 1.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(tracker, schedule, clock or engine.clock, sleep)
        self.engine = engine
        self.item_delay_seconds = delay_seconds

    def prepare_items(self, now: datetime) -> list[Payout]:
        return self.engine.due_payouts(now)

    def item_key(self, payout: Payout) -> str:
        return payout.payout_number

    def execute_item(self, payout: Payout, now: datetime) -> None:
        if not self.engine.breaker.allow_request():
            raise SkipItem("payment processor circuit is open")
        try:
            result = self.engine.execute_payout(payout.id)
        except ProcessorUnavailableError as e:
            raise SkipItem(str(e)) from e
        except (InvalidPayoutStateError, PayoutNotDueError) as e:
            # Cancelled or picked up elsewhere since the due list was read.
            raise SkipItem(str(e)) from e

        if result.status == PayoutStatus.FAILED:
            raise ItemFailed(result.failure_reason or "transfer failed")
