import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ledger.clock import Clock
from ledger.service import BalanceService

from .base import BatchJob
from .tracker import JobExecutionTracker

logger = logging.getLogger(__name__)


class BalanceClearingJob(BatchJob):
    """Moves donation credits older than each organization's clearing period from pending to available."""

    name = "balance-clearing"

    def __init__(
        self,
        balance_service: BalanceService,
        tracker: JobExecutionTracker,
        schedule: str = "0 0 * * *",
        clock: Optional[Clock] = None,
    ):
        super().__init__(tracker, schedule, clock or balance_service.clock)
        self.balances = balance_service

    def prepare_items(self, now: datetime) -> list[str]:
        return self.balances.storage.organization_ids()

    def execute_item(self, organization_id: str, now: datetime) -> None:
        self.clear_organization(organization_id, now)

    def clear_organization(self, organization_id: str, now: datetime) -> Decimal:
        storage = self.balances.storage
        with storage.transaction(organization_id) as tx:
            balance = self.balances.get_or_create(organization_id, tx=tx)
            cutoff = now - timedelta(days=balance.clearing_period_days)
            credits = [c for c in tx.uncleared_donation_credits(cutoff) if c["clearable_amount"] > 0]
            if not credits:
                return Decimal("0.00")

            total = sum((c["clearable_amount"] for c in credits), Decimal("0.00"))
            by_type = defaultdict(lambda: Decimal("0.00"))
            for credit in credits:
                donation_type = credit["donation_type"].value if credit["donation_type"] else "unknown"
                by_type[donation_type] += credit["clearable_amount"]

            self.balances.clear_pending(
                organization_id,
                total,
                f"Cleared {len(credits)} donations older than {balance.clearing_period_days} days",
                source_entry_ids=[c["id"] for c in credits],
                metadata={
                    "donation_count": len(credits),
                    "cutoff": cutoff.isoformat(),
                    "clearing_period_days": balance.clearing_period_days,
                    "by_donation_type": {k: str(v) for k, v in sorted(by_type.items())},
                },
                # The oldest uncleared credit can only be cleared once.
                idempotency_key=f"clear_{organization_id}_{credits[0]['id']}",
                tx=tx,
            )

        logger.info(
            f"Cleared {total} for organization {organization_id}",
            extra={"organization_id": organization_id, "amount": str(total), "donation_count": len(credits)},
        )
        return total
