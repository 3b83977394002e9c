import logging
import threading
from datetime import datetime, time
from decimal import Decimal
from math import ceil
from typing import Optional, Union
from uuid import UUID, uuid4

from ledger.clock import Clock, as_utc
from ledger.config import Settings
from ledger.errors import (
    BelowMinimumPayoutError,
    ConsistencyError,
    InvalidAmountError,
    InvalidPayoutStateError,
    PayoutDestinationMissingError,
    PayoutNotDueError,
    PayoutNotFoundError,
    ValidationError,
)
from ledger.models import PageMeta, to_money
from ledger.service import BalanceService
from ledger.storage import Transaction

from .models import PAYOUT_TRANSITIONS, NextPayoutResponse, Payout, PayoutListResponse, PayoutStatus
from .processor import (
    CircuitBreaker,
    PaymentProcessor,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailableError,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

FAILED_TRANSFER_STATUSES = frozenset({"failed", "canceled", "cancelled", "reversed"})


class PayoutEngine:
    def __init__(
        self,
        balance_service: BalanceService,
        processor: PaymentProcessor,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.balances = balance_service
        self.storage = balance_service.storage
        self.processor = processor
        self.settings = settings or balance_service.settings
        self.clock = clock or balance_service.clock
        self.breaker = breaker or CircuitBreaker(
            "payment-processor",
            failure_threshold=self.settings.processor_failure_threshold,
            reset_timeout=self.settings.processor_reset_timeout_seconds,
        )
        self._number_lock = threading.Lock()
        self._number_sequences: dict[str, int] = {}

    def register_destination(self, organization_id: str, account_id: str) -> None:
        self.storage.set_payout_destination(organization_id, account_id)
        logger.info(f"Payout destination set for organization {organization_id}", extra={"organization_id": organization_id})

    def request_payout(
        self,
        organization_id: str,
        requester_id: str,
        amount: Union[Decimal, int, float, str],
        scheduled_date: Optional[datetime] = None,
    ) -> Payout:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Payout amount must be positive, got {amount}")
        minimum = to_money(self.settings.minimum_payout_amount)
        if amount < minimum:
            raise BelowMinimumPayoutError(amount, minimum)

        now = self.clock.now()
        scheduled = as_utc(scheduled_date) if scheduled_date else now
        start_of_today = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        if scheduled < start_of_today:
            raise ValidationError("Scheduled date must be today or in the future")

        destination = self.storage.get_payout_destination(organization_id)
        if not destination:
            raise PayoutDestinationMissingError(f"Organization {organization_id} has no payout destination")
        if self.settings.payout_preflight_check:
            self._check_destination(destination)

        fee = to_money(amount * Decimal(str(self.settings.payout_platform_fee_rate)))
        tax = to_money(amount * Decimal(str(self.settings.payout_tax_rate)))
        net = amount - fee - tax
        if net <= 0:
            raise InvalidAmountError(f"Payout of {amount} leaves nothing after fees and tax")

        payout_id = uuid4()
        payout_number = self._next_payout_number(now)
        with self.storage.transaction(organization_id) as tx:
            self.balances.reserve_for_payout(
                organization_id, amount,
                payout_id=payout_id,
                description=f"Payout requested: {payout_number}",
                processed_by=requester_id,
                tx=tx,
            )
            payout = Payout(
                id=payout_id,
                organization_id=organization_id,
                payout_number=payout_number,
                requested_amount=amount,
                platform_fee_rate=Decimal(str(self.settings.payout_platform_fee_rate)),
                platform_fee_amount=fee,
                tax_rate=Decimal(str(self.settings.payout_tax_rate)),
                tax_amount=tax,
                net_amount=net,
                currency=self.settings.default_currency,
                destination_account=destination,
                scheduled_date=scheduled,
                requested_by=requester_id,
                created_at=now,
                updated_at=now,
            )
            tx.put_payout(payout.model_dump())

        logger.info(
            f"Payout {payout_number} requested for organization {organization_id}",
            extra={"organization_id": organization_id, "payout_id": str(payout_id), "amount": str(amount)},
        )
        return payout

    def cancel_payout(self, payout_id: UUID, actor_id: str, reason: Optional[str] = None) -> Payout:
        organization_id = self.get_payout(payout_id).organization_id
        with self.storage.transaction(organization_id) as tx:
            current = Payout(**tx.get_payout(payout_id))
            if not current.can_cancel():
                # Failed payouts are resolved through release_failed_payout only.
                raise InvalidPayoutStateError(payout_id, current.status.value, "cancel")
            payout = self._transition(tx, payout_id, PayoutStatus.CANCELLED, "cancel")
            self.balances.release_reservation(
                organization_id, payout["requested_amount"],
                payout_id=payout_id,
                description=f"Payout cancelled: {payout['payout_number']}",
                processed_by=actor_id,
                reason=reason,
                tx=tx,
            )
            payout["cancelled_by"] = actor_id
            payout["cancelled_at"] = payout["updated_at"]
            payout["cancellation_reason"] = reason
            tx.put_payout(payout)

        logger.info(f"Payout {payout['payout_number']} cancelled by {actor_id}", extra={"payout_id": str(payout_id)})
        return Payout(**payout)

    def execute_payout(self, payout_id: UUID) -> Payout:
        """
        Run one payout through the processor.

        The payout is committed as processing before the transfer so the
        external call never happens inside a ledger transaction. The outcome
        is committed in a second transaction. Failed payouts keep their funds
        reserved and wait for manual resolution.
        """
        existing = self.get_payout(payout_id)
        organization_id = existing.organization_id
        if existing.status == PayoutStatus.PENDING and not self.breaker.allow_request():
            raise ProcessorUnavailableError(f"Circuit breaker {self.breaker.name} is open")

        with self.storage.transaction(organization_id) as tx:
            current = tx.get_payout(payout_id)
            if current["status"] == PayoutStatus.PENDING and current["scheduled_date"] > self.clock.now():
                raise PayoutNotDueError(f"Payout {payout_id} is not due until {current['scheduled_date'].isoformat()}")
            payout = self._transition(tx, payout_id, PayoutStatus.PROCESSING, "execute")
            payout["processed_at"] = payout["updated_at"]
            tx.put_payout(payout)

        metadata = {
            "payout_id": str(payout_id),
            "payout_number": payout["payout_number"],
            "organization_id": organization_id,
            "idempotency_key": f"payout_{payout_id}_{payout['retry_count']}",
        }
        try:
            result = self.breaker.call(
                call_with_timeout,
                self.processor.transfer,
                self.settings.processor_timeout_seconds,
                payout["destination_account"],
                payout["net_amount"],
                payout["currency"],
                metadata,
            )
        except ProcessorError as e:
            return self._record_failure(payout, str(e) or e.__class__.__name__, ambiguous=isinstance(e, ProcessorTimeout))
        except Exception:
            # Not a processor outcome; the payout stays processing until someone looks at it.
            logger.exception(
                f"Unexpected error transferring payout {payout['payout_number']}",
                extra={"payout_id": str(payout_id)},
            )
            raise

        if result.status.lower() in FAILED_TRANSFER_STATUSES:
            return self._record_failure(payout, f"Processor reported transfer status '{result.status}'", ambiguous=False)

        try:
            with self.storage.transaction(organization_id) as tx:
                payout = self._transition(tx, payout_id, PayoutStatus.COMPLETED, "complete")
                payout["completed_at"] = payout["updated_at"]
                payout["external_settlement_id"] = result.id
                self.balances.settle_reservation(
                    organization_id,
                    payout["requested_amount"],
                    payout["net_amount"],
                    payout_id=payout_id,
                    platform_fee=payout["platform_fee_amount"],
                    tax_amount=payout["tax_amount"],
                    settlement_id=result.id,
                    description=f"Payout completed: {payout['payout_number']}",
                    tx=tx,
                )
                tx.put_payout(payout)
        except Exception as e:
            logger.error(
                f"Transfer {result.id} succeeded but payout {payout_id} could not be marked completed",
                exc_info=True,
                extra={"payout_id": str(payout_id), "settlement_id": result.id},
            )
            raise ConsistencyError(f"Payout {payout_id} settled externally as {result.id} but was not recorded") from e

        logger.info(
            f"Payout {payout['payout_number']} completed",
            extra={"payout_id": str(payout_id), "settlement_id": result.id, "net_amount": str(payout["net_amount"])},
        )
        return Payout(**payout)

    def resubmit_payout(self, payout_id: UUID, actor_id: str, confirm_not_settled: bool = False) -> Payout:
        organization_id = self.get_payout(payout_id).organization_id
        with self.storage.transaction(organization_id) as tx:
            self._require_confirmation(tx.get_payout(payout_id), confirm_not_settled)
            payout = self._transition(tx, payout_id, PayoutStatus.PENDING, "resubmit")
            payout["scheduled_date"] = payout["updated_at"]
            payout["processed_at"] = None
            payout["failure_ambiguous"] = False
            payout["resubmitted_by"] = actor_id
            payout["resubmitted_at"] = payout["updated_at"]
            tx.put_payout(payout)

        logger.info(f"Payout {payout['payout_number']} resubmitted by {actor_id}", extra={"payout_id": str(payout_id)})
        return Payout(**payout)

    def release_failed_payout(
        self,
        payout_id: UUID,
        actor_id: str,
        confirm_not_settled: bool = False,
        reason: Optional[str] = None,
    ) -> Payout:
        organization_id = self.get_payout(payout_id).organization_id
        with self.storage.transaction(organization_id) as tx:
            self._require_confirmation(tx.get_payout(payout_id), confirm_not_settled)
            payout = self._transition(tx, payout_id, PayoutStatus.CANCELLED, "release")
            self.balances.release_reservation(
                organization_id, payout["requested_amount"],
                payout_id=payout_id,
                description=f"Failed payout released: {payout['payout_number']}",
                processed_by=actor_id,
                reason=reason or payout["failure_reason"],
                tx=tx,
            )
            payout["cancelled_by"] = actor_id
            payout["cancelled_at"] = payout["updated_at"]
            payout["cancellation_reason"] = reason or "Released after failed transfer"
            tx.put_payout(payout)

        logger.info(f"Failed payout {payout['payout_number']} released by {actor_id}", extra={"payout_id": str(payout_id)})
        return Payout(**payout)

    def get_payout(self, payout_id: UUID) -> Payout:
        payout = self.storage.get_payout(payout_id)
        if payout is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return Payout(**payout)

    def list_payouts(
        self,
        organization_id: str,
        status: Optional[PayoutStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> PayoutListResponse:
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        payouts = self.storage.list_payouts(organization_id, statuses=[status] if status else None)
        offset = (page - 1) * limit
        return PayoutListResponse(
            organization_id=organization_id,
            payouts=[Payout(**p) for p in payouts[offset:offset + limit]],
            meta=PageMeta(page=page, limit=limit, total=len(payouts), total_pages=ceil(len(payouts) / limit)),
        )

    def due_payouts(self, now: Optional[datetime] = None) -> list[Payout]:
        now = now or self.clock.now()
        due = [
            payout for payout in (Payout(**p) for p in self.storage.list_payouts(statuses=[PayoutStatus.PENDING]))
            if payout.is_due(now)
        ]
        due.sort(key=lambda p: (p.scheduled_date, p.created_at))
        return due

    def next_payout_date(self, organization_id: str) -> NextPayoutResponse:
        pending = self.storage.list_payouts(organization_id, statuses=[PayoutStatus.PENDING])
        if not pending:
            return NextPayoutResponse(organization_id=organization_id)
        earliest = min(pending, key=lambda p: p["scheduled_date"])
        return NextPayoutResponse(
            organization_id=organization_id,
            next_payout_date=earliest["scheduled_date"],
            payout=Payout(**earliest),
        )

    def _transition(self, tx: Transaction, payout_id: UUID, target: PayoutStatus, action: str) -> dict:
        payout = tx.get_payout(payout_id)
        if payout is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        current = PayoutStatus(payout["status"])
        if target not in PAYOUT_TRANSITIONS[current]:
            raise InvalidPayoutStateError(payout_id, current.value, action)
        payout = dict(payout)
        payout["status"] = target
        payout["updated_at"] = self.clock.now()
        return payout

    def _record_failure(self, payout: dict, reason: str, ambiguous: bool) -> Payout:
        payout_id = payout["id"]
        with self.storage.transaction(payout["organization_id"]) as tx:
            failed = self._transition(tx, payout_id, PayoutStatus.FAILED, "fail")
            failed["failure_reason"] = reason
            failed["failure_ambiguous"] = ambiguous
            failed["retry_count"] = failed["retry_count"] + 1
            self.balances.record_payout_failure(
                failed["organization_id"], failed["requested_amount"],
                payout_id=payout_id,
                reason=reason,
                attempt=failed["retry_count"],
                ambiguous=ambiguous,
                tx=tx,
            )
            tx.put_payout(failed)

        logger.warning(
            f"Payout {failed['payout_number']} failed: {reason}",
            extra={"payout_id": str(payout_id), "ambiguous": ambiguous, "retry_count": failed["retry_count"]},
        )
        return Payout(**failed)

    def _require_confirmation(self, payout: Optional[dict], confirm_not_settled: bool) -> None:
        if payout and payout["failure_ambiguous"] and not confirm_not_settled:
            raise ValidationError(
                f"Payout {payout['id']} timed out at the processor; verify it did not settle and pass confirm_not_settled"
            )

    def _check_destination(self, destination: str) -> None:
        try:
            call_with_timeout(self.processor.get_account_balance, self.settings.processor_timeout_seconds, destination)
        except ProcessorError as e:
            raise ValidationError(f"Payout destination {destination} is not reachable: {e}") from e

    def _next_payout_number(self, now: datetime) -> str:
        prefix = f"PO-{now:%Y%m%d}-"
        with self._number_lock:
            sequence = self._number_sequences.get(prefix)
            if sequence is None:
                sequence = sum(1 for p in self.storage.list_payouts() if p["payout_number"].startswith(prefix))
            while True:
                sequence += 1
                number = f"{prefix}{sequence:04d}"
                if not self.storage.payout_number_exists(number):
                    break
            self._number_sequences[prefix] = sequence
            return number
