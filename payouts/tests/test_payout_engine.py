"""
Unit Tests for the Payout Engine

Tests cover:
1. Payout requests (validation, reservation, numbering, fees)
2. Cancellation
3. Execution (success, failure, timeout, not due, circuit breaker)
4. Manual resolution of failed payouts
5. Queries
"""

import threading
import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from conftest import DESTINATION, ORG_ID, T0, ScriptedProcessor
from ledger.config import Settings
from ledger.errors import (
    BelowMinimumPayoutError,
    ConsistencyError,
    InsufficientFundsError,
    InvalidPayoutStateError,
    PayoutDestinationMissingError,
    PayoutNotDueError,
    PayoutNotFoundError,
    ValidationError,
)
from ledger.models import LedgerCategory
from payouts.engine import PayoutEngine
from payouts.models import PayoutStatus
from payouts.processor import ProcessorError, ProcessorTimeout, ProcessorUnavailableError


class SlowProcessor(ScriptedProcessor):
    """Holds every transfer until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def transfer(self, destination, amount, currency, metadata):
        self.release.wait(5)
        return super().transfer(destination, amount, currency, metadata)


class TestRequestPayout:
    """Tests for requesting payouts."""

    def test_request_reserves_funds(self, funded, engine):
        """A request moves the amount from available to reserved and creates a pending payout."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("200.00"))

        assert payout.status == PayoutStatus.PENDING
        assert payout.payout_number == "PO-20240301-0001"
        assert payout.requested_amount == Decimal("200.00")
        assert payout.net_amount == Decimal("200.00")
        assert payout.scheduled_date == T0
        assert payout.destination_account == DESTINATION

        balance = funded.get_balance_summary(ORG_ID)
        assert balance.available_balance == Decimal("300.00")
        assert balance.reserved_balance == Decimal("200.00")

        reserved = funded.get_transaction_history(ORG_ID).entries[0]
        assert reserved.category == LedgerCategory.PAYOUT_RESERVED
        assert reserved.payout_id == payout.id

    def test_payout_numbers_are_sequential_per_day(self, funded, engine, clock):
        """Numbers count up within a day and restart on the next."""
        first = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"))
        second = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"))
        clock.advance(days=1)
        third = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"))

        assert first.payout_number == "PO-20240301-0001"
        assert second.payout_number == "PO-20240301-0002"
        assert third.payout_number == "PO-20240302-0001"

    def test_below_minimum_rejected(self, funded, engine):
        """Requests under the minimum never reserve anything."""
        with pytest.raises(BelowMinimumPayoutError):
            engine.request_payout(ORG_ID, "user_1", Decimal("9.99"))

        assert funded.get_balance_summary(ORG_ID).reserved_balance == Decimal("0.00")

    def test_insufficient_funds_creates_nothing(self, funded, engine, storage):
        """A failed reservation leaves no payout behind."""
        with pytest.raises(InsufficientFundsError):
            engine.request_payout(ORG_ID, "user_1", Decimal("600.00"))

        assert storage.list_payouts(ORG_ID) == []

    def test_past_scheduled_date_rejected(self, funded, engine):
        """Payouts cannot be scheduled before today."""
        with pytest.raises(ValidationError):
            engine.request_payout(ORG_ID, "user_1", Decimal("50.00"), T0 - timedelta(days=1))

    def test_missing_destination_rejected(self, funded, engine, storage):
        """An organization without a payout destination cannot request payouts."""
        storage.payout_destinations.clear()

        with pytest.raises(PayoutDestinationMissingError):
            engine.request_payout(ORG_ID, "user_1", Decimal("50.00"))

    def test_unreachable_destination_rejected(self, funded, engine, processor):
        """The destination check runs before any funds are reserved."""
        processor.balance_error = ProcessorError("No such account")

        with pytest.raises(ValidationError):
            engine.request_payout(ORG_ID, "user_1", Decimal("50.00"))

        assert funded.get_balance_summary(ORG_ID).reserved_balance == Decimal("0.00")

    def test_fee_and_tax_rates_split_the_payout(self, funded, processor, clock):
        """Net is what reaches the processor; fee and tax are recorded on settlement."""
        settings = Settings(_env_file=None, payout_platform_fee_rate="0.05", payout_tax_rate="0.01")
        engine = PayoutEngine(funded, processor, settings, clock)
        engine.register_destination(ORG_ID, DESTINATION)

        payout = engine.request_payout(ORG_ID, "user_1", Decimal("200.00"))
        assert payout.platform_fee_amount == Decimal("10.00")
        assert payout.tax_amount == Decimal("2.00")
        assert payout.net_amount == Decimal("188.00")

        engine.execute_payout(payout.id)

        assert processor.transfers[0]["amount"] == Decimal("188.00")
        balance = funded.get_balance_summary(ORG_ID)
        assert balance.reserved_balance == Decimal("0.00")
        assert balance.lifetime_paid_out == Decimal("188.00")
        assert balance.lifetime_platform_fees == Decimal("10.00")
        assert balance.lifetime_tax_deducted == Decimal("2.00")


class TestCancelPayout:
    """Tests for cancelling payouts."""

    def test_cancel_pending_releases_funds(self, funded, engine):
        """Cancelling a pending payout returns the reservation to available."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("150.00"))

        cancelled = engine.cancel_payout(payout.id, "user_2", reason="changed plans")

        assert cancelled.status == PayoutStatus.CANCELLED
        assert cancelled.cancelled_by == "user_2"
        assert cancelled.cancellation_reason == "changed plans"
        balance = funded.get_balance_summary(ORG_ID)
        assert balance.available_balance == Decimal("500.00")
        assert balance.reserved_balance == Decimal("0.00")

    @pytest.mark.parametrize("setup", ["cancelled", "completed", "failed", "timed_out"])
    def test_cancel_only_from_pending(self, funded, engine, processor, setup):
        """Any other status refuses cancellation and leaves funds alone."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))
        if setup == "cancelled":
            engine.cancel_payout(payout.id, "user_1")
        elif setup == "failed":
            processor.will_raise(ProcessorError("declined"))
            engine.execute_payout(payout.id)
        elif setup == "timed_out":
            processor.will_raise(ProcessorTimeout("no response"))
            engine.execute_payout(payout.id)
        else:
            engine.execute_payout(payout.id)
        before = funded.get_balance_summary(ORG_ID)

        with pytest.raises(InvalidPayoutStateError):
            engine.cancel_payout(payout.id, "user_1")

        after = funded.get_balance_summary(ORG_ID)
        assert after.available_balance == before.available_balance
        assert after.reserved_balance == before.reserved_balance

    def test_timed_out_payout_is_not_cancellable(self, funded, engine, processor):
        """A transfer that may have settled keeps its reservation until an operator confirms."""
        processor.will_raise(ProcessorTimeout("no response"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))
        engine.execute_payout(payout.id)

        with pytest.raises(InvalidPayoutStateError):
            engine.cancel_payout(payout.id, "user_1")
        with pytest.raises(ValidationError):
            engine.release_failed_payout(payout.id, "admin_1")

        balance = funded.get_balance_summary(ORG_ID)
        assert engine.get_payout(payout.id).status == PayoutStatus.FAILED
        assert balance.reserved_balance == Decimal("100.00")
        assert balance.available_balance == Decimal("400.00")

    def test_cancel_unknown_payout(self, engine):
        """Unknown payout ids are reported as not found."""
        with pytest.raises(PayoutNotFoundError):
            engine.cancel_payout(uuid4(), "user_1")


class TestExecutePayout:
    """Tests for executing payouts against the processor."""

    def test_happy_path(self, funded, engine, processor):
        """Donation cleared, payout requested and executed: reserved drops, paid out rises."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("200.00"))

        completed = engine.execute_payout(payout.id)

        assert completed.status == PayoutStatus.COMPLETED
        assert completed.external_settlement_id == "tr_0001"
        assert completed.retry_count == 0
        assert completed.failure_ambiguous is False
        assert completed.completed_at is not None
        assert processor.transfers[0]["destination"] == DESTINATION
        assert processor.transfers[0]["metadata"]["payout_number"] == payout.payout_number

        balance = funded.get_balance_summary(ORG_ID)
        assert balance.available_balance == Decimal("300.00")
        assert balance.reserved_balance == Decimal("0.00")
        assert balance.lifetime_paid_out == Decimal("200.00")
        assert funded.reconcile(ORG_ID).is_balanced

    def test_not_due_payout_is_refused(self, funded, engine, processor, clock):
        """A payout scheduled for later stays pending and never reaches the processor."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("50.00"), clock.now() + timedelta(days=1))

        with pytest.raises(PayoutNotDueError):
            engine.execute_payout(payout.id)

        assert engine.get_payout(payout.id).status == PayoutStatus.PENDING
        assert processor.transfers == []

    def test_executing_twice_transfers_once(self, funded, engine, processor):
        """A completed payout cannot be executed again."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("50.00"))
        engine.execute_payout(payout.id)

        with pytest.raises(InvalidPayoutStateError):
            engine.execute_payout(payout.id)

        assert len(processor.transfers) == 1

    def test_processor_error_keeps_funds_reserved(self, funded, engine, processor):
        """A failed transfer marks the payout failed and leaves the reservation in place."""
        processor.will_raise(ProcessorError("card_declined"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("120.00"))

        failed = engine.execute_payout(payout.id)

        assert failed.status == PayoutStatus.FAILED
        assert failed.retry_count == 1
        assert failed.failure_reason == "card_declined"
        assert failed.failure_ambiguous is False
        balance = funded.get_balance_summary(ORG_ID)
        assert balance.reserved_balance == Decimal("120.00")
        assert balance.lifetime_paid_out == Decimal("0.00")
        assert funded.get_transaction_history(ORG_ID).entries[0].category == LedgerCategory.PAYOUT_FAILED

    def test_failed_transfer_status_is_a_failure(self, funded, engine, processor):
        """A transfer the processor reports as failed is not settled."""
        processor.will_return("failed")
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("60.00"))

        assert engine.execute_payout(payout.id).status == PayoutStatus.FAILED

    def test_timeout_is_flagged_ambiguous(self, funded, engine, processor):
        """A timeout may have settled, so it is marked for manual verification."""
        processor.will_raise(ProcessorTimeout("no response"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("80.00"))

        failed = engine.execute_payout(payout.id)

        assert failed.status == PayoutStatus.FAILED
        assert failed.failure_ambiguous is True

    def test_failed_payouts_are_not_retried(self, funded, engine, processor):
        """Failed payouts drop out of the due list."""
        processor.will_raise(ProcessorError("declined"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("80.00"))
        engine.execute_payout(payout.id)

        assert engine.due_payouts() == []
        with pytest.raises(InvalidPayoutStateError):
            engine.execute_payout(payout.id)

    def test_open_circuit_leaves_payout_pending(self, funded, engine, processor):
        """After repeated processor failures, further payouts are not attempted."""
        for _ in range(3):
            processor.will_raise(ProcessorError("processor down"))
            engine.execute_payout(engine.request_payout(ORG_ID, "user_1", Decimal("50.00")).id)
        waiting = engine.request_payout(ORG_ID, "user_1", Decimal("50.00"))

        with pytest.raises(ProcessorUnavailableError):
            engine.execute_payout(waiting.id)

        assert engine.get_payout(waiting.id).status == PayoutStatus.PENDING
        assert len(processor.transfers) == 3

    def test_transfer_is_bounded_by_configured_timeout(self, funded, clock):
        """A transfer that outlives the processor timeout fails as ambiguous."""
        slow = SlowProcessor()
        settings = Settings(_env_file=None, processor_timeout_seconds=0.05, processor_failure_threshold=3)
        engine = PayoutEngine(funded, slow, settings, clock)
        engine.register_destination(ORG_ID, DESTINATION)
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("70.00"))

        try:
            failed = engine.execute_payout(payout.id)
        finally:
            slow.release.set()

        assert failed.status == PayoutStatus.FAILED
        assert failed.failure_ambiguous is True
        assert "0.05s" in failed.failure_reason
        assert funded.get_balance_summary(ORG_ID).reserved_balance == Decimal("70.00")

    def test_local_error_is_not_a_processor_failure(self, funded, engine, processor):
        """An error that is not a processor outcome propagates and the payout stays processing."""
        processor.will_raise(KeyError("id"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("40.00"))

        with pytest.raises(KeyError):
            engine.execute_payout(payout.id)

        stuck = engine.get_payout(payout.id)
        assert stuck.status == PayoutStatus.PROCESSING
        assert stuck.retry_count == 0
        categories = [e.category for e in funded.get_transaction_history(ORG_ID).entries]
        assert LedgerCategory.PAYOUT_FAILED not in categories

    def test_unrecorded_settlement_stays_processing(self, funded, engine, monkeypatch):
        """If completion cannot be committed the payout stays processing for investigation."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("50.00"))

        def broken_settle(*args, **kwargs):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(funded, "settle_reservation", broken_settle)

        with pytest.raises(ConsistencyError):
            engine.execute_payout(payout.id)

        assert engine.get_payout(payout.id).status == PayoutStatus.PROCESSING
        assert funded.get_balance_summary(ORG_ID).reserved_balance == Decimal("50.00")


class TestManualResolution:
    """Tests for resubmitting and releasing failed payouts."""

    def test_resubmit_then_complete(self, funded, engine, processor):
        """A resubmitted payout goes back to pending and can complete."""
        processor.will_raise(ProcessorError("declined"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))
        engine.execute_payout(payout.id)

        resubmitted = engine.resubmit_payout(payout.id, "admin_1")
        completed = engine.execute_payout(payout.id)

        assert resubmitted.status == PayoutStatus.PENDING
        assert resubmitted.resubmitted_by == "admin_1"
        assert completed.status == PayoutStatus.COMPLETED
        assert completed.retry_count == 1
        assert funded.get_balance_summary(ORG_ID).lifetime_paid_out == Decimal("100.00")

    def test_ambiguous_failure_needs_confirmation(self, funded, engine, processor):
        """Timed-out payouts are only resolved once the operator confirms they did not settle."""
        processor.will_raise(ProcessorTimeout("no response"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))
        engine.execute_payout(payout.id)

        with pytest.raises(ValidationError):
            engine.resubmit_payout(payout.id, "admin_1")
        with pytest.raises(ValidationError):
            engine.release_failed_payout(payout.id, "admin_1")

        resubmitted = engine.resubmit_payout(payout.id, "admin_1", confirm_not_settled=True)
        assert resubmitted.status == PayoutStatus.PENDING
        assert resubmitted.failure_ambiguous is False

    def test_release_failed_returns_funds(self, funded, engine, processor):
        """Releasing a failed payout cancels it and returns the money to available."""
        processor.will_raise(ProcessorError("declined"))
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))
        engine.execute_payout(payout.id)

        released = engine.release_failed_payout(payout.id, "admin_1", reason="closed account")

        assert released.status == PayoutStatus.CANCELLED
        balance = funded.get_balance_summary(ORG_ID)
        assert balance.available_balance == Decimal("500.00")
        assert balance.reserved_balance == Decimal("0.00")

    def test_resubmit_requires_failed_status(self, funded, engine):
        """Only failed payouts can be resubmitted."""
        payout = engine.request_payout(ORG_ID, "user_1", Decimal("100.00"))

        with pytest.raises(InvalidPayoutStateError):
            engine.resubmit_payout(payout.id, "admin_1")


class TestPayoutQueries:
    """Tests for listing and scheduling queries."""

    def test_list_filters_and_paginates(self, funded, engine):
        """Listing is newest first, filterable by status."""
        first = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"))
        engine.request_payout(ORG_ID, "user_1", Decimal("20.00"))
        engine.request_payout(ORG_ID, "user_1", Decimal("30.00"))
        engine.cancel_payout(first.id, "user_1")

        pending = engine.list_payouts(ORG_ID, PayoutStatus.PENDING, page=1, limit=1)
        everything = engine.list_payouts(ORG_ID)

        assert pending.meta.total == 2
        assert pending.meta.total_pages == 2
        assert len(pending.payouts) == 1
        assert everything.meta.total == 3

    def test_due_payouts_and_next_date(self, funded, engine, clock):
        """Due payouts are pending with a scheduled date that has arrived."""
        later = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"), clock.now() + timedelta(days=2))
        now = engine.request_payout(ORG_ID, "user_1", Decimal("10.00"))

        assert [p.id for p in engine.due_payouts()] == [now.id]
        assert engine.next_payout_date(ORG_ID).next_payout_date == now.scheduled_date

        engine.execute_payout(now.id)
        upcoming = engine.next_payout_date(ORG_ID)
        assert upcoming.next_payout_date == later.scheduled_date
        assert upcoming.payout.id == later.id

    def test_next_date_without_pending(self, engine):
        """No pending payout means no next date."""
        assert engine.next_payout_date(ORG_ID).next_payout_date is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
