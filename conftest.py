"""Shared fixtures: a frozen clock, in-memory storage and a scripted payment processor."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledger.clock import ManualClock
from ledger.config import Settings
from ledger.service import BalanceService
from ledger.storage import InMemoryStorage
from payouts.engine import PayoutEngine
from payouts.processor import AccountBalanceInfo, PaymentProcessor, ProcessorError, TransferResult

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
ORG_ID = "org_helping_hands"
DESTINATION = "acct_1HelpingHands"


class ScriptedProcessor(PaymentProcessor):
    """Replays queued outcomes; an Exception instance in the script is raised instead of returned."""

    def __init__(self):
        self.script = []
        self.transfers = []
        self.balance_error = None
        self._counter = 0

    def will_return(self, status: str = "paid") -> None:
        self.script.append(status)

    def will_raise(self, error: Exception) -> None:
        self.script.append(error)

    def transfer(self, destination, amount, currency, metadata):
        self.transfers.append({"destination": destination, "amount": amount, "currency": currency, "metadata": metadata})
        outcome = self.script.pop(0) if self.script else "paid"
        if isinstance(outcome, Exception):
            raise outcome
        self._counter += 1
        return TransferResult(id=f"tr_{self._counter:04d}", status=outcome)

    def get_account_balance(self, destination):
        if self.balance_error:
            raise self.balance_error
        return AccountBalanceInfo(available=Decimal("0"))


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        processor_timeout_seconds=5.0,
        payout_execution_delay_seconds=0.0,
        processor_failure_threshold=3,
        processor_reset_timeout_seconds=60.0,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def balances(storage, clock, settings):
    return BalanceService(storage, clock, settings)


@pytest.fixture
def processor():
    return ScriptedProcessor()


@pytest.fixture
def engine(balances, processor, settings, clock):
    engine = PayoutEngine(balances, processor, settings, clock)
    engine.register_destination(ORG_ID, DESTINATION)
    return engine


@pytest.fixture
def funded(balances, clock):
    """Organization with 500.00 available and nothing pending."""
    balances.credit_pending(ORG_ID, Decimal("500.00"), donation_id="don_seed")
    with balances.storage.transaction(ORG_ID) as tx:
        credits = tx.uncleared_donation_credits()
        balances.clear_pending(
            ORG_ID, Decimal("500.00"), "Seed clearing", source_entry_ids=[c["id"] for c in credits], tx=tx
        )
    return balances
