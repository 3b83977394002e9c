"""
In-memory Ledger Store.

Balances, ledger entries and payouts are plain dicts keyed the way a document
store would key them. All writes go through a `Transaction` scoped to one
organization: changes are staged on copies and applied together on commit, so
a balance update and the ledger entry documenting it land together or not at
all. Transactions on the same organization are serialized; different
organizations proceed independently.
"""

import threading
from copy import deepcopy
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from .errors import DuplicateIdempotencyKeyError, TransactionConflictError, TransactionScopeError
from .models import LedgerCategory


class Transaction:
    def __init__(self, storage: "InMemoryStorage", organization_id: str, lock_timeout: Optional[float] = None):
        self.storage = storage
        self.organization_id = organization_id
        self.lock_timeout = lock_timeout
        self._balance: Optional[dict] = None
        self._entries: list[dict] = []
        self._payouts: dict[UUID, dict] = {}
        self._settled: dict[UUID, UUID] = {}
        self._reductions: dict[UUID, Decimal] = {}
        self._lock: Optional[threading.Lock] = None
        self._open = False

    def __enter__(self) -> "Transaction":
        active = self.storage._active_organizations()
        if self.organization_id in active:
            raise TransactionConflictError(
                f"A transaction for organization {self.organization_id} is already open in this thread"
            )
        self._lock = self.storage._lock_for(self.organization_id)
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise TransactionConflictError(
                f"Timed out waiting for the transaction lock of organization {self.organization_id}"
            )
        active.add(self.organization_id)
        self._open = True
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        finally:
            self._open = False
            self.storage._active_organizations().discard(self.organization_id)
            self._lock.release()
        return False

    # Balance

    def get_balance(self) -> Optional[dict]:
        self._ensure_open()
        if self._balance is None:
            committed = self.storage.get_balance(self.organization_id)
            if committed is None:
                return None
            self._balance = committed
        return self._balance

    def put_balance(self, balance: dict) -> None:
        self._ensure_open()
        self._check_scope(balance["organization_id"])
        self._balance = balance

    # Ledger entries

    def add_entry(self, entry: dict) -> None:
        self._ensure_open()
        self._check_scope(entry["organization_id"])
        key = entry.get("idempotency_key")
        if key:
            existing = self.find_entry_by_idempotency_key(key)
            if existing is not None:
                raise DuplicateIdempotencyKeyError(key, existing["id"])
        self._entries.append(entry)

    def find_entry_by_idempotency_key(self, key: str) -> Optional[dict]:
        for entry in self._entries:
            if entry.get("idempotency_key") == key:
                return entry
        return self.storage.find_entry_by_idempotency_key(key)

    def uncleared_donation_credits(self, cutoff: Optional[datetime] = None) -> list[dict]:
        """Donation credits still sitting in pending, each with its `clearable_amount`."""
        self._ensure_open()
        credits = []
        for entry in self.storage.donation_credits(self.organization_id):
            if cutoff is not None and entry["created_at"] > cutoff:
                continue
            if self.is_settled(entry["id"]):
                continue
            entry["clearable_amount"] = entry["amount"] - self.credit_reduction(entry["id"])
            credits.append(entry)
        return credits

    def find_uncleared_credit(self, donation_id: str) -> Optional[dict]:
        for entry in self.uncleared_donation_credits():
            if entry["donation_id"] == donation_id:
                return entry
        return None

    def is_settled(self, credit_entry_id: UUID) -> bool:
        return credit_entry_id in self._settled or self.storage.is_credit_settled(credit_entry_id)

    def credit_reduction(self, credit_entry_id: UUID) -> Decimal:
        if credit_entry_id in self._reductions:
            return self._reductions[credit_entry_id]
        return self.storage.credit_reduction(credit_entry_id)

    def mark_settled(self, credit_entry_ids: Iterable[UUID], settled_by: UUID) -> None:
        self._ensure_open()
        for credit_id in credit_entry_ids:
            self._settled[credit_id] = settled_by

    def reduce_credit(self, credit_entry_id: UUID, amount: Decimal) -> None:
        """Record that part of a still-pending credit left through a refund."""
        self._ensure_open()
        self._reductions[credit_entry_id] = self.credit_reduction(credit_entry_id) + amount

    # Payouts

    def get_payout(self, payout_id: UUID) -> Optional[dict]:
        self._ensure_open()
        if payout_id in self._payouts:
            return self._payouts[payout_id]
        committed = self.storage.get_payout(payout_id)
        if committed is None:
            return None
        self._check_scope(committed["organization_id"])
        self._payouts[payout_id] = committed
        return self._payouts[payout_id]

    def put_payout(self, payout: dict) -> None:
        self._ensure_open()
        self._check_scope(payout["organization_id"])
        self._payouts[payout["id"]] = payout

    # Lifecycle

    def commit(self) -> None:
        self._ensure_open()
        self.storage._apply(self)
        self._reset()

    def rollback(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._balance = None
        self._entries = []
        self._payouts = {}
        self._settled = {}
        self._reductions = {}

    def _ensure_open(self) -> None:
        if not self._open:
            raise TransactionScopeError("Transaction is not open")

    def _check_scope(self, organization_id: str) -> None:
        if organization_id != self.organization_id:
            raise TransactionScopeError(
                f"Transaction for organization {self.organization_id} cannot touch organization {organization_id}"
            )


class InMemoryStorage:
    def __init__(self):
        self.balances: dict[str, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.payouts: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.payout_numbers: dict[str, UUID] = {}
        self.settled_credits: dict[UUID, UUID] = {}
        self.credit_reductions: dict[UUID, Decimal] = {}
        self.payout_destinations: dict[str, str] = {}
        self._org_locks: dict[str, threading.Lock] = {}
        self._write_lock = threading.Lock()
        self._local = threading.local()

    def transaction(self, organization_id: str, lock_timeout: Optional[float] = None) -> Transaction:
        return Transaction(self, organization_id, lock_timeout)

    # Committed reads. Callers get copies, never the stored documents.

    def organization_ids(self) -> list[str]:
        with self._write_lock:
            return sorted(self.balances)

    def get_balance(self, organization_id: str) -> Optional[dict]:
        with self._write_lock:
            balance = self.balances.get(organization_id)
            return deepcopy(balance) if balance else None

    def get_entry(self, entry_id: UUID) -> Optional[dict]:
        with self._write_lock:
            entry = self.ledger_entries.get(entry_id)
            return deepcopy(entry) if entry else None

    def find_entry_by_idempotency_key(self, key: str) -> Optional[dict]:
        with self._write_lock:
            entry_id = self.idempotency_index.get(key)
            return deepcopy(self.ledger_entries[entry_id]) if entry_id else None

    def list_entries(
        self,
        organization_id: str,
        category: Optional[LedgerCategory] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict]:
        with self._write_lock:
            entries = [
                deepcopy(e) for e in self.ledger_entries.values()
                if e["organization_id"] == organization_id
                and (category is None or e["category"] == category)
                and (start is None or e["created_at"] >= start)
                and (end is None or e["created_at"] <= end)
            ]
        entries.sort(key=lambda e: (e["created_at"], e["sequence"]), reverse=True)
        return entries

    def donation_credits(self, organization_id: str) -> list[dict]:
        with self._write_lock:
            credits = [
                deepcopy(e) for e in self.ledger_entries.values()
                if e["organization_id"] == organization_id and e["category"] == LedgerCategory.DONATION_RECEIVED
            ]
        credits.sort(key=lambda e: e["sequence"])
        return credits

    def is_credit_settled(self, credit_entry_id: UUID) -> bool:
        with self._write_lock:
            return credit_entry_id in self.settled_credits

    def credit_reduction(self, credit_entry_id: UUID) -> Decimal:
        with self._write_lock:
            return self.credit_reductions.get(credit_entry_id, Decimal("0"))

    def get_payout(self, payout_id: UUID) -> Optional[dict]:
        with self._write_lock:
            payout = self.payouts.get(payout_id)
            return deepcopy(payout) if payout else None

    def list_payouts(self, organization_id: Optional[str] = None, statuses: Optional[Iterable] = None) -> list[dict]:
        wanted = set(statuses) if statuses is not None else None
        with self._write_lock:
            payouts = [
                deepcopy(p) for p in self.payouts.values()
                if (organization_id is None or p["organization_id"] == organization_id)
                and (wanted is None or p["status"] in wanted)
            ]
        payouts.sort(key=lambda p: p["created_at"], reverse=True)
        return payouts

    def payout_number_exists(self, payout_number: str) -> bool:
        with self._write_lock:
            return payout_number in self.payout_numbers

    def get_payout_destination(self, organization_id: str) -> Optional[str]:
        with self._write_lock:
            return self.payout_destinations.get(organization_id)

    def set_payout_destination(self, organization_id: str, account_id: str) -> None:
        with self._write_lock:
            self.payout_destinations[organization_id] = account_id

    # Internals

    def _lock_for(self, organization_id: str) -> threading.Lock:
        with self._write_lock:
            lock = self._org_locks.get(organization_id)
            if lock is None:
                lock = self._org_locks[organization_id] = threading.Lock()
            return lock

    def _active_organizations(self) -> set:
        active = getattr(self._local, "organizations", None)
        if active is None:
            active = self._local.organizations = set()
        return active

    def _apply(self, tx: Transaction) -> None:
        with self._write_lock:
            # Re-check uniqueness against everything committed since staging.
            for entry in tx._entries:
                key = entry.get("idempotency_key")
                if key and key in self.idempotency_index:
                    raise DuplicateIdempotencyKeyError(key, self.idempotency_index[key])
            for payout in tx._payouts.values():
                owner = self.payout_numbers.get(payout["payout_number"])
                if owner is not None and owner != payout["id"]:
                    raise TransactionConflictError(f"Payout number {payout['payout_number']} is already taken")

            if tx._balance is not None:
                self.balances[tx.organization_id] = tx._balance
            for entry in tx._entries:
                entry["sequence"] = len(self.ledger_entries)
                self.ledger_entries[entry["id"]] = entry
                if entry.get("idempotency_key"):
                    self.idempotency_index[entry["idempotency_key"]] = entry["id"]
            for payout in tx._payouts.values():
                self.payouts[payout["id"]] = payout
                self.payout_numbers[payout["payout_number"]] = payout["id"]
            self.settled_credits.update(tx._settled)
            self.credit_reductions.update(tx._reductions)
