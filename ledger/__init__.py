"""
Donation Ledger for Organization Balances

This module provides:
- Append-only ledger entries with post-mutation balance snapshots
- Pending → available → reserved balance buckets per organization
- Idempotent donation credits and refunds
- Organization-scoped transactions for every balance mutation
- Ledger replay reconciliation
"""

from .models import (
    EntryType,
    LedgerCategory,
    DonationType,
    BalanceBucket,
    AccountBalance,
    LedgerEntry,
)
from .service import BalanceService
from .storage import InMemoryStorage

__all__ = [
    "EntryType",
    "LedgerCategory",
    "DonationType",
    "BalanceBucket",
    "AccountBalance",
    "LedgerEntry",
    "BalanceService",
    "InMemoryStorage",
]
