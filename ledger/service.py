import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from math import ceil
from typing import Iterable, Iterator, Optional, Union
from uuid import UUID, uuid4

from .clock import Clock, SystemClock, as_utc
from .config import Settings, get_settings
from .errors import (
    BalanceNotFoundError,
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidAmountError,
    TransactionScopeError,
    ValidationError,
)
from .models import (
    CATEGORY_RULES,
    AccountBalance,
    BalanceBucket,
    DonationCreditRequest,
    DonationType,
    EntryType,
    LedgerCategory,
    LedgerEntry,
    LedgerHistoryResponse,
    PageMeta,
    ReconciliationReport,
    TransactionFilters,
    to_money,
)
from .storage import InMemoryStorage, Transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

BUCKET_FIELDS = {
    BalanceBucket.PENDING: "pending_balance",
    BalanceBucket.AVAILABLE: "available_balance",
    BalanceBucket.RESERVED: "reserved_balance",
}

# How each category moves money between buckets. Refunds are resolved per entry
# from the bucket recorded in their metadata.
BUCKET_EFFECTS: dict[LedgerCategory, tuple[tuple[BalanceBucket, int], ...]] = {
    LedgerCategory.DONATION_RECEIVED: ((BalanceBucket.PENDING, 1),),
    LedgerCategory.DONATION_CLEARED: ((BalanceBucket.PENDING, -1), (BalanceBucket.AVAILABLE, 1)),
    LedgerCategory.PAYOUT_RESERVED: ((BalanceBucket.AVAILABLE, -1), (BalanceBucket.RESERVED, 1)),
    LedgerCategory.PAYOUT_CANCELLED: ((BalanceBucket.RESERVED, -1), (BalanceBucket.AVAILABLE, 1)),
    LedgerCategory.PAYOUT_COMPLETED: ((BalanceBucket.RESERVED, -1),),
    LedgerCategory.PAYOUT_FAILED: (),
    LedgerCategory.ADJUSTMENT_CREDIT: ((BalanceBucket.AVAILABLE, 1),),
    LedgerCategory.ADJUSTMENT_DEBIT: ((BalanceBucket.AVAILABLE, -1),),
}

Amount = Union[Decimal, int, float, str]


def bucket_effects(category: LedgerCategory, metadata: Optional[dict] = None) -> tuple[tuple[BalanceBucket, int], ...]:
    if category == LedgerCategory.REFUND_ISSUED:
        return ((BalanceBucket((metadata or {}).get("bucket", BalanceBucket.AVAILABLE.value)), -1),)
    return BUCKET_EFFECTS[category]


class BalanceService:
    """Sole writer of AccountBalance; every mutation appends its ledger entry in the same transaction."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    @contextmanager
    def unit_of_work(self, organization_id: str, tx: Optional[Transaction] = None) -> Iterator[Transaction]:
        if tx is not None:
            if tx.organization_id != organization_id:
                raise TransactionScopeError(
                    f"Transaction for organization {tx.organization_id} used for organization {organization_id}"
                )
            yield tx
            return
        with self.storage.transaction(organization_id) as own:
            yield own

    # Reads

    def get_or_create(self, organization_id: str, tx: Optional[Transaction] = None) -> AccountBalance:
        with self.unit_of_work(organization_id, tx) as uow:
            return AccountBalance(**self._load(uow))

    def get_balance_summary(self, organization_id: str) -> AccountBalance:
        balance = self.storage.get_balance(organization_id)
        if balance is None:
            return self.get_or_create(organization_id)
        return AccountBalance(**balance)

    def get_transaction_history(
        self, organization_id: str, filters: Optional[TransactionFilters] = None
    ) -> LedgerHistoryResponse:
        filters = filters or TransactionFilters()
        entries = self.storage.list_entries(
            organization_id,
            category=filters.category,
            start=as_utc(filters.start_date) if filters.start_date else None,
            end=as_utc(filters.end_date) if filters.end_date else None,
        )
        offset = (filters.page - 1) * filters.limit
        page = entries[offset:offset + filters.limit]

        return LedgerHistoryResponse(
            organization_id=organization_id,
            entries=[LedgerEntry(**e) for e in page],
            meta=PageMeta(
                page=filters.page,
                limit=filters.limit,
                total=len(entries),
                total_pages=ceil(len(entries) / filters.limit),
            ),
        )

    def get_entry_by_idempotency_key(self, key: str) -> Optional[LedgerEntry]:
        entry = self.storage.find_entry_by_idempotency_key(key)
        return LedgerEntry(**entry) if entry else None

    # Mutators

    def credit_pending(
        self,
        organization_id: str,
        amount: Amount,
        category: LedgerCategory = LedgerCategory.DONATION_RECEIVED,
        *,
        donation_id: Optional[str] = None,
        donation_type: Optional[DonationType] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        platform_fee: Amount = ZERO,
        tax_amount: Amount = ZERO,
        metadata: Optional[dict] = None,
        processed_by: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        amount = self._positive(amount)
        if category != LedgerCategory.DONATION_RECEIVED:
            raise ValidationError(f"{category.value} cannot credit the pending balance")
        if idempotency_key is None and donation_id:
            idempotency_key = f"don_{donation_id}"

        with self.unit_of_work(organization_id, tx) as uow:
            self._guard_idempotency(uow, idempotency_key)
            balance = self._load(uow)
            balance["lifetime_earnings"] += amount
            balance["lifetime_platform_fees"] += to_money(platform_fee)
            balance["lifetime_tax_deducted"] += to_money(tax_amount)
            return self._post(
                uow, balance, category, amount,
                description=description or f"Donation received ({(donation_type or DonationType.ONE_TIME).value}) - Net",
                donation_id=donation_id,
                donation_type=donation_type,
                idempotency_key=idempotency_key,
                processed_by=processed_by,
                metadata=metadata,
            )

    def record_donation(
        self, organization_id: str, request: DonationCreditRequest, tx: Optional[Transaction] = None
    ) -> LedgerEntry:
        metadata = {
            "gross": str(to_money(request.gross_amount)) if request.gross_amount is not None else None,
            "platform_fee": str(to_money(request.platform_fee)),
            "tax_amount": str(to_money(request.tax_amount)),
            "processor_fee": str(to_money(request.processor_fee)),
            "net_credited": str(to_money(request.net_amount)),
        }
        return self.credit_pending(
            organization_id,
            request.net_amount,
            donation_id=request.donation_id,
            donation_type=request.donation_type,
            description=request.description,
            platform_fee=request.platform_fee,
            tax_amount=request.tax_amount,
            metadata=metadata,
            tx=tx,
        )

    def clear_pending(
        self,
        organization_id: str,
        amount: Amount,
        batch_description: str,
        *,
        source_entry_ids: Iterable[UUID] = (),
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        amount = self._positive(amount)
        with self.unit_of_work(organization_id, tx) as uow:
            self._guard_idempotency(uow, idempotency_key)
            entry = self._post(
                uow, self._load(uow), LedgerCategory.DONATION_CLEARED, amount,
                description=batch_description,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
            uow.mark_settled(source_entry_ids, entry.id)
            return entry

    def reserve_for_payout(
        self,
        organization_id: str,
        amount: Amount,
        *,
        payout_id: UUID,
        description: Optional[str] = None,
        processed_by: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        amount = self._positive(amount)
        with self.unit_of_work(organization_id, tx) as uow:
            balance = self._load(uow)
            if balance["available_balance"] < amount:
                raise InsufficientFundsError(organization_id, amount, balance["available_balance"])
            return self._post(
                uow, balance, LedgerCategory.PAYOUT_RESERVED, amount,
                description=description or f"Payout requested: {payout_id}",
                payout_id=payout_id,
                idempotency_key=f"payout_reserve_{payout_id}",
                processed_by=processed_by,
            )

    def release_reservation(
        self,
        organization_id: str,
        amount: Amount,
        *,
        payout_id: UUID,
        description: Optional[str] = None,
        processed_by: Optional[str] = None,
        reason: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        amount = self._positive(amount)
        with self.unit_of_work(organization_id, tx) as uow:
            return self._post(
                uow, self._load(uow), LedgerCategory.PAYOUT_CANCELLED, amount,
                description=description or f"Payout cancelled: {payout_id}",
                payout_id=payout_id,
                idempotency_key=f"payout_release_{payout_id}",
                processed_by=processed_by,
                metadata={"reason": reason} if reason else None,
            )

    def settle_reservation(
        self,
        organization_id: str,
        gross_amount: Amount,
        net_amount: Amount,
        *,
        payout_id: UUID,
        platform_fee: Amount = ZERO,
        tax_amount: Amount = ZERO,
        settlement_id: Optional[str] = None,
        description: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        gross = self._positive(gross_amount)
        net = self._positive(net_amount)
        fee = to_money(platform_fee)
        tax = to_money(tax_amount)
        if net > gross:
            raise InvalidAmountError(f"Net amount {net} exceeds reserved gross amount {gross}")
        if net + fee + tax != gross:
            raise InvalidAmountError(
                f"Payout breakdown does not reconcile: gross {gross} != net {net} + fee {fee} + tax {tax}"
            )

        with self.unit_of_work(organization_id, tx) as uow:
            balance = self._load(uow)
            balance["lifetime_paid_out"] += net
            balance["lifetime_platform_fees"] += fee
            balance["lifetime_tax_deducted"] += tax
            balance["last_payout_at"] = self.clock.now()
            return self._post(
                uow, balance, LedgerCategory.PAYOUT_COMPLETED, gross,
                description=description or f"Payout completed: {payout_id}",
                payout_id=payout_id,
                idempotency_key=f"payout_complete_{payout_id}",
                metadata={
                    "net_amount": str(net),
                    "platform_fee": str(fee),
                    "tax_amount": str(tax),
                    "settlement_id": settlement_id,
                },
            )

    def record_payout_failure(
        self,
        organization_id: str,
        amount: Amount,
        *,
        payout_id: UUID,
        reason: str,
        attempt: int,
        ambiguous: bool = False,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        """Informational entry: the attempt failed and the reservation stays in place."""
        amount = self._positive(amount)
        with self.unit_of_work(organization_id, tx) as uow:
            return self._post(
                uow, self._load(uow), LedgerCategory.PAYOUT_FAILED, amount,
                description=f"Payout attempt failed: {reason}",
                payout_id=payout_id,
                idempotency_key=f"payout_fail_{payout_id}_{attempt}",
                metadata={"failure_reason": reason, "attempt": attempt, "ambiguous": ambiguous},
            )

    def debit_for_refund(
        self,
        organization_id: str,
        amount: Amount,
        donation_created_at: datetime,
        *,
        donation_id: str,
        refund_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        processed_by: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        """
        Debit a refunded donation from the bucket it currently sits in.

        Each refund is keyed by its `refund_id`, so several partial refunds of
        one donation apply once each. Without a refund id the donation can be
        refunded once.
        """
        amount = self._positive(amount)
        if not idempotency_key:
            idempotency_key = f"ref_{donation_id}_{refund_id}" if refund_id else f"ref_{donation_id}"

        with self.unit_of_work(organization_id, tx) as uow:
            self._guard_idempotency(uow, idempotency_key)
            balance = self._load(uow)
            window = timedelta(days=balance["clearing_period_days"])
            within_window = self.clock.now() - as_utc(donation_created_at) < window
            credit = uow.find_uncleared_credit(donation_id)
            # A credit the clearing job has not reached yet is still in pending.
            bucket = BalanceBucket.PENDING if within_window or credit is not None else BalanceBucket.AVAILABLE

            balance["lifetime_refunds"] += amount
            balance["lifetime_earnings"] = self._clamp(
                balance["lifetime_earnings"] - amount, organization_id, "lifetime_earnings"
            )
            entry = self._post(
                uow, balance, LedgerCategory.REFUND_ISSUED, amount,
                description=f"Refund issued for donation {donation_id} (Net Reversal)",
                donation_id=donation_id,
                idempotency_key=idempotency_key,
                processed_by=processed_by,
                metadata={
                    "bucket": bucket.value,
                    "refund_id": refund_id,
                    "donation_created_at": as_utc(donation_created_at).isoformat(),
                },
            )
            if bucket == BalanceBucket.PENDING and credit is not None:
                uow.reduce_credit(credit["id"], amount)
                if amount >= credit["clearable_amount"]:
                    uow.mark_settled([credit["id"]], entry.id)
            return entry

    def adjust(
        self,
        organization_id: str,
        amount: Amount,
        direction: EntryType,
        *,
        reason: str,
        performed_by: str,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        amount = self._positive(amount)
        category = LedgerCategory.ADJUSTMENT_CREDIT if direction == EntryType.CREDIT else LedgerCategory.ADJUSTMENT_DEBIT
        with self.unit_of_work(organization_id, tx) as uow:
            balance = self._load(uow)
            if category == LedgerCategory.ADJUSTMENT_DEBIT and balance["available_balance"] < amount:
                raise InsufficientFundsError(organization_id, amount, balance["available_balance"])
            return self._post(
                uow, balance, category, amount,
                description=f"Manual adjustment: {reason}",
                processed_by=performed_by,
                metadata={"reason": reason},
            )

    def set_clearing_period(self, organization_id: str, days: int) -> AccountBalance:
        if days < 0:
            raise ValidationError("Clearing period cannot be negative")
        with self.unit_of_work(organization_id) as uow:
            balance = dict(self._load(uow))
            balance["clearing_period_days"] = days
            balance["updated_at"] = self.clock.now()
            uow.put_balance(balance)
            return AccountBalance(**balance)

    # Audit

    def reconcile(self, organization_id: str) -> ReconciliationReport:
        stored = self.storage.get_balance(organization_id)
        if stored is None:
            raise BalanceNotFoundError(f"No balance for organization {organization_id}")

        entries = self.storage.list_entries(organization_id)
        entries.reverse()
        replayed = {bucket: ZERO for bucket in BalanceBucket}
        for entry in entries:
            for bucket, sign in bucket_effects(entry["category"], entry.get("metadata")):
                replayed[bucket] += sign * entry["amount"]

        discrepancies = []
        for bucket, field in BUCKET_FIELDS.items():
            if replayed[bucket] != stored[field]:
                discrepancies.append(f"{bucket.value}: ledger replay {replayed[bucket]} != stored {stored[field]}")

        snapshot_matches = True
        if entries:
            last = entries[-1]
            snapshot_matches = (
                last["balance_after_pending"] == stored["pending_balance"]
                and last["balance_after_available"] == stored["available_balance"]
                and last["balance_after_reserved"] == stored["reserved_balance"]
            )
            if not snapshot_matches:
                discrepancies.append("latest ledger snapshot does not match stored balance")

        if discrepancies:
            logger.error(
                f"Reconciliation mismatch for organization {organization_id}",
                extra={"organization_id": organization_id, "discrepancies": discrepancies},
            )

        return ReconciliationReport(
            organization_id=organization_id,
            entry_count=len(entries),
            replayed_pending=replayed[BalanceBucket.PENDING],
            replayed_available=replayed[BalanceBucket.AVAILABLE],
            replayed_reserved=replayed[BalanceBucket.RESERVED],
            stored_pending=stored["pending_balance"],
            stored_available=stored["available_balance"],
            stored_reserved=stored["reserved_balance"],
            snapshot_matches=snapshot_matches,
            discrepancies=discrepancies,
            checked_at=self.clock.now(),
        )

    # Internals

    def _load(self, uow: Transaction) -> dict:
        balance = uow.get_balance()
        if balance is None:
            now = self.clock.now()
            balance = AccountBalance(
                organization_id=uow.organization_id,
                currency=self.settings.default_currency,
                clearing_period_days=self.settings.default_clearing_period_days,
                created_at=now,
                updated_at=now,
            ).model_dump(exclude={"total_balance"})
            uow.put_balance(balance)
        return dict(balance)

    def _post(
        self,
        uow: Transaction,
        balance: dict,
        category: LedgerCategory,
        amount: Decimal,
        *,
        description: str,
        donation_id: Optional[str] = None,
        donation_type: Optional[DonationType] = None,
        payout_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        processed_by: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        now = self.clock.now()
        organization_id = uow.organization_id
        for bucket, sign in bucket_effects(category, metadata):
            field = BUCKET_FIELDS[bucket]
            balance[field] = self._clamp(balance[field] + sign * amount, organization_id, field)
        balance["last_transaction_at"] = now
        balance["updated_at"] = now

        entry = LedgerEntry(
            id=uuid4(),
            organization_id=organization_id,
            entry_type=CATEGORY_RULES[category].entry_type,
            category=category,
            amount=amount,
            currency=balance["currency"],
            balance_after_pending=balance["pending_balance"],
            balance_after_available=balance["available_balance"],
            balance_after_reserved=balance["reserved_balance"],
            balance_after_total=balance["pending_balance"] + balance["available_balance"] + balance["reserved_balance"],
            donation_id=donation_id,
            donation_type=donation_type,
            payout_id=payout_id,
            idempotency_key=idempotency_key,
            description=description,
            processed_by=processed_by,
            created_at=now,
            metadata=metadata or {},
        )
        # The entry is staged first so a rejected key leaves the balance untouched.
        uow.add_entry(entry.model_dump())
        uow.put_balance(balance)
        return entry

    def _guard_idempotency(self, uow: Transaction, key: Optional[str]) -> None:
        if key:
            existing = uow.find_entry_by_idempotency_key(key)
            if existing is not None:
                raise DuplicateIdempotencyKeyError(key, existing["id"])

    def _clamp(self, value: Decimal, organization_id: str, field: str) -> Decimal:
        if value < 0:
            logger.error(
                f"Negative balance guard triggered for {field} of organization {organization_id}: {value}",
                extra={"organization_id": organization_id, "field": field, "attempted_value": str(value)},
            )
            return ZERO
        return value

    @staticmethod
    def _positive(amount: Amount) -> Decimal:
        try:
            value = to_money(amount)
        except ArithmeticError:
            raise InvalidAmountError(f"Invalid amount: {amount!r}") from None
        if value <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        return value
