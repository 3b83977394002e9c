from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import NamedTuple, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field, model_validator

CENT = Decimal("0.01")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerCategory(str, Enum):
    DONATION_RECEIVED = "donation_received"
    DONATION_CLEARED = "donation_cleared"
    PAYOUT_RESERVED = "payout_reserved"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_CANCELLED = "payout_cancelled"
    REFUND_ISSUED = "refund_issued"
    ADJUSTMENT_CREDIT = "adjustment_credit"
    ADJUSTMENT_DEBIT = "adjustment_debit"


class DonationType(str, Enum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"
    ROUND_UP = "round-up"


class BalanceBucket(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    RESERVED = "reserved"


class CategoryRule(NamedTuple):
    entry_type: EntryType
    requires_donation: bool = False
    requires_payout: bool = False


# Every category has exactly one direction and a fixed set of required references.
CATEGORY_RULES: dict[LedgerCategory, CategoryRule] = {
    LedgerCategory.DONATION_RECEIVED: CategoryRule(EntryType.CREDIT, requires_donation=True),
    LedgerCategory.DONATION_CLEARED: CategoryRule(EntryType.CREDIT),
    LedgerCategory.PAYOUT_RESERVED: CategoryRule(EntryType.DEBIT, requires_payout=True),
    LedgerCategory.PAYOUT_COMPLETED: CategoryRule(EntryType.DEBIT, requires_payout=True),
    LedgerCategory.PAYOUT_FAILED: CategoryRule(EntryType.CREDIT, requires_payout=True),
    LedgerCategory.PAYOUT_CANCELLED: CategoryRule(EntryType.CREDIT, requires_payout=True),
    LedgerCategory.REFUND_ISSUED: CategoryRule(EntryType.DEBIT, requires_donation=True),
    LedgerCategory.ADJUSTMENT_CREDIT: CategoryRule(EntryType.CREDIT),
    LedgerCategory.ADJUSTMENT_DEBIT: CategoryRule(EntryType.DEBIT),
}


class AccountBalance(BaseModel):
    organization_id: str
    currency: str = "USD"
    pending_balance: Decimal = Decimal("0.00")
    available_balance: Decimal = Decimal("0.00")
    reserved_balance: Decimal = Decimal("0.00")
    lifetime_earnings: Decimal = Decimal("0.00")
    lifetime_paid_out: Decimal = Decimal("0.00")
    lifetime_platform_fees: Decimal = Decimal("0.00")
    lifetime_tax_deducted: Decimal = Decimal("0.00")
    lifetime_refunds: Decimal = Decimal("0.00")
    clearing_period_days: int = 7
    last_transaction_at: Optional[datetime] = None
    last_payout_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def total_balance(self) -> Decimal:
        return self.pending_balance + self.available_balance + self.reserved_balance


class LedgerEntry(BaseModel):
    id: UUID
    organization_id: str
    entry_type: EntryType
    category: LedgerCategory
    amount: Decimal = Field(..., gt=0)
    currency: str = "USD"
    balance_after_pending: Decimal
    balance_after_available: Decimal
    balance_after_reserved: Decimal
    balance_after_total: Decimal
    donation_id: Optional[str] = None
    donation_type: Optional[DonationType] = None
    payout_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    description: str
    processed_by: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @model_validator(mode="after")
    def _check_category_shape(self) -> "LedgerEntry":
        rule = CATEGORY_RULES[self.category]
        if self.entry_type != rule.entry_type:
            raise ValueError(f"{self.category.value} entries must be {rule.entry_type.value}s")
        if rule.requires_donation and not self.donation_id:
            raise ValueError(f"{self.category.value} entries must reference a donation")
        if rule.requires_payout and self.payout_id is None:
            raise ValueError(f"{self.category.value} entries must reference a payout")
        return self


class TransactionFilters(BaseModel):
    category: Optional[LedgerCategory] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class LedgerHistoryResponse(BaseModel):
    organization_id: str
    entries: list[LedgerEntry]
    meta: PageMeta


class DonationCreditRequest(BaseModel):
    donation_id: str
    net_amount: Decimal = Field(..., gt=0, description="Amount credited after fees")
    donation_type: DonationType = DonationType.ONE_TIME
    gross_amount: Optional[Decimal] = None
    platform_fee: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    processor_fee: Decimal = Field(default=Decimal("0"), ge=0)
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "donation_id": "don_8c1f2a",
            "net_amount": 47.50,
            "donation_type": "one-time",
            "gross_amount": 50.00,
            "platform_fee": 2.00,
            "processor_fee": 0.50
        }
    })


class RefundRequest(BaseModel):
    donation_id: str
    refund_id: str = Field(..., min_length=1, description="Processor refund id; one ledger entry per refund")
    amount: Decimal = Field(..., gt=0)
    donation_created_at: datetime
    performed_by: Optional[str] = None


class AdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    direction: EntryType
    reason: str = Field(..., min_length=1)
    performed_by: str


class ClearingPeriodUpdate(BaseModel):
    clearing_period_days: int = Field(..., ge=0, le=90)


class ReconciliationReport(BaseModel):
    organization_id: str
    entry_count: int
    replayed_pending: Decimal
    replayed_available: Decimal
    replayed_reserved: Decimal
    stored_pending: Decimal
    stored_available: Decimal
    stored_reserved: Decimal
    snapshot_matches: bool
    discrepancies: list[str] = Field(default_factory=list)
    checked_at: datetime

    @computed_field
    @property
    def is_balanced(self) -> bool:
        return not self.discrepancies
