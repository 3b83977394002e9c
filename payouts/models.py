from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import PageMeta


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Failed payouts only leave FAILED through an explicit resubmit or release.
PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.CANCELLED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.FAILED: frozenset({PayoutStatus.PENDING, PayoutStatus.CANCELLED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}


class Payout(BaseModel):
    id: UUID
    organization_id: str
    payout_number: str
    requested_amount: Decimal
    platform_fee_rate: Decimal = Decimal("0")
    platform_fee_amount: Decimal = Decimal("0.00")
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0.00")
    net_amount: Decimal
    currency: str = "USD"
    destination_account: Optional[str] = None
    scheduled_date: datetime
    status: PayoutStatus = PayoutStatus.PENDING
    requested_by: str
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    external_settlement_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_ambiguous: bool = False
    retry_count: int = 0
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    resubmitted_by: Optional[str] = None
    resubmitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_cancel(self) -> bool:
        return self.status == PayoutStatus.PENDING

    def is_due(self, now: datetime) -> bool:
        return self.status == PayoutStatus.PENDING and self.scheduled_date <= now


class PayoutRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    requested_by: str
    scheduled_date: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 250.00,
            "requested_by": "user_42",
            "scheduled_date": "2024-03-01T09:00:00Z"
        }
    })


class CancelPayoutRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class ResolveFailedPayoutRequest(BaseModel):
    actor_id: str
    confirm_not_settled: bool = Field(
        default=False,
        description="Operator verified with the processor that the timed-out transfer did not settle",
    )
    reason: Optional[str] = None


class PayoutDestinationRequest(BaseModel):
    account_id: str = Field(..., min_length=1)


class PayoutListResponse(BaseModel):
    organization_id: str
    payouts: list[Payout]
    meta: PageMeta


class NextPayoutResponse(BaseModel):
    organization_id: str
    next_payout_date: Optional[datetime] = None
    payout: Optional[Payout] = None
