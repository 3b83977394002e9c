from decimal import Decimal
from typing import Optional
from uuid import UUID


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"


class ValidationError(LedgerServiceError):
    code = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"


class BelowMinimumPayoutError(ValidationError):
    code = "BELOW_MINIMUM_PAYOUT"
    
    def __init__(self, amount: Decimal, minimum: Decimal):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum payout amount is {minimum}, requested {amount}")


class InsufficientFundsError(LedgerServiceError):
    code = "INSUFFICIENT_FUNDS"
    
    def __init__(self, organization_id: str, requested: Decimal, available: Decimal):
        self.organization_id = organization_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient available balance for organization {organization_id}: "
            f"requested {requested}, available {available}"
        )


class DuplicateIdempotencyKeyError(LedgerServiceError):
    """The logical event was already recorded; callers treat this as already processed."""
    code = "ALREADY_PROCESSED"
    
    def __init__(self, idempotency_key: str, existing_entry_id: Optional[UUID] = None):
        self.idempotency_key = idempotency_key
        self.existing_entry_id = existing_entry_id
        super().__init__(f"Ledger entry with idempotency key '{idempotency_key}' already exists")


class TransactionConflictError(LedgerServiceError):
    code = "TRANSACTION_CONFLICT"


class TransactionScopeError(LedgerServiceError):
    code = "TRANSACTION_SCOPE"


class BalanceNotFoundError(LedgerServiceError):
    code = "BALANCE_NOT_FOUND"


class InvalidPayoutStateError(LedgerServiceError):
    code = "INVALID_PAYOUT_STATE"
    
    def __init__(self, payout_id: UUID, status: str, action: str):
        self.payout_id = payout_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} payout {payout_id} in status '{status}'")


class PayoutNotFoundError(LedgerServiceError):
    code = "PAYOUT_NOT_FOUND"


class PayoutDestinationMissingError(ValidationError):
    code = "PAYOUT_DESTINATION_MISSING"


class ConsistencyError(LedgerServiceError):
    """Money moved externally but the local outcome could not be recorded."""
    code = "CONSISTENCY_ERROR"


class PayoutNotDueError(LedgerServiceError):
    code = "PAYOUT_NOT_DUE"


class JobNotFoundError(LedgerServiceError):
    code = "JOB_NOT_FOUND"
