"""
Payout Settlement

Payout requests reserve available funds, scheduled execution transfers them
through the payment processor, and failed payouts wait for manual resolution:
pending → processing → completed / failed, pending → cancelled.
"""

from .models import PayoutStatus, Payout
from .engine import PayoutEngine
from .processor import PaymentProcessor, HttpPaymentProcessor, CircuitBreaker

__all__ = [
    "PayoutStatus",
    "Payout",
    "PayoutEngine",
    "PaymentProcessor",
    "HttpPaymentProcessor",
    "CircuitBreaker",
]
