"""Payment processor adapters.

Available adapters:
- CardAdapter: Stripe PaymentIntents
- MobileMoneyAdapter: M-Pesa Daraja STK push
- CashAdapter: local bookkeeping only
"""

from paygate.processors.base import (
    CallbackOutcome,
    PaymentResult,
    ProcessorAdapter,
    RefundResult,
    VerificationResult,
    WebhookResult,
)
from paygate.processors.card import CardAdapter
from paygate.processors.cash import CashAdapter
from paygate.processors.dispatch import AdapterSet
from paygate.processors.mobile_money import MobileMoneyAdapter

__all__ = [
    "AdapterSet",
    "CallbackOutcome",
    "CardAdapter",
    "CashAdapter",
    "MobileMoneyAdapter",
    "PaymentResult",
    "ProcessorAdapter",
    "RefundResult",
    "VerificationResult",
    "WebhookResult",
]
