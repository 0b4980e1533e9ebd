"""Domain events package.

This package provides:
- Typed domain events for payment, refund, dispute and invoice outcomes
- Event emitter for publishing events
- Webhook notifier delivering events to businesses
"""

from paygate.events.emitter import AsyncEventEmitter, AsyncEventHandler
from paygate.events.notifier import WebhookNotifier, sign_payload
from paygate.events.types import (
    # Base
    DomainEvent,
    EventCategory,
    EventMetadata,
    # Payment Events
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    # Refund Events
    RefundCompleted,
    RefundFailed,
    # Dispute Events
    DisputeClosed,
    DisputeOpened,
    # Invoice Events
    InvoicePaid,
    InvoiceSent,
)

__all__ = [
    "AsyncEventEmitter",
    "AsyncEventHandler",
    "WebhookNotifier",
    "sign_payload",
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "PaymentCancelled",
    "PaymentCompleted",
    "PaymentFailed",
    "RefundCompleted",
    "RefundFailed",
    "DisputeClosed",
    "DisputeOpened",
    "InvoicePaid",
    "InvoiceSent",
]
