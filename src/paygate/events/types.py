"""Domain event types for gateway operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for webhook delivery

An event is emitted only after the ledger write it describes has committed,
and only by the caller whose conditional update actually applied. Duplicate
or late callbacks therefore never produce a second notification.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID, uuid4

from paygate.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PAYMENT = "payment"
    REFUND = "refund"
    DISPUTE = "dispute"
    INVOICE = "invoice"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    business_id: str
    correlation_id: str | None  # Processor correlation id, when there is one
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        business_id: str,
        correlation_id: str | None = None,
        source_service: str = "paygate",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            business_id=business_id,
            correlation_id=correlation_id,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    # Outbound webhook ``type`` for this event
    notification_type: ClassVar[str] = ""

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    @property
    def business_id(self) -> str:
        return self.metadata.business_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        return _serialize_dict(asdict(self))

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def notification(self) -> dict[str, Any]:
        """Body posted to the business's webhook URL."""
        body = self.to_dict()
        meta = body.pop("metadata")
        return {
            "type": self.notification_type,
            "event_id": meta["event_id"],
            "occurred_at": meta["timestamp"],
            "business_id": meta["business_id"],
            **body,
        }


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, date):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentCompleted(DomainEvent):
    """A payment reached ``completed``."""

    notification_type: ClassVar[str] = "payment.success"

    transaction_id: UUID
    amount: Decimal
    currency: str
    method: str
    receipt_number: str | None = None
    status: str = "completed"

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """A payment reached ``failed``."""

    notification_type: ClassVar[str] = "payment.failed"

    transaction_id: UUID
    amount: Decimal
    currency: str
    method: str
    reason: str | None = None
    status: str = "failed"

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentCancelled(DomainEvent):
    """A payment was cancelled by the customer or processor."""

    notification_type: ClassVar[str] = "payment.cancelled"

    transaction_id: UUID
    amount: Decimal
    currency: str
    method: str
    reason: str | None = None
    status: str = "cancelled"

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundCompleted(DomainEvent):
    """Money went back to the customer."""

    notification_type: ClassVar[str] = "refund.completed"

    refund_id: UUID
    transaction_id: UUID
    amount: Decimal
    currency: str
    fully_refunded: bool
    status: str = "completed"

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class RefundFailed(DomainEvent):
    """The processor refused or could not execute a refund."""

    notification_type: ClassVar[str] = "refund.failed"

    refund_id: UUID
    transaction_id: UUID
    amount: Decimal
    currency: str
    reason: str | None = None
    status: str = "failed"

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


# =============================================================================
# Dispute Events
# =============================================================================


@dataclass(frozen=True)
class DisputeOpened(DomainEvent):
    """The card holder disputed a charge."""

    notification_type: ClassVar[str] = "dispute.opened"

    transaction_id: UUID
    dispute_id: str | None
    reason: str | None
    amount: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class DisputeClosed(DomainEvent):
    """A dispute was resolved."""

    notification_type: ClassVar[str] = "dispute.closed"

    transaction_id: UUID
    dispute_id: str | None
    status: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


# =============================================================================
# Invoice Events
# =============================================================================


@dataclass(frozen=True)
class InvoiceSent(DomainEvent):
    """An invoice left draft and was issued to the customer."""

    notification_type: ClassVar[str] = "invoice.sent"

    invoice_id: UUID
    invoice_number: str
    customer_id: str
    total: Decimal
    currency: str
    due_date: date

    @property
    def category(self) -> EventCategory:
        return EventCategory.INVOICE


@dataclass(frozen=True)
class InvoicePaid(DomainEvent):
    """Payments applied to an invoice now cover its total."""

    notification_type: ClassVar[str] = "invoice.paid"

    invoice_id: UUID
    invoice_number: str
    total: Decimal
    amount_paid: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.INVOICE
