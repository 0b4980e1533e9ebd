"""Transaction, refund and invoice state machines with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from paygate.errors import InvalidTransitionError


class TransactionStatus(str, Enum):
    """Ledger entry (and refund) status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Refunds move through the same states as payments.
RefundStatus = TransactionStatus


class InvoiceStatus(str, Enum):
    """Invoice status values."""

    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class StateMachine:
    """Transition table shared by the concrete machines."""

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(_value(from_status), _value(to_status))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Terminal statuses have no outgoing transitions."""
        return not cls.VALID_TRANSITIONS.get(status, [])

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def sources_for(cls, to_status: str) -> list[str]:
        """Every status from which ``to_status`` is reachable in one step.

        Used to build the ``WHERE status IN (...)`` guard of a conditional
        update so the check and the write happen in one statement.
        """
        return [
            _value(source)
            for source, targets in cls.VALID_TRANSITIONS.items()
            if to_status in targets
        ]


class TransactionStateMachine(StateMachine):
    """State machine for ledger entries.

    Allowed transitions:
    - pending → processing
    - pending → completed | failed | cancelled
    - processing → completed | failed | cancelled

    Terminal entries never transition again, which is what makes callback
    application idempotent.
    """

    VALID_TRANSITIONS = {
        TransactionStatus.PENDING: [
            TransactionStatus.PROCESSING,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        ],
        TransactionStatus.PROCESSING: [
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        ],
        TransactionStatus.COMPLETED: [],
        TransactionStatus.FAILED: [],
        TransactionStatus.CANCELLED: [],
    }

    OPEN_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value)


class InvoiceStateMachine(StateMachine):
    """State machine for invoices.

    Allowed transitions:
    - draft → sent | cancelled
    - sent → partially_paid | paid | overdue | cancelled
    - partially_paid → paid | overdue | cancelled
    - overdue → partially_paid | paid | cancelled
    """

    VALID_TRANSITIONS = {
        InvoiceStatus.DRAFT: [InvoiceStatus.SENT, InvoiceStatus.CANCELLED],
        InvoiceStatus.SENT: [
            InvoiceStatus.PARTIALLY_PAID,
            InvoiceStatus.PAID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.CANCELLED,
        ],
        InvoiceStatus.PARTIALLY_PAID: [
            InvoiceStatus.PAID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.CANCELLED,
        ],
        InvoiceStatus.OVERDUE: [
            InvoiceStatus.PARTIALLY_PAID,
            InvoiceStatus.PAID,
            InvoiceStatus.CANCELLED,
        ],
        InvoiceStatus.PAID: [],
        InvoiceStatus.CANCELLED: [],
    }

    # Statuses that accept payments
    PAYABLE = {
        InvoiceStatus.SENT,
        InvoiceStatus.PARTIALLY_PAID,
        InvoiceStatus.OVERDUE,
    }

    # Statuses swept by the overdue job
    OVERDUE_CANDIDATES = (
        InvoiceStatus.SENT.value,
        InvoiceStatus.PARTIALLY_PAID.value,
    )

    @classmethod
    def can_accept_payment(cls, status: str) -> bool:
        """Check if a payment can be applied in this status."""
        return status in cls.PAYABLE


def _value(status: str) -> str:
    return status.value if isinstance(status, Enum) else status
