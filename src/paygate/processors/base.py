"""Base protocol and result types for payment processor adapters.

All adapters implement the ProcessorAdapter protocol. Orchestrators use them
without knowing processor-specific details.

Failure contract:
    - Network, auth and timeout failures from the processor come back as a
      result with ``success=False``. They are never raised.
    - Missing or malformed credentials are local precondition violations and
      raise ``CredentialsMalformedError`` from ``check_credentials``, which
      orchestrators call before writing anything to the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from decimal import Decimal

    from paygate.credentials.store import CredentialBundle
    from paygate.models.refund import Refund
    from paygate.models.transaction import Transaction


@dataclass(frozen=True)
class PaymentResult:
    """Result of initiating a payment with a processor.

    ``pending`` results were accepted for processing but their outcome
    arrives later through a callback keyed by ``transaction_id``.
    """

    success: bool
    status: str
    transaction_id: str | None = None
    pending: bool = False
    processor_reference: str | None = None
    merchant_request_id: str | None = None
    raw_details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    success: bool
    status: str
    refund_id: str | None = None
    raw_details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Result of checking credentials against the processor."""

    success: bool
    message: str = ""


@dataclass(frozen=True)
class CallbackOutcome:
    """Terminal outcome reported asynchronously for one payment."""

    status: str  # completed/failed/cancelled
    result_code: str | None = None
    description: str = ""
    receipt_number: str | None = None
    processor_reference: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class WebhookResult:
    """A verified inbound processor event."""

    event_type: str
    event_id: str | None = None
    correlation_id: str | None = None
    processor_reference: str | None = None
    outcome: CallbackOutcome | None = None
    data: dict[str, Any] = field(default_factory=dict)


class ProcessorAdapter(Protocol):
    """Protocol for payment processor adapters."""

    method: str
    requires_credentials: bool

    def check_credentials(self, credentials: CredentialBundle | None) -> None:
        """Validate credential shape locally.

        Raises:
            CredentialsMalformedError: required fields are missing or invalid.
        """
        ...

    def check_refundable(self, payment: Transaction, amount: Decimal) -> None:
        """Reject refunds the processor could never execute.

        Raises:
            RefundNotAllowedError: the payment lacks the processor reference
                a refund needs.
            InvalidPaymentRequestError: the processor cannot move ``amount``
                exactly.
        """
        ...

    async def process_payment(
        self, payment: Transaction, credentials: CredentialBundle | None
    ) -> PaymentResult:
        """Initiate or execute a payment for a freshly created ledger entry."""
        ...

    async def verify_credentials(
        self, credentials: CredentialBundle | None
    ) -> VerificationResult:
        """Check that the processor accepts the credentials."""
        ...

    def handle_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> WebhookResult:
        """Verify and decode an inbound processor event.

        Raises:
            WebhookVerificationError: signature or payload is invalid.
        """
        ...

    async def process_refund(
        self,
        refund: Refund,
        original_payment: Transaction,
        credentials: CredentialBundle | None,
    ) -> RefundResult:
        """Refund part or all of a completed payment."""
        ...
