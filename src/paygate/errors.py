"""Exception hierarchy for paygate.

Every error carries a stable machine-readable ``code`` and the HTTP status an
outer API layer should answer with. Processor-reported failures are never
raised: they are persisted on the ledger entry as ``failed`` with diagnostics.
Exceptions are reserved for local precondition violations that abort an
operation before anything is written.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all paygate errors."""

    code = "gateway_error"
    http_status = 500

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error body."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        return body


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# Preconditions: checked before any ledger write.


class PreconditionError(GatewayError):
    """Request rejected before processing."""

    code = "precondition_failed"
    http_status = 422


class BusinessNotFoundError(PreconditionError):
    """Business not found."""

    code = "business_not_found"
    http_status = 404

    def __init__(self, business_id: str):
        super().__init__(f"Business '{business_id}' not found", business_id=business_id)


class BusinessInactiveError(PreconditionError):
    """Business is not active."""

    code = "business_inactive"

    def __init__(self, business_id: str, status: str):
        super().__init__(
            f"Business '{business_id}' is {status}",
            business_id=business_id,
            status=status,
        )


class AppLinkInactiveError(PreconditionError):
    """App is not linked to the business or the link is inactive."""

    code = "app_link_inactive"
    http_status = 403

    def __init__(self, business_id: str, app_id: str):
        super().__init__(
            f"App '{app_id}' has no active link to business '{business_id}'",
            business_id=business_id,
            app_id=app_id,
        )


class PaymentMethodUnavailableError(PreconditionError):
    """Payment method not enabled for the business."""

    code = "payment_method_unavailable"

    def __init__(self, business_id: str, method: str):
        super().__init__(
            f"Payment method '{method}' is not enabled for business '{business_id}'",
            business_id=business_id,
            method=method,
        )


class CredentialsMissingError(PreconditionError):
    """No active processor credentials."""

    code = "credentials_missing"

    def __init__(self, business_id: str, method: str):
        super().__init__(
            f"No active {method} credentials for business '{business_id}'",
            business_id=business_id,
            method=method,
        )


class CredentialsMalformedError(PreconditionError):
    """Processor credentials are incomplete or malformed."""

    code = "credentials_malformed"

    def __init__(self, method: str, problems: list[str]):
        self.problems = problems
        super().__init__(
            f"Malformed {method} credentials: {'; '.join(problems)}",
            method=method,
            problems=problems,
        )


class InvalidPaymentRequestError(PreconditionError):
    """Payment or refund request failed validation."""

    code = "invalid_request"
    http_status = 400


# Lookups


class TransactionNotFoundError(GatewayError):
    """Transaction not found."""

    code = "transaction_not_found"
    http_status = 404

    def __init__(self, transaction_id: Any):
        super().__init__(
            f"Transaction '{transaction_id}' not found",
            transaction_id=transaction_id,
        )


class RefundNotFoundError(GatewayError):
    """Refund not found."""

    code = "refund_not_found"
    http_status = 404

    def __init__(self, refund_id: Any):
        super().__init__(f"Refund '{refund_id}' not found", refund_id=refund_id)


class InvoiceNotFoundError(GatewayError):
    """Invoice not found."""

    code = "invoice_not_found"
    http_status = 404

    def __init__(self, invoice_id: Any):
        super().__init__(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)


# Refunds


class RefundAmountExceededError(GatewayError):
    """Requested refund exceeds the refundable balance."""

    code = "refund_amount_exceeded"
    http_status = 409

    def __init__(self, transaction_id: Any, requested: Any, available: Any):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Refund of {requested} exceeds refundable balance {available}",
            transaction_id=transaction_id,
            requested=requested,
            available=available,
        )


class RefundNotAllowedError(GatewayError):
    """Transaction cannot be refunded."""

    code = "refund_not_allowed"
    http_status = 422


class ConcurrencyConflictError(GatewayError):
    """Record kept changing under a compare-and-swap update."""

    code = "concurrency_conflict"
    http_status = 409


# State machines


class InvalidTransitionError(GatewayError):
    """Raised when a state transition is not allowed."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, to_status=to_status)


# Inbound callbacks


class WebhookVerificationError(GatewayError):
    """Webhook signature or payload could not be verified."""

    code = "webhook_verification_failed"
    http_status = 400


# Collaborators


class CredentialStoreError(GatewayError):
    """Credential store backend failure."""

    code = "credential_store_error"
    http_status = 502
