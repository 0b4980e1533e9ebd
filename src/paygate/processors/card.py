"""Card payments through Stripe.

PaymentIntents are created and confirmed in one call, so a card payment has a
definitive outcome in the same round trip. The Stripe SDK is synchronous; calls
run in a worker thread under ``asyncio.wait_for`` so a slow Stripe never holds
the event loop or exceeds the processor timeout.

A timeout only stops the wait: the worker thread keeps its request in flight,
so a payment recorded ``failed`` for "Timed out waiting for Stripe" may still
have charged the card. The late ``payment_intent.succeeded`` webhook finds the
entry terminal and is absorbed as a duplicate; check the intent in the Stripe
dashboard (it carries the transaction id in its metadata) before asking the
customer to pay again.

Credential bundle:
    secrets: secret_key, and optionally webhook_secret.
    routing: optionally publishable_key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

import stripe

from paygate.errors import (
    CredentialsMalformedError,
    RefundNotAllowedError,
    WebhookVerificationError,
)
from paygate.models.business import PaymentMethod
from paygate.processors.base import (
    CallbackOutcome,
    PaymentResult,
    RefundResult,
    VerificationResult,
    WebhookResult,
)
from paygate.services.state_machine import TransactionStatus

if TYPE_CHECKING:
    from paygate.credentials.store import CredentialBundle
    from paygate.models.refund import Refund
    from paygate.models.transaction import Transaction

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

# Stripe only accepts these as Refund.reason; anything else goes to metadata.
STRIPE_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})

PENDING_INTENT_STATUSES = frozenset(
    {
        "processing",
        "requires_action",
        "requires_capture",
        "requires_confirmation",
        "requires_payment_method",
    }
)

PAYMENT_EVENTS = {
    "payment_intent.succeeded": TransactionStatus.COMPLETED.value,
    "payment_intent.payment_failed": TransactionStatus.FAILED.value,
    "payment_intent.failed": TransactionStatus.FAILED.value,
    "payment_intent.canceled": TransactionStatus.CANCELLED.value,
}
REFUND_EVENTS = frozenset({"charge.refunded"})
DISPUTE_EVENTS = frozenset({"charge.dispute.created", "charge.dispute.closed"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to Stripe's integer minor units."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | None, currency: str | None) -> Decimal | None:
    if value is None:
        return None
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def _get(obj: Any, *path: str) -> Any:
    """Walk Stripe objects, plain dicts or unexpanded ids alike."""
    for key in path:
        if obj is None or isinstance(obj, str):
            return None
        if isinstance(obj, Mapping):
            obj = obj.get(key)
        else:
            obj = getattr(obj, key, None)
    return obj


def _id(obj: Any) -> str | None:
    return obj if isinstance(obj, str) else _get(obj, "id")


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def _intent_details(intent: Any) -> dict[str, Any]:
    charge = _get(intent, "latest_charge")
    card = _get(charge, "payment_method_details", "card")
    details = {
        "payment_intent": _get(intent, "id"),
        "intent_status": _get(intent, "status"),
        "charge_id": _id(charge),
        "payment_method": _id(_get(intent, "payment_method")),
        "brand": _get(card, "brand"),
        "last4": _get(card, "last4"),
        "exp_month": _get(card, "exp_month"),
        "exp_year": _get(card, "exp_year"),
        "receipt_url": _get(charge, "receipt_url"),
    }
    return {k: v for k, v in details.items() if v is not None}


class CardAdapter:
    """Stripe PaymentIntent adapter."""

    method = PaymentMethod.CARD.value
    requires_credentials = True

    def __init__(self, *, timeout: float = 30.0, api_version: str | None = None):
        self.timeout = timeout
        self.api_version = api_version

    async def _call(self, fn: Callable[..., Any], **params: Any) -> Any:
        if self.api_version:
            params["stripe_version"] = self.api_version
        return await asyncio.wait_for(asyncio.to_thread(fn, **params), timeout=self.timeout)

    # Credentials

    def check_credentials(self, credentials: CredentialBundle | None) -> None:
        if credentials is None:
            raise CredentialsMalformedError(self.method, ["credentials are required"])

        problems = []
        secret_key = credentials.secret("secret_key")
        if not secret_key:
            problems.append("missing secret 'secret_key'")
        elif not secret_key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            problems.append("secret_key must be a Stripe secret or restricted key")
        webhook_secret = credentials.secret("webhook_secret")
        if webhook_secret and not webhook_secret.startswith("whsec_"):
            problems.append("webhook_secret must start with 'whsec_'")
        publishable_key = credentials.setting("publishable_key")
        if publishable_key and not str(publishable_key).startswith("pk_"):
            problems.append("publishable_key must start with 'pk_'")

        if problems:
            raise CredentialsMalformedError(self.method, problems)

    def check_refundable(self, payment: Transaction, amount: Decimal) -> None:
        if not (payment.processor_reference or payment.correlation_id):
            raise RefundNotAllowedError(
                "Card payment has no Stripe charge to refund",
                transaction_id=payment.id,
            )

    async def verify_credentials(
        self, credentials: CredentialBundle | None
    ) -> VerificationResult:
        try:
            self.check_credentials(credentials)
        except CredentialsMalformedError as e:
            return VerificationResult(success=False, message=e.message)

        try:
            await self._call(stripe.Balance.retrieve, api_key=credentials.secret("secret_key"))
        except asyncio.TimeoutError:
            return VerificationResult(success=False, message="Timed out waiting for Stripe")
        except stripe.AuthenticationError:
            return VerificationResult(success=False, message="Stripe rejected the secret key")
        except stripe.StripeError as e:
            return VerificationResult(success=False, message=f"Stripe error: {e}")
        return VerificationResult(success=True, message="Stripe account reachable")

    # Payments

    async def process_payment(
        self, payment: Transaction, credentials: CredentialBundle | None
    ) -> PaymentResult:
        if not payment.payment_token:
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Card payments need a payment method token",
            )

        metadata = {
            "business_id": payment.business_id,
            "transaction_id": str(payment.id),
        }
        if payment.invoice_id:
            metadata["invoice_id"] = str(payment.invoice_id)
        params: dict[str, Any] = {
            "amount": to_minor_units(payment.amount, payment.currency),
            "currency": payment.currency.lower(),
            "payment_method": payment.payment_token,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": metadata,
            "expand": ["latest_charge"],
            "idempotency_key": f"payment_{payment.id}",
            "api_key": credentials.secret("secret_key"),
        }
        if payment.description:
            params["description"] = payment.description
        if payment.customer_id and payment.customer_id.startswith("cus_"):
            params["customer"] = payment.customer_id

        try:
            intent = await self._call(stripe.PaymentIntent.create, **params)
        except asyncio.TimeoutError:
            logger.warning(
                "Stripe payment for transaction %s timed out; the intent may still "
                "complete at Stripe",
                payment.id,
            )
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Timed out waiting for Stripe",
            )
        except stripe.CardError as e:
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=e.user_message or str(e),
                raw_details={
                    "code": e.code,
                    "decline_code": _get(e.error, "decline_code"),
                    "payment_intent": _id(_get(e.error, "payment_intent")),
                },
            )
        except stripe.StripeError as e:
            logger.warning("Stripe payment for transaction %s failed: %s", payment.id, e)
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=e.user_message or str(e),
            )

        status = _get(intent, "status")
        details = _intent_details(intent)
        intent_id = _get(intent, "id")
        charge_id = details.get("charge_id")
        if status == "succeeded":
            return PaymentResult(
                success=True,
                status=TransactionStatus.COMPLETED.value,
                transaction_id=intent_id,
                processor_reference=charge_id,
                raw_details=details,
            )
        if status in PENDING_INTENT_STATUSES:
            return PaymentResult(
                success=True,
                status=TransactionStatus.PROCESSING.value,
                pending=True,
                transaction_id=intent_id,
                processor_reference=charge_id,
                raw_details=details,
            )
        return PaymentResult(
            success=False,
            status=TransactionStatus.FAILED.value,
            transaction_id=intent_id,
            error=f"PaymentIntent {status}",
            raw_details=details,
        )

    # Webhooks

    def handle_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> WebhookResult:
        if not secret:
            raise WebhookVerificationError("No Stripe webhook secret configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("Stripe signature verification failed") from e
        except ValueError as e:
            raise WebhookVerificationError("Stripe webhook payload is not valid JSON") from e

        event_type = _get(event, "type") or ""
        event_id = _get(event, "id")
        obj = _get(event, "data", "object")

        if event_type in PAYMENT_EVENTS:
            return self._payment_event(event_type, event_id, obj)
        if event_type in REFUND_EVENTS:
            refunds = _get(obj, "refunds", "data") or []
            return WebhookResult(
                event_type=event_type,
                event_id=event_id,
                correlation_id=_id(_get(obj, "payment_intent")),
                processor_reference=_get(obj, "id"),
                data={
                    "amount_refunded": from_minor_units(
                        _get(obj, "amount_refunded"), _get(obj, "currency")
                    ),
                    "refunded": bool(_get(obj, "refunded")),
                    "refund_ids": [_id(r) for r in refunds if _id(r)],
                },
            )
        if event_type in DISPUTE_EVENTS:
            return WebhookResult(
                event_type=event_type,
                event_id=event_id,
                processor_reference=_id(_get(obj, "charge")),
                data={
                    "dispute_id": _get(obj, "id"),
                    "reason": _get(obj, "reason"),
                    "status": _get(obj, "status"),
                    "amount": _text(from_minor_units(_get(obj, "amount"), _get(obj, "currency"))),
                    "evidence_due_by": _get(obj, "evidence_details", "due_by"),
                },
            )
        return WebhookResult(event_type=event_type, event_id=event_id)

    def _payment_event(self, event_type: str, event_id: str | None, intent: Any) -> WebhookResult:
        status = PAYMENT_EVENTS[event_type]
        details = _intent_details(intent)
        if status == TransactionStatus.COMPLETED:
            result_code, description = "succeeded", "Payment succeeded"
        elif status == TransactionStatus.CANCELLED:
            result_code = "canceled"
            description = _get(intent, "cancellation_reason") or "Payment canceled"
        else:
            error = _get(intent, "last_payment_error")
            result_code = _get(error, "decline_code") or _get(error, "code") or "failed"
            description = _get(error, "message") or "Payment failed"
        return WebhookResult(
            event_type=event_type,
            event_id=event_id,
            correlation_id=_get(intent, "id"),
            processor_reference=details.get("charge_id"),
            outcome=CallbackOutcome(
                status=status,
                result_code=result_code,
                description=description,
                processor_reference=details.get("charge_id"),
                details=details,
                payload={"event_id": event_id, "type": event_type},
            ),
        )

    # Refunds

    async def process_refund(
        self,
        refund: Refund,
        original_payment: Transaction,
        credentials: CredentialBundle | None,
    ) -> RefundResult:
        params: dict[str, Any] = {
            "amount": to_minor_units(refund.amount, refund.currency),
            "metadata": {
                "refund_id": str(refund.id),
                "transaction_id": str(original_payment.id),
                "reason": refund.reason[:500],
            },
            "idempotency_key": f"refund_{refund.id}",
            "api_key": credentials.secret("secret_key"),
        }
        if original_payment.processor_reference:
            params["charge"] = original_payment.processor_reference
        else:
            params["payment_intent"] = original_payment.correlation_id
        if refund.reason in STRIPE_REFUND_REASONS:
            params["reason"] = refund.reason

        try:
            result = await self._call(stripe.Refund.create, **params)
        except asyncio.TimeoutError:
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Timed out waiting for Stripe",
            )
        except stripe.StripeError as e:
            logger.warning("Stripe refund %s failed: %s", refund.id, e)
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=e.user_message or str(e),
            )

        status = _get(result, "status")
        details = {
            "stripe_refund_id": _get(result, "id"),
            "stripe_status": status,
            "charge_id": _id(_get(result, "charge")),
        }
        details = {k: v for k, v in details.items() if v is not None}
        if status in ("succeeded", "pending"):
            return RefundResult(
                success=True,
                status=TransactionStatus.COMPLETED.value,
                refund_id=_get(result, "id"),
                raw_details=details,
            )
        return RefundResult(
            success=False,
            status=TransactionStatus.FAILED.value,
            refund_id=_get(result, "id"),
            error=_get(result, "failure_reason") or f"Refund {status}",
            raw_details=details,
        )
