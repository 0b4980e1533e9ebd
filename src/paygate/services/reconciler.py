"""Callback reconciler - converges the ledger with asynchronous processor events.

Handles:
1. M-Pesa STK callbacks keyed by ``CheckoutRequestID``
2. Stripe payment, refund and dispute webhooks
3. Exactly-once application of terminal outcomes: the "already terminal"
   check and the write are one conditional update, so duplicate or
   concurrent deliveries are absorbed as no-ops

Callbacks that cannot be matched are reported and dropped; the endpoint in
front of the reconciler should still acknowledge them so processors stop
retrying.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from paygate.database import session_scope
from paygate.errors import WebhookVerificationError
from paygate.events.types import DisputeClosed, DisputeOpened, DomainEvent, EventMetadata
from paygate.models.business import PaymentMethod
from paygate.processors.card import DISPUTE_EVENTS, REFUND_EVENTS
from paygate.processors.mobile_money import MobileMoneyAdapter
from paygate.services.ledger import TransactionLedger
from paygate.services.payment_orchestrator import payment_outcome_event, settle_invoice
from paygate.services.refund_orchestrator import refund_completed_event
from paygate.services.state_machine import RefundStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.credentials.store import CredentialStore
    from paygate.events.emitter import AsyncEventEmitter
    from paygate.models.transaction import Transaction
    from paygate.processors.base import CallbackOutcome, WebhookResult
    from paygate.processors.dispatch import AdapterSet

logger = logging.getLogger(__name__)


class CallbackStatus(str, Enum):
    """What became of one inbound callback."""

    PROCESSED = "processed"  # applied to the ledger
    DUPLICATE = "duplicate"  # target already terminal, or a concurrent delivery won
    UNKNOWN = "unknown"  # no matching ledger entry
    IGNORED = "ignored"  # verified event type the gateway does not act on


@dataclass(frozen=True)
class ReconcileResult:
    """Result of reconciling one callback."""

    status: CallbackStatus
    correlation_id: str | None = None
    transaction_id: UUID | None = None
    transaction_status: str | None = None
    event_type: str | None = None

    @property
    def applied(self) -> bool:
        return self.status is CallbackStatus.PROCESSED


class CallbackReconciler:
    """Applies processor callbacks to the ledger and notifies.

    Notifications are emitted after the ledger write commits, and only by the
    delivery whose conditional update applied.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        credentials: CredentialStore,
        adapters: AdapterSet,
        emitter: AsyncEventEmitter,
    ):
        self.sessions = sessions
        self.credentials = credentials
        self.adapters = adapters
        self.emitter = emitter

    async def reconcile(
        self,
        correlation_id: str,
        outcome: CallbackOutcome,
        *,
        business_id: str | None = None,
    ) -> ReconcileResult:
        """Apply a terminal outcome to the entry with ``correlation_id``.

        Args:
            correlation_id: Processor-issued join key, used unmodified
            outcome: Terminal status and callback details
            business_id: If given, entries of other businesses are not matched

        Returns:
            ReconcileResult; never raises for unknown or duplicate callbacks.
        """
        events: list[DomainEvent] = []
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            entry = await ledger.find_by_correlation_id(correlation_id)
            if entry is None or (business_id is not None and entry.business_id != business_id):
                logger.error("No transaction for correlation id %s; callback dropped", correlation_id)
                return ReconcileResult(CallbackStatus.UNKNOWN, correlation_id=correlation_id)

            if entry.is_terminal:
                logger.info(
                    "Duplicate callback for %s: transaction %s is already %s",
                    correlation_id,
                    entry.id,
                    entry.status,
                )
                return self._result(CallbackStatus.DUPLICATE, correlation_id, entry)

            applied = await ledger.apply_callback(entry.id, outcome)
            entry = await ledger.require(entry.id)
            if not applied:
                logger.info(
                    "Callback for %s lost to a concurrent delivery; transaction %s is %s",
                    correlation_id,
                    entry.id,
                    entry.status,
                )
                return self._result(CallbackStatus.DUPLICATE, correlation_id, entry)

            event = payment_outcome_event(entry, outcome.description or None)
            if event is not None:
                events.append(event)
            events.extend(await settle_invoice(db, entry))

        logger.info(
            "Callback %s applied: transaction %s is %s (result code %s)",
            correlation_id,
            entry.id,
            entry.status,
            outcome.result_code,
        )
        for event in events:
            await self.emitter.emit(event)
        return self._result(CallbackStatus.PROCESSED, correlation_id, entry)

    @staticmethod
    def _result(
        status: CallbackStatus,
        correlation_id: str | None,
        entry: Transaction,
        event_type: str | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            status,
            correlation_id=correlation_id,
            transaction_id=entry.id,
            transaction_status=entry.status,
            event_type=event_type,
        )

    # =========================================================================
    # M-Pesa
    # =========================================================================

    async def handle_mobile_money_callback(
        self,
        payload: bytes | str | Mapping[str, Any],
        signature: str | None = None,
    ) -> ReconcileResult:
        """Verify and apply an STK push callback.

        The envelope is validated first to find the transaction; if its
        business configured a ``callback_secret`` the body must carry a valid
        HMAC-SHA256 signature. Signatures cover the body exactly as received,
        so a signed callback must be passed as raw ``bytes`` or ``str``; an
        already-parsed mapping can only be applied unsigned.

        Raises:
            WebhookVerificationError: malformed envelope, bad signature, or a
                signature given with a parsed mapping.
        """
        if isinstance(payload, Mapping):
            if signature is not None:
                raise WebhookVerificationError(
                    "Signed callbacks must be passed as the raw request body"
                )
            raw = json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
        elif isinstance(payload, str):
            raw = payload.encode("utf-8")
        else:
            raw = payload

        callback = MobileMoneyAdapter.parse_callback(raw)
        async with session_scope(self.sessions) as db:
            entry = await TransactionLedger(db).find_by_correlation_id(callback.CheckoutRequestID)
        if entry is None:
            logger.error(
                "No transaction for CheckoutRequestID %s (MerchantRequestID %s); "
                "callback dropped",
                callback.CheckoutRequestID,
                callback.MerchantRequestID,
            )
            return ReconcileResult(CallbackStatus.UNKNOWN, correlation_id=callback.CheckoutRequestID)

        credentials = await self.credentials.get(entry.business_id, PaymentMethod.MOBILE_MONEY)
        secret = credentials.secret("callback_secret") if credentials else None
        result = self.adapters.mobile_money.handle_webhook(raw, signature, secret)
        return await self.reconcile(
            result.correlation_id, result.outcome, business_id=entry.business_id
        )

    # =========================================================================
    # Stripe
    # =========================================================================

    async def handle_card_webhook(
        self, business_id: str, payload: bytes | str, signature: str | None
    ) -> ReconcileResult:
        """Verify and apply a Stripe event for ``business_id``.

        Raises:
            WebhookVerificationError: missing secret or bad signature.
        """
        credentials = await self.credentials.get(business_id, PaymentMethod.CARD)
        secret = credentials.secret("webhook_secret") if credentials else None
        result = self.adapters.card.handle_webhook(payload, signature, secret)

        if result.outcome is not None and result.correlation_id:
            reconciled = await self.reconcile(
                result.correlation_id, result.outcome, business_id=business_id
            )
            return replace(reconciled, event_type=result.event_type)
        if result.event_type in REFUND_EVENTS:
            return await self._apply_charge_refunded(business_id, result)
        if result.event_type in DISPUTE_EVENTS:
            return await self._apply_dispute(business_id, result)

        logger.info("Ignoring Stripe event %s (%s)", result.event_id, result.event_type)
        return ReconcileResult(CallbackStatus.IGNORED, event_type=result.event_type)

    async def _apply_charge_refunded(
        self, business_id: str, result: WebhookResult
    ) -> ReconcileResult:
        """Complete local refunds the event confirms.

        Refunds made outside the gateway are only logged; the ledger totals
        move only through gateway refunds.
        """
        events: list[DomainEvent] = []
        entry = None
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            for refund_id in result.data.get("refund_ids", []):
                refund = await ledger.find_refund_by_processor_id(refund_id)
                if refund is None or refund.business_id != business_id:
                    continue
                entry = await ledger.require(refund.transaction_id)
                if refund.status != RefundStatus.PROCESSING:
                    continue
                completed = await ledger.complete_refund(
                    refund.id, details=refund.processor_details
                )
                if completed is not None:
                    entry = await ledger.require(refund.transaction_id)
                    events.append(refund_completed_event(completed, entry))

        if entry is None:
            logger.info(
                "charge.refunded for %s matches no gateway refund", result.processor_reference
            )
            return ReconcileResult(
                CallbackStatus.IGNORED,
                correlation_id=result.correlation_id,
                event_type=result.event_type,
            )

        for event in events:
            await self.emitter.emit(event)
        status = CallbackStatus.PROCESSED if events else CallbackStatus.DUPLICATE
        return self._result(status, result.correlation_id, entry, result.event_type)

    async def _apply_dispute(self, business_id: str, result: WebhookResult) -> ReconcileResult:
        opened = result.event_type == "charge.dispute.created"
        charge_id = result.processor_reference
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            entry = await ledger.find_by_processor_reference(charge_id) if charge_id else None
            if entry is None or entry.business_id != business_id:
                logger.error("Dispute %s for unknown charge %s", result.data.get("dispute_id"), charge_id)
                return ReconcileResult(CallbackStatus.UNKNOWN, event_type=result.event_type)
            entry, changed = await ledger.record_dispute(charge_id, result.data, opened=opened)

        if not changed:
            return self._result(
                CallbackStatus.DUPLICATE, entry.correlation_id, entry, result.event_type
            )

        metadata = EventMetadata.create(entry.business_id, entry.correlation_id)
        if opened:
            logger.warning(
                "Dispute %s opened on transaction %s", result.data.get("dispute_id"), entry.id
            )
            event: DomainEvent = DisputeOpened(
                metadata=metadata,
                transaction_id=entry.id,
                dispute_id=result.data.get("dispute_id"),
                reason=result.data.get("reason"),
                amount=result.data.get("amount"),
            )
        else:
            logger.info(
                "Dispute %s closed (%s) on transaction %s",
                result.data.get("dispute_id"),
                result.data.get("status"),
                entry.id,
            )
            event = DisputeClosed(
                metadata=metadata,
                transaction_id=entry.id,
                dispute_id=result.data.get("dispute_id"),
                status=result.data.get("status"),
            )
        await self.emitter.emit(event)
        return self._result(
            CallbackStatus.PROCESSED, entry.correlation_id, entry, result.event_type
        )

