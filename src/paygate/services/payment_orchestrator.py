"""Payment orchestrator - validated, ledgered payment execution.

Orchestrates a payment through:
1. Precondition checks (business, app link, payment method, invoice)
2. Credential fetch and local shape check
3. Ledger entry creation in ``processing``
4. Processor adapter call
5. Persisting the adapter's result (and applying completed payments to their
   invoice in the same database transaction)

Each numbered step that touches the database is its own short unit of work;
none is held open across the credential store or the processor.

The correlation id of a pending payment is only known once the processor
answers, and is stored in step 5. A callback that lands before that commit
finds no entry and is reported ``unknown`` (its ``MerchantRequestID`` is
logged); such entries then show up in the stale-pending listing with their
``merchant_request_id`` and the captured callback can be re-applied with
``paygate replay-callback``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from paygate.database import session_scope
from paygate.errors import (
    AppLinkInactiveError,
    BusinessInactiveError,
    BusinessNotFoundError,
    CredentialsMissingError,
    InvalidTransitionError,
    PaymentMethodUnavailableError,
    TransactionNotFoundError,
)
from paygate.events.types import (
    DomainEvent,
    EventMetadata,
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
)
from paygate.models.business import Business, BusinessPaymentMethod
from paygate.schemas import PaymentRequest, parse_request
from paygate.services.invoices import InvoiceBook, invoice_paid_event
from paygate.services.ledger import TransactionLedger
from paygate.services.state_machine import TransactionStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.credentials.store import CredentialStore
    from paygate.events.emitter import AsyncEventEmitter
    from paygate.models.transaction import Transaction
    from paygate.processors.base import PaymentResult
    from paygate.processors.dispatch import AdapterSet

logger = logging.getLogger(__name__)


def check_can_accept(
    business: Business | None, business_id: str, app_id: str, method: str
) -> BusinessPaymentMethod:
    """Business active, app link active, method enabled.

    Returns:
        The payment method configuration (for the fee).
    """
    if business is None:
        raise BusinessNotFoundError(business_id)
    if not business.is_active:
        raise BusinessInactiveError(business_id, business.status)
    link = business.app_link(app_id)
    if link is None or not link.is_active:
        raise AppLinkInactiveError(business_id, app_id)
    config = business.payment_method(method)
    if config is None or not config.is_active:
        raise PaymentMethodUnavailableError(business_id, method)
    return config


def payment_outcome_event(entry: Transaction, reason: str | None = None) -> DomainEvent | None:
    """The notification for an entry that just became terminal."""
    metadata = EventMetadata.create(entry.business_id, entry.correlation_id)
    if entry.status == TransactionStatus.COMPLETED:
        return PaymentCompleted(
            metadata=metadata,
            transaction_id=entry.id,
            amount=entry.amount,
            currency=entry.currency,
            method=entry.method,
            receipt_number=entry.receipt_number,
        )
    if entry.status == TransactionStatus.FAILED:
        return PaymentFailed(
            metadata=metadata,
            transaction_id=entry.id,
            amount=entry.amount,
            currency=entry.currency,
            method=entry.method,
            reason=reason or entry.result_description,
        )
    if entry.status == TransactionStatus.CANCELLED:
        return PaymentCancelled(
            metadata=metadata,
            transaction_id=entry.id,
            amount=entry.amount,
            currency=entry.currency,
            method=entry.method,
            reason=reason or entry.result_description,
        )
    return None


async def settle_invoice(db: AsyncSession, entry: Transaction) -> list[DomainEvent]:
    """Apply a terminal entry to its invoice inside the caller's unit of work.

    A completed payment is recorded against the invoice; a failed one bumps
    the invoice's failed-attempt counter. An invoice that stopped accepting
    payments (e.g. cancelled meanwhile) is logged and left alone: the money
    has moved, so the payment itself still completes.
    """
    if entry.invoice_id is None:
        return []
    book = InvoiceBook(db)
    if entry.status == TransactionStatus.COMPLETED:
        try:
            result = await book.apply_payment(entry.invoice_id, entry)
        except InvalidTransitionError as e:
            logger.warning(
                "Completed transaction %s could not be applied to invoice %s: %s",
                entry.id,
                entry.invoice_id,
                e.message,
            )
            return []
        return [invoice_paid_event(result.invoice)] if result.became_paid else []
    if entry.status == TransactionStatus.FAILED:
        await book.record_failed_payment(entry.invoice_id)
    return []


class PaymentOrchestrator:
    """Payment orchestration service.

    Coordinates the payment lifecycle:
    - Validate the request against the business's configuration
    - Create exactly one ledger entry per accepted request
    - Route to the processor adapter for the method
    - Record the outcome and notify
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

    async def process_payment(self, request: PaymentRequest | Mapping[str, Any]) -> Transaction:
        """Take a payment.

        Args:
            request: A ``PaymentRequest`` or a mapping validated into one.

        Returns:
            The ledger entry: ``completed`` or ``failed`` for synchronous
            methods, ``processing`` while a mobile-money push awaits its
            callback.

        Raises:
            PreconditionError: rejected before any ledger entry exists.
        """
        request = parse_request(PaymentRequest, request)
        method = request.method.value
        adapter = self.adapters.for_method(method)

        async with session_scope(self.sessions) as db:
            business = await db.get(Business, request.business_id)
            config = check_can_accept(business, request.business_id, request.app_id, method)
            fee = config.processing_fee(request.amount)
            if request.invoice_id:
                await InvoiceBook(db).require_payable(
                    request.invoice_id,
                    business_id=request.business_id,
                    currency=request.currency,
                )

        credentials = None
        if adapter.requires_credentials:
            credentials = await self.credentials.get(request.business_id, method)
            if credentials is None:
                raise CredentialsMissingError(request.business_id, method)
            adapter.check_credentials(credentials)

        async with session_scope(self.sessions) as db:
            entry = await TransactionLedger(db).create_entry(
                business_id=request.business_id,
                app_id=request.app_id,
                amount=request.amount,
                currency=request.currency,
                method=method,
                processing_fee=fee,
                phone_number=request.phone_number,
                account_reference=request.account_reference,
                description=request.description,
                customer_id=request.customer_id,
                payment_token=request.payment_token,
                invoice_id=request.invoice_id,
                metadata=request.metadata,
            )
        logger.info(
            "Created transaction %s: %s %s via %s for business %s",
            entry.id,
            entry.amount,
            entry.currency,
            method,
            entry.business_id,
        )

        try:
            result = await adapter.process_payment(entry, credentials)
            entry, events = await self._record_result(entry.id, result)
        except Exception as e:
            await self._record_crash(entry.id, e)
            raise

        for event in events:
            await self.emitter.emit(event)
        return entry

    async def _record_result(
        self, transaction_id: UUID, result: PaymentResult
    ) -> tuple[Transaction, list[DomainEvent]]:
        fields: dict[str, Any] = {"processor_details": dict(result.raw_details)}
        if result.transaction_id:
            fields["correlation_id"] = result.transaction_id
        if result.merchant_request_id:
            fields["merchant_request_id"] = result.merchant_request_id
        if result.processor_reference:
            fields["processor_reference"] = result.processor_reference

        events: list[DomainEvent] = []
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            if result.success and result.pending:
                await ledger.update_open(transaction_id, **fields)
                applied = False
            elif result.success:
                applied = await ledger.transition(transaction_id, result.status, **fields)
            else:
                error = result.error or "Processor reported failure"
                applied = await ledger.transition(
                    transaction_id,
                    TransactionStatus.FAILED,
                    result_description=error,
                    **fields,
                )
                await ledger.record_error(transaction_id, error)

            entry = await ledger.require(transaction_id)
            if applied:
                event = payment_outcome_event(entry, result.error)
                if event is not None:
                    events.append(event)
                events.extend(await settle_invoice(db, entry))
            elif not result.pending:
                logger.warning(
                    "Transaction %s was already %s when the processor result arrived",
                    transaction_id,
                    entry.status,
                )

        logger.info(
            "Transaction %s is %s (correlation id %s)",
            entry.id,
            entry.status,
            entry.correlation_id,
        )
        return entry, events

    async def _record_crash(self, transaction_id: UUID, error: Exception) -> None:
        """Leave the entry ``failed`` with the error logged after an unexpected exception."""
        logger.exception("Transaction %s crashed during processing", transaction_id)
        message = f"{type(error).__name__}: {error}"
        try:
            async with session_scope(self.sessions) as db:
                ledger = TransactionLedger(db)
                await ledger.transition(
                    transaction_id, TransactionStatus.FAILED, result_description=message
                )
                await ledger.record_error(transaction_id, message)
        except Exception:
            logger.exception("Could not mark transaction %s failed", transaction_id)

    async def get_payment(self, transaction_id: UUID, app_id: str | None = None) -> Transaction:
        """Load a payment, optionally scoped to the app that created it."""
        async with session_scope(self.sessions) as db:
            entry = await TransactionLedger(db).get(transaction_id)
        if entry is None or (app_id is not None and entry.app_id != app_id):
            raise TransactionNotFoundError(transaction_id)
        return entry

    async def list_payments(
        self,
        business_id: str,
        *,
        app_id: str | None = None,
        status: str | None = None,
        method: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        """Payments of a business, newest first."""
        async with session_scope(self.sessions) as db:
            return await TransactionLedger(db).list_entries(
                business_id=business_id,
                app_id=app_id,
                status=status,
                method=method,
                since=since,
                until=until,
                limit=limit,
                offset=offset,
            )
