"""Refund orchestrator.

A refund reserves part of the original payment's refundable balance before
the processor is called, so concurrent refunds can never add up to more than
the payment. Completion moves the reservation into ``refunded_amount``;
failure releases it. Either way the refund row and the payment's totals
change in one database transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from uuid import UUID

from paygate.database import session_scope
from paygate.errors import (
    CredentialsMissingError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    RefundNotFoundError,
    TransactionNotFoundError,
)
from paygate.events.types import EventMetadata, RefundCompleted, RefundFailed
from paygate.schemas import RefundRequest, parse_request
from paygate.services.ledger import TransactionLedger
from paygate.services.state_machine import RefundStatus, TransactionStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.credentials.store import CredentialStore
    from paygate.events.emitter import AsyncEventEmitter
    from paygate.models.refund import Refund
    from paygate.models.transaction import Transaction
    from paygate.processors.base import RefundResult
    from paygate.processors.dispatch import AdapterSet

logger = logging.getLogger(__name__)


def refund_completed_event(refund: Refund, payment: Transaction) -> RefundCompleted:
    return RefundCompleted(
        metadata=EventMetadata.create(refund.business_id, payment.correlation_id),
        refund_id=refund.id,
        transaction_id=payment.id,
        amount=refund.amount,
        currency=refund.currency,
        fully_refunded=payment.refunded,
    )


def refund_failed_event(refund: Refund, payment: Transaction) -> RefundFailed:
    return RefundFailed(
        metadata=EventMetadata.create(refund.business_id, payment.correlation_id),
        refund_id=refund.id,
        transaction_id=payment.id,
        amount=refund.amount,
        currency=refund.currency,
        reason=refund.failure_reason,
    )


class RefundOrchestrator:
    """Refund orchestration service."""

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

    async def process_refund(self, request: RefundRequest | Mapping[str, Any]) -> Refund:
        """Refund part or all of a completed payment.

        Returns:
            The refund, ``completed`` or ``failed``.

        Raises:
            TransactionNotFoundError: unknown payment
            RefundNotAllowedError: payment not completed, or lacks the
                processor reference a refund needs
            RefundAmountExceededError: amount exceeds the refundable balance;
                no Refund record is created
            InvalidPaymentRequestError: the processor cannot refund the amount
                exactly (fractional mobile money refunds)
        """
        request = parse_request(RefundRequest, request)

        async with session_scope(self.sessions) as db:
            payment = await TransactionLedger(db).get(request.transaction_id)
        if payment is None or (request.app_id and payment.app_id != request.app_id):
            raise TransactionNotFoundError(request.transaction_id)
        if payment.status != TransactionStatus.COMPLETED:
            raise RefundNotAllowedError(
                f"Only completed payments can be refunded (status is {payment.status})",
                transaction_id=payment.id,
            )
        if request.amount > payment.refundable_amount:
            raise RefundAmountExceededError(
                payment.id, request.amount, payment.refundable_amount
            )

        adapter = self.adapters.for_method(payment.method)
        adapter.check_refundable(payment, request.amount)
        credentials = None
        if adapter.requires_credentials:
            credentials = await self.credentials.get(payment.business_id, payment.method)
            if credentials is None:
                raise CredentialsMissingError(payment.business_id, payment.method)
            adapter.check_credentials(credentials)

        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            refund = await ledger.create_refund(
                payment.id,
                amount=request.amount,
                reason=request.reason,
                metadata=request.metadata,
            )
            payment = await ledger.require(payment.id)
        logger.info(
            "Refund %s of %s %s reserved against transaction %s",
            refund.id,
            refund.amount,
            refund.currency,
            payment.id,
        )

        try:
            result = await adapter.process_refund(refund, payment, credentials)
        except Exception as e:
            logger.exception("Refund %s crashed during processing", refund.id)
            await self._finish(refund.id, None, crash=f"{type(e).__name__}: {e}")
            raise

        refund, payment = await self._finish(refund.id, result)
        if refund.status == RefundStatus.COMPLETED:
            await self.emitter.emit(refund_completed_event(refund, payment))
        elif refund.status == RefundStatus.FAILED:
            await self.emitter.emit(refund_failed_event(refund, payment))
        return refund

    async def _finish(
        self, refund_id: UUID, result: RefundResult | None, *, crash: str | None = None
    ) -> tuple[Refund, Transaction]:
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            if result is not None and result.success:
                finished = await ledger.complete_refund(
                    refund_id,
                    processor_refund_id=result.refund_id,
                    details=dict(result.raw_details),
                )
            else:
                finished = await ledger.fail_refund(
                    refund_id,
                    reason=crash or (result and result.error) or "Processor reported failure",
                    details=dict(result.raw_details) if result is not None else None,
                )
            refund = finished or await ledger.get_refund(refund_id)
            payment = await ledger.require(refund.transaction_id)

        logger.info(
            "Refund %s is %s; transaction %s refunded %s of %s",
            refund.id,
            refund.status,
            payment.id,
            payment.refunded_amount,
            payment.amount,
        )
        return refund, payment

    async def get_refund(self, refund_id: UUID) -> Refund:
        async with session_scope(self.sessions) as db:
            refund = await TransactionLedger(db).get_refund(refund_id)
        if refund is None:
            raise RefundNotFoundError(refund_id)
        return refund

    async def list_refunds(self, transaction_id: UUID) -> list[Refund]:
        """Refunds of one payment, oldest first."""
        async with session_scope(self.sessions) as db:
            ledger = TransactionLedger(db)
            if await ledger.get(transaction_id) is None:
                raise TransactionNotFoundError(transaction_id)
            return await ledger.list_refunds(transaction_id)
