"""Transaction ledger - the only writer of payment and refund status.

Provides:
- Ledger entry creation
- Status transitions as conditional updates (``WHERE status IN (...)``), so
  the "already terminal" check and the write are one statement and two
  concurrent callbacks for the same correlation id cannot both win
- Error log bookkeeping
- Refund reservation and settlement as version compare-and-swap with exact
  Decimal arithmetic

A ledger works inside the caller's session; the caller owns the transaction
boundary (see ``paygate.database.session_scope``) and must never hold it open
across a processor call.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    TransactionNotFoundError,
)
from paygate.models.base import utcnow
from paygate.models.refund import Refund
from paygate.models.transaction import Transaction
from paygate.processors.base import CallbackOutcome
from paygate.services.state_machine import (
    RefundStatus,
    TransactionStateMachine,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up on a hot row
MAX_CAS_ATTEMPTS = 5


class TransactionLedger:
    """Ledger operations bound to one session.

    Notes:
    - ``amount`` is immutable after creation.
    - Terminal entries are never re-transitioned.
    - ``refunded_amount + refund_reserved <= amount`` always holds.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Entries
    # =========================================================================

    async def create_entry(
        self,
        *,
        business_id: str,
        app_id: str,
        amount: Decimal,
        currency: str,
        method: str,
        processing_fee: Decimal = Decimal("0"),
        status: str = TransactionStatus.PROCESSING,
        phone_number: str | None = None,
        account_reference: str | None = None,
        description: str | None = None,
        customer_id: str | None = None,
        payment_token: str | None = None,
        invoice_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        """Create a ledger entry.

        Args:
            business_id: Merchant the payment is for
            app_id: Consumer app that requested it
            amount: Positive amount, immutable afterwards
            currency: ISO 4217 code
            method: Payment method value
            processing_fee: Fee computed from the method's fee parameters
            status: Initial status, ``processing`` unless recording a backlog
            phone_number: Mobile-money payer
            account_reference: Reference shown to the payer
            description: Free text
            customer_id: Merchant's customer reference
            payment_token: Card payment method token
            invoice_id: Invoice the payment settles, if any
            metadata: Optional JSON metadata

        Returns:
            The flushed Transaction (id assigned).
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        entry = Transaction(
            business_id=business_id,
            app_id=app_id,
            amount=amount,
            currency=currency.upper(),
            method=_value(method),
            status=_value(status),
            processing_fee=processing_fee,
            phone_number=phone_number,
            account_reference=account_reference,
            description=description,
            customer_id=customer_id,
            payment_token=payment_token,
            invoice_id=invoice_id,
            metadata_json=dict(metadata or {}),
            processor_details={},
            processing_errors=[],
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get(self, transaction_id: UUID) -> Transaction | None:
        """Load an entry, bypassing anything stale in the identity map."""
        return await self.db.get(Transaction, transaction_id, populate_existing=True)

    async def require(self, transaction_id: UUID) -> Transaction:
        entry = await self.get(transaction_id)
        if entry is None:
            raise TransactionNotFoundError(transaction_id)
        return entry

    async def find_by_correlation_id(self, correlation_id: str) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.correlation_id == correlation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_processor_reference(self, reference: str) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.processor_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # =========================================================================
    # Status
    # =========================================================================

    async def transition(self, transaction_id: UUID, to_status: str, **fields: Any) -> bool:
        """Move an entry to ``to_status`` if its current status allows it.

        The guard is part of the UPDATE, so of several concurrent callers
        exactly one sees ``True``.

        Returns:
            True if this call changed the row.
        """
        sources = TransactionStateMachine.sources_for(to_status)
        if not sources:
            raise InvalidTransitionError("*", _value(to_status), "no status leads here")

        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(sources))
            .values(
                status=_value(to_status),
                version=Transaction.version + 1,
                updated_at=utcnow(),
                **fields,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_open(self, transaction_id: UUID, **fields: Any) -> bool:
        """Update non-status fields while the entry is still pending/processing."""
        result = await self.db.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status.in_(TransactionStateMachine.OPEN_STATUSES),
            )
            .values(version=Transaction.version + 1, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def apply_callback(self, transaction_id: UUID, outcome: CallbackOutcome) -> bool:
        """Apply an asynchronous terminal outcome exactly once.

        Returns:
            False if the entry was already terminal (duplicate or late
            callback); nothing is written in that case.
        """
        entry = await self.require(transaction_id)
        if entry.is_terminal:
            return False

        fields: dict[str, Any] = {
            "callback_received": True,
            "callback_payload": outcome.payload,
            "result_code": outcome.result_code,
            "result_description": outcome.description,
        }
        if outcome.receipt_number:
            fields["receipt_number"] = outcome.receipt_number
        if outcome.processor_reference:
            fields["processor_reference"] = outcome.processor_reference
        if outcome.details:
            fields["processor_details"] = {**(entry.processor_details or {}), **outcome.details}
        return await self.transition(transaction_id, outcome.status, **fields)

    async def record_error(self, transaction_id: UUID, error: str) -> None:
        """Append to the error log and count the attempt."""
        for _ in range(MAX_CAS_ATTEMPTS):
            entry = await self.require(transaction_id)
            errors = [*(entry.processing_errors or []), {"error": error, "timestamp": utcnow().isoformat()}]
            if await self._swap(
                entry,
                processing_errors=errors,
                retry_count=entry.retry_count + 1,
                last_retry_at=utcnow(),
            ):
                return
        raise ConcurrencyConflictError(
            f"Could not record error on transaction {transaction_id}",
            transaction_id=transaction_id,
        )

    async def _swap(self, entry: Transaction, **values: Any) -> bool:
        """Write ``values`` only if nobody changed the row since ``entry`` was read."""
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == entry.id, Transaction.version == entry.version)
            .values(version=entry.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # Refunds
    # =========================================================================

    async def reserve_refund(self, transaction_id: UUID, amount: Decimal) -> Transaction:
        """Hold ``amount`` of the refundable balance.

        Raises:
            TransactionNotFoundError: unknown transaction
            RefundNotAllowedError: payment is not completed
            RefundAmountExceededError: amount exceeds what is left
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            entry = await self.require(transaction_id)
            if entry.status != TransactionStatus.COMPLETED:
                raise RefundNotAllowedError(
                    f"Only completed payments can be refunded (status is {entry.status})",
                    transaction_id=transaction_id,
                )
            available = entry.refundable_amount
            if amount > available:
                raise RefundAmountExceededError(transaction_id, amount, available)
            if await self._swap(entry, refund_reserved=entry.refund_reserved + amount):
                return await self.require(transaction_id)
        raise ConcurrencyConflictError(
            f"Transaction {transaction_id} kept changing while reserving a refund",
            transaction_id=transaction_id,
        )

    async def create_refund(
        self,
        transaction_id: UUID,
        *,
        amount: Decimal,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> Refund:
        """Reserve the amount and create the Refund in ``processing``."""
        entry = await self.reserve_refund(transaction_id, amount)
        refund = Refund(
            transaction_id=entry.id,
            business_id=entry.business_id,
            amount=amount,
            currency=entry.currency,
            reason=reason,
            status=RefundStatus.PROCESSING.value,
            processor_details={},
            metadata_json=dict(metadata or {}),
        )
        self.db.add(refund)
        await self.db.flush()
        return refund

    async def complete_refund(
        self,
        refund_id: UUID,
        *,
        processor_refund_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Refund | None:
        """Mark the refund completed and move its reservation into
        ``refunded_amount`` in the same database transaction.

        Returns:
            The refund, or None if it was no longer processing.
        """
        fields: dict[str, Any] = {"refunded_at": utcnow()}
        if processor_refund_id:
            fields["processor_refund_id"] = processor_refund_id
        if details is not None:
            fields["processor_details"] = details
        if not await self._transition_refund(refund_id, RefundStatus.COMPLETED, **fields):
            return None
        refund = await self.get_refund(refund_id)
        await self._settle_reservation(refund.transaction_id, refund.amount, completed=True)
        return refund

    async def fail_refund(
        self,
        refund_id: UUID,
        *,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> Refund | None:
        """Mark the refund failed and release its reservation.

        Returns:
            The refund, or None if it was no longer processing.
        """
        fields: dict[str, Any] = {"failure_reason": reason}
        if details is not None:
            fields["processor_details"] = details
        if not await self._transition_refund(refund_id, RefundStatus.FAILED, **fields):
            return None
        refund = await self.get_refund(refund_id)
        await self._settle_reservation(refund.transaction_id, refund.amount, completed=False)
        return refund

    async def _transition_refund(self, refund_id: UUID, to_status: str, **fields: Any) -> bool:
        result = await self.db.execute(
            update(Refund)
            .where(
                Refund.id == refund_id,
                Refund.status.in_(TransactionStateMachine.sources_for(to_status)),
            )
            .values(status=_value(to_status), updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _settle_reservation(
        self, transaction_id: UUID, amount: Decimal, *, completed: bool
    ) -> None:
        for _ in range(MAX_CAS_ATTEMPTS):
            entry = await self.require(transaction_id)
            values: dict[str, Any] = {
                "refund_reserved": max(entry.refund_reserved - amount, Decimal("0")),
            }
            if completed:
                refunded_amount = entry.refunded_amount + amount
                values["refunded_amount"] = refunded_amount
                values["refunded"] = refunded_amount >= entry.amount
            if await self._swap(entry, **values):
                return
        raise ConcurrencyConflictError(
            f"Transaction {transaction_id} kept changing while settling a refund",
            transaction_id=transaction_id,
        )

    async def get_refund(self, refund_id: UUID) -> Refund | None:
        return await self.db.get(Refund, refund_id, populate_existing=True)

    async def find_refund_by_processor_id(self, processor_refund_id: str) -> Refund | None:
        result = await self.db.execute(
            select(Refund)
            .where(Refund.processor_refund_id == processor_refund_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_refunds(self, transaction_id: UUID) -> list[Refund]:
        result = await self.db.execute(
            select(Refund)
            .where(Refund.transaction_id == transaction_id)
            .order_by(Refund.created_at)
        )
        return list(result.scalars())

    # =========================================================================
    # Disputes
    # =========================================================================

    async def record_dispute(
        self, processor_reference: str, details: dict[str, Any], *, opened: bool
    ) -> tuple[Transaction | None, bool]:
        """Record a dispute opened/closed on the charge ``processor_reference``.

        Returns:
            (entry, changed). ``changed`` is False when the same dispute state
            was already recorded, so replays do not notify twice.
        """
        entry = await self.find_by_processor_reference(processor_reference)
        if entry is None:
            return None, False

        current = entry.dispute_details or {}
        merged = {**current, **{k: v for k, v in details.items() if v is not None}}
        merged["state"] = "open" if opened else "closed"
        disputed = opened or details.get("status") != "won"
        if merged == current and entry.disputed == disputed:
            return entry, False

        await self.db.execute(
            update(Transaction)
            .where(Transaction.id == entry.id)
            .values(disputed=disputed, dispute_details=merged, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await self.get(entry.id), True

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_entries(
        self,
        *,
        business_id: str,
        app_id: str | None = None,
        status: str | None = None,
        method: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        """Entries for a business, newest first."""
        query = select(Transaction).where(Transaction.business_id == business_id)
        if app_id:
            query = query.where(Transaction.app_id == app_id)
        if status:
            query = query.where(Transaction.status == _value(status))
        if method:
            query = query.where(Transaction.method == _value(method))
        if since:
            query = query.where(Transaction.created_at >= since)
        if until:
            query = query.where(Transaction.created_at < until)
        query = query.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars())

    async def list_stale_pending(
        self, *, older_than: datetime, limit: int = 100
    ) -> list[Transaction]:
        """Open entries created before ``older_than``, oldest first.

        These are callbacks that never arrived; an external sweeper decides
        what to do with them.
        """
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.status.in_(TransactionStateMachine.OPEN_STATUSES),
                Transaction.created_at < older_than,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(result.scalars())


def _value(value: Any) -> Any:
    return getattr(value, "value", value)
