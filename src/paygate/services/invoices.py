"""Invoice service.

Invoices move draft → sent → partially_paid/paid, may fall overdue, and can be
cancelled while unpaid. Every status change is validated by
``InvoiceStateMachine``.

Two layers:
- ``InvoiceBook`` works inside a caller's session. The payment orchestrator
  and the reconciler use it so that completing a payment and applying it to
  its invoice commit together.
- ``InvoiceService`` owns its own units of work and emits invoice events
  after commit.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import func, select

from paygate.database import session_scope
from paygate.errors import (
    BusinessNotFoundError,
    InvalidPaymentRequestError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    TransactionNotFoundError,
)
from paygate.events.types import EventMetadata, InvoicePaid, InvoiceSent
from paygate.models.base import utcnow
from paygate.models.business import Business
from paygate.models.invoice import Invoice, InvoiceItem, InvoicePayment
from paygate.models.transaction import Transaction
from paygate.schemas import InvoiceCreate, InvoiceItemInput, parse_request
from paygate.services.state_machine import (
    InvoiceStateMachine,
    InvoiceStatus,
    TransactionStatus,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.events.emitter import AsyncEventEmitter

logger = logging.getLogger(__name__)

PRECISION = Decimal("0.0001")  # internal line math
OUTPUT_PRECISION = Decimal("0.01")  # persisted amounts


def round_to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(OUTPUT_PRECISION, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    amount: Decimal
    tax: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    lines: list[InvoiceLine]
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal


def calculate_totals(items: Iterable[InvoiceItemInput]) -> InvoiceTotals:
    """Line amounts, subtotal, tax and total.

    Line math runs at 4 decimals; subtotal and tax total are rounded to cents
    once, and ``total = subtotal + tax_total``.
    """
    lines = []
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    for item in items:
        amount = (Decimal(item.quantity) * item.unit_price).quantize(PRECISION)
        tax = (amount * item.tax_rate / Decimal(100)).quantize(PRECISION)
        lines.append(
            InvoiceLine(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                tax_rate=item.tax_rate,
                amount=round_to_cents(amount),
                tax=round_to_cents(tax),
            )
        )
        subtotal += amount
        tax_total += tax

    subtotal = round_to_cents(subtotal)
    tax_total = round_to_cents(tax_total)
    return InvoiceTotals(
        lines=lines, subtotal=subtotal, tax_total=tax_total, total=subtotal + tax_total
    )


@dataclass(frozen=True)
class AppliedPayment:
    """Outcome of applying one completed payment to an invoice."""

    invoice: Invoice
    applied: bool  # False when this transaction was already applied
    became_paid: bool


class InvoiceBook:
    """Invoice operations bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, invoice_id: UUID, *, lock: bool = False) -> Invoice | None:
        query = (
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def require(self, invoice_id: UUID, *, lock: bool = False) -> Invoice:
        invoice = await self.get(invoice_id, lock=lock)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def next_number(self, business_id: str, year: int) -> str:
        """Next ``INV-YYYY-NNNNN`` in the business's sequence for ``year``."""
        prefix = f"INV-{year}-"
        result = await self.db.execute(
            select(func.max(Invoice.invoice_number)).where(
                Invoice.business_id == business_id,
                Invoice.invoice_number.like(f"{prefix}%"),
            )
        )
        latest = result.scalar_one_or_none()
        sequence = int(latest[len(prefix):]) + 1 if latest else 1
        return f"{prefix}{sequence:05d}"

    async def require_payable(
        self, invoice_id: UUID, *, business_id: str, currency: str
    ) -> Invoice:
        """Check that a payment could be applied to the invoice.

        Draft invoices count as payable; they are sent implicitly when the
        first payment lands.
        """
        invoice = await self.require(invoice_id)
        if invoice.business_id != business_id:
            raise InvalidPaymentRequestError(
                "Invoice belongs to another business", invoice_id=invoice_id
            )
        if invoice.currency != currency.upper():
            raise InvalidPaymentRequestError(
                f"Invoice is in {invoice.currency}, payment is in {currency.upper()}",
                invoice_id=invoice_id,
            )
        if invoice.status != InvoiceStatus.DRAFT and not InvoiceStateMachine.can_accept_payment(
            invoice.status
        ):
            raise InvalidTransitionError(
                invoice.status, InvoiceStatus.PAID.value, "invoice does not accept payments"
            )
        return invoice

    async def apply_payment(self, invoice_id: UUID, transaction: Transaction) -> AppliedPayment:
        """Record a completed payment against the invoice.

        Full coverage moves the invoice to ``paid``, anything less to
        ``partially_paid``. Applying the same transaction twice is a no-op.
        """
        invoice = await self.require(invoice_id, lock=True)
        if any(p.transaction_id == transaction.id for p in invoice.payments):
            return AppliedPayment(invoice=invoice, applied=False, became_paid=False)

        now = utcnow()
        if invoice.status == InvoiceStatus.DRAFT:
            InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.SENT)
            invoice.status = InvoiceStatus.SENT.value
            invoice.sent_at = now
        if not InvoiceStateMachine.can_accept_payment(invoice.status):
            raise InvalidTransitionError(
                invoice.status, InvoiceStatus.PAID.value, "invoice does not accept payments"
            )

        amount_paid = invoice.amount_paid + transaction.amount
        target = InvoiceStatus.PAID if amount_paid >= invoice.total else InvoiceStatus.PARTIALLY_PAID
        if target != invoice.status:
            InvoiceStateMachine.validate_transition(invoice.status, target)
            invoice.status = target.value

        invoice.amount_paid = amount_paid
        invoice.payments.append(
            InvoicePayment(transaction_id=transaction.id, amount=transaction.amount, paid_at=now)
        )
        became_paid = target == InvoiceStatus.PAID
        if became_paid:
            invoice.paid_at = now
        await self.db.flush()
        logger.info(
            "Applied %s %s from transaction %s to invoice %s (%s)",
            transaction.amount,
            transaction.currency,
            transaction.id,
            invoice.invoice_number,
            invoice.status,
        )
        return AppliedPayment(invoice=invoice, applied=True, became_paid=became_paid)

    async def record_failed_payment(self, invoice_id: UUID) -> Invoice:
        invoice = await self.require(invoice_id, lock=True)
        invoice.failed_payment_attempts += 1
        invoice.last_failed_payment_at = utcnow()
        await self.db.flush()
        return invoice


def invoice_paid_event(invoice: Invoice) -> InvoicePaid:
    return InvoicePaid(
        metadata=EventMetadata.create(invoice.business_id),
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        total=invoice.total,
        amount_paid=invoice.amount_paid,
    )


class InvoiceService:
    """Invoice lifecycle with its own transactional boundaries."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter,
    ):
        self.sessions = sessions
        self.emitter = emitter

    async def create_invoice(self, request: InvoiceCreate | Mapping[str, Any]) -> Invoice:
        """Create a draft invoice with computed totals and the next number."""
        request = parse_request(InvoiceCreate, request)
        totals = calculate_totals(request.items)

        async with session_scope(self.sessions) as db:
            if await db.get(Business, request.business_id) is None:
                raise BusinessNotFoundError(request.business_id)

            book = InvoiceBook(db)
            invoice = Invoice(
                business_id=request.business_id,
                customer_id=request.customer_id,
                invoice_number=await book.next_number(request.business_id, utcnow().year),
                currency=request.currency,
                status=InvoiceStatus.DRAFT.value,
                subtotal=totals.subtotal,
                tax_total=totals.tax_total,
                total=totals.total,
                amount_paid=Decimal("0"),
                due_date=request.due_date,
                payment_terms=request.payment_terms,
                notes=request.notes,
                items=[
                    InvoiceItem(
                        position=position,
                        description=line.description,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        tax_rate=line.tax_rate,
                        amount=line.amount,
                    )
                    for position, line in enumerate(totals.lines, start=1)
                ],
                payments=[],
            )
            db.add(invoice)
            await db.flush()

        logger.info(
            "Created invoice %s for business %s (total %s %s)",
            invoice.invoice_number,
            invoice.business_id,
            invoice.total,
            invoice.currency,
        )
        return invoice

    async def send_invoice(self, invoice_id: UUID) -> Invoice:
        """Issue a draft invoice to the customer."""
        async with session_scope(self.sessions) as db:
            invoice = await InvoiceBook(db).require(invoice_id, lock=True)
            InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.SENT)
            invoice.status = InvoiceStatus.SENT.value
            invoice.sent_at = utcnow()

        await self.emitter.emit(
            InvoiceSent(
                metadata=EventMetadata.create(invoice.business_id),
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                customer_id=invoice.customer_id,
                total=invoice.total,
                currency=invoice.currency,
                due_date=invoice.due_date,
            )
        )
        return invoice

    async def apply_payment(self, invoice_id: UUID, transaction_id: UUID) -> Invoice:
        """Apply a completed payment to an invoice."""
        async with session_scope(self.sessions) as db:
            transaction = await db.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)
            if transaction.status != TransactionStatus.COMPLETED:
                raise InvalidPaymentRequestError(
                    "Only completed payments can be applied to an invoice",
                    transaction_id=transaction_id,
                    status=transaction.status,
                )
            book = InvoiceBook(db)
            await book.require_payable(
                invoice_id,
                business_id=transaction.business_id,
                currency=transaction.currency,
            )
            result = await book.apply_payment(invoice_id, transaction)

        if result.became_paid:
            await self.emitter.emit(invoice_paid_event(result.invoice))
        return result.invoice

    async def record_failed_payment(self, invoice_id: UUID) -> Invoice:
        async with session_scope(self.sessions) as db:
            return await InvoiceBook(db).record_failed_payment(invoice_id)

    async def mark_overdue(self, as_of: date | None = None) -> list[Invoice]:
        """Move unpaid invoices past their due date to ``overdue``.

        Returns:
            The invoices that changed.
        """
        as_of = as_of or utcnow().date()
        async with session_scope(self.sessions) as db:
            result = await db.execute(
                select(Invoice)
                .where(
                    Invoice.status.in_(InvoiceStateMachine.OVERDUE_CANDIDATES),
                    Invoice.due_date < as_of,
                )
                .order_by(Invoice.due_date)
                .with_for_update()
            )
            invoices = list(result.scalars())
            for invoice in invoices:
                InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.OVERDUE)
                invoice.status = InvoiceStatus.OVERDUE.value

        if invoices:
            logger.info("Marked %d invoice(s) overdue as of %s", len(invoices), as_of)
        return invoices

    async def cancel_invoice(self, invoice_id: UUID) -> Invoice:
        async with session_scope(self.sessions) as db:
            invoice = await InvoiceBook(db).require(invoice_id, lock=True)
            InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.CANCELLED)
            invoice.status = InvoiceStatus.CANCELLED.value
            invoice.cancelled_at = utcnow()
        return invoice

    async def get_invoice(self, invoice_id: UUID) -> Invoice:
        async with session_scope(self.sessions) as db:
            return await InvoiceBook(db).require(invoice_id)

    async def list_invoices(
        self, business_id: str, *, status: str | None = None, limit: int = 100
    ) -> list[Invoice]:
        async with session_scope(self.sessions) as db:
            query = select(Invoice).where(Invoice.business_id == business_id)
            if status:
                query = query.where(Invoice.status == getattr(status, "value", status))
            result = await db.execute(query.order_by(Invoice.created_at.desc()).limit(limit))
            return list(result.scalars())
