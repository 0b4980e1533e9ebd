"""Invoices, their line items and the payments applied to them."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Date, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.models.base import Base, TimestampMixin, utcnow
from paygate.services.state_machine import InvoiceStatus


class Invoice(Base, TimestampMixin):
    """An invoice issued by a business to one of its customers."""

    __tablename__ = "invoice"
    __table_args__ = (UniqueConstraint("business_id", "invoice_number"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(Text, nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InvoiceStatus.DRAFT.value
    )

    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_payment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failed_payment_at: Mapped[datetime | None] = mapped_column(nullable=True)

    items: Mapped[list[InvoiceItem]] = relationship(
        back_populates="invoice",
        order_by="InvoiceItem.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    payments: Mapped[list[InvoicePayment]] = relationship(
        back_populates="invoice",
        order_by="InvoicePayment.paid_at",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def balance_due(self) -> Decimal:
        return self.total - self.amount_paid


class InvoiceItem(Base):
    """One invoice line."""

    __tablename__ = "invoice_item"

    invoice_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="items")


class InvoicePayment(Base):
    """A completed payment applied to an invoice."""

    __tablename__ = "invoice_payment"
    __table_args__ = (UniqueConstraint("invoice_id", "transaction_id"),)

    invoice_payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_transaction.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="payments")
