"""Ledger entry for a single payment.

The ledger is the only writer of ``status``. Status changes go through
conditional updates in ``paygate.services.ledger``; never assign ``status`` on
a loaded instance and flush it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from paygate.models.base import Base, TimestampMixin, as_utc, utcnow
from paygate.services.state_machine import TransactionStatus

MAX_RETRIES = 3
RETRY_WINDOW = timedelta(hours=24)


class Transaction(Base, TimestampMixin):
    """A payment routed through one processor adapter."""

    __tablename__ = "payment_transaction"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        Index("ix_transaction_business_created", "business_id", "created_at"),
        Index("ix_transaction_status_created", "status", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id"), nullable=False
    )
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.PENDING.value
    )

    # Processor correlation
    correlation_id: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)
    merchant_request_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    processor_reference: Mapped[str | None] = mapped_column(
        Text, nullable=True, index=True
    )
    processor_details: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processing_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        nullable=False, default=list
    )

    # Callback
    callback_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    callback_payload: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    result_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)

    # Money movement after the fact
    processing_fee: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    refunded_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    refund_reserved: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    # Request context
    phone_number: Mapped[str | None] = mapped_column(String(16), nullable=True)
    account_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.id"), nullable=True, index=True
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    @property
    def is_terminal(self) -> bool:
        return self.status not in (
            TransactionStatus.PENDING,
            TransactionStatus.PROCESSING,
        )

    @property
    def refundable_amount(self) -> Decimal:
        """Balance still available for new refunds."""
        return self.amount - self.refunded_amount - self.refund_reserved

    def can_retry(self, now: datetime | None = None) -> bool:
        """Failed entries younger than a day may be retried a few times."""
        if self.status != TransactionStatus.FAILED or self.retry_count >= MAX_RETRIES:
            return False
        now = now or utcnow()
        return now - as_utc(self.created_at) < RETRY_WINDOW
