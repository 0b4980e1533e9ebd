"""Refund record against a completed payment."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from paygate.models.base import Base, TimestampMixin
from paygate.services.state_machine import RefundStatus


class Refund(Base, TimestampMixin):
    """A (partial or full) refund of one ledger entry."""

    __tablename__ = "refund"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_refund_amount_positive"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_transaction.id"), nullable=False, index=True
    )
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RefundStatus.PROCESSING.value
    )
    processor_refund_id: Mapped[str | None] = mapped_column(
        Text, unique=True, nullable=True
    )
    processor_details: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
