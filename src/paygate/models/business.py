"""Merchant business, its app links and enabled payment methods."""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.models.base import Base, TimestampMixin, utcnow


class PaymentMethod(str, Enum):
    """Supported payment method variants."""

    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    CASH = "cash"


class BusinessStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


class AppLinkStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Business(Base, TimestampMixin):
    """A merchant that accepts payments through linked consumer apps."""

    __tablename__ = "business"

    business_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=BusinessStatus.ACTIVE.value
    )
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(Text, nullable=True)

    apps: Mapped[list[BusinessApp]] = relationship(
        back_populates="business",
        order_by="BusinessApp.linked_at",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    payment_methods: Mapped[list[BusinessPaymentMethod]] = relationship(
        back_populates="business",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status == BusinessStatus.ACTIVE

    def app_link(self, app_id: str) -> BusinessApp | None:
        """Find the link for ``app_id``, if any."""
        return next((link for link in self.apps if link.app_id == app_id), None)

    def payment_method(self, method: str) -> BusinessPaymentMethod | None:
        """Find the configuration for ``method``, if any."""
        return next((pm for pm in self.payment_methods if pm.method == method), None)


class BusinessApp(Base):
    """Link between a business and an API consumer app."""

    __tablename__ = "business_app"
    __table_args__ = (UniqueConstraint("business_id", "app_id"),)

    business_app_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"), nullable=False
    )
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AppLinkStatus.ACTIVE.value
    )
    linked_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    business: Mapped[Business] = relationship(back_populates="apps")

    @property
    def is_active(self) -> bool:
        return self.status == AppLinkStatus.ACTIVE


class BusinessPaymentMethod(Base, TimestampMixin):
    """A payment method enabled for a business, with its fee parameters."""

    __tablename__ = "business_payment_method"
    __table_args__ = (UniqueConstraint("business_id", "method"),)

    business_payment_method_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"), nullable=False
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    fee_fixed: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    business: Mapped[Business] = relationship(back_populates="payment_methods")

    def processing_fee(self, amount: Decimal) -> Decimal:
        """Fee charged for a payment of ``amount``, rounded to cents."""
        fee = amount * Decimal(self.fee_percentage) / Decimal(100) + Decimal(self.fee_fixed)
        return fee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def method_value(method: str) -> str:
    """Normalize a method name or enum member to its stored value."""
    return PaymentMethod(method).value
