"""Pydantic schemas for inbound requests.

Services accept either a schema instance or a plain mapping; mappings are
validated with ``parse_request`` and rejected as ``InvalidPaymentRequestError``
before anything touches the database.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from paygate.errors import InvalidPaymentRequestError
from paygate.models.business import PaymentMethod
from paygate.processors.mobile_money import PHONE_PATTERN

M = TypeVar("M", bound=BaseModel)


def parse_request(model: type[M], data: M | Mapping[str, Any]) -> M:
    """Validate ``data`` against ``model``.

    Raises:
        InvalidPaymentRequestError: with one ``field: message`` entry per
            problem in ``details["errors"]``.
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidPaymentRequestError(
            f"Invalid {model.__name__}",
            errors=[
                f"{'.'.join(map(str, err['loc'])) or '__root__'}: {err['msg']}"
                for err in e.errors()
            ],
        ) from e


def _currency(value: str) -> str:
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError("currency must be a 3-letter ISO 4217 code")
    return value


# ============================================================================
# Payments
# ============================================================================


class PaymentRequest(BaseModel):
    """A request to take a payment on behalf of a business."""

    model_config = ConfigDict(str_strip_whitespace=True)

    business_id: str = Field(min_length=1)
    app_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str = "KES"
    method: PaymentMethod
    phone_number: str | None = None
    payment_token: str | None = None
    customer_id: str | None = None
    account_reference: str | None = Field(default=None, max_length=20)
    description: str | None = Field(default=None, max_length=200)
    invoice_id: UUID | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        return _currency(v)

    @model_validator(mode="after")
    def check_method_fields(self) -> PaymentRequest:
        if self.method is PaymentMethod.MOBILE_MONEY:
            if not self.phone_number:
                raise ValueError("mobile money payments need phone_number")
            if not PHONE_PATTERN.match(self.phone_number):
                raise ValueError("phone_number must be in format 254XXXXXXXXX")
            if self.amount != self.amount.to_integral_value():
                raise ValueError("mobile money amounts must be whole units")
        elif self.phone_number and not PHONE_PATTERN.match(self.phone_number):
            raise ValueError("phone_number must be in format 254XXXXXXXXX")
        if self.method is PaymentMethod.CARD and not self.payment_token:
            raise ValueError("card payments need payment_token")
        return self


class RefundRequest(BaseModel):
    """A request to refund part or all of a completed payment."""

    model_config = ConfigDict(str_strip_whitespace=True)

    transaction_id: UUID
    amount: Decimal = Field(gt=0, decimal_places=2)
    reason: str = Field(default="requested_by_customer", min_length=1, max_length=200)
    app_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Business setup
# ============================================================================


class PaymentMethodConfig(BaseModel):
    """Enablement and fee parameters of one payment method."""

    method: PaymentMethod
    is_active: bool = True
    fee_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    fee_fixed: Decimal = Field(default=Decimal("0"), ge=0)


# ============================================================================
# Invoices
# ============================================================================


class InvoiceItemInput(BaseModel):
    """One invoice line as submitted."""

    description: str = Field(min_length=1, max_length=500)
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0, decimal_places=2)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class InvoiceCreate(BaseModel):
    """Schema for creating an invoice."""

    model_config = ConfigDict(str_strip_whitespace=True)

    business_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    currency: str = "KES"
    items: list[InvoiceItemInput] = Field(min_length=1)
    due_date: date
    payment_terms: str | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        return _currency(v)
