"""Cash adapter: purely local bookkeeping, no processor round trip."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from paygate.errors import WebhookVerificationError
from paygate.models.business import PaymentMethod
from paygate.processors.base import (
    PaymentResult,
    RefundResult,
    VerificationResult,
    WebhookResult,
)
from paygate.services.state_machine import TransactionStatus

if TYPE_CHECKING:
    from decimal import Decimal

    from paygate.credentials.store import CredentialBundle
    from paygate.models.refund import Refund
    from paygate.models.transaction import Transaction


class CashAdapter:
    """Cash received over the counter is settled the moment it is recorded."""

    method = PaymentMethod.CASH.value
    requires_credentials = False

    def check_credentials(self, credentials: CredentialBundle | None) -> None:
        return None

    def check_refundable(self, payment: Transaction, amount: Decimal) -> None:
        return None

    async def verify_credentials(
        self, credentials: CredentialBundle | None
    ) -> VerificationResult:
        return VerificationResult(success=True, message="Cash needs no credentials")

    async def process_payment(
        self, payment: Transaction, credentials: CredentialBundle | None
    ) -> PaymentResult:
        return PaymentResult(
            success=True,
            status=TransactionStatus.COMPLETED.value,
            transaction_id=f"cash_{uuid.uuid4().hex}",
            raw_details={"recorded": "counter"},
        )

    def handle_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> WebhookResult:
        raise WebhookVerificationError("Cash payments do not receive webhooks")

    async def process_refund(
        self,
        refund: Refund,
        original_payment: Transaction,
        credentials: CredentialBundle | None,
    ) -> RefundResult:
        return RefundResult(
            success=True,
            status=TransactionStatus.COMPLETED.value,
            refund_id=f"cash_refund_{uuid.uuid4().hex}",
            raw_details={"paid_out": "counter"},
        )
