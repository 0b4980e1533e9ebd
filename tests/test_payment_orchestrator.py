"""Tests for PaymentOrchestrator - validated, ledgered payment execution.

Tests verify:
1. Precondition failures never create a ledger entry
2. Exactly one entry per accepted request, with the fee computed
3. Synchronous outcomes (card, cash) are persisted immediately
4. Mobile money stays processing with the correlation id
5. Initiation failures and crashes leave the entry failed, never processing
"""

from decimal import Decimal

import pytest
import stripe
from sqlalchemy import func, select

from paygate.database import session_scope
from paygate.errors import (
    AppLinkInactiveError,
    BusinessInactiveError,
    BusinessNotFoundError,
    CredentialsMalformedError,
    CredentialsMissingError,
    InvalidPaymentRequestError,
    PaymentMethodUnavailableError,
    TransactionNotFoundError,
)
from paygate.events.types import PaymentCompleted, PaymentFailed
from paygate.models.transaction import Transaction
from tests.conftest import (
    APP_ID,
    BUSINESS_ID,
    card_request,
    cash_request,
    mobile_money_request,
)

pytestmark = pytest.mark.asyncio


async def count_transactions(gateway) -> int:
    async with session_scope(gateway.sessions) as db:
        return (await db.execute(select(func.count()).select_from(Transaction))).scalar_one()


class TestPreconditions:
    """Rejected requests leave no ledger entry."""

    async def test_unknown_business(self, gateway, merchant):
        with pytest.raises(BusinessNotFoundError):
            await gateway.payments.process_payment(cash_request(business_id="biz_missing"))

        assert await count_transactions(gateway) == 0

    async def test_method_not_enabled(self, gateway):
        """Business exists but card is not in its active payment methods."""
        await gateway.registry.register_business(BUSINESS_ID, "Corner Shop", APP_ID)
        await gateway.registry.configure_payment_method(BUSINESS_ID, {"method": "cash"})

        with pytest.raises(PaymentMethodUnavailableError) as exc_info:
            await gateway.payments.process_payment(card_request())

        assert exc_info.value.code == "payment_method_unavailable"
        assert await count_transactions(gateway) == 0

    async def test_method_disabled(self, gateway, merchant):
        await gateway.registry.configure_payment_method(
            BUSINESS_ID, {"method": "card", "is_active": False}
        )

        with pytest.raises(PaymentMethodUnavailableError):
            await gateway.payments.process_payment(card_request())

        assert await count_transactions(gateway) == 0

    async def test_business_suspended(self, gateway, merchant):
        await gateway.registry.set_business_status(BUSINESS_ID, "suspended")

        with pytest.raises(BusinessInactiveError):
            await gateway.payments.process_payment(cash_request())

        assert await count_transactions(gateway) == 0

    async def test_app_not_linked(self, gateway, merchant):
        with pytest.raises(AppLinkInactiveError):
            await gateway.payments.process_payment(cash_request(app_id="other-app"))

    async def test_app_link_inactive(self, gateway, merchant):
        await gateway.registry.set_app_status(BUSINESS_ID, APP_ID, "inactive")

        with pytest.raises(AppLinkInactiveError):
            await gateway.payments.process_payment(cash_request())

        assert await count_transactions(gateway) == 0

    async def test_credentials_missing(self, gateway, merchant):
        await gateway.registry.delete_credentials(BUSINESS_ID, "mobile_money")

        with pytest.raises(CredentialsMissingError):
            await gateway.payments.process_payment(mobile_money_request())

        assert await count_transactions(gateway) == 0

    async def test_credentials_malformed(self, gateway, merchant):
        await gateway.credentials.put(BUSINESS_ID, "card", {"secret_key": "not-a-key"})

        with pytest.raises(CredentialsMalformedError):
            await gateway.payments.process_payment(card_request())

        assert await count_transactions(gateway) == 0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": "0"},
            {"amount": "-5"},
            {"amount": "100.5"},
            {"phone_number": "0712345678"},
            {"phone_number": None},
            {"currency": "shillings"},
        ],
    )
    async def test_invalid_mobile_money_request(self, gateway, merchant, overrides):
        with pytest.raises(InvalidPaymentRequestError) as exc_info:
            await gateway.payments.process_payment(mobile_money_request(**overrides))

        assert exc_info.value.details["errors"]
        assert await count_transactions(gateway) == 0

    async def test_card_needs_token(self, gateway, merchant):
        with pytest.raises(InvalidPaymentRequestError):
            await gateway.payments.process_payment(card_request(payment_token=None))


class TestSynchronousPayments:
    """Card and cash have a definitive outcome in one call."""

    async def test_cash_completes(self, gateway, merchant, events):
        entry = await gateway.payments.process_payment(cash_request())

        assert entry.status == "completed"
        assert entry.amount == Decimal("1000")
        assert entry.currency == "KES"
        assert entry.correlation_id.startswith("cash_")
        assert await count_transactions(gateway) == 1
        assert [type(e) for e in events] == [PaymentCompleted]

    async def test_card_completes_with_masked_details(self, gateway, merchant, fake_stripe):
        entry = await gateway.payments.process_payment(card_request())

        assert entry.status == "completed"
        assert entry.correlation_id == "pi_1"
        assert entry.processor_reference == "ch_1"
        assert entry.processor_details["last4"] == "4242"

    async def test_card_decline_is_failed_entry(self, gateway, merchant, fake_stripe, events):
        fake_stripe.intent_error = stripe.CardError("Your card was declined.", None, "card_declined")

        entry = await gateway.payments.process_payment(card_request())

        assert entry.status == "failed"
        assert entry.result_description == "Your card was declined."
        assert entry.retry_count == 1
        assert entry.processing_errors[0]["error"] == "Your card was declined."
        assert "timestamp" in entry.processing_errors[0]
        assert entry.can_retry() is True
        assert [type(e) for e in events] == [PaymentFailed]

    async def test_processing_fee(self, gateway, merchant):
        await gateway.registry.configure_payment_method(
            BUSINESS_ID,
            {"method": "cash", "fee_percentage": "2.5", "fee_fixed": "10"},
        )

        entry = await gateway.payments.process_payment(cash_request(amount="999.99"))

        # 999.99 * 2.5% + 10 = 34.99975
        assert entry.processing_fee == Decimal("35.00")

    async def test_currency_normalized(self, gateway, merchant):
        entry = await gateway.payments.process_payment(cash_request(currency="kes"))

        assert entry.currency == "KES"


class TestMobileMoneyPayments:
    """STK push stays processing until the callback."""

    async def test_push_leaves_entry_processing(self, gateway, merchant, mpesa, events):
        mpesa.checkout_ids.append("ws_1")

        entry = await gateway.payments.process_payment(mobile_money_request())

        assert entry.status == "processing"
        assert entry.correlation_id == "ws_1"
        assert entry.merchant_request_id is not None
        assert entry.callback_received is False
        assert events == []

    async def test_initiation_failure_marks_failed(self, gateway, merchant, mpesa):
        mpesa.stk_error = {"errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"}

        entry = await gateway.payments.process_payment(mobile_money_request())

        assert entry.status == "failed"
        assert entry.correlation_id is None
        assert entry.result_description == "Unable to lock subscriber"

    async def test_timeout_marks_failed(self, gateway, merchant, mpesa):
        mpesa.stk_timeout = True

        entry = await gateway.payments.process_payment(mobile_money_request())

        assert entry.status == "failed"
        assert entry.processing_errors[0]["error"] == "Timed out waiting for M-Pesa"

    async def test_token_reused_across_payments(self, gateway, merchant, mpesa):
        await gateway.payments.process_payment(mobile_money_request())
        await gateway.payments.process_payment(mobile_money_request())

        assert mpesa.token_calls == 1
        assert len(mpesa.stk_bodies) == 2


class TestCrashHandling:
    """Unexpected exceptions after the entry exists."""

    async def test_crash_marks_entry_failed_and_reraises(self, gateway, merchant, monkeypatch):
        async def explode(payment, credentials):
            raise RuntimeError("adapter bug")

        monkeypatch.setattr(gateway.adapters.cash, "process_payment", explode)

        with pytest.raises(RuntimeError, match="adapter bug"):
            await gateway.payments.process_payment(cash_request())

        entries = await gateway.payments.list_payments(BUSINESS_ID)
        assert len(entries) == 1
        assert entries[0].status == "failed"
        assert entries[0].processing_errors[0]["error"] == "RuntimeError: adapter bug"


class TestQueries:
    async def test_get_payment_scoped_to_app(self, gateway, merchant):
        entry = await gateway.payments.process_payment(cash_request())

        assert (await gateway.payments.get_payment(entry.id, APP_ID)).id == entry.id
        with pytest.raises(TransactionNotFoundError):
            await gateway.payments.get_payment(entry.id, "other-app")

    async def test_list_payments_filters(self, gateway, merchant, fake_stripe):
        await gateway.payments.process_payment(cash_request(amount="10"))
        await gateway.payments.process_payment(card_request(amount="20"))
        await gateway.payments.process_payment(cash_request(amount="30"))

        everything = await gateway.payments.list_payments(BUSINESS_ID)
        cash_only = await gateway.payments.list_payments(BUSINESS_ID, method="cash")
        limited = await gateway.payments.list_payments(BUSINESS_ID, limit=1)

        assert len(everything) == 3
        assert sorted(e.amount for e in cash_only) == [Decimal("10"), Decimal("30")]
        assert limited[0].amount == Decimal("30")
