"""Tests for BusinessRegistry - onboarding, methods and credentials."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from paygate.database import session_scope
from paygate.errors import (
    BusinessNotFoundError,
    CredentialsMalformedError,
    CredentialsMissingError,
    InvalidPaymentRequestError,
    PaymentMethodUnavailableError,
)
from paygate.models.credential import ProcessorCredential, VerificationStatus
from tests.conftest import APP_ID, CARD_SECRETS, MPESA_ROUTING, MPESA_SECRETS

pytestmark = pytest.mark.asyncio

SHOP = "biz_kiosk"


async def verification_status(gateway, business_id, method):
    async with session_scope(gateway.sessions) as db:
        result = await db.execute(
            select(ProcessorCredential.verification_status).where(
                ProcessorCredential.business_id == business_id,
                ProcessorCredential.method == method,
            )
        )
        return result.scalar_one()


class TestBusinesses:
    async def test_register_is_idempotent(self, gateway):
        first = await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        again = await gateway.registry.register_business(SHOP, "Renamed Kiosk", APP_ID)

        assert again.name == first.name == "Kiosk"
        assert [link.app_id for link in again.apps] == [APP_ID]
        assert again.is_active

    async def test_register_links_additional_app(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        business = await gateway.registry.register_business(SHOP, "Kiosk", "web-shop")

        assert sorted(link.app_id for link in business.apps) == [APP_ID, "web-shop"]

    async def test_relink_reactivates(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        await gateway.registry.set_app_status(SHOP, APP_ID, "inactive")

        link = await gateway.registry.link_app(SHOP, APP_ID)

        assert link.is_active

    async def test_unknown_status_rejected(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)

        with pytest.raises(InvalidPaymentRequestError):
            await gateway.registry.set_business_status(SHOP, "frozen")
        with pytest.raises(InvalidPaymentRequestError):
            await gateway.registry.set_app_status(SHOP, "never-linked", "active")

    async def test_set_webhook(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)

        await gateway.registry.set_webhook(SHOP, "https://kiosk.example/hooks", "s3cret")

        business = await gateway.registry.get_business(SHOP)
        assert business.webhook_url == "https://kiosk.example/hooks"
        assert business.webhook_secret == "s3cret"

    async def test_get_missing(self, gateway):
        with pytest.raises(BusinessNotFoundError):
            await gateway.registry.get_business("biz_missing")


class TestPaymentMethods:
    async def test_configure_and_reprice(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)

        await gateway.registry.configure_payment_method(SHOP, {"method": "card"})
        row = await gateway.registry.configure_payment_method(
            SHOP, {"method": "card", "fee_percentage": "2.9", "fee_fixed": "30"}
        )

        business = await gateway.registry.get_business(SHOP)
        assert len(business.payment_methods) == 1
        assert row.fee_percentage == Decimal("2.9")
        assert row.processing_fee(Decimal("1000")) == Decimal("59.00")

    @pytest.mark.parametrize(
        "config",
        [
            {"method": "cheque"},
            {"method": "card", "fee_percentage": "101"},
            {"method": "card", "fee_fixed": "-1"},
        ],
    )
    async def test_invalid_config(self, gateway, config):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)

        with pytest.raises(InvalidPaymentRequestError):
            await gateway.registry.configure_payment_method(SHOP, config)


class TestCredentials:
    async def test_save_requires_configured_method(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)

        with pytest.raises(PaymentMethodUnavailableError):
            await gateway.registry.save_credentials(SHOP, "card", CARD_SECRETS, verify=False)

    async def test_malformed_credentials_not_stored(self, gateway):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        await gateway.registry.configure_payment_method(SHOP, {"method": "mobile_money"})

        with pytest.raises(CredentialsMalformedError):
            await gateway.registry.save_credentials(
                SHOP, "mobile_money", {"consumer_key": "ck"}, MPESA_ROUTING
            )

        assert await gateway.credentials.get(SHOP, "mobile_money") is None

    async def test_save_and_verify_mpesa(self, gateway, mpesa):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        await gateway.registry.configure_payment_method(SHOP, {"method": "mobile_money"})

        result = await gateway.registry.save_credentials(
            SHOP, "mobile_money", MPESA_SECRETS, MPESA_ROUTING
        )

        assert result.success is True
        assert mpesa.token_calls == 1
        assert await verification_status(gateway, SHOP, "mobile_money") == VerificationStatus.VERIFIED

    async def test_failed_verification_recorded(self, gateway, mpesa):
        await gateway.registry.register_business(SHOP, "Kiosk", APP_ID)
        await gateway.registry.configure_payment_method(SHOP, {"method": "mobile_money"})
        mpesa.reject_auth = True

        result = await gateway.registry.save_credentials(
            SHOP, "mobile_money", MPESA_SECRETS, MPESA_ROUTING
        )

        assert result.success is False
        assert await verification_status(gateway, SHOP, "mobile_money") == VerificationStatus.FAILED
        assert await gateway.credentials.get(SHOP, "mobile_money") is not None

    async def test_verify_stored_card(self, gateway, merchant, fake_stripe):
        result = await gateway.registry.verify_credentials(merchant, "card")

        assert result.success is True
        assert fake_stripe.balance_calls[0]["api_key"] == CARD_SECRETS["secret_key"]

    async def test_verify_missing(self, gateway, merchant):
        await gateway.registry.delete_credentials(merchant, "card")

        with pytest.raises(CredentialsMissingError):
            await gateway.registry.verify_credentials(merchant, "card")

    async def test_cash_needs_no_credentials(self, gateway, merchant):
        result = await gateway.registry.verify_credentials(merchant, "cash")

        assert result.success is True
