"""Test fixtures for paygate.

Every test gets its own SQLite file (aiosqlite), an ``httpx.MockTransport``
standing in for Daraja and the merchant webhook endpoint, and a monkeypatched
Stripe SDK.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
import stripe

from paygate.credentials.cipher import SecretCipher
from paygate.credentials.store import DatabaseCredentialStore
from paygate.database import create_engine, create_schema, create_session_factory
from paygate.gateway import Gateway
from paygate.gateway_config import CredentialConfig, GatewayConfig, NotificationConfig
from paygate.models.business import PaymentMethod

TEST_ENCRYPTION_KEY = "paygate-test-passphrase"

BUSINESS_ID = "biz_corner_shop"
APP_ID = "pos-app"

MPESA_SECRETS = {
    "consumer_key": "ck_sandbox",
    "consumer_secret": "cs_sandbox",
    "passkey": "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
    "security_credential": "encrypted-initiator-password",
}
MPESA_ROUTING = {
    "shortcode": "174379",
    "callback_url": "https://gateway.example/callbacks/mpesa",
    "environment": "sandbox",
    "initiator": "testapi",
}
CARD_SECRETS = {"secret_key": "sk_test_corner_shop", "webhook_secret": "whsec_corner_shop"}


class MpesaSandbox:
    """Daraja sandbox double: OAuth, STK push and reversal endpoints."""

    HOST = "sandbox.safaricom.co.ke"

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.stk_bodies: list[dict[str, Any]] = []
        self.reversal_bodies: list[dict[str, Any]] = []
        self.token_calls = 0
        self.checkout_ids: list[str] = []
        self.reject_auth = False
        self.stk_error: dict[str, Any] | None = None
        self.stk_timeout = False
        self._sequence = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/v1/generate":
            self.token_calls += 1
            if self.reject_auth:
                return httpx.Response(401, json={"errorMessage": "Invalid Credentials"})
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.token_calls}", "expires_in": "3599"},
            )

        if path == "/mpesa/stkpush/v1/processrequest":
            if self.stk_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            self.stk_bodies.append(json.loads(request.content))
            if self.stk_error is not None:
                return httpx.Response(400, json=self.stk_error)
            self._sequence += 1
            checkout_id = (
                self.checkout_ids.pop(0)
                if self.checkout_ids
                else f"ws_CO_{self._sequence:08d}"
            )
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{self._sequence}",
                    "CheckoutRequestID": checkout_id,
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )

        if path == "/mpesa/reversal/v1/request":
            self.reversal_bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "OriginatorConversationID": "71840-27539181-07",
                    "ConversationID": f"AG_20260101_{len(self.reversal_bodies):06d}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Accept the service request successfully.",
                },
            )

        return httpx.Response(404, json={"errorMessage": f"No route for {path}"})


class WebhookSink:
    """The merchant's notification endpoint."""

    HOST = "merchant.example"
    URL = f"https://{HOST}/paygate/events"

    def __init__(self) -> None:
        self.deliveries: list[httpx.Request] = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.deliveries.append(request)
        return httpx.Response(self.status_code)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.deliveries]

    def types(self) -> list[str]:
        return [body["type"] for body in self.bodies()]


class FakeStripe:
    """Records Stripe SDK calls and answers with plain dicts."""

    def __init__(self) -> None:
        self.intent_calls: list[dict[str, Any]] = []
        self.refund_calls: list[dict[str, Any]] = []
        self.balance_calls: list[dict[str, Any]] = []
        self.intent_status = "succeeded"
        self.intent_error: Exception | None = None
        self.refund_status = "succeeded"
        self.refund_error: Exception | None = None

    def create_intent(self, **params: Any) -> dict[str, Any]:
        self.intent_calls.append(params)
        if self.intent_error is not None:
            raise self.intent_error
        n = len(self.intent_calls)
        return {
            "id": f"pi_{n}",
            "object": "payment_intent",
            "status": self.intent_status,
            "payment_method": params["payment_method"],
            "latest_charge": {
                "id": f"ch_{n}",
                "receipt_url": f"https://pay.stripe.com/receipts/ch_{n}",
                "payment_method_details": {
                    "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}
                },
            },
        }

    def create_refund(self, **params: Any) -> dict[str, Any]:
        self.refund_calls.append(params)
        if self.refund_error is not None:
            raise self.refund_error
        return {
            "id": f"re_{len(self.refund_calls)}",
            "object": "refund",
            "status": self.refund_status,
            "charge": params.get("charge"),
            "failure_reason": "expired_or_canceled_card" if self.refund_status == "failed" else None,
        }

    def retrieve_balance(self, **params: Any) -> dict[str, Any]:
        self.balance_calls.append(params)
        if params.get("api_key") == "sk_test_revoked":
            raise stripe.AuthenticationError("Invalid API Key provided")
        return {"object": "balance", "available": []}


def stripe_signature(payload: str, secret: str, timestamp: int | None = None) -> str:
    """A ``Stripe-Signature`` header exactly as Stripe computes it."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={mac}"


def stk_callback(
    checkout_request_id: str,
    result_code: int | str = 0,
    *,
    receipt: str | None = "ABC123",
    amount: int = 100,
    result_desc: str = "The service request is processed successfully.",
) -> dict[str, Any]:
    """A Daraja STK callback envelope."""
    callback: dict[str, Any] = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if receipt is not None:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20260101120000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file with the schema created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return create_session_factory(engine)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def credential_store(sessions, cipher) -> DatabaseCredentialStore:
    return DatabaseCredentialStore(sessions, cipher)


# =============================================================================
# Processors and HTTP
# =============================================================================


@pytest.fixture
def mpesa() -> MpesaSandbox:
    return MpesaSandbox()


@pytest.fixture
def webhooks() -> WebhookSink:
    return WebhookSink()


@pytest_asyncio.fixture
async def http(mpesa, webhooks) -> AsyncGenerator[httpx.AsyncClient, None]:
    def route(request: httpx.Request) -> httpx.Response:
        if request.url.host == WebhookSink.HOST:
            return webhooks(request)
        return mpesa(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as client:
        yield client


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake.create_intent)
    monkeypatch.setattr(stripe.Refund, "create", fake.create_refund)
    monkeypatch.setattr(stripe.Balance, "retrieve", fake.retrieve_balance)
    return fake


# =============================================================================
# Gateway
# =============================================================================


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        database_url="sqlite+aiosqlite://",
        credentials=CredentialConfig(encryption_key=TEST_ENCRYPTION_KEY),
        notifications=NotificationConfig(timeout_seconds=5),
    )


@pytest_asyncio.fixture
async def gateway(gateway_config, engine, http, fake_stripe) -> AsyncGenerator[Gateway, None]:
    async with Gateway(gateway_config, engine=engine, http=http) as gw:
        yield gw


@pytest.fixture
def events(gateway) -> list:
    """Every domain event the gateway emits, in order."""
    captured: list = []

    async def capture(event) -> None:
        captured.append(event)

    gateway.emitter.on_all(capture)
    return captured


@pytest_asyncio.fixture
async def merchant(gateway) -> str:
    """An active business with all three methods enabled and credentials stored."""
    await gateway.registry.register_business(
        BUSINESS_ID,
        "Corner Shop",
        APP_ID,
        webhook_url=WebhookSink.URL,
        webhook_secret="merchant-signing-secret",
    )
    for method in PaymentMethod:
        await gateway.registry.configure_payment_method(BUSINESS_ID, {"method": method.value})
    await gateway.registry.save_credentials(
        BUSINESS_ID, PaymentMethod.MOBILE_MONEY, MPESA_SECRETS, MPESA_ROUTING, verify=False
    )
    await gateway.registry.save_credentials(
        BUSINESS_ID, PaymentMethod.CARD, CARD_SECRETS, verify=False
    )
    return BUSINESS_ID


def mobile_money_request(amount: str = "100", **overrides: Any) -> dict[str, Any]:
    request = {
        "business_id": BUSINESS_ID,
        "app_id": APP_ID,
        "amount": amount,
        "currency": "KES",
        "method": "mobile_money",
        "phone_number": "254712345678",
        "account_reference": "ORDER-1001",
        "description": "Groceries",
    }
    request.update(overrides)
    return request


def card_request(amount: str = "250.00", **overrides: Any) -> dict[str, Any]:
    request = {
        "business_id": BUSINESS_ID,
        "app_id": APP_ID,
        "amount": amount,
        "currency": "KES",
        "method": "card",
        "payment_token": "pm_card_visa",
    }
    request.update(overrides)
    return request


def cash_request(amount: str = "1000", **overrides: Any) -> dict[str, Any]:
    request = {
        "business_id": BUSINESS_ID,
        "app_id": APP_ID,
        "amount": amount,
        "currency": "KES",
        "method": "cash",
    }
    request.update(overrides)
    return request
