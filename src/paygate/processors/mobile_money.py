"""M-Pesa (Safaricom Daraja) mobile-money adapter.

Payments are STK pushes: the customer confirms on their handset and the
outcome arrives later as a callback keyed by ``CheckoutRequestID``, which this
adapter returns as the correlation id. Refunds are transaction reversals.

Credential bundle:
    secrets: consumer_key, consumer_secret, passkey, and optionally
        security_credential (reversals) and callback_secret (HMAC-SHA256
        signature of inbound callbacks).
    routing: shortcode, callback_url, and optionally environment
        (sandbox|production), account_type (paybill|till), till_number,
        initiator, result_url, timeout_url.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
import time
from collections.abc import Mapping
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

import httpx
from pydantic import BaseModel, Field, ValidationError

from paygate.errors import (
    CredentialsMalformedError,
    InvalidPaymentRequestError,
    RefundNotAllowedError,
    WebhookVerificationError,
)
from paygate.models.business import PaymentMethod
from paygate.processors.base import (
    CallbackOutcome,
    PaymentResult,
    RefundResult,
    VerificationResult,
    WebhookResult,
)
from paygate.services.state_machine import TransactionStatus

if TYPE_CHECKING:
    from paygate.credentials.store import CredentialBundle
    from paygate.models.refund import Refund
    from paygate.models.transaction import Transaction

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

PHONE_PATTERN = re.compile(r"^254\d{9}$")

REQUIRED_SECRETS = ("consumer_key", "consumer_secret", "passkey")
REQUIRED_ROUTING = ("shortcode", "callback_url")

# Refresh tokens this many seconds before Daraja expires them.
TOKEN_EXPIRY_MARGIN = 60

# Daraja field limits
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13


class StkCallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    Item: list[StkCallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    """The ``Body.stkCallback`` object Daraja posts to the callback URL."""

    MerchantRequestID: str | None = None
    CheckoutRequestID: str
    ResultCode: int | str
    ResultDesc: str = ""
    CallbackMetadata: StkCallbackMetadata | None = None

    @property
    def succeeded(self) -> bool:
        # Daraja sends 0 as a number; some relays forward it as a string.
        return self.ResultCode == 0 or self.ResultCode == "0"

    def metadata(self) -> dict[str, Any]:
        """Flatten ``CallbackMetadata.Item`` into a Name -> Value dict."""
        if self.CallbackMetadata is None:
            return {}
        return {item.Name: item.Value for item in self.CallbackMetadata.Item}


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: StkCallbackBody


def whole_units(amount: Decimal) -> int:
    """Daraja only accepts integer amounts."""
    return int(Decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sign_callback(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a callback body, as relays attach it."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class MobileMoneyAdapter:
    """Daraja STK push adapter."""

    method = PaymentMethod.MOBILE_MONEY.value
    requires_credentials = True

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        timeout: float = 30.0,
        timezone: str = "Africa/Nairobi",
    ):
        """Initialize adapter.

        Args:
            http: Shared HTTP client. The adapter never closes it.
            timeout: Per-request timeout in seconds.
            timezone: Zone used for the STK password timestamp.
        """
        self.http = http
        self.timeout = timeout
        self.tz = ZoneInfo(timezone)
        # (base_url, consumer_key) -> (token, monotonic expiry)
        self._tokens: dict[tuple[str, str], tuple[str, float]] = {}

    # Credentials

    def check_credentials(self, credentials: CredentialBundle | None) -> None:
        if credentials is None:
            raise CredentialsMalformedError(self.method, ["credentials are required"])

        problems = [
            f"missing secret '{key}'" for key in REQUIRED_SECRETS if not credentials.secret(key)
        ]
        problems += [
            f"missing setting '{key}'"
            for key in REQUIRED_ROUTING
            if not credentials.setting(key)
        ]

        shortcode = credentials.setting("shortcode")
        if shortcode and not str(shortcode).isdigit():
            problems.append("shortcode must be numeric")
        callback_url = credentials.setting("callback_url")
        if callback_url and not str(callback_url).startswith(("https://", "http://")):
            problems.append("callback_url must be an http(s) URL")
        if credentials.setting("environment", "sandbox") not in ("sandbox", "production"):
            problems.append("environment must be 'sandbox' or 'production'")
        account_type = credentials.setting("account_type", "paybill")
        if account_type not in ("paybill", "till"):
            problems.append("account_type must be 'paybill' or 'till'")
        elif account_type == "till" and not credentials.setting("till_number"):
            problems.append("till accounts need 'till_number'")

        if problems:
            raise CredentialsMalformedError(self.method, problems)

    def check_refundable(self, payment: Transaction, amount: Decimal) -> None:
        if not payment.receipt_number:
            raise RefundNotAllowedError(
                "Mobile money payment has no M-Pesa receipt to reverse",
                transaction_id=payment.id,
            )
        if amount != amount.to_integral_value():
            raise InvalidPaymentRequestError(
                "Mobile money refunds must be whole units",
                errors=[f"amount: {amount} is not a whole amount"],
            )

    def base_url(self, credentials: CredentialBundle) -> str:
        if credentials.setting("environment") == "production":
            return PRODUCTION_URL
        return SANDBOX_URL

    async def access_token(
        self, credentials: CredentialBundle, *, refresh: bool = False
    ) -> str:
        """OAuth token for the bundle's consumer key, cached until near expiry."""
        base = self.base_url(credentials)
        consumer_key = credentials.secret("consumer_key") or ""
        cache_key = (base, consumer_key)

        cached = self._tokens.get(cache_key)
        if cached and not refresh and cached[1] > time.monotonic():
            return cached[0]

        basic = base64.b64encode(
            f"{consumer_key}:{credentials.secret('consumer_secret')}".encode("utf-8")
        ).decode("ascii")
        response = await self.http.get(
            f"{base}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {basic}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        token = data["access_token"]
        expires_in = int(data.get("expires_in", 3599))
        self._tokens[cache_key] = (
            token,
            time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0),
        )
        return token

    async def verify_credentials(
        self, credentials: CredentialBundle | None
    ) -> VerificationResult:
        try:
            self.check_credentials(credentials)
        except CredentialsMalformedError as e:
            return VerificationResult(success=False, message=e.message)

        try:
            await self.access_token(credentials, refresh=True)
        except httpx.HTTPStatusError as e:
            return VerificationResult(
                success=False,
                message=f"M-Pesa rejected the credentials (HTTP {e.response.status_code})",
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            return VerificationResult(success=False, message=f"M-Pesa unreachable: {e}")
        return VerificationResult(success=True, message="Access token issued")

    # Payments

    def timestamp(self) -> str:
        """STK timestamp, ``YYYYMMDDHHmmss`` in the configured zone."""
        return datetime.now(self.tz).strftime("%Y%m%d%H%M%S")

    @staticmethod
    def password(shortcode: str, passkey: str, timestamp: str) -> str:
        return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode(
            "ascii"
        )

    def stk_push_body(
        self, payment: Transaction, credentials: CredentialBundle, timestamp: str
    ) -> dict[str, Any]:
        shortcode = str(credentials.setting("shortcode"))
        is_till = credentials.setting("account_type", "paybill") == "till"
        reference = payment.account_reference or str(payment.id).replace("-", "")
        return {
            "BusinessShortCode": shortcode,
            "Password": self.password(shortcode, credentials.secret("passkey"), timestamp),
            "Timestamp": timestamp,
            "TransactionType": (
                "CustomerBuyGoodsOnline" if is_till else "CustomerPayBillOnline"
            ),
            "Amount": whole_units(payment.amount),
            "PartyA": payment.phone_number,
            "PartyB": str(credentials.setting("till_number")) if is_till else shortcode,
            "PhoneNumber": payment.phone_number,
            "CallBackURL": credentials.setting("callback_url"),
            "AccountReference": reference[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc": (payment.description or "Payment")[:TRANSACTION_DESC_MAX],
        }

    async def process_payment(
        self, payment: Transaction, credentials: CredentialBundle | None
    ) -> PaymentResult:
        """Send the STK push. Success here only means Daraja queued it."""
        base = self.base_url(credentials)
        try:
            token = await self.access_token(credentials)
            response = await self.http.post(
                f"{base}/mpesa/stkpush/v1/processrequest",
                json=self.stk_push_body(payment, credentials, self.timestamp()),
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("STK push for transaction %s timed out", payment.id)
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Timed out waiting for M-Pesa",
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning("STK push for transaction %s failed: %s", payment.id, e)
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=f"M-Pesa request failed: {e}",
            )

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            error = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or f"HTTP {response.status_code}"
            )
            return PaymentResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=error,
                raw_details=_summary(data),
            )

        return PaymentResult(
            success=True,
            status=TransactionStatus.PROCESSING.value,
            pending=True,
            transaction_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            raw_details=_summary(data),
        )

    # Callbacks

    @staticmethod
    def decode_callback(payload: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(payload, Mapping):
            return dict(payload)
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError("M-Pesa callback is not valid JSON") from e
        if not isinstance(data, dict):
            raise WebhookVerificationError("M-Pesa callback must be a JSON object")
        return data

    @staticmethod
    def parse_callback(payload: bytes | str | Mapping[str, Any]) -> StkCallback:
        """Validate the callback envelope and return its ``stkCallback``."""
        data = MobileMoneyAdapter.decode_callback(payload)
        try:
            return StkCallbackEnvelope.model_validate(data).Body.stkCallback
        except ValidationError as e:
            raise WebhookVerificationError(
                "Malformed M-Pesa callback",
                errors=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()],
            ) from e

    @staticmethod
    def verify_signature(payload: bytes, signature: str | None, secret: str) -> None:
        expected = sign_callback(payload, secret)
        if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookVerificationError("M-Pesa callback signature mismatch")

    @staticmethod
    def outcome(callback: StkCallback, payload: dict[str, Any] | None = None) -> CallbackOutcome:
        meta = callback.metadata()
        receipt = meta.get("MpesaReceiptNumber")
        details = {
            "merchant_request_id": callback.MerchantRequestID,
            "amount": meta.get("Amount"),
            "transaction_date": _text(meta.get("TransactionDate")),
            "phone_number": _text(meta.get("PhoneNumber")),
        }
        return CallbackOutcome(
            status=(
                TransactionStatus.COMPLETED.value
                if callback.succeeded
                else TransactionStatus.FAILED.value
            ),
            result_code=str(callback.ResultCode),
            description=callback.ResultDesc,
            receipt_number=str(receipt) if callback.succeeded and receipt else None,
            details={k: v for k, v in details.items() if v is not None},
            payload=payload,
        )

    def handle_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> WebhookResult:
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        if secret:
            self.verify_signature(raw, signature, secret)
        data = self.decode_callback(raw)
        callback = self.parse_callback(data)
        return WebhookResult(
            event_type="stk_callback",
            correlation_id=callback.CheckoutRequestID,
            outcome=self.outcome(callback, data),
            data={"merchant_request_id": callback.MerchantRequestID},
        )

    # Refunds

    async def process_refund(
        self,
        refund: Refund,
        original_payment: Transaction,
        credentials: CredentialBundle | None,
    ) -> RefundResult:
        """Request a reversal of the original M-Pesa transaction.

        Daraja answers asynchronously; an accepted request is reported as
        success and the ConversationID is kept as the refund id.
        """
        initiator = credentials.setting("initiator")
        security_credential = credentials.secret("security_credential")
        if not initiator or not security_credential:
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Reversals need 'initiator' and 'security_credential'",
            )

        callback_url = credentials.setting("callback_url")
        body = {
            "Initiator": initiator,
            "SecurityCredential": security_credential,
            "CommandID": "TransactionReversal",
            "TransactionID": original_payment.receipt_number,
            "Amount": whole_units(refund.amount),
            "ReceiverParty": str(credentials.setting("shortcode")),
            "RecieverIdentifierType": "11",
            "ResultURL": credentials.setting("result_url", callback_url),
            "QueueTimeOutURL": credentials.setting("timeout_url", callback_url),
            "Remarks": refund.reason[:100],
            "Occasion": str(refund.id)[:100],
        }

        base = self.base_url(credentials)
        try:
            token = await self.access_token(credentials)
            response = await self.http.post(
                f"{base}/mpesa/reversal/v1/request",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
            data = response.json()
        except httpx.TimeoutException:
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error="Timed out waiting for M-Pesa",
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=f"M-Pesa reversal failed: {e}",
            )

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            return RefundResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                error=data.get("errorMessage")
                or data.get("ResponseDescription")
                or f"HTTP {response.status_code}",
                raw_details=_summary(data),
            )
        return RefundResult(
            success=True,
            status=TransactionStatus.COMPLETED.value,
            refund_id=data.get("ConversationID") or data.get("OriginatorConversationID"),
            raw_details=_summary(data),
        )


def _summary(data: dict[str, Any]) -> dict[str, Any]:
    keep = (
        "MerchantRequestID",
        "CheckoutRequestID",
        "ConversationID",
        "OriginatorConversationID",
        "ResponseCode",
        "ResponseDescription",
        "CustomerMessage",
        "errorCode",
        "errorMessage",
    )
    return {key: data[key] for key in keep if key in data}


def _text(value: Any) -> str | None:
    return None if value is None else str(value)
