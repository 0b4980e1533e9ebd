"""Business registry - merchants, app links, payment methods and credentials."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from paygate.credentials.store import CredentialBundle
from paygate.database import session_scope
from paygate.errors import (
    BusinessNotFoundError,
    CredentialsMissingError,
    InvalidPaymentRequestError,
    PaymentMethodUnavailableError,
)
from paygate.models.business import (
    AppLinkStatus,
    Business,
    BusinessApp,
    BusinessPaymentMethod,
    BusinessStatus,
    method_value,
)
from paygate.schemas import PaymentMethodConfig, parse_request

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.credentials.store import CredentialStore
    from paygate.processors.base import ProcessorAdapter, VerificationResult
    from paygate.processors.dispatch import AdapterSet

logger = logging.getLogger(__name__)


async def _require_business(db: AsyncSession, business_id: str) -> Business:
    business = await db.get(Business, business_id, populate_existing=True)
    if business is None:
        raise BusinessNotFoundError(business_id)
    return business


def _status(enum_type: type, value: str) -> str:
    try:
        return enum_type(value).value
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_type)
        raise InvalidPaymentRequestError(
            f"Unknown status {value!r} (expected one of: {allowed})"
        ) from e


class BusinessRegistry:
    """Onboarding and configuration of merchant businesses."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        credentials: CredentialStore,
        adapters: AdapterSet,
    ):
        self.sessions = sessions
        self.credentials = credentials
        self.adapters = adapters

    # Businesses and apps

    async def register_business(
        self,
        business_id: str,
        name: str,
        app_id: str,
        *,
        status: str = BusinessStatus.ACTIVE,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
    ) -> Business:
        """Register a business and link the calling app.

        Registering an existing business is not an error: the app is linked
        (or re-activated) and the business is returned unchanged otherwise.
        """
        async with session_scope(self.sessions) as db:
            business = await db.get(Business, business_id, populate_existing=True)
            if business is None:
                business = Business(
                    business_id=business_id,
                    name=name,
                    status=_status(BusinessStatus, status),
                    webhook_url=webhook_url,
                    webhook_secret=webhook_secret,
                    apps=[],
                    payment_methods=[],
                )
                db.add(business)
                logger.info("Registered business %s (%s)", business_id, name)
            self._link(business, app_id)
            await db.flush()
        return business

    async def link_app(self, business_id: str, app_id: str) -> BusinessApp:
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            link = self._link(business, app_id)
        return link

    @staticmethod
    def _link(business: Business, app_id: str) -> BusinessApp:
        link = business.app_link(app_id)
        if link is None:
            link = BusinessApp(app_id=app_id, status=AppLinkStatus.ACTIVE.value)
            business.apps.append(link)
            logger.info("Linked app %s to business %s", app_id, business.business_id)
        elif not link.is_active:
            link.status = AppLinkStatus.ACTIVE.value
            logger.info("Re-activated app %s for business %s", app_id, business.business_id)
        return link

    async def set_app_status(self, business_id: str, app_id: str, status: str) -> BusinessApp:
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            link = business.app_link(app_id)
            if link is None:
                raise InvalidPaymentRequestError(
                    f"App '{app_id}' is not linked to business '{business_id}'",
                    business_id=business_id,
                    app_id=app_id,
                )
            link.status = _status(AppLinkStatus, status)
        return link

    async def set_business_status(self, business_id: str, status: str) -> Business:
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            business.status = _status(BusinessStatus, status)
        logger.info("Business %s is now %s", business_id, business.status)
        return business

    async def set_webhook(
        self, business_id: str, url: str | None, secret: str | None = None
    ) -> Business:
        """Set (or clear, with ``url=None``) the business's notification endpoint."""
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            business.webhook_url = url
            business.webhook_secret = secret
        return business

    async def get_business(self, business_id: str) -> Business:
        async with session_scope(self.sessions) as db:
            return await _require_business(db, business_id)

    # Payment methods

    async def configure_payment_method(
        self, business_id: str, config: PaymentMethodConfig | Mapping[str, Any]
    ) -> BusinessPaymentMethod:
        """Enable, disable or re-price a payment method."""
        config = parse_request(PaymentMethodConfig, config)
        method = config.method.value
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            row = business.payment_method(method)
            if row is None:
                row = BusinessPaymentMethod(method=method)
                business.payment_methods.append(row)
            row.is_active = config.is_active
            row.fee_percentage = config.fee_percentage
            row.fee_fixed = config.fee_fixed
        logger.info(
            "Business %s %s %s (fee %s%% + %s)",
            business_id,
            "enabled" if config.is_active else "disabled",
            method,
            config.fee_percentage,
            config.fee_fixed,
        )
        return row

    # Credentials

    async def save_credentials(
        self,
        business_id: str,
        method: str,
        secrets: Mapping[str, str],
        metadata: Mapping[str, Any] | None = None,
        *,
        verify: bool = True,
    ) -> VerificationResult | None:
        """Store processor credentials for a configured method.

        Secrets go to the credential store; ``metadata`` (shortcode, callback
        URL, environment...) is kept in clear as routing data. The shape is
        checked locally before anything is stored.

        Returns:
            The verification result when ``verify`` is set, else None.
        """
        method = method_value(method)
        async with session_scope(self.sessions) as db:
            business = await _require_business(db, business_id)
            if business.payment_method(method) is None:
                raise PaymentMethodUnavailableError(business_id, method)

        adapter = self.adapters.for_method(method)
        bundle = CredentialBundle(
            business_id=business_id,
            method=method,
            secrets=dict(secrets),
            routing=dict(metadata or {}),
        )
        adapter.check_credentials(bundle)
        await self.credentials.put(business_id, method, bundle.secrets, bundle.routing)

        if not verify:
            return None
        return await self._verify(adapter, bundle)

    async def verify_credentials(self, business_id: str, method: str) -> VerificationResult:
        """Re-check stored credentials against the processor."""
        method = method_value(method)
        adapter = self.adapters.for_method(method)
        bundle = await self.credentials.get(business_id, method)
        if bundle is None and adapter.requires_credentials:
            raise CredentialsMissingError(business_id, method)
        return await self._verify(adapter, bundle)

    async def _verify(
        self, adapter: ProcessorAdapter, bundle: CredentialBundle | None
    ) -> VerificationResult:
        result = await adapter.verify_credentials(bundle)
        if bundle is not None:
            await self.credentials.record_verification(
                bundle.business_id, bundle.method, verified=result.success, message=result.message
            )
            logger.info(
                "%s credentials for business %s %s: %s",
                bundle.method,
                bundle.business_id,
                "verified" if result.success else "failed verification",
                result.message,
            )
        return result

    async def delete_credentials(self, business_id: str, method: str) -> bool:
        return await self.credentials.delete(business_id, method)
