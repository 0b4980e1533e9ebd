"""Gateway facade - the single wiring point.

Usage:
    config = GatewayConfig.from_settings(get_settings())
    async with Gateway(config) as gateway:
        await gateway.registry.register_business("biz_1", "Corner Shop", "pos-app")
        payment = await gateway.payments.process_payment({...})
        await gateway.callbacks.handle_mobile_money_callback(body)

The facade:
- Builds the engine, HTTP client, credential store and adapters from explicit
  configuration (or takes injected ones, which it then does not close)
- Registers the webhook notifier on the event emitter
- Owns the connect/close lifecycle; nothing is created at import time
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx

from paygate.credentials.cipher import SecretCipher
from paygate.credentials.store import DatabaseCredentialStore
from paygate.credentials.vault import VaultCredentialStore
from paygate.database import create_engine, create_schema, create_session_factory, session_scope
from paygate.events.emitter import AsyncEventEmitter
from paygate.events.notifier import WebhookNotifier
from paygate.models.base import utcnow
from paygate.processors.dispatch import AdapterSet
from paygate.services.business_registry import BusinessRegistry
from paygate.services.invoices import InvoiceService
from paygate.services.ledger import TransactionLedger
from paygate.services.payment_orchestrator import PaymentOrchestrator
from paygate.services.reconciler import CallbackReconciler
from paygate.services.refund_orchestrator import RefundOrchestrator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from paygate.credentials.store import CredentialStore
    from paygate.gateway_config import GatewayConfig
    from paygate.models.transaction import Transaction

logger = logging.getLogger(__name__)


class Gateway:
    """All gateway services, wired together for one configuration."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        engine: AsyncEngine | None = None,
        http: httpx.AsyncClient | None = None,
        credential_store: CredentialStore | None = None,
        adapters: AdapterSet | None = None,
    ):
        self.config = config

        self._owns_engine = engine is None
        self.engine = engine or create_engine(config.database_url)
        self.sessions = create_session_factory(self.engine)

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=config.processors.timeout_seconds)

        self.credentials = credential_store or self._build_credential_store()
        self.adapters = adapters or AdapterSet.create(self.http, config.processors)

        self.emitter = AsyncEventEmitter()
        self.notifier = WebhookNotifier(
            self.sessions,
            self.http,
            timeout=config.notifications.timeout_seconds,
            enabled=config.notifications.enabled,
        )
        self.emitter.on_all(self.notifier)

        self.registry = BusinessRegistry(self.sessions, self.credentials, self.adapters)
        self.payments = PaymentOrchestrator(
            self.sessions, self.credentials, self.adapters, self.emitter
        )
        self.refunds = RefundOrchestrator(
            self.sessions, self.credentials, self.adapters, self.emitter
        )
        self.callbacks = CallbackReconciler(
            self.sessions, self.credentials, self.adapters, self.emitter
        )
        self.invoices = InvoiceService(self.sessions, self.emitter)

    def _build_credential_store(self) -> CredentialStore:
        creds = self.config.credentials
        if creds.backend == "vault":
            return VaultCredentialStore(
                self.sessions,
                addr=creds.vault_addr,
                token=creds.vault_token,
                mount=creds.vault_mount,
                timeout=self.config.processors.timeout_seconds,
            )
        return DatabaseCredentialStore(self.sessions, SecretCipher(creds.encryption_key))

    async def connect(self) -> None:
        """Open external connections (the credential backend)."""
        await self.credentials.connect()
        logger.info("Gateway connected (credential backend: %s)", self.config.credentials.backend)

    async def close(self) -> None:
        """Flush pending notifications and release everything the gateway built."""
        await self.notifier.drain()
        await self.credentials.close()
        if self._owns_http:
            await self.http.aclose()
        if self._owns_engine:
            await self.engine.dispose()

    async def __aenter__(self) -> Gateway:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def create_schema(self) -> None:
        await create_schema(self.engine)

    async def stale_pending(
        self, older_than_minutes: int | None = None, *, limit: int = 100
    ) -> list[Transaction]:
        """Pending/processing entries whose callback never came."""
        minutes = older_than_minutes or self.config.stale_pending_minutes
        async with session_scope(self.sessions) as db:
            return await TransactionLedger(db).list_stale_pending(
                older_than=utcnow() - timedelta(minutes=minutes), limit=limit
            )
