"""Gateway configuration objects.

Explicit configuration for a Gateway instance.

Pattern:
    gateway = Gateway(
        GatewayConfig(
            database_url=...,
            credentials=CredentialConfig(backend="database", encryption_key=...),
            processors=ProcessorConfig(timeout_seconds=20),
            notifications=NotificationConfig(timeout_seconds=5),
        )
    )

Rules:
    1. Only ``GatewayConfig.from_settings`` reads the environment.
    2. No globals. Each Gateway instance has its own config.
    3. Immutable after creation (frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

if TYPE_CHECKING:
    from paygate.config import Settings

CREDENTIAL_BACKENDS = ("database", "vault")


@dataclass(frozen=True)
class CredentialConfig:
    """
    Credential store configuration.

    Attributes:
        backend: ``database`` keeps Fernet ciphertext in the record store,
            ``vault`` keeps secrets in Vault KV v2.
        encryption_key: Fernet key or passphrase. Required for ``database``.
        vault_addr: Vault base URL.
        vault_token: Vault token. Required for ``vault``.
        vault_mount: KV v2 mount point.
    """

    backend: str = "database"
    encryption_key: str | None = field(default=None, repr=False)
    vault_addr: str = "http://127.0.0.1:8200"
    vault_token: str | None = field(default=None, repr=False)
    vault_mount: str = "secret"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.backend not in CREDENTIAL_BACKENDS:
            raise ValueError(
                f"credential backend must be one of {CREDENTIAL_BACKENDS}, got {self.backend!r}"
            )
        if self.backend == "database" and not self.encryption_key:
            raise ValueError("encryption_key is required for the database credential backend")
        if self.backend == "vault" and not self.vault_token:
            raise ValueError("vault_token is required for the vault credential backend")


@dataclass(frozen=True)
class ProcessorConfig:
    """
    Processor adapter configuration.

    Attributes:
        timeout_seconds: Upper bound on any single processor call. A timeout
            on a synchronous adapter is recorded as a processor failure.
        stripe_api_version: Pin the Stripe API version, or None for the
            account default.
        mpesa_timezone: Zone used for STK push timestamps.
    """

    timeout_seconds: float = 30.0
    stripe_api_version: str | None = None
    mpesa_timezone: str = "Africa/Nairobi"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.timeout_seconds > 120:
            raise ValueError("timeout_seconds cannot exceed 120")
        try:
            ZoneInfo(self.mpesa_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown mpesa_timezone {self.mpesa_timezone!r}") from e


@dataclass(frozen=True)
class NotificationConfig:
    """
    Outbound webhook configuration.

    Attributes:
        enabled: If False, events are still emitted but not delivered.
        timeout_seconds: Per-delivery HTTP timeout.
    """

    enabled: bool = True
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass(frozen=True)
class GatewayConfig:
    """
    Complete gateway configuration.

    Attributes:
        database_url: SQLAlchemy async URL of the record store.
        credentials: Credential store configuration.
        processors: Processor adapter configuration.
        notifications: Outbound webhook configuration.
        stale_pending_minutes: Age after which a pending/processing entry is
            reported by ``stale-pending``.
    """

    database_url: str
    credentials: CredentialConfig
    processors: ProcessorConfig = field(default_factory=ProcessorConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    stale_pending_minutes: int = 30

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.database_url:
            raise ValueError("database_url is required")
        if self.stale_pending_minutes < 1:
            raise ValueError("stale_pending_minutes must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayConfig:
        """Build configuration from environment-derived settings."""
        return cls(
            database_url=settings.database_url,
            credentials=CredentialConfig(
                backend=settings.credential_backend,
                encryption_key=settings.encryption_key,
                vault_addr=settings.vault_addr,
                vault_token=settings.vault_token,
                vault_mount=settings.vault_mount,
            ),
            processors=ProcessorConfig(
                timeout_seconds=settings.processor_timeout_seconds,
                stripe_api_version=settings.stripe_api_version,
                mpesa_timezone=settings.mpesa_timezone,
            ),
            notifications=NotificationConfig(
                timeout_seconds=settings.notification_timeout_seconds,
            ),
            stale_pending_minutes=settings.stale_pending_minutes,
        )
