"""Configuration management for paygate."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    encryption_key: str | None
    credential_backend: str
    vault_addr: str
    vault_token: str | None
    vault_mount: str
    processor_timeout_seconds: float
    notification_timeout_seconds: float
    stripe_api_version: str | None
    mpesa_timezone: str
    stale_pending_minutes: int
    log_level: str

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_url=os.getenv(
                "DATABASE_URL",
                "sqlite+aiosqlite:///./paygate.db",
            ),
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            credential_backend=os.getenv("CREDENTIAL_BACKEND", "database").lower(),
            vault_addr=os.getenv("VAULT_ADDR", "http://127.0.0.1:8200"),
            vault_token=os.getenv("VAULT_TOKEN") or None,
            vault_mount=os.getenv("VAULT_MOUNT", "secret"),
            processor_timeout_seconds=float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "30")),
            notification_timeout_seconds=float(
                os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10")
            ),
            stripe_api_version=os.getenv("STRIPE_API_VERSION") or None,
            mpesa_timezone=os.getenv("MPESA_TIMEZONE", "Africa/Nairobi"),
            stale_pending_minutes=int(os.getenv("STALE_PENDING_MINUTES", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()
