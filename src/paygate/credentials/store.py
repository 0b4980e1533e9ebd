"""Credential store interface and the database-backed implementation.

Every backend keeps one ``ProcessorCredential`` row per (business, method)
holding the clear routing metadata; backends differ only in where the secret
half lives.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import select

from paygate.database import session_scope
from paygate.models.base import utcnow
from paygate.models.business import method_value
from paygate.models.credential import ProcessorCredential, VerificationStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.credentials.cipher import SecretCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialBundle:
    """Decrypted credentials handed to a processor adapter.

    ``secrets`` is excluded from ``repr`` so bundles are safe to log.
    """

    business_id: str
    method: str
    secrets: Mapping[str, str] = field(repr=False)
    routing: Mapping[str, Any] = field(default_factory=dict)

    def secret(self, key: str) -> str | None:
        value = self.secrets.get(key)
        return value or None

    def setting(self, key: str, default: Any = None) -> Any:
        value = self.routing.get(key)
        return default if value in (None, "") else value


class CredentialStore(Protocol):
    """Secret vault consumed by orchestrators and the registry."""

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def get(self, business_id: str, method: str) -> CredentialBundle | None:
        """Active credentials for (business, method), or None."""
        ...

    async def put(
        self,
        business_id: str,
        method: str,
        secrets: Mapping[str, str],
        routing: Mapping[str, Any] | None = None,
    ) -> None:
        """Create or replace the credentials for (business, method)."""
        ...

    async def delete(self, business_id: str, method: str) -> bool:
        """Remove credentials. Returns False if none existed."""
        ...

    async def record_verification(
        self, business_id: str, method: str, *, verified: bool, message: str | None = None
    ) -> None:
        """Persist the outcome of a processor verification call."""
        ...


class RecordBackedCredentialStore:
    """Shared row handling. Subclasses decide where secrets are kept."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self.sessions = sessions

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _write_secrets(
        self, business_id: str, method: str, secrets: Mapping[str, str]
    ) -> tuple[str | None, str | None]:
        """Store secrets; return (ciphertext, vault_path) for the row."""
        raise NotImplementedError

    async def _read_secrets(self, row: ProcessorCredential) -> dict[str, str]:
        raise NotImplementedError

    async def _delete_secrets(self, row: ProcessorCredential) -> None:
        return None

    async def get(self, business_id: str, method: str) -> CredentialBundle | None:
        method = method_value(method)
        async with session_scope(self.sessions) as db:
            row = await _find_row(db, business_id, method)
        if row is None or not row.is_active:
            return None
        secrets = await self._read_secrets(row)
        return CredentialBundle(
            business_id=business_id,
            method=method,
            secrets=secrets,
            routing=dict(row.routing_json or {}),
        )

    async def put(
        self,
        business_id: str,
        method: str,
        secrets: Mapping[str, str],
        routing: Mapping[str, Any] | None = None,
    ) -> None:
        method = method_value(method)
        ciphertext, vault_path = await self._write_secrets(business_id, method, secrets)
        async with session_scope(self.sessions) as db:
            row = await _find_row(db, business_id, method)
            if row is None:
                row = ProcessorCredential(business_id=business_id, method=method)
                db.add(row)
            row.routing_json = dict(routing or {})
            row.secrets_ciphertext = ciphertext
            row.vault_path = vault_path
            row.is_active = True
            row.verification_status = VerificationStatus.UNVERIFIED.value
            row.verification_message = None
            row.last_verified_at = None
        logger.info("Stored %s credentials for business %s", method, business_id)

    async def delete(self, business_id: str, method: str) -> bool:
        method = method_value(method)
        async with session_scope(self.sessions) as db:
            row = await _find_row(db, business_id, method)
            if row is None:
                return False
            await db.delete(row)
        await self._delete_secrets(row)
        logger.info("Deleted %s credentials for business %s", method, business_id)
        return True

    async def record_verification(
        self, business_id: str, method: str, *, verified: bool, message: str | None = None
    ) -> None:
        method = method_value(method)
        async with session_scope(self.sessions) as db:
            row = await _find_row(db, business_id, method)
            if row is None:
                return
            row.verification_status = (
                VerificationStatus.VERIFIED.value
                if verified
                else VerificationStatus.FAILED.value
            )
            row.verification_message = message
            row.last_verified_at = utcnow()


class DatabaseCredentialStore(RecordBackedCredentialStore):
    """Secrets stored as Fernet ciphertext next to the routing metadata."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], cipher: SecretCipher):
        super().__init__(sessions)
        self.cipher = cipher

    async def _write_secrets(
        self, business_id: str, method: str, secrets: Mapping[str, str]
    ) -> tuple[str | None, str | None]:
        return self.cipher.encrypt(secrets), None

    async def _read_secrets(self, row: ProcessorCredential) -> dict[str, str]:
        if not row.secrets_ciphertext:
            return {}
        return self.cipher.decrypt(row.secrets_ciphertext)


async def _find_row(
    db: AsyncSession, business_id: str, method: str
) -> ProcessorCredential | None:
    result = await db.execute(
        select(ProcessorCredential).where(
            ProcessorCredential.business_id == business_id,
            ProcessorCredential.method == method,
        )
    )
    return result.scalar_one_or_none()
