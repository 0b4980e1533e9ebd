"""HashiCorp Vault (KV version 2) credential backend.

Secrets are written to ``{mount}/data/{prefix}/{business_id}/{method}``; the
database row only remembers the path.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

import httpx

from paygate.credentials.store import RecordBackedCredentialStore
from paygate.errors import CredentialStoreError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.models.credential import ProcessorCredential

logger = logging.getLogger(__name__)


class VaultCredentialStore(RecordBackedCredentialStore):
    """Credential store keeping secrets in Vault's KV v2 engine."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        addr: str,
        token: str,
        mount: str = "secret",
        prefix: str = "paygate",
        timeout: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ):
        if not token:
            raise ValueError("Vault token is required")
        super().__init__(sessions)
        self.addr = addr.rstrip("/")
        self.mount = mount.strip("/")
        self.prefix = prefix.strip("/")
        self.timeout = timeout
        self._token = token
        self._http = http
        self._owns_http = http is None

    async def connect(self) -> None:
        """Open the HTTP client (if not injected) and check Vault is unsealed."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
            self._owns_http = True
        response = await self._request("GET", f"{self.addr}/v1/sys/health")
        if response.status_code != 200:
            raise CredentialStoreError(
                f"Vault at {self.addr} is not ready (HTTP {response.status_code})"
            )
        logger.info("Connected to Vault at %s", self.addr)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def secret_path(self, business_id: str, method: str) -> str:
        return f"{self.prefix}/{business_id}/{method}"

    def _url(self, kind: str, path: str) -> str:
        return f"{self.addr}/v1/{self.mount}/{kind}/{path}"

    async def _request(self, verb: str, url: str, **kwargs) -> httpx.Response:
        if self._http is None:
            raise CredentialStoreError("Vault credential store is not connected")
        try:
            return await self._http.request(
                verb,
                url,
                headers={"X-Vault-Token": self._token},
                timeout=self.timeout,
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise CredentialStoreError(f"Vault request failed: {e}") from e

    async def _write_secrets(
        self, business_id: str, method: str, secrets: Mapping[str, str]
    ) -> tuple[str | None, str | None]:
        path = self.secret_path(business_id, method)
        response = await self._request(
            "POST", self._url("data", path), json={"data": dict(secrets)}
        )
        if response.status_code >= 400:
            raise CredentialStoreError(
                f"Vault rejected write to {path} (HTTP {response.status_code})"
            )
        return None, path

    async def _read_secrets(self, row: ProcessorCredential) -> dict[str, str]:
        path = row.vault_path or self.secret_path(row.business_id, row.method)
        response = await self._request("GET", self._url("data", path))
        if response.status_code == 404:
            raise CredentialStoreError(f"Vault secret {path} is missing")
        if response.status_code >= 400:
            raise CredentialStoreError(
                f"Vault read of {path} failed (HTTP {response.status_code})"
            )
        return dict(response.json()["data"]["data"])

    async def _delete_secrets(self, row: ProcessorCredential) -> None:
        path = row.vault_path or self.secret_path(row.business_id, row.method)
        response = await self._request("DELETE", self._url("metadata", path))
        if response.status_code >= 400 and response.status_code != 404:
            raise CredentialStoreError(
                f"Vault delete of {path} failed (HTTP {response.status_code})"
            )
