"""Processor credential records.

Routing metadata (shortcode, callback URL, environment, publishable key) is
stored in clear. Secrets never are: the database backend keeps only Fernet
ciphertext here and the Vault backend keeps only the secret's path.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from paygate.models.base import Base, TimestampMixin


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class ProcessorCredential(Base, TimestampMixin):
    """One credential set per (business, method)."""

    __tablename__ = "processor_credential"
    __table_args__ = (UniqueConstraint("business_id", "method"),)

    processor_credential_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[str] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"), nullable=False
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    routing_json: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    secrets_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)
    vault_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    verification_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    verification_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
