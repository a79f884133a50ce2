import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_engine.database import Base
from fiscal_engine.db_types import UUIDType


class SigningKey(Base):
    """
    RSA key pair used to sign an organization's documents.

    The private key is stored Fernet-encrypted (ENC: prefix).
    """
    __tablename__ = "signing_keys"
    __table_args__ = (
        UniqueConstraint("organization_id", "key_version", name="uq_signing_key_org_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    key_version: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Exported as HashControl"
    )
    private_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<SigningKey(org='{self.organization_id}', version='{self.key_version}')>"
