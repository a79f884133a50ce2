import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_engine.database import Base
from fiscal_engine.db_types import UUIDType


class FiscalRegime(str, Enum):
    """VAT regime the organization is registered under."""
    GENERAL = "GENERAL"
    SIMPLIFIED = "SIMPLIFIED"
    EXCLUDED = "EXCLUDED"


class Organization(Base):
    """Issuing company. One tenant per row."""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tax_id: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        comment="NIF of the issuer"
    )
    legal_name: Mapped[str] = mapped_column(String(200), nullable=False)
    trade_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fiscal_regime: Mapped[str] = mapped_column(
        String(20),
        default=FiscalRegime.GENERAL.value,
        nullable=False,
        comment="GENERAL, SIMPLIFIED, EXCLUDED"
    )
    currency_code: Mapped[str] = mapped_column(String(3), default="AOA", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Organization(tax_id='{self.tax_id}', name='{self.legal_name}')>"
