"""
Document Sequence Model for Atomic Number Generation

One counter row per (organization, series). The series already carries the
fiscal year, so numbering restarts each year and never within it.

DOCUMENT FORMATS:
━━━━━━━━━━━━━━━━
• FT: FT/2025/000001 (Factura)
• FR: FR/2025/000001 (Factura-Recibo)
• FS: FS/2025/000001 (Factura Simplificada)
• PF: PF/2025/000001 (Factura Proforma)
• NC: NC/2025/000001 (Nota de Crédito)
• ND: ND/2025/000001 (Nota de Débito)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_engine.database import Base
from fiscal_engine.db_types import UUIDType


class DocumentSequenceAudit(Base):
    """
    Audit log for document sequence operations.

    Every allocation and manual sync leaves a row here.
    """
    __tablename__ = "document_sequence_audit"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    series: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="ALLOCATE, MANUAL_SYNC"
    )
    old_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    new_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    document_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class DocumentSequence(Base):
    """
    Per-series counter row.

    Example:
        series = "FT/2025"
        current_number = 42
        → Next number: FT/2025/000043
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "series",
            name="uq_document_sequence_org_series"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    series: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Type code + fiscal year, e.g. FT/2025"
    )
    document_type: Mapped[str] = mapped_column(String(30), nullable=False)

    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )
    padding_length: Mapped[int] = mapped_column(
        Integer,
        default=6,
        nullable=False,
        comment="Zero padding for sequence (6 = 000001)"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def format_number(self, sequence_number: int) -> str:
        return f"{self.series}/{str(sequence_number).zfill(self.padding_length)}"

    def preview_next_number(self) -> str:
        """Preview next number without incrementing."""
        return self.format_number(self.current_number + 1)

    def __repr__(self) -> str:
        return f"<DocumentSequence({self.series}: {self.current_number})>"
