"""Fiscal document models (SAF-T AO sales documents).

Supports:
- Factura (FT), Factura-Recibo (FR), Factura Simplificada (FS)
- Factura Proforma (PF), non-fiscal and never signed
- Nota de Crédito (NC) / Nota de Débito (ND) derived from an issued document
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_engine.database import Base
from fiscal_engine.db_types import Money, Quantity, Rate, UnitPrice, UUIDType


class DocumentType(str, Enum):
    """Sales document types and their SAF-T codes."""
    INVOICE = "INVOICE"
    INVOICE_RECEIPT = "INVOICE_RECEIPT"
    SIMPLIFIED_INVOICE = "SIMPLIFIED_INVOICE"
    PROFORMA = "PROFORMA"
    CREDIT_NOTE = "CREDIT_NOTE"
    DEBIT_NOTE = "DEBIT_NOTE"

    @property
    def code(self) -> str:
        return DOCUMENT_TYPE_CODES[self]

    @property
    def is_fiscal(self) -> bool:
        return self is not DocumentType.PROFORMA

    @property
    def is_sale(self) -> bool:
        """Sale types debit stock on issuance."""
        return self in SALE_TYPES


DOCUMENT_TYPE_CODES = {
    DocumentType.INVOICE: "FT",
    DocumentType.INVOICE_RECEIPT: "FR",
    DocumentType.SIMPLIFIED_INVOICE: "FS",
    DocumentType.PROFORMA: "PF",
    DocumentType.CREDIT_NOTE: "NC",
    DocumentType.DEBIT_NOTE: "ND",
}

SALE_TYPES = frozenset({
    DocumentType.INVOICE,
    DocumentType.INVOICE_RECEIPT,
    DocumentType.SIMPLIFIED_INVOICE,
})


class DocumentStatus(str, Enum):
    ISSUED = "ISSUED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"
    MULTICAIXA = "MULTICAIXA"
    OTHER = "OTHER"


PAYMENT_MECHANISM_CODES = {
    PaymentMethod.CASH: "NU",
    PaymentMethod.CARD: "CC",
    PaymentMethod.TRANSFER: "TB",
    PaymentMethod.MULTICAIXA: "CC",
    PaymentMethod.OTHER: "OU",
}


def payment_mechanism_code(method: Optional[str]) -> str:
    """SAF-T PaymentMechanism for a stored payment method; cash when unknown."""
    try:
        return PAYMENT_MECHANISM_CODES[PaymentMethod(method)]
    except ValueError:
        return PAYMENT_MECHANISM_CODES[PaymentMethod.CASH]


class PaymentStatus(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"


def series_for(document_type: DocumentType, fiscal_year: int) -> str:
    """Series key for a document type and fiscal year, e.g. FT/2025."""
    return f"{DocumentType(document_type).code}/{fiscal_year}"


class FiscalDocument(Base):
    """
    Issued sales document.

    Immutable after commit except for the status and cancellation fields.
    Customer data is a snapshot taken at issuance.
    """
    __tablename__ = "fiscal_documents"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "series", "sequence_number",
            name="uq_fiscal_document_series_sequence"
        ),
        Index("ix_fiscal_documents_org_issue_date", "organization_id", "issue_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Type & Numbering
    document_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="INVOICE, INVOICE_RECEIPT, SIMPLIFIED_INVOICE, PROFORMA, CREDIT_NOTE, DEBIT_NOTE"
    )
    series: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Type code + fiscal year, e.g. FT/2025"
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    document_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="e.g. FT/2025/000001"
    )

    # Dates
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    system_entry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Moment of persistence, second precision"
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    tax_point_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Customer snapshot
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_tax_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    customer_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Totals
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Money,
        default=Decimal("0"),
        nullable=False,
        comment="Grand total (GrossTotal)"
    )

    # Signature
    signature: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Base64 RSA-SHA1 signature, null for non-fiscal documents"
    )
    signature_key_version: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Exported as HashControl"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default=DocumentStatus.ISSUED.value,
        nullable=False,
        index=True,
        comment="ISSUED, CANCELLED"
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Derivation
    source_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_documents.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    # Payment
    payment_method: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="CASH, CARD, TRANSFER, MULTICAIXA, OTHER"
    )
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PAID.value,
        nullable=False
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_fiscal: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    lines: Mapped[List["DocumentLine"]] = relationship(
        "DocumentLine",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentLine.line_number",
        lazy="selectin",
    )

    @property
    def type(self) -> DocumentType:
        return DocumentType(self.document_type)

    @property
    def type_code(self) -> str:
        return self.type.code

    @property
    def is_cancelled(self) -> bool:
        return self.status == DocumentStatus.CANCELLED.value

    @property
    def net_total(self) -> Decimal:
        return self.total_amount - self.tax_amount

    @property
    def export_file_name(self) -> str:
        """Per-document XML file name, e.g. FT_FT-2025-000001.xml."""
        return f"{self.type_code}_{self.document_number.replace('/', '-')}.xml"

    def __repr__(self) -> str:
        return f"<FiscalDocument(number='{self.document_number}', status='{self.status}')>"


class DocumentLine(Base):
    """Line of a fiscal document. Amounts are computed at issuance."""
    __tablename__ = "fiscal_document_lines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Product reference, null for free-text adjustment lines
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True
    )
    product_code: Mapped[str] = mapped_column(String(50), nullable=False)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unit_of_measure: Mapped[str] = mapped_column(String(20), default="UN", nullable=False)

    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(UnitPrice, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(
        Rate,
        default=Decimal("0"),
        nullable=False,
        comment="Percentage, e.g. 14.00"
    )
    tax_exemption_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    tax_exemption_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="quantity * unit_price - discount + tax"
    )

    # Credit-note lines point at the source line they credit
    source_line_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_document_lines.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    document: Mapped["FiscalDocument"] = relationship("FiscalDocument", back_populates="lines")

    @property
    def net_amount(self) -> Decimal:
        return self.line_total - self.tax_amount

    def __repr__(self) -> str:
        return f"<DocumentLine(#{self.line_number} {self.product_code} x {self.quantity})>"
