"""Pydantic schemas for fiscal documents."""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from fiscal_engine.models.fiscal_document import DocumentType, PaymentMethod, PaymentStatus
from fiscal_engine.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== Lines ====================

class DocumentLineCreate(BaseCreateSchema):
    """A line as submitted by the caller. Amounts are computed server-side."""
    product_id: Optional[UUID] = None
    product_code: Optional[str] = Field(None, max_length=50)
    product_name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    unit_of_measure: str = Field("UN", max_length=20)
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal = Decimal("14")
    discount_amount: Decimal = Decimal("0")
    tax_exemption_code: Optional[str] = Field(None, max_length=10)
    tax_exemption_reason: Optional[str] = Field(None, max_length=200)


class DocumentLineResponse(BaseResponseSchema):
    id: UUID
    line_number: int
    product_id: Optional[UUID] = None
    product_code: str
    product_name: str
    description: Optional[str] = None
    unit_of_measure: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    tax_exemption_code: Optional[str] = None
    tax_exemption_reason: Optional[str] = None
    discount_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    source_line_id: Optional[UUID] = None


# ==================== Documents ====================

class FiscalDocumentCreate(BaseCreateSchema):
    """Document header for create(). Lines are passed separately."""
    organization_id: UUID
    document_type: DocumentType
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    customer_name: str = Field("Consumidor final", max_length=200)
    customer_tax_id: Optional[str] = Field(None, max_length=20)
    customer_address: Optional[str] = None
    customer_phone: Optional[str] = Field(None, max_length=30)
    customer_email: Optional[str] = Field(None, max_length=200)
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    notes: Optional[str] = None
    created_by: Optional[str] = Field(None, max_length=100)

    @field_validator("customer_tax_id", mode="before")
    @classmethod
    def normalize_tax_id(cls, v):
        """Strip spaces and uppercase; blank means final consumer."""
        if v is None:
            return None
        v = "".join(str(v).split()).upper()
        return v or None


class DocumentCreateRequest(FiscalDocumentCreate):
    lines: List[DocumentLineCreate] = Field(default_factory=list)


class CreditLineSelection(BaseCreateSchema):
    """Source line to credit; quantity defaults to what is still creditable."""
    source_line_id: UUID
    quantity: Optional[Decimal] = None


class CreditNoteCreate(BaseCreateSchema):
    lines: List[CreditLineSelection] = Field(default_factory=list)
    reason: str = Field(..., min_length=1)


class DebitNoteCreate(BaseCreateSchema):
    lines: List[DocumentLineCreate] = Field(default_factory=list)
    reason: str = Field(..., min_length=1)


class ProformaConversionRequest(BaseCreateSchema):
    payment_method: Optional[PaymentMethod] = None


class CancelRequest(BaseCreateSchema):
    reason: str = Field(..., min_length=1)


class FiscalDocumentResponse(BaseResponseSchema):
    id: UUID
    organization_id: UUID
    document_type: str
    series: str
    sequence_number: int
    document_number: str
    issue_date: date
    system_entry_date: datetime
    due_date: Optional[date] = None
    customer_name: str
    customer_tax_id: Optional[str] = None
    customer_address: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    signature: Optional[str] = None
    signature_key_version: Optional[str] = None
    status: str
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    source_document_id: Optional[UUID] = None
    payment_method: Optional[str] = None
    payment_status: str
    notes: Optional[str] = None
    is_fiscal: bool
    lines: List[DocumentLineResponse] = []


class FiscalDocumentListResponse(BaseResponseSchema):
    items: List[FiscalDocumentResponse]
    total: int
    skip: int
    limit: int


# ==================== Chain verification ====================

class ChainIssueResponse(BaseResponseSchema):
    kind: str
    message: str
    document_number: Optional[str] = None
    sequence_number: Optional[int] = None


class ChainVerificationResponse(BaseResponseSchema):
    organization_id: UUID
    series: str
    documents_checked: int
    is_valid: bool
    issues: List[ChainIssueResponse] = []
