from fiscal_engine.models.organization import Organization, FiscalRegime
from fiscal_engine.models.product import Product, ProductType, StockMovement, MovementType
from fiscal_engine.models.fiscal_document import (
    FiscalDocument,
    DocumentLine,
    DocumentType,
    DocumentStatus,
    PaymentMethod,
    PaymentStatus,
    DOCUMENT_TYPE_CODES,
    PAYMENT_MECHANISM_CODES,
    SALE_TYPES,
    payment_mechanism_code,
    series_for,
)
from fiscal_engine.models.document_sequence import DocumentSequence, DocumentSequenceAudit
from fiscal_engine.models.signing_key import SigningKey
from fiscal_engine.models.audit_log import AuditLog

__all__ = [
    "Organization",
    "FiscalRegime",
    "Product",
    "ProductType",
    "StockMovement",
    "MovementType",
    "FiscalDocument",
    "DocumentLine",
    "DocumentType",
    "DocumentStatus",
    "PaymentMethod",
    "PaymentStatus",
    "DOCUMENT_TYPE_CODES",
    "PAYMENT_MECHANISM_CODES",
    "SALE_TYPES",
    "series_for",
    "payment_mechanism_code",
    "DocumentSequence",
    "DocumentSequenceAudit",
    "SigningKey",
    "AuditLog",
]
