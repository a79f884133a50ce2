"""Fiscal document API endpoints."""
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from fiscal_engine.api.deps import ActorId, Exporter, Lifecycle
from fiscal_engine.models.fiscal_document import DocumentStatus, DocumentType
from fiscal_engine.schemas.fiscal_document import (
    CancelRequest,
    CreditNoteCreate,
    DebitNoteCreate,
    DocumentCreateRequest,
    FiscalDocumentListResponse,
    FiscalDocumentResponse,
    ProformaConversionRequest,
)

router = APIRouter()


@router.post("", response_model=FiscalDocumentResponse, status_code=status.HTTP_201_CREATED)
async def create_document(
    document_in: DocumentCreateRequest,
    service: Lifecycle,
    actor_id: ActorId,
):
    """Issue an invoice (FT), invoice-receipt (FR), simplified invoice (FS) or proforma (PF)."""
    if actor_id and not document_in.created_by:
        document_in = document_in.model_copy(update={"created_by": actor_id})
    return await service.create(document_in, document_in.lines)


@router.get("", response_model=FiscalDocumentListResponse)
async def list_documents(
    service: Lifecycle,
    organization_id: UUID = Query(...),
    document_type: Optional[DocumentType] = None,
    document_status: Optional[DocumentStatus] = Query(None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List documents with filters."""
    items, total = await service.list_documents(
        organization_id,
        document_type=document_type,
        status=document_status,
        start_date=start_date,
        end_date=end_date,
        search=search,
        skip=skip,
        limit=limit,
    )
    return FiscalDocumentListResponse(
        items=[FiscalDocumentResponse.model_validate(d) for d in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{document_id}", response_model=FiscalDocumentResponse)
async def get_document(document_id: UUID, service: Lifecycle):
    """Get document by ID."""
    return await service.get_document(document_id)


@router.post("/{document_id}/cancel", response_model=FiscalDocumentResponse)
async def cancel_document(
    document_id: UUID,
    cancel_in: CancelRequest,
    service: Lifecycle,
    actor_id: ActorId,
):
    """Cancel an issued fiscal document and return its stock."""
    return await service.cancel(document_id, cancel_in.reason, actor_id)


@router.post(
    "/{document_id}/credit-notes",
    response_model=FiscalDocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_credit_note(
    document_id: UUID,
    note_in: CreditNoteCreate,
    service: Lifecycle,
    actor_id: ActorId,
):
    """Credit some or all lines of an issued document."""
    return await service.derive_credit_note(document_id, note_in.lines, note_in.reason, actor_id)


@router.post(
    "/{document_id}/debit-notes",
    response_model=FiscalDocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_debit_note(
    document_id: UUID,
    note_in: DebitNoteCreate,
    service: Lifecycle,
    actor_id: ActorId,
):
    """Charge additional amounts against an issued document."""
    return await service.derive_debit_note(document_id, note_in.lines, note_in.reason, actor_id)


@router.post(
    "/{document_id}/convert",
    response_model=FiscalDocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_proforma(
    document_id: UUID,
    service: Lifecycle,
    actor_id: ActorId,
    conversion_in: Optional[ProformaConversionRequest] = None,
):
    """Convert a proforma into an invoice-receipt (FR)."""
    payment_method = conversion_in.payment_method if conversion_in else None
    return await service.convert_proforma_to_invoice(document_id, actor_id, payment_method)


@router.get("/{document_id}/xml")
async def download_document_xml(document_id: UUID, exporter: Exporter):
    """Per-document SAF-T XML, named <TypeCode>_<Number>.xml."""
    file_name, content = await exporter.export_document(document_id)
    return Response(
        content=content,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
