"""
Document Lifecycle Service

The only writer of fiscal document state.

    DRAFT (in memory) --create/derive/convert--> ISSUED --cancel--> CANCELLED

Issuance, in one transaction under the series lock:
    validate -> allocate number -> compute totals -> previous signature
    -> sign (fiscal types) -> insert document + lines -> stock -> audit

Cancellation, in one transaction:
    compensating stock movement per product line -> status change -> audit

Cancelling a document and deriving from it hold the same per-document lock,
so a note is never issued against a source that is being cancelled.

Stock effect at issuance, reversed exactly by cancellation:
    FT / FR / FS   -qty  (SALE)
    NC             +qty  (CREDIT_NOTE)
    ND / PF        none
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fiscal_engine.config import Settings, get_settings
from fiscal_engine.core.exceptions import (
    NotFoundError,
    SequenceConflictError,
    ValidationError,
)
from fiscal_engine.database import PersistenceGateway
from fiscal_engine.models.fiscal_document import (
    DocumentLine,
    DocumentStatus,
    DocumentType,
    FiscalDocument,
    PaymentMethod,
    PaymentStatus,
    series_for,
)
from fiscal_engine.models.product import MovementType
from fiscal_engine.schemas.fiscal_document import (
    CreditLineSelection,
    DocumentLineCreate,
    FiscalDocumentCreate,
)
from fiscal_engine.services.audit_service import AuditService
from fiscal_engine.services.document_calculations import (
    DocumentTotals,
    LineAmounts,
    compute_line,
    compute_totals,
    money,
    to_decimal,
)
from fiscal_engine.services.document_sequence_service import (
    DocumentLockRegistry,
    DocumentSequenceService,
    SeriesLockRegistry,
    document_locks as default_document_locks,
    series_locks,
)
from fiscal_engine.services.hash_chain_service import HashChainService
from fiscal_engine.services.key_provider import KeyMaterial, KeyProvider
from fiscal_engine.services.signing_service import InvoiceSigner
from fiscal_engine.services.stock_service import StockAdjustmentService

logger = logging.getLogger(__name__)

TAX_ID_PATTERN = re.compile(r"^[0-9A-Z]{9,14}$")
FINAL_CONSUMER_NAME = "Consumidor final"
ZERO = Decimal("0")


@dataclass
class LineDraft:
    product_id: Optional[uuid.UUID]
    product_code: str
    product_name: str
    description: Optional[str]
    unit_of_measure: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    amounts: LineAmounts
    tax_exemption_code: Optional[str] = None
    tax_exemption_reason: Optional[str] = None
    source_line_id: Optional[uuid.UUID] = None


@dataclass
class DocumentDraft:
    """A document that has been validated but not numbered, signed or stored."""
    organization_id: uuid.UUID
    document_type: DocumentType
    issue_date: date
    customer_name: str
    lines: List[LineDraft]
    due_date: Optional[date] = None
    customer_tax_id: Optional[str] = None
    customer_address: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    payment_method: Optional[str] = None
    payment_status: str = PaymentStatus.PAID.value
    notes: Optional[str] = None
    source_document_id: Optional[uuid.UUID] = None
    created_by: Optional[str] = None
    audit_action: str = "ISSUE"
    totals: DocumentTotals = field(init=False)

    def __post_init__(self):
        self.totals = compute_totals(line.amounts for line in self.lines)

    @property
    def series(self) -> str:
        return series_for(self.document_type, self.issue_date.year)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _entry_timestamp() -> datetime:
    # SystemEntryDate is signed at second precision
    return _utc_now().replace(microsecond=0)


def _issuance_delta(document_type: DocumentType, quantity: Decimal) -> Tuple[Optional[Decimal], Optional[MovementType]]:
    if document_type.is_sale:
        return -quantity, MovementType.SALE
    if document_type is DocumentType.CREDIT_NOTE:
        return quantity, MovementType.CREDIT_NOTE
    return None, None


class DocumentLifecycleService:
    """
    Creates, derives, converts and cancels fiscal documents.

    Collaborators are injected so tests can point the service at a
    throwaway database and a static key.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        key_provider: KeyProvider,
        settings: Optional[Settings] = None,
        locks: Optional[SeriesLockRegistry] = None,
        signer: Optional[InvoiceSigner] = None,
        document_locks: Optional[DocumentLockRegistry] = None,
    ):
        self.gateway = gateway
        self.key_provider = key_provider
        self.settings = settings or get_settings()
        self.locks = locks or series_locks
        self.document_locks = document_locks or default_document_locks
        self.signer = signer or InvoiceSigner()

    def _today(self) -> date:
        """Business date in the configured local timezone."""
        return _utc_now().astimezone(self.settings.business_timezone).date()

    # ==================== Validation ====================

    def _prepare_lines(self, lines: Sequence[DocumentLineCreate], free_text: bool = False) -> List[LineDraft]:
        if not lines:
            raise ValidationError("A document must contain at least one line")

        drafts = []
        for index, line in enumerate(lines, start=1):
            quantity = to_decimal(line.quantity)
            unit_price = to_decimal(line.unit_price)
            tax_rate = to_decimal(line.tax_rate)
            discount = money(line.discount_amount or 0)
            details = {"line_number": index}

            if quantity <= ZERO:
                raise ValidationError("Quantity must be greater than zero", details=details)
            if free_text and unit_price <= ZERO:
                raise ValidationError("Adjustment lines must have a positive unit price", details=details)
            if unit_price < ZERO:
                raise ValidationError("Unit price cannot be negative", details=details)
            if not ZERO <= tax_rate <= Decimal("100"):
                raise ValidationError("Tax rate must be between 0 and 100", details=details)
            if tax_rate == ZERO and not line.tax_exemption_code:
                raise ValidationError("A tax exemption code is required for 0% lines", details=details)

            amounts = compute_line(quantity, unit_price, tax_rate, discount)
            if discount < ZERO or discount > amounts.gross:
                raise ValidationError("Discount cannot exceed the line value", details=details)

            product_code = line.product_code
            if free_text:
                product_code = product_code or f"ADJUSTMENT-{index}"
            elif not product_code:
                raise ValidationError("Product code is required", details=details)

            drafts.append(LineDraft(
                product_id=None if free_text else line.product_id,
                product_code=product_code,
                product_name=line.product_name,
                description=line.description,
                unit_of_measure=line.unit_of_measure or "UN",
                quantity=quantity,
                unit_price=unit_price,
                tax_rate=tax_rate,
                amounts=amounts,
                tax_exemption_code=line.tax_exemption_code if tax_rate == ZERO else None,
                tax_exemption_reason=line.tax_exemption_reason if tax_rate == ZERO else None,
            ))
        return drafts

    def _validate_header(self, draft: DocumentDraft) -> None:
        if draft.document_type is DocumentType.INVOICE:
            tax_id = draft.customer_tax_id or ""
            if not TAX_ID_PATTERN.match(tax_id):
                raise ValidationError(
                    "An invoice requires a valid customer tax id (NIF)",
                    details={"customer_tax_id": draft.customer_tax_id},
                )

        if draft.document_type is DocumentType.SIMPLIFIED_INVOICE:
            ceiling = money(self.settings.SIMPLIFIED_INVOICE_CEILING)
            if draft.totals.total > ceiling:
                raise ValidationError(
                    f"Simplified invoice total exceeds the legal ceiling of {ceiling}",
                    details={"total": str(draft.totals.total), "ceiling": str(ceiling)},
                )

        if draft.due_date and draft.due_date < draft.issue_date:
            raise ValidationError("Due date cannot precede the issue date")

    @staticmethod
    def _require_issued_fiscal(source: FiscalDocument) -> None:
        if not source.is_fiscal:
            raise ValidationError(
                "Derived documents require a fiscal source document",
                details={"source_document": source.document_number},
            )
        if source.status != DocumentStatus.ISSUED.value:
            raise ValidationError(
                "Source document is not in ISSUED status",
                details={"source_document": source.document_number, "status": source.status},
            )

    # ==================== Issuance ====================

    async def _signing_key(self, organization_id: uuid.UUID, document_type: DocumentType) -> Optional[KeyMaterial]:
        if not document_type.is_fiscal:
            return None
        return await self.key_provider.get_signing_key(organization_id)

    async def _issue(
        self,
        organization_id: uuid.UUID,
        document_type: DocumentType,
        issue_date: date,
        build_draft: Callable[[AsyncSession], Awaitable[DocumentDraft]],
    ) -> FiscalDocument:
        """
        Run one issuance transaction under the series lock.

        ``build_draft`` runs inside the transaction so source documents are
        re-read and re-checked in the same unit that writes the new one.
        """
        key = await self._signing_key(organization_id, document_type)
        series = series_for(document_type, issue_date.year)

        async def work(session: AsyncSession) -> FiscalDocument:
            draft = await build_draft(session)
            return await self._persist(session, draft, key)

        async def resync(session: AsyncSession) -> None:
            await DocumentSequenceService(
                session,
                padding_length=self.settings.SEQUENCE_PADDING,
            ).sync_sequence_from_max(organization_id, series, document_type)

        async with self.locks.lock_for(organization_id, series):
            attempts = self.settings.SEQUENCE_MAX_RETRIES
            for attempt in range(1, attempts + 1):
                try:
                    return await self.gateway.transaction(work)
                except SequenceConflictError:
                    if attempt == attempts:
                        raise
                    logger.warning(f"Retrying issuance in {series} after sequence conflict ({attempt}/{attempts})")
                    # The failed attempt rolled the counter back onto the taken number
                    await self.gateway.transaction(resync)

    async def _check_chronology(self, session: AsyncSession, draft: DocumentDraft) -> None:
        result = await session.execute(
            select(func.max(FiscalDocument.issue_date)).where(
                FiscalDocument.organization_id == draft.organization_id,
                FiscalDocument.series == draft.series,
            )
        )
        last_issue_date = result.scalar()
        if last_issue_date and draft.issue_date < last_issue_date:
            raise ValidationError(
                "Issue date precedes the last document of the series",
                details={"series": draft.series, "last_issue_date": last_issue_date.isoformat()},
            )

    async def _persist(
        self,
        session: AsyncSession,
        draft: DocumentDraft,
        key: Optional[KeyMaterial],
    ) -> FiscalDocument:
        await self._check_chronology(session, draft)

        allocation = await DocumentSequenceService(
            session,
            actor_id=draft.created_by,
            padding_length=self.settings.SEQUENCE_PADDING,
            max_retries=self.settings.SEQUENCE_MAX_RETRIES,
        ).allocate(draft.organization_id, draft.series, draft.document_type)

        totals = draft.totals
        document = FiscalDocument(
            id=uuid.uuid4(),
            organization_id=draft.organization_id,
            document_type=draft.document_type.value,
            series=allocation.series,
            sequence_number=allocation.sequence_number,
            document_number=allocation.document_number,
            issue_date=draft.issue_date,
            system_entry_date=_entry_timestamp(),
            due_date=draft.due_date,
            tax_point_date=draft.issue_date,
            customer_name=draft.customer_name,
            customer_tax_id=draft.customer_tax_id,
            customer_address=draft.customer_address,
            customer_phone=draft.customer_phone,
            customer_email=draft.customer_email,
            subtotal=totals.subtotal,
            tax_amount=totals.tax,
            discount_amount=totals.discount,
            total_amount=totals.total,
            status=DocumentStatus.ISSUED.value,
            source_document_id=draft.source_document_id,
            payment_method=draft.payment_method,
            payment_status=draft.payment_status,
            notes=draft.notes,
            is_fiscal=draft.document_type.is_fiscal,
            created_by=draft.created_by,
            lines=[
                DocumentLine(
                    id=uuid.uuid4(),
                    line_number=number,
                    product_id=line.product_id,
                    product_code=line.product_code,
                    product_name=line.product_name,
                    description=line.description,
                    unit_of_measure=line.unit_of_measure,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    tax_rate=line.tax_rate,
                    tax_exemption_code=line.tax_exemption_code,
                    tax_exemption_reason=line.tax_exemption_reason,
                    discount_amount=line.amounts.discount,
                    tax_amount=line.amounts.tax,
                    line_total=line.amounts.total,
                    source_line_id=line.source_line_id,
                )
                for number, line in enumerate(draft.lines, start=1)
            ],
        )

        if document.is_fiscal:
            await HashChainService(session, self.signer).seal(document, key)

        session.add(document)
        try:
            await session.flush()
        except IntegrityError as e:
            if "sequence" in str(e.orig).lower():
                raise SequenceConflictError(
                    f"Number {document.document_number} was taken concurrently",
                    details={"series": document.series},
                ) from e
            raise

        stock = StockAdjustmentService(session)
        for line in document.lines:
            if line.product_id is None:
                continue
            delta, movement_type = _issuance_delta(draft.document_type, line.quantity)
            if delta is None:
                continue
            await stock.record_movement(
                line.product_id,
                delta,
                reason=f"{document.document_number} line {line.line_number}",
                reference_document_id=document.id,
                movement_type=movement_type,
            )

        await AuditService(session).log_document_issued(document, action=draft.audit_action, actor_id=draft.created_by)

        logger.info(
            f"Issued {document.document_number} ({document.document_type}) "
            f"total={document.total_amount} for organization {document.organization_id}"
        )
        return document

    async def create(
        self,
        document_in: FiscalDocumentCreate,
        lines: Sequence[DocumentLineCreate],
    ) -> FiscalDocument:
        """
        Issue a new invoice, invoice-receipt, simplified invoice or proforma.

        Raises:
            ValidationError: invalid input, nothing persisted
            SigningError: no usable key, nothing persisted
        """
        document_type = DocumentType(document_in.document_type)
        if document_type in (DocumentType.CREDIT_NOTE, DocumentType.DEBIT_NOTE):
            raise ValidationError(
                "Credit and debit notes must be derived from a source document",
                details={"document_type": document_type.value},
            )

        draft = DocumentDraft(
            organization_id=document_in.organization_id,
            document_type=document_type,
            issue_date=document_in.issue_date or self._today(),
            due_date=document_in.due_date,
            customer_name=document_in.customer_name or FINAL_CONSUMER_NAME,
            customer_tax_id=document_in.customer_tax_id,
            customer_address=document_in.customer_address,
            customer_phone=document_in.customer_phone,
            customer_email=document_in.customer_email,
            payment_method=document_in.payment_method.value if document_in.payment_method else None,
            payment_status=(document_in.payment_status or self._default_payment_status(document_type)).value,
            notes=document_in.notes,
            created_by=document_in.created_by,
            lines=self._prepare_lines(lines),
        )
        self._validate_header(draft)

        async def build(session: AsyncSession) -> DocumentDraft:
            return draft

        return await self._issue(draft.organization_id, document_type, draft.issue_date, build)

    @staticmethod
    def _default_payment_status(document_type: DocumentType) -> PaymentStatus:
        if document_type in (DocumentType.INVOICE, DocumentType.PROFORMA):
            return PaymentStatus.PENDING
        return PaymentStatus.PAID

    # ==================== Derivation ====================

    async def _credited_quantities(
        self,
        session: AsyncSession,
        source_line_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, Tuple[Decimal, Decimal]]:
        """(quantity, discount) already credited per source line by non-cancelled credit notes."""
        ids = list(source_line_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(
                DocumentLine.source_line_id,
                func.sum(DocumentLine.quantity),
                func.sum(DocumentLine.discount_amount),
            )
            .join(FiscalDocument, DocumentLine.document_id == FiscalDocument.id)
            .where(
                DocumentLine.source_line_id.in_(ids),
                FiscalDocument.document_type == DocumentType.CREDIT_NOTE.value,
                FiscalDocument.status == DocumentStatus.ISSUED.value,
            )
            .group_by(DocumentLine.source_line_id)
        )
        return {
            line_id: (to_decimal(quantity or 0), to_decimal(discount or 0))
            for line_id, quantity, discount in result.all()
        }

    async def remaining_credit_quantities(self, source_id: uuid.UUID) -> Dict[uuid.UUID, Decimal]:
        """Quantity still creditable per line of ``source_id``."""
        async with self.gateway.session() as session:
            source = await self._load_document(session, source_id)
            credited = await self._credited_quantities(session, [line.id for line in source.lines])
        return {
            line.id: to_decimal(line.quantity) - credited.get(line.id, (ZERO, ZERO))[0]
            for line in source.lines
        }

    async def derive_credit_note(
        self,
        source_id: uuid.UUID,
        selected_lines: Sequence[CreditLineSelection],
        reason: str,
        actor_id: Optional[str] = None,
    ) -> FiscalDocument:
        """
        Issue a credit note (NC) for some or all of a source document's lines.

        Each line keeps the source's unit price and tax rate; its discount is
        the proportional share of the source line's discount. A line can never
        be credited beyond its remaining quantity across all credit notes.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for a credit note")
        if not selected_lines:
            raise ValidationError("A credit note must credit at least one line")

        source = await self._read_document(source_id)
        self._require_creditable(source)
        issue_date = self._today()

        async def build(session: AsyncSession) -> DocumentDraft:
            current = await self._load_document(session, source_id, for_update=True)
            self._require_creditable(current)
            lines_by_id = {line.id: line for line in current.lines}
            credited = await self._credited_quantities(session, lines_by_id.keys())

            drafts: List[LineDraft] = []
            seen = set()
            for selection in selected_lines:
                source_line = lines_by_id.get(selection.source_line_id)
                if source_line is None:
                    raise ValidationError(
                        "Selected line does not belong to the source document",
                        details={"source_line_id": str(selection.source_line_id)},
                    )
                if source_line.id in seen:
                    raise ValidationError(
                        "A source line can only be selected once per credit note",
                        details={"source_line_id": str(source_line.id)},
                    )
                seen.add(source_line.id)
                drafts.append(self._credit_line(source_line, selection, credited.get(source_line.id)))

            return DocumentDraft(
                organization_id=current.organization_id,
                document_type=DocumentType.CREDIT_NOTE,
                issue_date=issue_date,
                customer_name=current.customer_name,
                customer_tax_id=current.customer_tax_id,
                customer_address=current.customer_address,
                customer_phone=current.customer_phone,
                customer_email=current.customer_email,
                payment_method=current.payment_method,
                payment_status=PaymentStatus.PAID.value,
                notes=f"NC ref. {current.document_number}: {reason}",
                source_document_id=current.id,
                created_by=actor_id,
                audit_action="CREDIT_NOTE",
                lines=drafts,
            )

        async with self.document_locks.lock_for(source_id):
            return await self._issue(source.organization_id, DocumentType.CREDIT_NOTE, issue_date, build)

    def _require_creditable(self, source: FiscalDocument) -> None:
        self._require_issued_fiscal(source)
        if source.document_type == DocumentType.CREDIT_NOTE.value:
            raise ValidationError(
                "A credit note cannot be credited",
                details={"source_document": source.document_number},
            )

    @staticmethod
    def _credit_line(
        source_line: DocumentLine,
        selection: CreditLineSelection,
        credited: Optional[Tuple[Decimal, Decimal]],
    ) -> LineDraft:
        credited_quantity, credited_discount = credited or (ZERO, ZERO)
        original_quantity = to_decimal(source_line.quantity)
        remaining = original_quantity - credited_quantity
        quantity = to_decimal(selection.quantity) if selection.quantity is not None else remaining
        details = {
            "source_line_id": str(source_line.id),
            "requested": str(quantity),
            "remaining": str(remaining),
        }

        if quantity <= ZERO:
            raise ValidationError("Credited quantity must be greater than zero", details=details)
        if quantity > remaining:
            raise ValidationError("Credited quantity exceeds the remaining quantity of the line", details=details)

        source_discount = money(source_line.discount_amount)
        if quantity == remaining:
            discount = source_discount - credited_discount
        else:
            discount = money(source_discount * quantity / original_quantity)

        return LineDraft(
            product_id=source_line.product_id,
            product_code=source_line.product_code,
            product_name=source_line.product_name,
            description=source_line.description,
            unit_of_measure=source_line.unit_of_measure,
            quantity=quantity,
            unit_price=to_decimal(source_line.unit_price),
            tax_rate=to_decimal(source_line.tax_rate),
            amounts=compute_line(quantity, source_line.unit_price, source_line.tax_rate, discount),
            tax_exemption_code=source_line.tax_exemption_code,
            tax_exemption_reason=source_line.tax_exemption_reason,
            source_line_id=source_line.id,
        )

    async def derive_debit_note(
        self,
        source_id: uuid.UUID,
        extra_lines: Sequence[DocumentLineCreate],
        reason: str,
        actor_id: Optional[str] = None,
    ) -> FiscalDocument:
        """Issue a debit note (ND) with free-text charge lines; no stock effect."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for a debit note")

        line_drafts = self._prepare_lines(extra_lines, free_text=True)
        source = await self._read_document(source_id)
        self._require_issued_fiscal(source)
        issue_date = self._today()

        async def build(session: AsyncSession) -> DocumentDraft:
            current = await self._load_document(session, source_id, for_update=True)
            self._require_issued_fiscal(current)
            return DocumentDraft(
                organization_id=current.organization_id,
                document_type=DocumentType.DEBIT_NOTE,
                issue_date=issue_date,
                customer_name=current.customer_name,
                customer_tax_id=current.customer_tax_id,
                customer_address=current.customer_address,
                customer_phone=current.customer_phone,
                customer_email=current.customer_email,
                payment_method=current.payment_method,
                payment_status=PaymentStatus.PENDING.value,
                notes=f"ND ref. {current.document_number}: {reason}",
                source_document_id=current.id,
                created_by=actor_id,
                audit_action="DEBIT_NOTE",
                lines=line_drafts,
            )

        async with self.document_locks.lock_for(source_id):
            return await self._issue(source.organization_id, DocumentType.DEBIT_NOTE, issue_date, build)

    async def convert_proforma_to_invoice(
        self,
        proforma_id: uuid.UUID,
        actor_id: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> FiscalDocument:
        """
        Issue an invoice-receipt (FR) from a proforma.

        The proforma stays as it is; a proforma already converted into a
        live invoice-receipt cannot be converted again.
        """
        proforma = await self._read_document(proforma_id)
        self._require_convertible(proforma)
        issue_date = self._today()

        async def build(session: AsyncSession) -> DocumentDraft:
            current = await self._load_document(session, proforma_id, for_update=True)
            self._require_convertible(current)

            existing = await session.execute(
                select(FiscalDocument.document_number).where(
                    FiscalDocument.source_document_id == current.id,
                    FiscalDocument.document_type == DocumentType.INVOICE_RECEIPT.value,
                    FiscalDocument.status == DocumentStatus.ISSUED.value,
                )
            )
            converted_as = existing.scalars().first()
            if converted_as:
                raise ValidationError(
                    "Proforma was already converted",
                    details={"proforma": current.document_number, "invoice": converted_as},
                )

            method = payment_method.value if payment_method else current.payment_method
            return DocumentDraft(
                organization_id=current.organization_id,
                document_type=DocumentType.INVOICE_RECEIPT,
                issue_date=issue_date,
                customer_name=current.customer_name,
                customer_tax_id=current.customer_tax_id,
                customer_address=current.customer_address,
                customer_phone=current.customer_phone,
                customer_email=current.customer_email,
                payment_method=method,
                payment_status=PaymentStatus.PAID.value,
                notes=f"Ref. {current.document_number}",
                source_document_id=current.id,
                created_by=actor_id,
                audit_action="CONVERT",
                lines=[
                    LineDraft(
                        product_id=line.product_id,
                        product_code=line.product_code,
                        product_name=line.product_name,
                        description=line.description,
                        unit_of_measure=line.unit_of_measure,
                        quantity=to_decimal(line.quantity),
                        unit_price=to_decimal(line.unit_price),
                        tax_rate=to_decimal(line.tax_rate),
                        amounts=compute_line(line.quantity, line.unit_price, line.tax_rate, line.discount_amount),
                        tax_exemption_code=line.tax_exemption_code,
                        tax_exemption_reason=line.tax_exemption_reason,
                    )
                    for line in current.lines
                ],
            )

        async with self.document_locks.lock_for(proforma_id):
            return await self._issue(proforma.organization_id, DocumentType.INVOICE_RECEIPT, issue_date, build)

    @staticmethod
    def _require_convertible(proforma: FiscalDocument) -> None:
        if proforma.document_type != DocumentType.PROFORMA.value:
            raise ValidationError(
                "Only proformas can be converted",
                details={"document": proforma.document_number},
            )
        if proforma.status != DocumentStatus.ISSUED.value:
            raise ValidationError(
                "Proforma is not in ISSUED status",
                details={"document": proforma.document_number, "status": proforma.status},
            )

    # ==================== Cancellation ====================

    async def cancel(
        self,
        document_id: uuid.UUID,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> FiscalDocument:
        """
        Cancel an issued fiscal document and reverse its stock effect.

        Raises:
            NotFoundError: unknown document
            ValidationError: proforma, already cancelled, live credit notes
                against it, or no reason given
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation reason is required")

        async def work(session: AsyncSession) -> FiscalDocument:
            document = await self._load_document(session, document_id, for_update=True)

            if not document.is_fiscal:
                raise ValidationError(
                    "Proforma documents cannot be cancelled",
                    details={"document": document.document_number},
                )
            if document.status != DocumentStatus.ISSUED.value:
                raise ValidationError(
                    "Document is already cancelled",
                    details={"document": document.document_number},
                )

            dependants = await session.execute(
                select(FiscalDocument.document_number).where(
                    FiscalDocument.source_document_id == document.id,
                    FiscalDocument.document_type == DocumentType.CREDIT_NOTE.value,
                    FiscalDocument.status == DocumentStatus.ISSUED.value,
                )
            )
            credit_notes = list(dependants.scalars().all())
            if credit_notes:
                raise ValidationError(
                    "Cancel the credit notes issued against this document first",
                    details={"document": document.document_number, "credit_notes": credit_notes},
                )

            document_type = DocumentType(document.document_type)
            stock = StockAdjustmentService(session)
            for line in document.lines:
                if line.product_id is None:
                    continue
                delta, _ = _issuance_delta(document_type, to_decimal(line.quantity))
                if delta is None:
                    continue
                await stock.record_movement(
                    line.product_id,
                    -delta,
                    reason=f"Cancellation of {document.document_number}: {reason}",
                    reference_document_id=document.id,
                    movement_type=MovementType.CANCELLATION,
                )

            cancelled_at = _entry_timestamp()
            result = await session.execute(
                update(FiscalDocument)
                .where(
                    FiscalDocument.id == document.id,
                    FiscalDocument.status == DocumentStatus.ISSUED.value,
                )
                .values(
                    status=DocumentStatus.CANCELLED.value,
                    cancellation_reason=reason,
                    cancelled_at=cancelled_at,
                    cancelled_by=actor_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValidationError(
                    "Document is already cancelled",
                    details={"document": document.document_number},
                )

            for attribute, value in (
                ("status", DocumentStatus.CANCELLED.value),
                ("cancellation_reason", reason),
                ("cancelled_at", cancelled_at),
                ("cancelled_by", actor_id),
            ):
                set_committed_value(document, attribute, value)

            await AuditService(session).log_document_cancelled(document, reason, actor_id=actor_id)
            logger.info(f"Cancelled {document.document_number}: {reason}")
            return document

        async with self.document_locks.lock_for(document_id):
            return await self.gateway.transaction(work)

    # ==================== Reads ====================

    async def _load_document(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        for_update: bool = False,
    ) -> FiscalDocument:
        stmt = (
            select(FiscalDocument)
            .where(FiscalDocument.id == document_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        document = result.scalar_one_or_none()
        if document is None:
            raise NotFoundError("Document not found", details={"document_id": str(document_id)})
        return document

    async def _read_document(self, document_id: uuid.UUID) -> FiscalDocument:
        async with self.gateway.session() as session:
            return await self._load_document(session, document_id)

    async def get_document(self, document_id: uuid.UUID) -> FiscalDocument:
        """Document with its lines, or NotFoundError."""
        return await self._read_document(document_id)

    async def list_documents(
        self,
        organization_id: uuid.UUID,
        document_type: Optional[DocumentType] = None,
        status: Optional[DocumentStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[FiscalDocument], int]:
        """Documents newest first, with the total count for paging."""
        conditions = [FiscalDocument.organization_id == organization_id]
        if document_type:
            conditions.append(FiscalDocument.document_type == DocumentType(document_type).value)
        if status:
            conditions.append(FiscalDocument.status == DocumentStatus(status).value)
        if start_date:
            conditions.append(FiscalDocument.issue_date >= start_date)
        if end_date:
            conditions.append(FiscalDocument.issue_date <= end_date)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(
                FiscalDocument.document_number.ilike(pattern),
                FiscalDocument.customer_name.ilike(pattern),
                FiscalDocument.customer_tax_id.ilike(pattern),
            ))

        async with self.gateway.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(FiscalDocument).where(*conditions)
            )
            result = await session.execute(
                select(FiscalDocument)
                .where(*conditions)
                .order_by(FiscalDocument.issue_date.desc(), FiscalDocument.system_entry_date.desc())
                .offset(skip)
                .limit(limit)
            )
            documents = list(result.scalars().all())
        return documents, total or 0
