"""
SAF-T AO Export Service

Serializes committed documents into the SAF-T (AO) 1.01_01 AuditFile:

    AuditFile
    ├── Header
    ├── MasterFiles (Customer*, Product*)
    └── SourceDocuments/SalesInvoices
        ├── NumberOfEntries, TotalDebit, TotalCredit
        └── Invoice* (DocumentStatus, Hash, Line*, DocumentTotals)

Output is deterministic: documents ordered by issue date, series and
sequence; master data sorted by key; fixed decimal precision; DateCreated
taken from ``created_on`` when given. Re-running an export over the same
data reproduces the same bytes.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_engine.config import Settings, get_settings
from fiscal_engine.core.exceptions import NotFoundError, ValidationError
from fiscal_engine.database import PersistenceGateway
from fiscal_engine.models.fiscal_document import FiscalDocument
from fiscal_engine.models.organization import Organization
from fiscal_engine.models.product import Product
from fiscal_engine.services.saft.builder import (
    CustomerEntry,
    ProductEntry,
    SourceReference,
    build_audit_file,
    serialize,
)
from fiscal_engine.services.saft.namespaces import (
    FINAL_CONSUMER_ID,
    FINAL_CONSUMER_NAME,
    FINAL_CONSUMER_TAX_ID,
)

logger = logging.getLogger(__name__)


class SaftExportService:
    """Builds SAF-T audit files for a period or a single document."""

    def __init__(self, gateway: PersistenceGateway, settings: Optional[Settings] = None):
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def export(
        self,
        organization_id: uuid.UUID,
        start_date: date,
        end_date: date,
        created_on: Optional[date] = None,
        include_proforma: bool = False,
    ) -> bytes:
        """
        Export all documents issued between start_date and end_date (inclusive).

        Proformas are left out unless ``include_proforma`` is set.
        """
        if start_date > end_date:
            raise ValidationError(
                "Start date must not be after end date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        conditions = [
            FiscalDocument.organization_id == organization_id,
            FiscalDocument.issue_date >= start_date,
            FiscalDocument.issue_date <= end_date,
        ]
        if not include_proforma:
            conditions.append(FiscalDocument.is_fiscal == True)

        async with self.gateway.session() as session:
            organization = await self._organization(session, organization_id)
            result = await session.execute(
                select(FiscalDocument)
                .where(*conditions)
                .order_by(
                    FiscalDocument.issue_date,
                    FiscalDocument.series,
                    FiscalDocument.sequence_number,
                )
            )
            documents = list(result.scalars().all())
            xml = await self._render(session, organization, documents, start_date, end_date, created_on)

        logger.info(
            f"SAF-T export for {organization.tax_id} {start_date}..{end_date}: "
            f"{len(documents)} documents, {len(xml)} bytes"
        )
        return xml

    async def export_document(
        self,
        document_id: uuid.UUID,
        created_on: Optional[date] = None,
    ) -> Tuple[str, bytes]:
        """
        Single-document audit file.

        Returns:
            (file name, XML bytes), e.g. ("FT_FT-2025-000001.xml", b"<?xml ...")
        """
        async with self.gateway.session() as session:
            result = await session.execute(
                select(FiscalDocument).where(FiscalDocument.id == document_id)
            )
            document = result.scalar_one_or_none()
            if document is None:
                raise NotFoundError("Document not found", details={"document_id": str(document_id)})

            organization = await self._organization(session, document.organization_id)
            xml = await self._render(
                session,
                organization,
                [document],
                document.issue_date,
                document.issue_date,
                created_on,
            )

        return document.export_file_name, xml

    async def _organization(self, session: AsyncSession, organization_id: uuid.UUID) -> Organization:
        organization = await session.get(Organization, organization_id)
        if organization is None:
            raise NotFoundError("Organization not found", details={"organization_id": str(organization_id)})
        return organization

    async def _render(
        self,
        session: AsyncSession,
        organization: Organization,
        documents: List[FiscalDocument],
        start_date: date,
        end_date: date,
        created_on: Optional[date],
    ) -> bytes:
        customers, customer_ids = self._collect_customers(documents)
        products = await self._collect_products(session, documents)
        sources = await self._collect_sources(session, documents)

        root = build_audit_file(
            organization=organization,
            settings=self.settings,
            start_date=start_date,
            end_date=end_date,
            created_on=created_on or datetime.now(timezone.utc).date(),
            customers=customers,
            products=products,
            documents=documents,
            sources=sources,
            customer_ids=customer_ids,
        )
        return serialize(root)

    def _collect_customers(
        self,
        documents: List[FiscalDocument],
    ) -> Tuple[List[CustomerEntry], Dict[uuid.UUID, str]]:
        """Distinct customers by tax id; the latest snapshot in export order wins."""
        entries: Dict[str, CustomerEntry] = {}
        customer_ids: Dict[uuid.UUID, str] = {}
        city = self.settings.DEFAULT_CITY

        for document in documents:
            if document.customer_tax_id:
                entry = CustomerEntry(
                    customer_id=document.customer_tax_id,
                    tax_id=document.customer_tax_id,
                    name=document.customer_name,
                    address=document.customer_address or city,
                    city=city,
                )
            else:
                entry = CustomerEntry(
                    customer_id=FINAL_CONSUMER_ID,
                    tax_id=FINAL_CONSUMER_TAX_ID,
                    name=FINAL_CONSUMER_NAME,
                    address=city,
                    city=city,
                )
            entries[entry.customer_id] = entry
            customer_ids[document.id] = entry.customer_id

        return [entries[key] for key in sorted(entries)], customer_ids

    async def _collect_products(
        self,
        session: AsyncSession,
        documents: List[FiscalDocument],
    ) -> List[ProductEntry]:
        """Distinct products by code, enriched from the catalog where linked."""
        product_ids = {
            line.product_id
            for document in documents
            for line in document.lines
            if line.product_id is not None
        }
        catalog: Dict[uuid.UUID, Product] = {}
        if product_ids:
            result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
            catalog = {product.id: product for product in result.scalars().all()}

        entries: Dict[str, ProductEntry] = {}
        for document in documents:
            for line in document.lines:
                product = catalog.get(line.product_id) if line.product_id else None
                if product is not None:
                    entry = ProductEntry(
                        code=line.product_code,
                        description=product.name,
                        product_type=product.product_type,
                        group=product.product_group or "N/A",
                    )
                else:
                    # Free-text adjustment lines are services
                    entry = ProductEntry(
                        code=line.product_code,
                        description=line.product_name,
                        product_type="P" if line.product_id else "S",
                    )
                entries.setdefault(entry.code, entry)

        return [entries[code] for code in sorted(entries)]

    async def _collect_sources(
        self,
        session: AsyncSession,
        documents: List[FiscalDocument],
    ) -> Dict[uuid.UUID, SourceReference]:
        source_ids = {d.source_document_id for d in documents if d.source_document_id}
        if not source_ids:
            return {}
        result = await session.execute(
            select(FiscalDocument.id, FiscalDocument.document_number, FiscalDocument.document_type)
            .where(FiscalDocument.id.in_(source_ids))
        )
        return {
            row.id: SourceReference(document_number=row.document_number, document_type=row.document_type)
            for row in result.all()
        }
