import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_engine.models.fiscal_document import DocumentType, FiscalDocument
from fiscal_engine.services.key_provider import KeyMaterial
from fiscal_engine.services.signing_service import InvoiceSigner

logger = logging.getLogger(__name__)


class HashChainService:
    """Links each fiscal document to the signature of its predecessor in the series."""

    def __init__(self, db: AsyncSession, signer: Optional[InvoiceSigner] = None):
        self.db = db
        self.signer = signer or InvoiceSigner()

    async def previous_signature(
        self,
        organization_id: uuid.UUID,
        series: str,
        document_type: DocumentType,
    ) -> str:
        """Signature of the highest-numbered document in the series, "" for the first one."""
        result = await self.db.execute(
            select(FiscalDocument.signature)
            .where(
                FiscalDocument.organization_id == organization_id,
                FiscalDocument.series == series,
                FiscalDocument.document_type == DocumentType(document_type).value,
                FiscalDocument.is_fiscal == True,
            )
            .order_by(FiscalDocument.sequence_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none() or ""

    async def seal(self, document: FiscalDocument, key: KeyMaterial) -> str:
        """
        Sign ``document`` chained to its predecessor and store the signature on it.

        Returns the previous signature that was used.
        """
        previous = await self.previous_signature(
            document.organization_id, document.series, document.document_type
        )
        document.signature = self.signer.sign(document, previous, key.private_key_pem)
        document.signature_key_version = key.key_version
        logger.debug(
            f"Sealed {document.document_number} with key v{key.key_version} "
            f"({'first in series' if not previous else 'chained'})"
        )
        return previous
