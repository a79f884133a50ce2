"""
Chain Audit Service

Re-verifies a series end to end:
- sequence numbers run 1..n with no gaps or duplicates
- every fiscal document's signature verifies against the signature of the
  document before it

Problems are reported, never corrected.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select

from fiscal_engine.core.exceptions import ChainIntegrityError, SigningError
from fiscal_engine.database import PersistenceGateway
from fiscal_engine.models.fiscal_document import FiscalDocument
from fiscal_engine.services.key_provider import KeyProvider
from fiscal_engine.services.signing_service import InvoiceSigner

logger = logging.getLogger(__name__)


@dataclass
class ChainIssue:
    kind: str  # SEQUENCE_GAP, DUPLICATE_SEQUENCE, MISSING_SIGNATURE, INVALID_SIGNATURE, KEY_UNAVAILABLE
    message: str
    document_number: Optional[str] = None
    sequence_number: Optional[int] = None


@dataclass
class ChainVerificationReport:
    organization_id: uuid.UUID
    series: str
    documents_checked: int = 0
    issues: List[ChainIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    def raise_for_errors(self) -> None:
        if self.issues:
            first = self.issues[0]
            raise ChainIntegrityError(
                f"Series {self.series} failed verification: {first.message}",
                details={
                    "series": self.series,
                    "issues": [issue.__dict__ for issue in self.issues],
                },
            )


class ChainAuditService:
    """Verifies the hash chain of persisted series."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        key_provider: KeyProvider,
        signer: Optional[InvoiceSigner] = None,
    ):
        self.gateway = gateway
        self.key_provider = key_provider
        self.signer = signer or InvoiceSigner()

    async def _public_key(self, cache: Dict[str, Optional[str]], organization_id: uuid.UUID, version: str) -> Optional[str]:
        if version not in cache:
            try:
                key = await self.key_provider.get_signing_key(organization_id, version)
                cache[version] = key.public_key_pem
            except SigningError:
                cache[version] = None
        return cache[version]

    async def verify_series(self, organization_id: uuid.UUID, series: str) -> ChainVerificationReport:
        async with self.gateway.session() as session:
            result = await session.execute(
                select(FiscalDocument)
                .where(
                    FiscalDocument.organization_id == organization_id,
                    FiscalDocument.series == series,
                )
                .order_by(FiscalDocument.sequence_number)
            )
            documents = list(result.scalars().all())

        report = ChainVerificationReport(organization_id=organization_id, series=series)
        public_keys: Dict[str, Optional[str]] = {}
        previous_signature = ""
        expected_sequence = 1

        for document in documents:
            report.documents_checked += 1

            if document.sequence_number < expected_sequence:
                report.issues.append(ChainIssue(
                    kind="DUPLICATE_SEQUENCE",
                    message=f"Sequence {document.sequence_number} appears more than once",
                    document_number=document.document_number,
                    sequence_number=document.sequence_number,
                ))
            elif document.sequence_number > expected_sequence:
                report.issues.append(ChainIssue(
                    kind="SEQUENCE_GAP",
                    message=f"Sequence jumps from {expected_sequence - 1} to {document.sequence_number}",
                    document_number=document.document_number,
                    sequence_number=document.sequence_number,
                ))
            expected_sequence = max(expected_sequence, document.sequence_number + 1)

            if not document.is_fiscal:
                continue

            if not document.signature:
                report.issues.append(ChainIssue(
                    kind="MISSING_SIGNATURE",
                    message=f"{document.document_number} is not signed",
                    document_number=document.document_number,
                    sequence_number=document.sequence_number,
                ))
                previous_signature = ""
                continue

            public_key = await self._public_key(public_keys, organization_id, document.signature_key_version)
            if public_key is None:
                report.issues.append(ChainIssue(
                    kind="KEY_UNAVAILABLE",
                    message=f"No public key for version {document.signature_key_version}",
                    document_number=document.document_number,
                    sequence_number=document.sequence_number,
                ))
            elif not self.signer.verify(document, previous_signature, document.signature, public_key):
                report.issues.append(ChainIssue(
                    kind="INVALID_SIGNATURE",
                    message=f"Signature of {document.document_number} does not match its content and predecessor",
                    document_number=document.document_number,
                    sequence_number=document.sequence_number,
                ))

            previous_signature = document.signature

        if report.issues:
            logger.warning(f"Chain verification of {series} found {len(report.issues)} issue(s)")
        else:
            logger.info(f"Chain verification of {series}: {report.documents_checked} documents OK")
        return report

    async def verify_organization(self, organization_id: uuid.UUID) -> List[ChainVerificationReport]:
        """Verify every series the organization has issued into."""
        async with self.gateway.session() as session:
            result = await session.execute(
                select(FiscalDocument.series)
                .where(FiscalDocument.organization_id == organization_id)
                .distinct()
                .order_by(FiscalDocument.series)
            )
            series_keys = list(result.scalars().all())

        return [await self.verify_series(organization_id, series) for series in series_keys]
