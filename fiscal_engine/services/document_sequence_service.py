"""
Document Sequence Service for Atomic Number Generation

Numbering rules:
- One counter per (organization, series); series = type code + fiscal year
- Continuous within the series: no gaps, no duplicates
- Format: {CODE}/{YEAR}/{SEQUENCE:06d}, e.g. FT/2025/000001

Concurrency:
- Writers for one series are serialized in-process by SeriesLockRegistry
- The counter row is read with SELECT FOR UPDATE and incremented with a
  compare-and-swap UPDATE; a lost race is retried a bounded number of times
- The increment is part of the caller's transaction, so a rollback
  un-consumes the number

USAGE:
    async def work(session):
        service = DocumentSequenceService(session)
        allocation = await service.allocate(org_id, "FT/2025", DocumentType.INVOICE)
        # allocation.document_number == "FT/2025/000001"
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fiscal_engine.config import settings
from fiscal_engine.core.exceptions import SequenceConflictError
from fiscal_engine.models.document_sequence import DocumentSequence, DocumentSequenceAudit
from fiscal_engine.models.fiscal_document import DocumentType, FiscalDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequenceAllocation:
    series: str
    sequence_number: int
    document_number: str


class SeriesLockRegistry:
    """One asyncio.Lock per (organization, series), created on first use."""

    def __init__(self):
        self._locks: Dict[Tuple[uuid.UUID, str], asyncio.Lock] = {}

    def lock_for(self, organization_id: uuid.UUID, series: str) -> asyncio.Lock:
        key = (organization_id, series)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


series_locks = SeriesLockRegistry()


class DocumentLockRegistry:
    """
    One asyncio.Lock per issued document.

    Held by cancellation and by every derivation from the document, so a
    source can't be cancelled while a note against it is being issued.
    """

    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    def lock_for(self, document_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        return lock


document_locks = DocumentLockRegistry()


class DocumentSequenceService:
    """
    Service for allocating contiguous per-series document numbers.

    Must run inside the caller's transaction (see PersistenceGateway.transaction).
    """

    def __init__(
        self,
        db: AsyncSession,
        actor_id: Optional[str] = None,
        padding_length: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.db = db
        self.actor_id = actor_id
        self.padding_length = padding_length or settings.SEQUENCE_PADDING
        self.max_retries = max_retries or settings.SEQUENCE_MAX_RETRIES

    async def _log_audit(
        self,
        organization_id: uuid.UUID,
        series: str,
        operation: str,
        old_number: Optional[int] = None,
        new_number: Optional[int] = None,
        document_number: Optional[str] = None,
    ):
        """Log an audit record for sequence operations."""
        audit = DocumentSequenceAudit(
            organization_id=organization_id,
            series=series,
            operation=operation,
            old_number=old_number,
            new_number=new_number,
            document_number=document_number,
            actor_id=self.actor_id,
        )
        self.db.add(audit)

    async def allocate(
        self,
        organization_id: uuid.UUID,
        series: str,
        document_type: DocumentType,
    ) -> SequenceAllocation:
        """
        Claim the next number of a series.

        Raises:
            SequenceConflictError: the counter kept moving under us for
                max_retries attempts
        """
        for attempt in range(1, self.max_retries + 1):
            sequence = await self._get_or_create_sequence(organization_id, series, document_type)
            old_number = sequence.current_number
            new_number = old_number + 1

            if await self._compare_and_swap(sequence.id, old_number, new_number):
                set_committed_value(sequence, "current_number", new_number)
                document_number = sequence.format_number(new_number)
                await self._log_audit(
                    organization_id=organization_id,
                    series=series,
                    operation="ALLOCATE",
                    old_number=old_number,
                    new_number=new_number,
                    document_number=document_number,
                )
                await self.db.flush()
                return SequenceAllocation(series, new_number, document_number)

            logger.warning(
                f"Sequence conflict on {series} at {old_number} "
                f"(attempt {attempt}/{self.max_retries})"
            )

        raise SequenceConflictError(
            f"Could not allocate a number for series {series}",
            details={"series": series, "attempts": self.max_retries},
        )

    async def _compare_and_swap(self, sequence_id: uuid.UUID, expected: int, new_number: int) -> bool:
        """Increment the counter only if nobody else did since we read it."""
        result = await self.db.execute(
            update(DocumentSequence)
            .where(
                DocumentSequence.id == sequence_id,
                DocumentSequence.current_number == expected,
            )
            .values(current_number=new_number, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _get_or_create_sequence(
        self,
        organization_id: uuid.UUID,
        series: str,
        document_type: DocumentType,
    ) -> DocumentSequence:
        """Get the counter row with a row lock, creating it at 0 if missing."""
        result = await self.db.execute(
            select(DocumentSequence)
            .where(
                DocumentSequence.organization_id == organization_id,
                DocumentSequence.series == series,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sequence = result.scalar_one_or_none()
        if sequence:
            return sequence

        sequence = DocumentSequence(
            organization_id=organization_id,
            series=series,
            document_type=DocumentType(document_type).value,
            current_number=0,
            padding_length=self.padding_length,
        )
        self.db.add(sequence)
        await self.db.flush()
        return sequence

    async def preview_next_number(self, organization_id: uuid.UUID, series: str) -> str:
        """What the next number would be, without consuming it."""
        sequence = await self._find(organization_id, series)
        if sequence:
            return sequence.preview_next_number()
        return f"{series}/{'1'.zfill(self.padding_length)}"

    async def get_current_number(self, organization_id: uuid.UUID, series: str) -> int:
        """The last used sequence number, 0 if none."""
        sequence = await self._find(organization_id, series)
        return sequence.current_number if sequence else 0

    async def _find(self, organization_id: uuid.UUID, series: str) -> Optional[DocumentSequence]:
        result = await self.db.execute(
            select(DocumentSequence).where(
                DocumentSequence.organization_id == organization_id,
                DocumentSequence.series == series,
            )
        )
        return result.scalar_one_or_none()

    async def sync_sequence_from_max(
        self,
        organization_id: uuid.UUID,
        series: str,
        document_type: DocumentType,
    ) -> DocumentSequence:
        """
        Repair a counter that fell behind the persisted documents.

        The counter is only ever moved forward.
        """
        result = await self.db.execute(
            select(func.max(FiscalDocument.sequence_number)).where(
                FiscalDocument.organization_id == organization_id,
                FiscalDocument.series == series,
            )
        )
        max_sequence_number = result.scalar() or 0

        sequence = await self._get_or_create_sequence(organization_id, series, document_type)
        old_number = sequence.current_number
        if max_sequence_number > old_number:
            sequence.current_number = max_sequence_number

        await self._log_audit(
            organization_id=organization_id,
            series=series,
            operation="MANUAL_SYNC",
            old_number=old_number,
            new_number=sequence.current_number,
        )
        await self.db.flush()
        logger.info(f"Synced sequence {series} from {old_number} to {sequence.current_number}")
        return sequence
