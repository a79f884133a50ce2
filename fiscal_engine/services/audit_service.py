from typing import Any, Dict, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_engine.models.audit_log import AuditLog
from fiscal_engine.models.fiscal_document import FiscalDocument


class AuditService:
    """
    Audit service for logging document state changes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[uuid.UUID] = None,
        organization_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: The action performed (ISSUE, CANCEL, REGISTER_KEY, etc.)
            entity_type: Type of entity (FISCAL_DOCUMENT, SIGNING_KEY, etc.)
            entity_id: ID of the affected entity
            organization_id: Owning organization
            actor_id: Who performed the action
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)
            description: Human-readable description

        Returns:
            The created AuditLog entry
        """
        audit_log = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            organization_id=organization_id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=new_values,
            description=description,
        )
        self.db.add(audit_log)
        await self.db.flush()
        return audit_log

    async def log_document_issued(
        self,
        document: FiscalDocument,
        action: str = "ISSUE",
        actor_id: Optional[str] = None,
    ) -> AuditLog:
        """Log issuance of a document (plain, derived or converted)."""
        return await self.log(
            action=action,
            entity_type="FISCAL_DOCUMENT",
            entity_id=document.id,
            organization_id=document.organization_id,
            actor_id=actor_id,
            new_values={
                "document_number": document.document_number,
                "document_type": document.document_type,
                "total_amount": str(document.total_amount),
                "source_document_id": str(document.source_document_id) if document.source_document_id else None,
                "signature_key_version": document.signature_key_version,
            },
            description=f"Issued {document.document_number}",
        )

    async def log_document_cancelled(
        self,
        document: FiscalDocument,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> AuditLog:
        """Log document cancellation."""
        return await self.log(
            action="CANCEL",
            entity_type="FISCAL_DOCUMENT",
            entity_id=document.id,
            organization_id=document.organization_id,
            actor_id=actor_id,
            old_values={"status": "ISSUED"},
            new_values={"status": "CANCELLED", "cancellation_reason": reason},
            description=f"Cancelled {document.document_number}: {reason}",
        )

    async def get_entity_history(self, entity_type: str, entity_id: uuid.UUID) -> list:
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())
