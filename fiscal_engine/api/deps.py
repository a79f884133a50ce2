from typing import Annotated, Optional
import logging

from fastapi import Depends, Header

from fiscal_engine.config import get_settings
from fiscal_engine.database import PersistenceGateway, get_gateway
from fiscal_engine.services.chain_audit_service import ChainAuditService
from fiscal_engine.services.document_lifecycle_service import DocumentLifecycleService
from fiscal_engine.services.key_provider import DatabaseKeyProvider, KeyProvider, SettingsKeyProvider
from fiscal_engine.services.saft_export_service import SaftExportService


logger = logging.getLogger(__name__)


Gateway = Annotated[PersistenceGateway, Depends(get_gateway)]


def get_key_provider(gateway: Gateway) -> KeyProvider:
    """Organization keys from the database, vendor key from settings as fallback."""
    return DatabaseKeyProvider(gateway, fallback=SettingsKeyProvider(get_settings()))


Keys = Annotated[KeyProvider, Depends(get_key_provider)]


def get_lifecycle_service(gateway: Gateway, key_provider: Keys) -> DocumentLifecycleService:
    return DocumentLifecycleService(gateway, key_provider, settings=get_settings())


def get_export_service(gateway: Gateway) -> SaftExportService:
    return SaftExportService(gateway, settings=get_settings())


def get_chain_audit_service(gateway: Gateway, key_provider: Keys) -> ChainAuditService:
    return ChainAuditService(gateway, key_provider)


async def get_actor_id(x_actor_id: Annotated[Optional[str], Header()] = None) -> Optional[str]:
    """Actor performing the request, taken from the X-Actor-Id header."""
    return x_actor_id


Lifecycle = Annotated[DocumentLifecycleService, Depends(get_lifecycle_service)]
Exporter = Annotated[SaftExportService, Depends(get_export_service)]
ChainAudit = Annotated[ChainAuditService, Depends(get_chain_audit_service)]
ActorId = Annotated[Optional[str], Depends(get_actor_id)]
