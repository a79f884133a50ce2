"""
Signing key providers.

The lifecycle manager asks a provider for key material instead of reading
keys itself:

    key = await provider.get_signing_key(organization_id)
    key.private_key_pem, key.public_key_pem, key.key_version

Providers:
    StaticKeyProvider    - in-memory keys (tests, embedding callers)
    SettingsKeyProvider  - one vendor key from environment / .env
    DatabaseKeyProvider  - per-organization keys in signing_keys,
                           private key Fernet-encrypted
"""

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_engine.config import Settings, get_settings
from fiscal_engine.core.exceptions import SigningError
from fiscal_engine.database import PersistenceGateway
from fiscal_engine.models.signing_key import SigningKey
from fiscal_engine.services.audit_service import AuditService
from fiscal_engine.services.encryption_service import EncryptionError, EncryptionService
from fiscal_engine.services.signing_service import load_private_key, public_key_from_private

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyMaterial:
    private_key_pem: str
    public_key_pem: str
    key_version: str

    def __repr__(self) -> str:
        return f"<KeyMaterial(version='{self.key_version}')>"


class KeyProvider(Protocol):
    async def get_signing_key(
        self,
        organization_id: uuid.UUID,
        key_version: Optional[str] = None,
    ) -> KeyMaterial:
        ...


class StaticKeyProvider:
    """
    Serves fixed key pairs.

    ``keys`` maps key_version -> KeyMaterial; the newest registered version
    is used for signing when no version is requested.
    """

    def __init__(self, private_key_pem: str, public_key_pem: Optional[str] = None, key_version: str = "1"):
        self._keys: Dict[str, KeyMaterial] = {}
        self._current: Optional[str] = None
        self.add_key(private_key_pem, public_key_pem, key_version)

    def add_key(self, private_key_pem: str, public_key_pem: Optional[str] = None, key_version: str = "1") -> KeyMaterial:
        material = KeyMaterial(
            private_key_pem=private_key_pem,
            public_key_pem=public_key_pem or public_key_from_private(private_key_pem),
            key_version=key_version,
        )
        self._keys[key_version] = material
        self._current = key_version
        return material

    async def get_signing_key(self, organization_id: uuid.UUID, key_version: Optional[str] = None) -> KeyMaterial:
        version = key_version or self._current
        if version not in self._keys:
            raise SigningError(f"Signing key version {version} is not available")
        return self._keys[version]


def _decode_pem(b64_value: Optional[str], pem_value: Optional[str], name: str) -> Optional[str]:
    if b64_value:
        try:
            return base64.b64decode(b64_value).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SigningError(f"{name} is not valid base64") from e
    if pem_value:
        # .env files often carry PEMs with literal \n
        return pem_value.replace("\\n", "\n")
    return None


class SettingsKeyProvider:
    """Vendor key from SIGNING_PRIVATE_KEY(_B64) / SIGNING_PUBLIC_KEY(_B64)."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(self.settings.SIGNING_PRIVATE_KEY_B64 or self.settings.SIGNING_PRIVATE_KEY)

    async def get_signing_key(self, organization_id: uuid.UUID, key_version: Optional[str] = None) -> KeyMaterial:
        configured_version = self.settings.SIGNING_KEY_VERSION
        if key_version and key_version != configured_version:
            raise SigningError(
                f"Signing key version {key_version} is not configured",
                details={"configured_version": configured_version},
            )

        private_pem = _decode_pem(
            self.settings.SIGNING_PRIVATE_KEY_B64,
            self.settings.SIGNING_PRIVATE_KEY,
            "SIGNING_PRIVATE_KEY_B64",
        )
        if not private_pem:
            raise SigningError("No signing key configured")

        public_pem = _decode_pem(
            self.settings.SIGNING_PUBLIC_KEY_B64,
            self.settings.SIGNING_PUBLIC_KEY,
            "SIGNING_PUBLIC_KEY_B64",
        ) or public_key_from_private(private_pem)

        return KeyMaterial(private_key_pem=private_pem, public_key_pem=public_pem, key_version=configured_version)


class DatabaseKeyProvider:
    """
    Per-organization keys from the signing_keys table.

    Falls back to ``fallback`` (usually the vendor key) when the organization
    has no key registered.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        encryption: Optional[EncryptionService] = None,
        fallback: Optional[KeyProvider] = None,
    ):
        self.gateway = gateway
        self._encryption = encryption
        self.fallback = fallback

    @property
    def encryption(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = EncryptionService()
        return self._encryption

    async def get_signing_key(self, organization_id: uuid.UUID, key_version: Optional[str] = None) -> KeyMaterial:
        stmt = select(SigningKey).where(SigningKey.organization_id == organization_id)
        if key_version:
            stmt = stmt.where(SigningKey.key_version == key_version)
        else:
            stmt = stmt.where(SigningKey.is_active == True).order_by(SigningKey.created_at.desc())

        async with self.gateway.session() as session:
            result = await session.execute(stmt.limit(1))
            record = result.scalar_one_or_none()

        if record is None:
            if self.fallback is not None:
                return await self.fallback.get_signing_key(organization_id, key_version)
            raise SigningError(
                "No signing key registered for organization",
                details={"organization_id": str(organization_id), "key_version": key_version},
            )

        try:
            private_pem = self.encryption.decrypt(record.private_key_encrypted)
        except EncryptionError as e:
            logger.error(f"Could not decrypt signing key v{record.key_version} for {organization_id}")
            raise SigningError("Stored signing key could not be decrypted") from e

        return KeyMaterial(
            private_key_pem=private_pem,
            public_key_pem=record.public_key_pem,
            key_version=record.key_version,
        )


class SigningKeyService:
    """Registers organization key pairs in signing_keys."""

    def __init__(self, db: AsyncSession, encryption: Optional[EncryptionService] = None):
        self.db = db
        self.encryption = encryption or EncryptionService()

    async def register_key(
        self,
        organization_id: uuid.UUID,
        private_key_pem: str,
        key_version: str,
        public_key_pem: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> SigningKey:
        """
        Store a key pair as the organization's active key.

        Previously active keys stay in the table so older signatures can
        still be verified by version.
        """
        load_private_key(private_key_pem)
        public_key_pem = public_key_pem or public_key_from_private(private_key_pem)

        await self.db.execute(
            update(SigningKey)
            .where(SigningKey.organization_id == organization_id, SigningKey.is_active == True)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )

        record = SigningKey(
            organization_id=organization_id,
            key_version=key_version,
            private_key_encrypted=self.encryption.encrypt(private_key_pem),
            public_key_pem=public_key_pem,
            is_active=True,
        )
        self.db.add(record)
        await self.db.flush()

        await AuditService(self.db).log(
            action="REGISTER_KEY",
            entity_type="SIGNING_KEY",
            entity_id=record.id,
            organization_id=organization_id,
            actor_id=actor_id,
            new_values={"key_version": key_version},
            description=f"Registered signing key v{key_version}",
        )

        logger.info(f"Registered signing key v{key_version} for organization {organization_id}")
        return record

    async def list_versions(self, organization_id: uuid.UUID) -> Tuple[str, ...]:
        result = await self.db.execute(
            select(SigningKey.key_version)
            .where(SigningKey.organization_id == organization_id)
            .order_by(SigningKey.created_at)
        )
        return tuple(result.scalars().all())
