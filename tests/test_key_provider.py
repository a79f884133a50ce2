import base64

import pytest

from fiscal_engine.config import Settings
from fiscal_engine.core.exceptions import SigningError
from fiscal_engine.services.audit_service import AuditService
from fiscal_engine.services.encryption_service import EncryptionError, EncryptionService
from fiscal_engine.services.key_provider import (
    DatabaseKeyProvider,
    SettingsKeyProvider,
    SigningKeyService,
    StaticKeyProvider,
)
from fiscal_engine.services.signing_service import generate_key_pair


@pytest.fixture
def encryption():
    return EncryptionService(secret_key="test-secret", salt="test-salt")


async def test_static_provider_serves_latest_version(key_pair, organization):
    private_pem, public_pem = key_pair
    provider = StaticKeyProvider(private_pem, public_pem, key_version="1")

    key = await provider.get_signing_key(organization.id)
    assert key.key_version == "1"
    assert key.public_key_pem == public_pem
    assert "PRIVATE" not in repr(key)

    with pytest.raises(SigningError):
        await provider.get_signing_key(organization.id, "7")


async def test_settings_provider_reads_base64_pem(key_pair, organization):
    private_pem, public_pem = key_pair
    settings = Settings(
        _env_file=None,
        SIGNING_PRIVATE_KEY_B64=base64.b64encode(private_pem.encode()).decode(),
        SIGNING_KEY_VERSION="3",
    )
    provider = SettingsKeyProvider(settings)

    key = await provider.get_signing_key(organization.id)
    assert provider.is_configured()
    assert key.private_key_pem == private_pem
    assert key.public_key_pem == public_pem
    assert key.key_version == "3"

    with pytest.raises(SigningError):
        await provider.get_signing_key(organization.id, "1")


async def test_settings_provider_accepts_escaped_newlines(key_pair, organization):
    private_pem, _ = key_pair
    settings = Settings(_env_file=None, SIGNING_PRIVATE_KEY=private_pem.replace("\n", "\\n"))
    key = await SettingsKeyProvider(settings).get_signing_key(organization.id)
    assert key.private_key_pem == private_pem


async def test_settings_provider_without_key(organization):
    provider = SettingsKeyProvider(Settings(_env_file=None))
    assert not provider.is_configured()
    with pytest.raises(SigningError):
        await provider.get_signing_key(organization.id)


async def test_database_provider_round_trip(gateway, organization, key_pair, encryption):
    private_pem, public_pem = key_pair

    async def register(session):
        record = await SigningKeyService(session, encryption).register_key(organization.id, private_pem, "1")
        assert record.private_key_encrypted.startswith("ENC:")
        assert private_pem not in record.private_key_encrypted

    await gateway.transaction(register)

    key = await DatabaseKeyProvider(gateway, encryption).get_signing_key(organization.id)
    assert key.private_key_pem == private_pem
    assert key.public_key_pem == public_pem
    assert key.key_version == "1"


async def test_database_provider_rotation(gateway, organization, key_pair, encryption):
    private_pem, _ = key_pair
    newer_private, newer_public = generate_key_pair()

    async def register(session):
        service = SigningKeyService(session, encryption)
        await service.register_key(organization.id, private_pem, "1")
        await service.register_key(organization.id, newer_private, "2")
        return await service.list_versions(organization.id)

    assert await gateway.transaction(register) == ("1", "2")

    provider = DatabaseKeyProvider(gateway, encryption)
    assert (await provider.get_signing_key(organization.id)).public_key_pem == newer_public
    assert (await provider.get_signing_key(organization.id, "1")).private_key_pem == private_pem


async def test_database_provider_fallback_and_errors(gateway, organization, key_pair, encryption):
    private_pem, _ = key_pair
    fallback = StaticKeyProvider(private_pem, key_version="vendor")

    key = await DatabaseKeyProvider(gateway, encryption, fallback=fallback).get_signing_key(organization.id)
    assert key.key_version == "vendor"

    with pytest.raises(SigningError):
        await DatabaseKeyProvider(gateway, encryption).get_signing_key(organization.id)

    async def register(session):
        await SigningKeyService(session, encryption).register_key(organization.id, private_pem, "1")

    await gateway.transaction(register)

    wrong_secret = EncryptionService(secret_key="another-secret", salt="test-salt")
    with pytest.raises(SigningError):
        await DatabaseKeyProvider(gateway, wrong_secret).get_signing_key(organization.id)


def test_encryption_requires_secret():
    with pytest.raises(EncryptionError):
        EncryptionService(secret_key="")


async def test_key_registration_is_audited(gateway, organization, key_pair, encryption):
    private_pem, _ = key_pair

    async def register(session):
        return await SigningKeyService(session, encryption).register_key(
            organization.id, private_pem, "3", actor_id="admin-1"
        )

    record = await gateway.transaction(register)

    async with gateway.session() as session:
        history = await AuditService(session).get_entity_history("SIGNING_KEY", record.id)

    assert [(entry.action, entry.actor_id) for entry in history] == [("REGISTER_KEY", "admin-1")]
    assert history[0].organization_id == organization.id
    assert history[0].new_values == {"key_version": "3"}
