import pytest
from sqlalchemy import select, update

from fiscal_engine.core.exceptions import SequenceConflictError
from fiscal_engine.models.document_sequence import DocumentSequence, DocumentSequenceAudit
from fiscal_engine.models.fiscal_document import DocumentType
from fiscal_engine.services.document_sequence_service import DocumentSequenceService, SeriesLockRegistry


async def _allocate(gateway, organization, series="FT/2025", **kwargs):
    async def work(session):
        return await DocumentSequenceService(session, **kwargs).allocate(
            organization.id, series, DocumentType.INVOICE
        )

    return await gateway.transaction(work)


async def test_allocate_starts_at_one_and_increments(gateway, organization):
    first = await _allocate(gateway, organization)
    second = await _allocate(gateway, organization)

    assert first.document_number == "FT/2025/000001"
    assert second.sequence_number == 2
    assert second.document_number == "FT/2025/000002"


async def test_series_are_independent(gateway, organization):
    await _allocate(gateway, organization, "FT/2025")
    other = await _allocate(gateway, organization, "FT/2026")
    assert other.document_number == "FT/2026/000001"


async def test_rolled_back_allocation_is_not_consumed(gateway, organization):
    async def work(session):
        await DocumentSequenceService(session).allocate(organization.id, "FT/2025", DocumentType.INVOICE)
        raise RuntimeError("boom")

    await _allocate(gateway, organization)
    with pytest.raises(RuntimeError):
        await gateway.transaction(work)

    allocation = await _allocate(gateway, organization)
    assert allocation.sequence_number == 2


async def test_allocation_is_audited(gateway, organization):
    await _allocate(gateway, organization, actor_id="clerk-1")

    rows = await gateway.query(
        select(DocumentSequenceAudit.operation, DocumentSequenceAudit.document_number, DocumentSequenceAudit.actor_id)
    )
    assert rows == [{"operation": "ALLOCATE", "document_number": "FT/2025/000001", "actor_id": "clerk-1"}]


async def test_lost_compare_and_swap_is_retried(gateway, organization, monkeypatch):
    original = DocumentSequenceService._compare_and_swap
    calls = []

    async def flaky(self, sequence_id, expected, new_number):
        calls.append(expected)
        if len(calls) == 1:
            return False
        return await original(self, sequence_id, expected, new_number)

    monkeypatch.setattr(DocumentSequenceService, "_compare_and_swap", flaky)

    allocation = await _allocate(gateway, organization)
    assert allocation.sequence_number == 1
    assert len(calls) == 2


async def test_exhausted_retries_raise_conflict(gateway, organization, monkeypatch):
    async def always_lose(self, sequence_id, expected, new_number):
        return False

    monkeypatch.setattr(DocumentSequenceService, "_compare_and_swap", always_lose)

    with pytest.raises(SequenceConflictError):
        await _allocate(gateway, organization, max_retries=3)


async def test_preview_does_not_consume(gateway, organization):
    async def preview(session):
        service = DocumentSequenceService(session)
        return await service.preview_next_number(organization.id, "FT/2025"), await service.get_current_number(
            organization.id, "FT/2025"
        )

    assert await gateway.transaction(preview) == ("FT/2025/000001", 0)
    await _allocate(gateway, organization)
    assert await gateway.transaction(preview) == ("FT/2025/000002", 1)


async def test_sync_repairs_counter_behind_documents(gateway, organization, lifecycle, invoice_request):
    await lifecycle.create(*invoice_request())
    await gateway.execute(
        update(DocumentSequence)
        .where(DocumentSequence.organization_id == organization.id)
        .values(current_number=0)
    )

    async def sync(session):
        sequence = await DocumentSequenceService(session).sync_sequence_from_max(
            organization.id, "FT/2025", DocumentType.INVOICE
        )
        return sequence.current_number

    assert await gateway.transaction(sync) == 1
    # already in step: nothing changes
    assert await gateway.transaction(sync) == 1
    assert (await _allocate(gateway, organization)).sequence_number == 2


def test_lock_registry_reuses_locks():
    registry = SeriesLockRegistry()
    assert registry.lock_for("org", "FT/2025") is registry.lock_for("org", "FT/2025")
    assert registry.lock_for("org", "FT/2025") is not registry.lock_for("org", "FS/2025")
