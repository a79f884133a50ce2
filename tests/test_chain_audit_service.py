from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from fiscal_engine.core.exceptions import ChainIntegrityError
from fiscal_engine.models.fiscal_document import DocumentType, FiscalDocument
from fiscal_engine.services.chain_audit_service import ChainAuditService
from fiscal_engine.services.key_provider import StaticKeyProvider
from fiscal_engine.services.signing_service import generate_key_pair


async def _issue_three(lifecycle, invoice_request):
    return [
        await lifecycle.create(*invoice_request(issue_date=date(2025, 3, day)))
        for day in (14, 15, 16)
    ]


async def test_untouched_series_verifies(gateway, key_provider, lifecycle, invoice_request, organization):
    await _issue_three(lifecycle, invoice_request)
    await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA))

    audit = ChainAuditService(gateway, key_provider)
    report = await audit.verify_series(organization.id, "FT/2025")

    assert report.is_valid
    assert report.documents_checked == 3
    report.raise_for_errors()

    reports = await audit.verify_organization(organization.id)
    assert [r.series for r in reports] == ["FT/2025", "PF/2025"]
    assert all(r.is_valid for r in reports)


async def test_cancellation_keeps_chain_valid(gateway, key_provider, lifecycle, invoice_request, organization):
    first, _, _ = await _issue_three(lifecycle, invoice_request)
    await lifecycle.cancel(first.id, "customer return")

    report = await ChainAuditService(gateway, key_provider).verify_series(organization.id, "FT/2025")
    assert report.is_valid


async def test_tampered_total_is_detected(gateway, key_provider, lifecycle, invoice_request, organization):
    _, second, _ = await _issue_three(lifecycle, invoice_request)
    await gateway.execute(
        update(FiscalDocument)
        .where(FiscalDocument.id == second.id)
        .values(total_amount=Decimal("1.00"))
    )

    report = await ChainAuditService(gateway, key_provider).verify_series(organization.id, "FT/2025")

    assert not report.is_valid
    assert [(i.kind, i.document_number) for i in report.issues] == [
        ("INVALID_SIGNATURE", second.document_number)
    ]
    with pytest.raises(ChainIntegrityError):
        report.raise_for_errors()


async def test_replaced_signature_breaks_successor(gateway, key_provider, lifecycle, invoice_request, organization):
    first, second, third = await _issue_three(lifecycle, invoice_request)
    await gateway.execute(
        update(FiscalDocument)
        .where(FiscalDocument.id == first.id)
        .values(signature=third.signature)
    )

    report = await ChainAuditService(gateway, key_provider).verify_series(organization.id, "FT/2025")

    assert {i.document_number for i in report.issues} == {first.document_number, second.document_number}


async def test_gap_and_missing_key(gateway, key_provider, lifecycle, invoice_request, organization):
    _, _, third = await _issue_three(lifecycle, invoice_request)
    await gateway.execute(
        update(FiscalDocument)
        .where(FiscalDocument.id == third.id)
        .values(sequence_number=5)
    )

    report = await ChainAuditService(gateway, key_provider).verify_series(organization.id, "FT/2025")
    assert [i.kind for i in report.issues] == ["SEQUENCE_GAP"]

    other_private, _ = generate_key_pair()
    stranger = StaticKeyProvider(other_private, key_version="9")
    report = await ChainAuditService(gateway, stranger).verify_series(organization.id, "FT/2025")
    assert {i.kind for i in report.issues} == {"SEQUENCE_GAP", "KEY_UNAVAILABLE"}


async def test_rotated_key_still_verifies_old_documents(gateway, key_provider, lifecycle, invoice_request, organization):
    old = await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 14)))
    new_private, _ = generate_key_pair()
    key_provider.add_key(new_private, key_version="2")
    new = await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 15)))

    assert old.signature_key_version == "1"
    assert new.signature_key_version == "2"

    report = await ChainAuditService(gateway, key_provider).verify_series(organization.id, "FT/2025")
    assert report.is_valid
