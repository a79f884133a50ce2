import asyncio
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fiscal_engine.core.exceptions import (
    NotFoundError,
    SequenceConflictError,
    SigningError,
    StorageError,
    ValidationError,
)
from fiscal_engine.models.audit_log import AuditLog
from fiscal_engine.models.document_sequence import DocumentSequence
from fiscal_engine.models.fiscal_document import DocumentStatus, DocumentType, FiscalDocument
from fiscal_engine.schemas.fiscal_document import CreditLineSelection, DocumentLineCreate
from fiscal_engine.services.audit_service import AuditService
from fiscal_engine.services import document_lifecycle_service
from fiscal_engine.services.document_lifecycle_service import DocumentLifecycleService
from fiscal_engine.services.document_sequence_service import SeriesLockRegistry
from fiscal_engine.services.key_provider import StaticKeyProvider
from fiscal_engine.services.signing_service import InvoiceSigner


async def _count_documents(gateway):
    rows = await gateway.query(select(func.count().label("n")).select_from(FiscalDocument))
    return rows[0]["n"]


async def test_end_to_end_chain_and_cancellation(
    lifecycle, invoice_request, line, products, key_pair, stock_of, movements_of
):
    _, public_pem = key_pair
    signer = InvoiceSigner()

    ft1 = await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 14)))
    ft2 = await lifecycle.create(*invoice_request(
        issue_date=date(2025, 3, 15),
        lines=[line(products["A"], 1, "2192.98")],
    ))

    assert ft1.document_number == "FT/2025/000001"
    assert ft1.total_amount == Decimal("1000.00")
    assert ft2.document_number == "FT/2025/000002"
    assert ft2.total_amount == Decimal("2500.00")

    assert signer.verify(ft1, "", ft1.signature, public_pem)
    assert signer.verify(ft2, ft1.signature, ft2.signature, public_pem)
    assert not signer.verify(ft2, "", ft2.signature, public_pem)

    assert await stock_of(products["A"].id) == Decimal("7")
    assert await stock_of(products["B"].id) == Decimal("9")

    cancelled = await lifecycle.cancel(ft1.id, "customer return", actor_id="clerk-1")

    assert cancelled.status == DocumentStatus.CANCELLED.value
    assert cancelled.cancellation_reason == "customer return"
    assert cancelled.cancelled_by == "clerk-1"
    assert cancelled.cancelled_at is not None
    assert cancelled.document_number == "FT/2025/000001"
    assert cancelled.signature == ft1.signature

    assert await stock_of(products["A"].id) == Decimal("9")
    assert await stock_of(products["B"].id) == Decimal("10")

    movements = await movements_of(ft1.id)
    by_type = {}
    for movement in movements:
        by_type.setdefault(movement["movement_type"], []).append(movement["quantity_delta"])
    assert sorted(by_type["SALE"]) == [Decimal("-2"), Decimal("-1")]
    assert sorted(by_type["CANCELLATION"]) == [Decimal("1"), Decimal("2")]

    reloaded = await lifecycle.get_document(ft2.id)
    assert reloaded.status == DocumentStatus.ISSUED.value
    assert reloaded.sequence_number == 2


async def test_line_amounts_are_persisted(lifecycle, invoice_request):
    document = await lifecycle.create(*invoice_request())
    stored = await lifecycle.get_document(document.id)

    assert [l.line_number for l in stored.lines] == [1, 2]
    first, second = stored.lines
    assert first.tax_amount == Decimal("84.00")
    assert first.line_total == Decimal("684.00")
    assert second.tax_amount == Decimal("38.81")
    assert second.line_total == Decimal("316.00")
    assert stored.subtotal == Decimal("877.19")
    assert stored.tax_amount == Decimal("122.81")
    assert stored.payment_status == "PENDING"
    assert stored.signature_key_version == "1"


async def test_issuance_is_audited(lifecycle, invoice_request, gateway):
    document = await lifecycle.create(*invoice_request(created_by="clerk-7"))
    rows = await gateway.query(
        select(AuditLog.action, AuditLog.actor_id).where(AuditLog.entity_id == document.id)
    )
    assert rows == [{"action": "ISSUE", "actor_id": "clerk-7"}]


async def test_cancellation_history_follows_issuance(lifecycle, invoice_request, gateway):
    document = await lifecycle.create(*invoice_request(created_by="clerk-7"))
    await lifecycle.cancel(document.id, "duplicated sale", actor_id="supervisor-2")

    async with gateway.session() as session:
        history = await AuditService(session).get_entity_history("FISCAL_DOCUMENT", document.id)

    assert [(entry.action, entry.actor_id) for entry in history] == [
        ("ISSUE", "clerk-7"),
        ("CANCEL", "supervisor-2"),
    ]
    assert history[1].new_values["cancellation_reason"] == "duplicated sale"


async def test_simplified_invoice_over_ceiling_is_rejected(lifecycle, invoice_request, line, products, gateway, stock_of):
    request = invoice_request(
        document_type=DocumentType.SIMPLIFIED_INVOICE,
        lines=[line(products["A"], 1, "25000.00")],
    )

    with pytest.raises(ValidationError):
        await lifecycle.create(*request)

    assert await _count_documents(gateway) == 0
    assert await stock_of(products["A"].id) == Decimal("10")


async def test_simplified_invoice_at_ceiling_is_accepted(lifecycle, invoice_request, line, products):
    document = await lifecycle.create(*invoice_request(
        document_type=DocumentType.SIMPLIFIED_INVOICE,
        customer_tax_id=None,
        lines=[line(products["A"], 1, "25000.00", tax_rate="0", tax_exemption_code="M10")],
    ))
    assert document.total_amount == Decimal("25000.00")
    assert document.document_number == "FS/2025/000001"
    assert document.payment_status == "PAID"


@pytest.mark.parametrize("tax_id", [None, "123", "ABC-123456"])
async def test_invoice_requires_valid_customer_tax_id(lifecycle, invoice_request, tax_id):
    with pytest.raises(ValidationError):
        await lifecycle.create(*invoice_request(customer_tax_id=tax_id))


async def test_invoice_receipt_accepts_final_consumer(lifecycle, invoice_request):
    document = await lifecycle.create(*invoice_request(
        document_type=DocumentType.INVOICE_RECEIPT,
        customer_tax_id=None,
        customer_name="Consumidor final",
    ))
    assert document.document_number == "FR/2025/000001"
    assert document.customer_tax_id is None


async def test_invalid_lines_are_rejected(lifecycle, invoice_request, line, products):
    cases = [
        [],
        [line(products["A"], 0, "10.00")],
        [line(products["A"], 1, "-1.00")],
        [line(products["A"], 1, "10.00", tax_rate="120")],
        [line(products["A"], 1, "10.00", tax_rate="0")],
        [line(products["A"], 1, "10.00", discount_amount=Decimal("10.01"))],
    ]
    for lines in cases:
        with pytest.raises(ValidationError):
            await lifecycle.create(*invoice_request(lines=lines))


async def test_exempt_line_carries_exemption_code(lifecycle, invoice_request, line, products):
    document = await lifecycle.create(*invoice_request(lines=[
        line(products["A"], 1, "100.00", tax_rate="0",
             tax_exemption_code="M10", tax_exemption_reason="Isento nos termos da alinea b)"),
    ]))
    assert document.total_amount == Decimal("100.00")
    assert document.lines[0].tax_exemption_code == "M10"


async def test_notes_cannot_be_created_directly(lifecycle, invoice_request):
    with pytest.raises(ValidationError):
        await lifecycle.create(*invoice_request(document_type=DocumentType.CREDIT_NOTE))


async def test_issue_date_cannot_go_backwards_in_series(lifecycle, invoice_request):
    await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 14)))
    with pytest.raises(ValidationError):
        await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 13)))


async def test_proforma_is_numbered_but_not_signed(lifecycle, invoice_request, products, stock_of):
    proforma = await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA))

    assert proforma.document_number == "PF/2025/000001"
    assert proforma.is_fiscal is False
    assert proforma.signature is None
    assert await stock_of(products["A"].id) == Decimal("10")


async def test_cancel_rules(lifecycle, invoice_request):
    proforma = await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA))
    with pytest.raises(ValidationError):
        await lifecycle.cancel(proforma.id, "not needed")

    invoice = await lifecycle.create(*invoice_request())
    with pytest.raises(ValidationError):
        await lifecycle.cancel(invoice.id, "   ")

    await lifecycle.cancel(invoice.id, "wrong customer")
    with pytest.raises(ValidationError):
        await lifecycle.cancel(invoice.id, "again")


async def test_cancel_unknown_document(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.cancel(uuid.uuid4(), "nothing there")


async def test_credit_note_partial_and_cumulative(lifecycle, invoice_request, products, stock_of, movements_of):
    invoice = await lifecycle.create(*invoice_request())
    line_a = invoice.lines[0]

    note = await lifecycle.derive_credit_note(
        invoice.id,
        [CreditLineSelection(source_line_id=line_a.id, quantity=Decimal("1"))],
        "damaged bag",
    )

    assert note.document_type == DocumentType.CREDIT_NOTE.value
    assert note.series == f"NC/{note.issue_date.year}"
    assert note.sequence_number == 1
    assert note.source_document_id == invoice.id
    assert note.notes == f"NC ref. {invoice.document_number}: damaged bag"
    assert note.total_amount == Decimal("342.00")
    assert note.lines[0].source_line_id == line_a.id
    assert note.signature
    assert await stock_of(products["A"].id) == Decimal("9")
    assert await movements_of(note.id) == [
        {"product_id": products["A"].id, "quantity_delta": Decimal("1"), "movement_type": "CREDIT_NOTE"}
    ]

    remaining = await lifecycle.remaining_credit_quantities(invoice.id)
    assert remaining[line_a.id] == Decimal("1")

    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(
            invoice.id,
            [CreditLineSelection(source_line_id=line_a.id, quantity=Decimal("2"))],
            "too much",
        )

    rest = await lifecycle.derive_credit_note(
        invoice.id,
        [CreditLineSelection(source_line_id=line_a.id)],
        "rest of the order",
    )
    assert rest.lines[0].quantity == Decimal("1")
    assert rest.sequence_number == 2
    assert (await lifecycle.remaining_credit_quantities(invoice.id))[line_a.id] == Decimal("0")


async def test_credit_note_prorates_discount(lifecycle, invoice_request, line, products):
    invoice = await lifecycle.create(*invoice_request(lines=[
        line(products["A"], 3, "100.00", discount_amount=Decimal("10.00")),
    ]))
    source_line = invoice.lines[0]

    first = await lifecycle.derive_credit_note(
        invoice.id, [CreditLineSelection(source_line_id=source_line.id, quantity=Decimal("1"))], "one back"
    )
    second = await lifecycle.derive_credit_note(
        invoice.id, [CreditLineSelection(source_line_id=source_line.id)], "the rest"
    )

    assert first.lines[0].discount_amount == Decimal("3.33")
    assert second.lines[0].discount_amount == Decimal("6.67")


async def test_credit_note_rejections(lifecycle, invoice_request):
    invoice = await lifecycle.create(*invoice_request())
    selection = [CreditLineSelection(source_line_id=invoice.lines[0].id)]

    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(invoice.id, selection, "")
    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(invoice.id, [], "reason")
    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(invoice.id, selection * 2, "twice")
    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(
            invoice.id, [CreditLineSelection(source_line_id=uuid.uuid4())], "foreign line"
        )
    with pytest.raises(NotFoundError):
        await lifecycle.derive_credit_note(uuid.uuid4(), selection, "missing source")

    proforma = await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA))
    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(
            proforma.id, [CreditLineSelection(source_line_id=proforma.lines[0].id)], "not fiscal"
        )

    await lifecycle.cancel(invoice.id, "voided")
    with pytest.raises(ValidationError):
        await lifecycle.derive_credit_note(invoice.id, selection, "cancelled source")


async def test_cancel_blocked_by_live_credit_note(lifecycle, invoice_request, products, stock_of):
    invoice = await lifecycle.create(*invoice_request())
    note = await lifecycle.derive_credit_note(
        invoice.id, [CreditLineSelection(source_line_id=invoice.lines[0].id)], "returned"
    )

    with pytest.raises(ValidationError):
        await lifecycle.cancel(invoice.id, "voided")

    await lifecycle.cancel(note.id, "issued by mistake")
    assert await stock_of(products["A"].id) == Decimal("8")

    await lifecycle.cancel(invoice.id, "voided")
    assert await stock_of(products["A"].id) == Decimal("10")
    assert await stock_of(products["B"].id) == Decimal("10")


async def test_debit_note(lifecycle, invoice_request, products, stock_of):
    invoice = await lifecycle.create(*invoice_request())
    note = await lifecycle.derive_debit_note(
        invoice.id,
        [DocumentLineCreate(product_name="Juros de mora", quantity=Decimal("1"), unit_price=Decimal("50.00"))],
        "late payment",
        actor_id="clerk-2",
    )

    assert note.document_type == DocumentType.DEBIT_NOTE.value
    assert note.total_amount == Decimal("57.00")
    assert note.lines[0].product_id is None
    assert note.lines[0].product_code == "ADJUSTMENT-1"
    assert note.payment_status == "PENDING"
    assert note.notes == f"ND ref. {invoice.document_number}: late payment"
    assert note.created_by == "clerk-2"
    assert await stock_of(products["A"].id) == Decimal("8")

    with pytest.raises(ValidationError):
        await lifecycle.derive_debit_note(
            invoice.id,
            [DocumentLineCreate(product_name="Nada", quantity=Decimal("1"), unit_price=Decimal("0"))],
            "zero charge",
        )


async def test_convert_proforma(lifecycle, invoice_request, products, stock_of):
    proforma = await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA))

    invoice = await lifecycle.convert_proforma_to_invoice(proforma.id, actor_id="clerk-3")

    assert invoice.document_type == DocumentType.INVOICE_RECEIPT.value
    assert invoice.source_document_id == proforma.id
    assert invoice.total_amount == proforma.total_amount
    assert invoice.notes == f"Ref. {proforma.document_number}"
    assert invoice.payment_status == "PAID"
    assert invoice.signature
    assert [l.product_code for l in invoice.lines] == ["A", "B"]
    assert await stock_of(products["A"].id) == Decimal("8")

    unchanged = await lifecycle.get_document(proforma.id)
    assert unchanged.status == DocumentStatus.ISSUED.value

    with pytest.raises(ValidationError):
        await lifecycle.convert_proforma_to_invoice(proforma.id)

    other = await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 20)))
    with pytest.raises(ValidationError):
        await lifecycle.convert_proforma_to_invoice(other.id)


async def test_signing_failure_persists_nothing(gateway, settings, invoice_request, products, stock_of):
    class BrokenKeys:
        async def get_signing_key(self, organization_id, key_version=None):
            raise SigningError("No signing key configured")

    service = DocumentLifecycleService(gateway, BrokenKeys(), settings=settings, locks=SeriesLockRegistry())

    with pytest.raises(SigningError):
        await service.create(*invoice_request())

    assert await _count_documents(gateway) == 0
    assert await stock_of(products["A"].id) == Decimal("10")


async def test_unparsable_key_rolls_back_allocation(gateway, settings, lifecycle, invoice_request):
    broken = DocumentLifecycleService(
        gateway,
        StaticKeyProvider("not a key", public_key_pem="not a key"),
        settings=settings,
        locks=SeriesLockRegistry(),
    )
    with pytest.raises(SigningError):
        await broken.create(*invoice_request())

    document = await lifecycle.create(*invoice_request())
    assert document.document_number == "FT/2025/000001"


async def test_proforma_needs_no_key(gateway, settings, invoice_request):
    class NoKeys:
        async def get_signing_key(self, organization_id, key_version=None):
            raise SigningError("No signing key configured")

    service = DocumentLifecycleService(gateway, NoKeys(), settings=settings, locks=SeriesLockRegistry())
    proforma = await service.create(*invoice_request(document_type=DocumentType.PROFORMA))
    assert proforma.document_number == "PF/2025/000001"


async def test_concurrent_issuance_yields_contiguous_numbers(lifecycle, invoice_request, line, products):
    requests = [
        invoice_request(
            document_type=DocumentType.INVOICE_RECEIPT,
            lines=[line(products["SRV"], 1, f"{10 + i}.00")],
        )
        for i in range(8)
    ]

    documents = await asyncio.gather(*(lifecycle.create(*request) for request in requests))

    numbers = sorted(d.sequence_number for d in documents)
    assert numbers == list(range(1, 9))
    assert len({d.document_number for d in documents}) == 8


async def test_list_documents_filters(lifecycle, invoice_request, organization):
    ft = await lifecycle.create(*invoice_request(issue_date=date(2025, 3, 14)))
    await lifecycle.create(*invoice_request(document_type=DocumentType.PROFORMA, issue_date=date(2025, 4, 2)))
    await lifecycle.cancel(ft.id, "voided")

    items, total = await lifecycle.list_documents(organization.id)
    assert total == 2
    assert items[0].document_type == DocumentType.PROFORMA.value

    items, total = await lifecycle.list_documents(organization.id, status=DocumentStatus.CANCELLED)
    assert total == 1
    assert items[0].id == ft.id

    items, total = await lifecycle.list_documents(organization.id, search="FT/2025")
    assert [d.document_number for d in items] == ["FT/2025/000001"]

    items, total = await lifecycle.list_documents(organization.id, start_date=date(2025, 4, 1))
    assert total == 1

    items, total = await lifecycle.list_documents(organization.id, skip=1, limit=1)
    assert total == 2
    assert len(items) == 1


async def test_cancel_and_credit_note_on_one_source_are_serialized(
    lifecycle, invoice_request, products, stock_of, gateway
):
    invoice = await lifecycle.create(*invoice_request())

    cancelled, note = await asyncio.gather(
        lifecycle.cancel(invoice.id, "voided"),
        lifecycle.derive_credit_note(
            invoice.id, [CreditLineSelection(source_line_id=invoice.lines[0].id)], "returned"
        ),
        return_exceptions=True,
    )

    assert cancelled.status == DocumentStatus.CANCELLED.value
    assert isinstance(note, ValidationError)
    assert await _count_documents(gateway) == 1
    assert await stock_of(products["A"].id) == Decimal("10")
    assert await stock_of(products["B"].id) == Decimal("10")


async def test_cancel_and_debit_note_on_one_source_are_serialized(lifecycle, invoice_request, gateway):
    invoice = await lifecycle.create(*invoice_request())

    cancelled, note = await asyncio.gather(
        lifecycle.cancel(invoice.id, "voided"),
        lifecycle.derive_debit_note(
            invoice.id,
            [DocumentLineCreate(product_name="Juros de mora", quantity=Decimal("1"), unit_price=Decimal("50.00"))],
            "late payment",
        ),
        return_exceptions=True,
    )

    assert cancelled.status == DocumentStatus.CANCELLED.value
    assert isinstance(note, ValidationError)
    assert await _count_documents(gateway) == 1


async def test_storage_failure_persists_nothing(lifecycle, invoice_request, products, stock_of, gateway):
    request = invoice_request()
    await gateway.execute("DROP TABLE stock_movements")

    with pytest.raises(StorageError):
        await lifecycle.create(*request)

    assert await _count_documents(gateway) == 0
    assert await stock_of(products["A"].id) == Decimal("10")
    assert await gateway.query(select(DocumentSequence.current_number)) == []


async def _occupy_number(gateway, organization, series, sequence_number):
    """Insert a document at ``sequence_number`` without moving the series counter."""
    async def work(session):
        session.add(FiscalDocument(
            organization_id=organization.id,
            document_type=DocumentType.INVOICE.value,
            series=series,
            sequence_number=sequence_number,
            document_number=f"{series}/{sequence_number:06d}",
            issue_date=date(2025, 3, 14),
            system_entry_date=datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc),
            customer_name="Imported",
            signature="aW1wb3J0ZWQ=",
        ))

    await gateway.transaction(work)


async def test_taken_number_is_skipped_after_counter_repair(lifecycle, invoice_request, organization, gateway):
    await _occupy_number(gateway, organization, "FT/2025", 1)

    document = await lifecycle.create(*invoice_request())

    assert document.document_number == "FT/2025/000002"
    assert document.signature
    rows = await gateway.query(select(DocumentSequence.current_number))
    assert rows == [{"current_number": 2}]


async def test_taken_number_without_retries_fails_cleanly(
    gateway, settings, key_provider, invoice_request, organization, products, stock_of
):
    service = DocumentLifecycleService(
        gateway,
        key_provider,
        settings=settings.model_copy(update={"SEQUENCE_MAX_RETRIES": 1}),
        locks=SeriesLockRegistry(),
    )
    await _occupy_number(gateway, organization, "FT/2025", 1)

    with pytest.raises(SequenceConflictError):
        await service.create(*invoice_request())

    assert await _count_documents(gateway) == 1
    assert await stock_of(products["A"].id) == Decimal("10")
    assert await gateway.query(select(DocumentSequence.current_number)) == []


async def test_default_issue_date_is_the_local_business_date(lifecycle, invoice_request, monkeypatch):
    # 23:30 UTC on 14 March is already 15 March in Luanda
    monkeypatch.setattr(
        document_lifecycle_service,
        "_utc_now",
        lambda: datetime(2025, 3, 14, 23, 30, tzinfo=timezone.utc),
    )

    document = await lifecycle.create(*invoice_request(issue_date=None))

    assert document.issue_date == date(2025, 3, 15)
    assert document.series == "FT/2025"
