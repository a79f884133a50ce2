import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from lxml import etree

from fiscal_engine.config import Settings
from fiscal_engine.models.fiscal_document import (
    DocumentLine,
    DocumentType,
    FiscalDocument,
    payment_mechanism_code,
)
from fiscal_engine.models.organization import Organization
from fiscal_engine.services.document_calculations import (
    format_money,
    format_quantity,
    format_unit_price,
    money,
)

from .namespaces import NAMESPACE_MAP, SCHEMA_LOCATION, saft, xsi

# lxml escapes & < > itself; quotes in text are written as entity references
_QUOTE_ENTITIES = {'"': "quot", "'": "apos"}
_QUOTE_SPLIT = re.compile(r"([\"'])")

# Debit side of the sales journal
_DEBIT_TYPES = frozenset({DocumentType.CREDIT_NOTE.value})


@dataclass(frozen=True)
class CustomerEntry:
    customer_id: str
    tax_id: str
    name: str
    address: str
    city: str


@dataclass(frozen=True)
class ProductEntry:
    code: str
    description: str
    product_type: str = "P"
    group: str = "N/A"


@dataclass(frozen=True)
class SourceReference:
    document_number: str
    document_type: str


def _set_text(element, value) -> None:
    text = "" if value is None else str(value)
    parts = _QUOTE_SPLIT.split(text)
    element.text = parts[0] or None
    for i in range(1, len(parts), 2):
        entity = etree.Entity(_QUOTE_ENTITIES[parts[i]])
        entity.tail = parts[i + 1] or None
        element.append(entity)


def _text(parent, tag: str, value) -> etree._Element:
    element = etree.SubElement(parent, saft(tag))
    _set_text(element, value)
    return element


def _date(value) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def _datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def _net(line: DocumentLine) -> Decimal:
    return money(line.net_amount)


def _is_debit(document: FiscalDocument) -> bool:
    return document.document_type in _DEBIT_TYPES


def _build_header(parent, organization: Organization, settings: Settings,
                  start_date: date, end_date: date, created_on: date):
    """Header block: company identity, period, currency, software identification"""
    header = etree.SubElement(parent, saft("Header"))

    _text(header, "AuditFileVersion", settings.SAFT_AUDIT_FILE_VERSION)
    _text(header, "CompanyID", organization.tax_id)
    _text(header, "TaxRegistrationNumber", organization.tax_id)
    _text(header, "TaxAccountingBasis", "F")  # Facturação
    _text(header, "CompanyName", organization.legal_name)
    _text(header, "BusinessName", organization.trade_name or organization.legal_name)

    address = etree.SubElement(header, saft("CompanyAddress"))
    _text(address, "AddressDetail", organization.address or settings.DEFAULT_CITY)
    _text(address, "City", organization.city or settings.DEFAULT_CITY)
    _text(address, "Country", settings.COUNTRY_CODE)

    _text(header, "FiscalYear", start_date.year)
    _text(header, "StartDate", _date(start_date))
    _text(header, "EndDate", _date(end_date))
    _text(header, "CurrencyCode", organization.currency_code or settings.DEFAULT_CURRENCY)
    _text(header, "DateCreated", _date(created_on))
    _text(header, "TaxEntity", "Global")
    _text(header, "ProductCompanyTaxID", settings.SAFT_PRODUCT_COMPANY_TAX_ID)
    _text(header, "SoftwareValidationNumber", settings.SAFT_SOFTWARE_CERTIFICATE_NUMBER)
    _text(header, "ProductID", settings.SAFT_PRODUCT_ID)
    _text(header, "ProductVersion", settings.SAFT_PRODUCT_VERSION)

    return header


def _build_master_files(parent, customers: Iterable[CustomerEntry],
                        products: Iterable[ProductEntry], country: str):
    master = etree.SubElement(parent, saft("MasterFiles"))

    for customer in customers:
        node = etree.SubElement(master, saft("Customer"))
        _text(node, "CustomerID", customer.customer_id)
        _text(node, "AccountID", "Desconhecido")
        _text(node, "CustomerTaxID", customer.tax_id)
        _text(node, "CompanyName", customer.name)
        billing = etree.SubElement(node, saft("BillingAddress"))
        _text(billing, "AddressDetail", customer.address)
        _text(billing, "City", customer.city)
        _text(billing, "Country", country)
        _text(node, "SelfBillingIndicator", "0")

    for product in products:
        node = etree.SubElement(master, saft("Product"))
        _text(node, "ProductType", product.product_type)
        _text(node, "ProductCode", product.code)
        _text(node, "ProductGroup", product.group)
        _text(node, "ProductDescription", product.description)
        _text(node, "ProductNumberCode", product.code)

    return master


def _build_line(parent, document: FiscalDocument, line: DocumentLine,
                source: Optional[SourceReference]):
    node = etree.SubElement(parent, saft("Line"))
    _text(node, "LineNumber", line.line_number)

    if source and source.document_type == DocumentType.PROFORMA.value:
        order = etree.SubElement(node, saft("OrderReferences"))
        _text(order, "OriginatingON", source.document_number)

    _text(node, "ProductCode", line.product_code)
    _text(node, "ProductDescription", line.product_name)
    _text(node, "Quantity", format_quantity(line.quantity))
    _text(node, "UnitOfMeasure", line.unit_of_measure)
    _text(node, "UnitPrice", format_unit_price(line.unit_price))
    _text(node, "TaxPointDate", _date(document.tax_point_date or document.issue_date))

    if source and document.document_type in (DocumentType.CREDIT_NOTE.value, DocumentType.DEBIT_NOTE.value):
        references = etree.SubElement(node, saft("References"))
        _text(references, "Reference", source.document_number)
        _text(references, "Reason", document.notes or "")

    _text(node, "Description", line.description or line.product_name)
    amount_tag = "DebitAmount" if _is_debit(document) else "CreditAmount"
    _text(node, amount_tag, format_money(_net(line)))

    tax = etree.SubElement(node, saft("Tax"))
    _text(tax, "TaxType", "IVA")
    _text(tax, "TaxCountryRegion", "AO")
    _text(tax, "TaxCode", "NOR" if money(line.tax_rate) > 0 else "ISE")
    _text(tax, "TaxPercentage", format_money(line.tax_rate))

    if line.tax_exemption_code:
        _text(node, "TaxExemptionReason", line.tax_exemption_reason or "")
        _text(node, "TaxExemptionCode", line.tax_exemption_code)

    _text(node, "SettlementAmount", format_money(line.discount_amount))
    return node


def _build_invoice(parent, document: FiscalDocument, source: Optional[SourceReference],
                   customer_id: str):
    """Invoice element: status, hash, dates, lines and totals"""
    invoice = etree.SubElement(parent, saft("Invoice"))
    _text(invoice, "InvoiceNo", document.document_number)

    status = etree.SubElement(invoice, saft("DocumentStatus"))
    if document.is_cancelled:
        _text(status, "InvoiceStatus", "A")
        _text(status, "InvoiceStatusDate", _datetime(document.cancelled_at))
        _text(status, "Reason", document.cancellation_reason)
        _text(status, "SourceID", document.cancelled_by or document.created_by or "SYSTEM")
    else:
        _text(status, "InvoiceStatus", "N")
        _text(status, "InvoiceStatusDate", _datetime(document.system_entry_date))
        _text(status, "SourceID", document.created_by or "SYSTEM")
    _text(status, "SourceBilling", "P")

    _text(invoice, "Hash", document.signature or "0")
    _text(invoice, "HashControl", document.signature_key_version or "0")
    _text(invoice, "Period", document.issue_date.month)
    _text(invoice, "InvoiceDate", _date(document.issue_date))
    _text(invoice, "InvoiceType", document.type_code)

    regimes = etree.SubElement(invoice, saft("SpecialRegimes"))
    _text(regimes, "SelfBillingIndicator", "0")
    _text(regimes, "CashVATSchemeIndicator", "0")
    _text(regimes, "ThirdPartiesBillingIndicator", "0")

    _text(invoice, "SourceID", document.created_by or "SYSTEM")
    _text(invoice, "SystemEntryDate", _datetime(document.system_entry_date))
    _text(invoice, "CustomerID", customer_id)

    for line in sorted(document.lines, key=lambda l: l.line_number):
        _build_line(invoice, document, line, source)

    totals = etree.SubElement(invoice, saft("DocumentTotals"))
    _text(totals, "TaxPayable", format_money(document.tax_amount))
    _text(totals, "NetTotal", format_money(document.net_total))
    _text(totals, "GrossTotal", format_money(document.total_amount))

    # Invoice-receipts are settled at issuance
    if document.document_type == DocumentType.INVOICE_RECEIPT.value:
        payment = etree.SubElement(totals, saft("Payment"))
        _text(payment, "PaymentMechanism", payment_mechanism_code(document.payment_method))
        _text(payment, "PaymentAmount", format_money(document.total_amount))
        _text(payment, "PaymentDate", _date(document.issue_date))

    return invoice


def journal_totals(documents: Iterable[FiscalDocument]) -> Tuple[Decimal, Decimal]:
    """
    (TotalDebit, TotalCredit) over the batch.

    Sums net line amounts of fiscal, non-cancelled documents: credit notes
    on the debit side, everything else on the credit side.
    """
    total_debit = Decimal("0.00")
    total_credit = Decimal("0.00")
    for document in documents:
        if document.is_cancelled or not document.is_fiscal:
            continue
        net = sum((_net(line) for line in document.lines), Decimal("0.00"))
        if _is_debit(document):
            total_debit += net
        else:
            total_credit += net
    return total_debit, total_credit


def _build_source_documents(parent, documents: List[FiscalDocument],
                            sources: Dict, customer_ids: Dict):
    source_documents = etree.SubElement(parent, saft("SourceDocuments"))
    sales = etree.SubElement(source_documents, saft("SalesInvoices"))

    total_debit, total_credit = journal_totals(documents)
    _text(sales, "NumberOfEntries", len(documents))
    _text(sales, "TotalDebit", format_money(total_debit))
    _text(sales, "TotalCredit", format_money(total_credit))

    for document in documents:
        _build_invoice(
            sales,
            document,
            sources.get(document.source_document_id),
            customer_ids[document.id],
        )

    return source_documents


def build_audit_file(
    organization: Organization,
    settings: Settings,
    start_date: date,
    end_date: date,
    created_on: date,
    customers: List[CustomerEntry],
    products: List[ProductEntry],
    documents: List[FiscalDocument],
    sources: Dict,
    customer_ids: Dict,
) -> etree._Element:
    """
    Build the AuditFile tree.

    ``documents`` must already be in export order; ``sources`` maps
    source_document_id -> SourceReference; ``customer_ids`` maps
    document id -> CustomerID used in MasterFiles.
    """
    root = etree.Element(saft("AuditFile"), nsmap=NAMESPACE_MAP)
    root.set(xsi("schemaLocation").text, SCHEMA_LOCATION)

    _build_header(root, organization, settings, start_date, end_date, created_on)
    _build_master_files(root, customers, products, settings.COUNTRY_CODE)
    _build_source_documents(root, documents, sources, customer_ids)
    return root


def serialize(root: etree._Element) -> bytes:
    return etree.tostring(
        root,
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=True,
    )
