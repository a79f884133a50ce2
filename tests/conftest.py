from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from fiscal_engine.config import Settings
from fiscal_engine.database import PersistenceGateway
from fiscal_engine.models.fiscal_document import DocumentType
from fiscal_engine.models.organization import Organization
from fiscal_engine.models.product import Product, StockMovement
from fiscal_engine.schemas.fiscal_document import DocumentLineCreate, FiscalDocumentCreate
from fiscal_engine.services.document_lifecycle_service import DocumentLifecycleService
from fiscal_engine.services.document_sequence_service import DocumentLockRegistry, SeriesLockRegistry
from fiscal_engine.services.key_provider import StaticKeyProvider
from fiscal_engine.services.signing_service import generate_key_pair


@pytest.fixture(scope="session")
def key_pair():
    return generate_key_pair()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'fiscal.db'}",
        SAFT_PRODUCT_COMPANY_TAX_ID="5417082695",
        SAFT_SOFTWARE_CERTIFICATE_NUMBER="31.1/AGT20",
        SAFT_PRODUCT_ID="Fiscal Document Engine",
        SAFT_PRODUCT_VERSION="1.0.0",
    )


@pytest.fixture
async def gateway(settings):
    gateway = PersistenceGateway.from_url(settings.DATABASE_URL)
    await gateway.create_all()
    yield gateway
    await gateway.dispose()


@pytest.fixture
def key_provider(key_pair):
    private_pem, public_pem = key_pair
    return StaticKeyProvider(private_pem, public_pem, key_version="1")


@pytest.fixture
def lifecycle(gateway, key_provider, settings):
    return DocumentLifecycleService(
        gateway,
        key_provider,
        settings=settings,
        locks=SeriesLockRegistry(),
        document_locks=DocumentLockRegistry(),
    )


@pytest.fixture
async def organization(gateway):
    async def work(session):
        org = Organization(
            tax_id="5000123456",
            legal_name="Kwanza Comercio, Lda",
            trade_name="Kwanza",
            address="Rua Rainha Ginga 12",
            city="Luanda",
        )
        session.add(org)
        await session.flush()
        return org

    return await gateway.transaction(work)


@pytest.fixture
async def products(gateway, organization):
    """Two stocked goods and one service, keyed by code."""
    async def work(session):
        items = [
            Product(organization_id=organization.id, code="A", name="Arroz 25kg",
                    product_group="Mercearia", current_stock=Decimal("10")),
            Product(organization_id=organization.id, code="B", name="Oleo 5L",
                    product_group="Mercearia", current_stock=Decimal("10")),
            Product(organization_id=organization.id, code="SRV", name="Entrega",
                    product_type="S", current_stock=Decimal("0")),
        ]
        session.add_all(items)
        await session.flush()
        return {item.code: item for item in items}

    return await gateway.transaction(work)


@pytest.fixture
def stock_of(gateway):
    async def read(product_id):
        rows = await gateway.query(
            select(Product.current_stock).where(Product.id == product_id)
        )
        return rows[0]["current_stock"]

    return read


@pytest.fixture
def movements_of(gateway):
    async def read(document_id):
        rows = await gateway.query(
            select(StockMovement.product_id, StockMovement.quantity_delta, StockMovement.movement_type)
            .where(StockMovement.reference_document_id == document_id)
        )
        return rows

    return read


def _line(product, quantity, unit_price, tax_rate="14", **kwargs):
    return DocumentLineCreate(
        product_id=product.id,
        product_code=product.code,
        product_name=product.name,
        quantity=Decimal(str(quantity)),
        unit_price=Decimal(unit_price),
        tax_rate=Decimal(tax_rate),
        **kwargs,
    )


@pytest.fixture
def line():
    return _line


@pytest.fixture
def invoice_request(organization, products):
    """
    Build (header, lines) for create().

    The default lines come to 684.00 + 316.00 = 1000.00.
    """
    def build(document_type=DocumentType.INVOICE, issue_date=date(2025, 3, 14), lines=None, **header):
        header.setdefault("customer_name", "Banco Sol, SA")
        header.setdefault("customer_tax_id", "5401234567")
        document_in = FiscalDocumentCreate(
            organization_id=organization.id,
            document_type=document_type,
            issue_date=issue_date,
            **header,
        )
        if lines is None:
            lines = [
                _line(products["A"], 2, "300.00"),
                _line(products["B"], 1, "277.19"),
            ]
        return document_in, lines

    return build
