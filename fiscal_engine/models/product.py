import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_engine.database import Base
from fiscal_engine.db_types import Quantity, UUIDType


class ProductType(str, Enum):
    """SAF-T ProductType: goods or services."""
    PRODUCT = "P"
    SERVICE = "S"


class MovementType(str, Enum):
    SALE = "SALE"
    CREDIT_NOTE = "CREDIT_NOTE"
    CANCELLATION = "CANCELLATION"
    ADJUSTMENT = "ADJUSTMENT"


class Product(Base):
    """Catalog snapshot needed for stock and the SAF-T product master file."""
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_product_org_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    product_type: Mapped[str] = mapped_column(
        String(1),
        default=ProductType.PRODUCT.value,
        nullable=False,
        comment="P (goods), S (services)"
    )
    product_group: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unit_of_measure: Mapped[str] = mapped_column(String(20), default="UN", nullable=False)
    current_stock: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Product(code='{self.code}', stock={self.current_stock})>"


class StockMovement(Base):
    """Append-only stock ledger entry."""
    __tablename__ = "stock_movements"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    quantity_delta: Mapped[Decimal] = mapped_column(
        Quantity,
        nullable=False,
        comment="Positive = stock in, negative = stock out"
    )
    movement_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="SALE, CREDIT_NOTE, CANCELLATION, ADJUSTMENT"
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
