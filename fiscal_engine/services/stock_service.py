import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_engine.core.exceptions import NotFoundError
from fiscal_engine.models.product import MovementType, Product, StockMovement

logger = logging.getLogger(__name__)


class StockAdjustmentService:
    """
    Applies stock deltas tied to documents.

    Runs on the caller's session so movements commit or roll back together
    with the document change that caused them.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_movement(
        self,
        product_id: uuid.UUID,
        delta: Decimal,
        reason: Optional[str],
        reference_document_id: Optional[uuid.UUID],
        movement_type: MovementType = MovementType.ADJUSTMENT,
    ) -> StockMovement:
        """
        Add ``delta`` to the product's stock and append a ledger row.

        Raises:
            NotFoundError: the product does not exist
        """
        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(current_stock=Product.current_stock + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError(
                "Product not found",
                details={"product_id": str(product_id)},
            )

        movement = StockMovement(
            product_id=product_id,
            quantity_delta=delta,
            movement_type=MovementType(movement_type).value,
            reason=reason,
            reference_document_id=reference_document_id,
        )
        self.db.add(movement)
        await self.db.flush()

        logger.debug(f"Stock {movement.movement_type} {delta:+} for product {product_id}")
        return movement
