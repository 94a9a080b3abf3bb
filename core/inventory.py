"""
Inventory ledger: atomic reserve/release of per-product stock.

Every stock change is a single conditional UPDATE, so concurrent callers can
never drive ``inventory_count`` below zero. Batch reservations compensate
already-reserved lines in reverse order when a later line fails.
"""
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InsufficientStock, NotFoundError, ValidationError
from database.models import Product, ProductStatus, utcnow
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReservationLine:
    """Quantity of one product to reserve or release."""

    product_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class Reservation:
    """A successful reservation and the stock left after it."""

    product_id: uuid.UUID
    quantity: int
    remaining: int


class InventoryLedger:
    """Atomic stock reservations against the products table."""

    async def reserve(self, product_id: uuid.UUID, quantity: int, db: AsyncSession) -> int:
        """
        Reserve ``quantity`` units of a product.

        The availability check and the decrement happen in one statement:
        ``UPDATE ... WHERE inventory_count >= :qty``.

        Args:
            product_id: Product to reserve
            quantity: Units to take, must be positive
            db: Database session

        Returns:
            int: Inventory count after the reservation

        Raises:
            ValidationError: Non-positive quantity or inactive product
            NotFoundError: Unknown product
            InsufficientStock: Not enough units available
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")

        stmt = (
            update(Product)
            .where(
                Product.id == product_id,
                Product.status == ProductStatus.ACTIVE,
                Product.inventory_count >= quantity,
            )
            .values(inventory_count=Product.inventory_count - quantity, updated_at=utcnow())
            .returning(Product.inventory_count)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        remaining = result.scalar_one_or_none()

        if remaining is not None:
            metrics.record_reservation("reserved")
            logger.info(
                "inventory_reserved",
                product_id=str(product_id),
                quantity=quantity,
                remaining=remaining,
            )
            return remaining

        # The write matched nothing; read only to explain why.
        product = await db.get(Product, product_id, populate_existing=True)
        if product is None:
            metrics.record_reservation("missing")
            raise NotFoundError(
                f"Product {product_id} not found", details={"product_id": str(product_id)}
            )
        if product.status != ProductStatus.ACTIVE:
            metrics.record_reservation("inactive")
            raise ValidationError(
                f"Product {product_id} is not available for sale",
                details={"product_id": str(product_id)},
            )

        metrics.record_reservation("insufficient")
        logger.warning(
            "inventory_insufficient",
            product_id=str(product_id),
            requested=quantity,
            available=product.inventory_count,
        )
        raise InsufficientStock(product_id, quantity, product.inventory_count)

    async def release(
        self,
        product_id: uuid.UUID,
        quantity: int,
        db: AsyncSession,
        reason: str = "cancel",
    ) -> Optional[int]:
        """
        Return ``quantity`` units to stock.

        Args:
            product_id: Product to release
            quantity: Units to give back
            db: Database session
            reason: Metrics label for why stock is returned

        Returns:
            Optional[int]: Inventory count after the release, None if the
            product no longer exists
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")

        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(inventory_count=Product.inventory_count + quantity, updated_at=utcnow())
            .returning(Product.inventory_count)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        remaining = result.scalar_one_or_none()

        if remaining is None:
            logger.warning(
                "inventory_release_product_missing",
                product_id=str(product_id),
                quantity=quantity,
            )
            return None

        metrics.record_release(reason)
        logger.info(
            "inventory_released",
            product_id=str(product_id),
            quantity=quantity,
            remaining=remaining,
            reason=reason,
        )
        return remaining

    async def reserve_many(
        self, lines: Sequence[ReservationLine], db: AsyncSession
    ) -> List[Reservation]:
        """
        Reserve every line or none of them.

        On the first failure, lines reserved so far are released in reverse
        order before the original error is re-raised.

        Args:
            lines: Products and quantities to reserve
            db: Database session

        Returns:
            List[Reservation]: One entry per line, in input order
        """
        reserved: List[Reservation] = []
        try:
            for line in lines:
                remaining = await self.reserve(line.product_id, line.quantity, db)
                reserved.append(Reservation(line.product_id, line.quantity, remaining))
        except Exception:
            await self._compensate(reserved, db)
            raise
        return reserved

    async def release_many(
        self, lines: Sequence[ReservationLine], db: AsyncSession, reason: str = "cancel"
    ) -> None:
        """Release every line."""
        for line in lines:
            await self.release(line.product_id, line.quantity, db, reason=reason)

    async def available(self, product_id: uuid.UUID, db: AsyncSession) -> int:
        """
        Current stock for a product.

        Raises:
            NotFoundError: Unknown product
        """
        result = await db.execute(
            select(Product.inventory_count).where(Product.id == product_id)
        )
        count = result.scalar_one_or_none()
        if count is None:
            raise NotFoundError(
                f"Product {product_id} not found", details={"product_id": str(product_id)}
            )
        return count

    async def _compensate(self, reserved: List[Reservation], db: AsyncSession) -> None:
        for reservation in reversed(reserved):
            try:
                await self.release(
                    reservation.product_id, reservation.quantity, db, reason="compensation"
                )
            except Exception as e:
                # Left for the surrounding transaction rollback; the original
                # reservation error is what the caller needs to see.
                logger.error(
                    "inventory_compensation_failed",
                    product_id=str(reservation.product_id),
                    quantity=reservation.quantity,
                    error=str(e),
                )
