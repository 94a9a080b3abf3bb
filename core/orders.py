"""
Order lifecycle management.

Owns the order state machine. Every status change is a compare-and-swap on
the current status, so concurrent writers (cancellation, payment initiation,
provider webhooks) can never both win.
"""
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from core.inventory import InventoryLedger, ReservationLine
from core.ledger import PaymentTransactionLedger
from database.models import (
    NormalizedStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentProvider,
    Product,
    ProductStatus,
    utcnow,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Provider outcomes never cancel an order; cancellation is a caller decision.
PAYMENT_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    status: frozenset(t for t in targets if t != OrderStatus.CANCELLED)
    for status, targets in ALLOWED_TRANSITIONS.items()
}

PAYMENT_OUTCOME_TARGETS: Dict[NormalizedStatus, OrderStatus] = {
    NormalizedStatus.PENDING: OrderStatus.PROCESSING,
    NormalizedStatus.PROCESSING: OrderStatus.PROCESSING,
    NormalizedStatus.COMPLETED: OrderStatus.PAID,
    NormalizedStatus.FAILED: OrderStatus.PAYMENT_FAILED,
    NormalizedStatus.CANCELLED: OrderStatus.PAYMENT_FAILED,
    NormalizedStatus.REFUNDED: OrderStatus.REFUNDED,
}

PAYABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED)
CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)
SETTLED_STATUSES = (OrderStatus.PAID, OrderStatus.REFUNDED, OrderStatus.CANCELLED)


def payment_path(current: OrderStatus, target: OrderStatus) -> Optional[List[OrderStatus]]:
    """
    Shortest chain of payment-driven transitions from ``current`` to ``target``.

    Returns:
        Optional[List[OrderStatus]]: Statuses to step through (excluding
        ``current``), an empty list if already there, None if unreachable
    """
    if current == target:
        return []
    queue = deque([(current, [])])
    seen = {current}
    while queue:
        status, path = queue.popleft()
        for nxt in PAYMENT_TRANSITIONS[status]:
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append((nxt, path + [nxt]))
    return None


@dataclass
class PaymentOutcome:
    """Result of applying a provider status to an order."""

    result: str  # applied, already_satisfied, rejected, ignored
    order: Optional[Order] = None
    target: Optional[OrderStatus] = None
    path: List[OrderStatus] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.result == "applied"


class OrderService:
    """
    Order creation, lookup, cancellation and status transitions.

    Methods that complete a unit of work (create, cancel, remove item,
    delete) commit the session. ``update_status`` and
    ``apply_payment_outcome`` only flush, so callers can combine them with
    ledger writes in one transaction.
    """

    def __init__(
        self,
        settings: Settings,
        inventory: Optional[InventoryLedger] = None,
        ledger: Optional[PaymentTransactionLedger] = None,
    ):
        """
        Initialize order service.

        Args:
            settings: Application settings
            inventory: Inventory ledger used for reservations
            ledger: Payment transaction ledger
        """
        self.settings = settings
        self.inventory = inventory or InventoryLedger()
        self.ledger = ledger or PaymentTransactionLedger()

    @staticmethod
    def _parse_lines(items: Sequence[Mapping[str, Any]]) -> List[ReservationLine]:
        """Validate requested lines and merge duplicates, keeping first-seen order."""
        if not items:
            raise ValidationError("Order must contain at least one item")

        merged: Dict[uuid.UUID, int] = {}
        for index, item in enumerate(items):
            raw_id = item.get("product_id")
            try:
                product_id = (
                    raw_id if isinstance(raw_id, uuid.UUID) else uuid.UUID(str(raw_id))
                )
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Invalid product id: {raw_id}", details={"item_index": index}
                )

            quantity = item.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError(
                    "Quantity must be a positive integer",
                    details={"item_index": index, "product_id": str(product_id)},
                )
            merged[product_id] = merged.get(product_id, 0) + quantity

        return [ReservationLine(pid, qty) for pid, qty in merged.items()]

    async def create_order(
        self,
        owner_id: uuid.UUID,
        items: Sequence[Mapping[str, Any]],
        db: AsyncSession,
        payment_method: Optional[PaymentProvider] = None,
    ) -> Order:
        """
        Create an order and reserve stock for all of its items.

        Either every line is reserved and the order is persisted in
        ``pending``, or nothing changes.

        Args:
            owner_id: Caller placing the order
            items: Sequence of ``{"product_id", "quantity"}`` mappings
            db: Database session
            payment_method: Provider the caller intends to pay with

        Returns:
            Order: The created order with its items

        Raises:
            ValidationError: Empty, malformed or oversized order
            NotFoundError: Unknown product
            InsufficientStock: Not enough units for some line
        """
        lines = self._parse_lines(items)

        result = await db.execute(
            select(Product).where(Product.id.in_([line.product_id for line in lines]))
        )
        products = {product.id: product for product in result.scalars().all()}

        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError(
                    f"Product {line.product_id} not found",
                    details={"product_id": str(line.product_id)},
                )
            if product.status != ProductStatus.ACTIVE:
                raise ValidationError(
                    f"Product {line.product_id} is not available for sale",
                    details={"product_id": str(line.product_id)},
                )

        total = sum(products[line.product_id].price_cents * line.quantity for line in lines)
        if total > self.settings.max_order_amount_cents:
            raise ValidationError(
                "Order total exceeds the allowed maximum",
                details={
                    "total_amount_cents": total,
                    "max_amount_cents": self.settings.max_order_amount_cents,
                },
            )

        try:
            await self.inventory.reserve_many(lines, db)

            order = Order(
                owner_id=owner_id,
                total_amount_cents=total,
                currency=self.settings.default_currency,
                status=OrderStatus.PENDING,
                payment_method=payment_method,
                version=1,
            )
            order.items = [
                OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price_cents=products[line.product_id].price_cents,
                )
                for line in lines
            ]
            db.add(order)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_order_created(order.currency, total)
        logger.info(
            "order_created",
            order_id=str(order.id),
            owner_id=str(owner_id),
            total_amount_cents=total,
            item_count=len(lines),
        )
        return order

    async def get_order(self, order_id: uuid.UUID, db: AsyncSession) -> Order:
        """
        Load an order with its items, bypassing any stale identity-map copy.

        Raises:
            NotFoundError: Unknown order
        """
        order = await db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found", details={"order_id": str(order_id)}
            )
        return order

    async def list_orders(
        self,
        owner_id: uuid.UUID,
        db: AsyncSession,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        """Orders placed by ``owner_id``, newest first."""
        stmt = select(Order).where(Order.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def update_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        expected_status: OrderStatus,
        db: AsyncSession,
        payment_method: Optional[PaymentProvider] = None,
        external_payment_reference: Optional[str] = None,
    ) -> Order:
        """
        Compare-and-swap the order status.

        ``UPDATE orders SET status=:new, version=version+1
        WHERE id=:id AND status=:expected``

        Args:
            order_id: Order to update
            new_status: Status to move to
            expected_status: Status the caller read
            db: Database session
            payment_method: Also set the payment method
            external_payment_reference: Also set the provider reference

        Returns:
            Order: The reloaded order

        Raises:
            InvalidTransition: Transition not in the state machine
            NotFoundError: Unknown order
            StaleStateError: Order is no longer in ``expected_status``
        """
        if new_status not in ALLOWED_TRANSITIONS[expected_status]:
            raise InvalidTransition(expected_status, new_status)

        values: Dict[str, Any] = {
            "status": new_status,
            "version": Order.version + 1,
            "updated_at": utcnow(),
        }
        if payment_method is not None:
            values["payment_method"] = payment_method
        if external_payment_reference is not None:
            values["external_payment_reference"] = external_payment_reference

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected_status)
            .values(**values)
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if result.scalar_one_or_none() is None:
            current = await db.get(Order, order_id, populate_existing=True)
            if current is None:
                raise NotFoundError(
                    f"Order {order_id} not found", details={"order_id": str(order_id)}
                )
            metrics.record_stale_state()
            logger.info(
                "order_status_stale",
                order_id=str(order_id),
                expected=expected_status.value,
                current=current.status.value,
                requested=new_status.value,
            )
            raise StaleStateError(order_id, expected_status, current.status)

        order = await self.get_order(order_id, db)
        metrics.record_status_transition(expected_status.value, new_status.value)
        logger.info(
            "order_status_updated",
            order_id=str(order_id),
            from_status=expected_status.value,
            to_status=new_status.value,
            version=order.version,
        )
        return order

    async def apply_payment_outcome(
        self,
        order_id: uuid.UUID,
        normalized: NormalizedStatus,
        db: AsyncSession,
        provider: Optional[PaymentProvider] = None,
        external_ref: Optional[str] = None,
    ) -> PaymentOutcome:
        """
        Drive the order toward the status implied by a provider outcome.

        Walks the shortest legal path of payment transitions, one CAS per
        hop. A lost CAS re-reads the order and plans again.

        Args:
            order_id: Order the payment belongs to
            normalized: Provider status in normalized form
            db: Database session
            provider: Provider that reported the outcome
            external_ref: Provider reference of the payment; recorded on an
                order that has none yet

        Returns:
            PaymentOutcome: applied, already_satisfied, rejected (no legal
            path, e.g. success after cancellation) or ignored (unknown status)

        Raises:
            NotFoundError: Unknown order
            ConflictError: CAS kept losing after the configured attempts
        """
        target = PAYMENT_OUTCOME_TARGETS.get(normalized)
        if target is None:
            logger.info(
                "payment_outcome_ignored", order_id=str(order_id), status=normalized.value
            )
            return PaymentOutcome(result="ignored")

        for _ in range(self.settings.status_cas_max_attempts):
            order = await self.get_order(order_id, db)
            path = payment_path(order.status, target)

            if path == []:
                return PaymentOutcome(result="already_satisfied", order=order, target=target)
            if path is None:
                logger.warning(
                    "payment_outcome_rejected",
                    order_id=str(order_id),
                    order_status=order.status.value,
                    payment_status=normalized.value,
                )
                return PaymentOutcome(result="rejected", order=order, target=target)

            current = order.status
            reference: Dict[str, Any] = {}
            if (
                provider is not None
                and external_ref
                and order.external_payment_reference != external_ref
                and (order.status in PAYABLE_STATUSES or not order.external_payment_reference)
            ):
                reference = {
                    "payment_method": provider,
                    "external_payment_reference": external_ref,
                }
            try:
                for step in path:
                    order = await self.update_status(order_id, step, current, db, **reference)
                    current = step
            except StaleStateError:
                continue
            return PaymentOutcome(result="applied", order=order, target=target, path=path)

        raise ConflictError(
            f"Order {order_id} kept changing while applying payment outcome",
            http_status=409,
        )

    async def cancel_order(self, order_id: uuid.UUID, db: AsyncSession) -> Order:
        """
        Cancel an order and return its reserved stock.

        Only the caller whose CAS wins releases inventory, so a cancel racing
        a webhook never releases stock twice.

        Raises:
            NotFoundError: Unknown order
            ConflictError: Order already paid, refunded or cancelled
            InvalidTransition: Order cannot be cancelled from its status
        """
        for _ in range(self.settings.status_cas_max_attempts):
            order = await self.get_order(order_id, db)

            if order.status in SETTLED_STATUSES:
                raise ConflictError(
                    f"Order {order_id} is already {order.status.value}",
                    details={"status": order.status.value},
                )
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidTransition(order.status, OrderStatus.CANCELLED)
            if await self.ledger.has_completed(order_id, db):
                raise ConflictError(
                    f"Order {order_id} has a captured payment",
                    details={"status": order.status.value},
                )

            try:
                order = await self.update_status(
                    order_id, OrderStatus.CANCELLED, order.status, db
                )
            except StaleStateError:
                continue

            try:
                await self.inventory.release_many(
                    [ReservationLine(item.product_id, item.quantity) for item in order.items],
                    db,
                    reason="cancel",
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

            logger.info("order_cancelled", order_id=str(order_id))
            return order

        raise ConflictError(
            f"Order {order_id} kept changing during cancellation", http_status=409
        )

    async def remove_item(
        self, order_id: uuid.UUID, item_id: uuid.UUID, db: AsyncSession
    ) -> Order:
        """
        Remove one line from a pending order and release its stock.

        Raises:
            NotFoundError: Unknown order or item
            ConflictError: Order is no longer pending
            ValidationError: The item is the last one left
            StaleStateError: Order changed while the item was being removed
        """
        order = await self.get_order(order_id, db)
        if order.status != OrderStatus.PENDING:
            raise ConflictError(
                "Items can only be removed from pending orders",
                details={"status": order.status.value},
            )

        item = next((i for i in order.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(
                f"Item {item_id} not found in order {order_id}",
                details={"item_id": str(item_id)},
            )
        if len(order.items) == 1:
            raise ValidationError("Cannot remove the last item; cancel the order instead")

        new_total = order.computed_total() - item.line_total_cents
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING,
                Order.version == order.version,
            )
            .values(total_amount_cents=new_total, version=Order.version + 1, updated_at=utcnow())
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await db.execute(stmt)
            if result.scalar_one_or_none() is None:
                current = await self.get_order(order_id, db)
                raise StaleStateError(order_id, OrderStatus.PENDING, current.status)

            await self.inventory.release(
                item.product_id, item.quantity, db, reason="item_removed"
            )
            await db.delete(item)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "order_item_removed",
            order_id=str(order_id),
            item_id=str(item_id),
            total_amount_cents=new_total,
        )
        return await self.get_order(order_id, db)

    async def delete_order(self, order_id: uuid.UUID, db: AsyncSession) -> None:
        """
        Hard-delete a cancelled order. Its payment transactions are kept.

        Raises:
            NotFoundError: Unknown order
            ConflictError: Order is not cancelled or has a captured payment
        """
        order = await self.get_order(order_id, db)
        if order.status != OrderStatus.CANCELLED:
            raise ConflictError(
                "Only cancelled orders can be deleted",
                details={"status": order.status.value},
            )
        if await self.ledger.has_completed(order_id, db):
            raise ConflictError("Orders with a captured payment cannot be deleted")

        await db.delete(order)
        await db.commit()
        logger.info("order_deleted", order_id=str(order_id))
