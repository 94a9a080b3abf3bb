"""Refunds of paid orders through the provider that settled them."""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import (
    ConflictError,
    ManualRefundRequired,
    ProviderError,
    StaleStateError,
    UnsupportedOperation,
    ValidationError,
)
from core.ledger import PaymentTransactionLedger
from core.orders import OrderService
from core.payment_processor import resolve_gateway
from database.models import (
    NormalizedStatus,
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentTransaction,
)
from integrations.gateways import PaymentGateway, RefundResult
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class RefundOutcome:
    """A completed refund."""

    order: Order
    transaction: PaymentTransaction
    refund: RefundResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refund": {
                "id": self.refund.refund_id,
                "amount_cents": self.refund.amount_cents,
                "status": self.refund.provider_status,
            },
            "payment": self.transaction.to_public_dict(),
            "order": self.order.to_public_dict(),
        }


class RefundCoordinator:
    """
    Issues refunds and moves orders from paid to refunded.

    Providers without a refund API are recorded in the audit trail and
    reported back as needing a manual refund.
    """

    def __init__(
        self,
        orders: OrderService,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        ledger: Optional[PaymentTransactionLedger] = None,
    ):
        self.orders = orders
        self.gateways = gateways
        self.ledger = ledger or orders.ledger

    async def refund(
        self,
        order_id: uuid.UUID,
        db: AsyncSession,
        amount_cents: Optional[int] = None,
    ) -> RefundOutcome:
        """
        Refund a paid order, fully or partially.

        Args:
            order_id: Order to refund
            db: Database session
            amount_cents: Amount to refund, defaults to the order total

        Returns:
            RefundOutcome: Refund, updated transaction and order

        Raises:
            NotFoundError: Unknown order
            ConflictError: Order is not paid or has no settled payment
            ValidationError: Amount is not within ``0 < amount <= total``
            ManualRefundRequired: Provider cannot refund through its API
            ProviderError: Provider refused or was unreachable
        """
        order = await self.orders.get_order(order_id, db)
        if order.status != OrderStatus.PAID:
            raise ConflictError(
                f"Only paid orders can be refunded; order is {order.status.value}",
                details={"status": order.status.value},
            )

        txn = await self.ledger.settled_transaction(order_id, db)
        if txn is None:
            raise ConflictError(f"Order {order_id} has no settled payment to refund")

        amount = order.total_amount_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > order.total_amount_cents:
            raise ValidationError(
                "Refund amount must be positive and not exceed the order total",
                details={"amount_cents": amount, "total_amount_cents": order.total_amount_cents},
            )

        gateway = resolve_gateway(self.gateways, txn.provider)
        logger.info(
            "refund_started",
            order_id=str(order_id),
            provider=txn.provider.value,
            external_ref=txn.external_transaction_id,
            amount_cents=amount,
        )

        try:
            result = await gateway.refund(
                txn.external_transaction_id,
                amount_cents=amount,
                idempotency_key=f"refund:{txn.external_transaction_id}:{amount}",
            )
        except UnsupportedOperation:
            await self.ledger.append_event(
                order_id,
                "refund.manual_required",
                {"amount_cents": amount, "external_ref": txn.external_transaction_id},
                db,
                transaction=txn,
            )
            await db.commit()
            metrics.record_refund(txn.provider.value, "manual_required")
            logger.warning(
                "refund_manual_required", order_id=str(order_id), provider=txn.provider.value
            )
            raise ManualRefundRequired(order_id, txn.provider.value)
        except ProviderError:
            metrics.record_refund(txn.provider.value, "failed")
            raise

        try:
            await self.ledger.advance(
                txn,
                NormalizedStatus.REFUNDED,
                "refunded",
                {"refund": result.raw},
                db,
            )
            await self.ledger.append_event(
                order_id,
                "refund.created",
                {
                    "refund_id": result.refund_id,
                    "amount_cents": amount,
                    "provider_status": result.provider_status,
                },
                db,
                transaction=txn,
            )
            try:
                order = await self.orders.update_status(
                    order_id, OrderStatus.REFUNDED, OrderStatus.PAID, db
                )
            except StaleStateError as e:
                if e.current != OrderStatus.REFUNDED:
                    raise
                order = await self.orders.get_order(order_id, db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_refund(txn.provider.value, "refunded")
        logger.info(
            "refund_completed",
            order_id=str(order_id),
            refund_id=result.refund_id,
            amount_cents=amount,
        )
        return RefundOutcome(order=order, transaction=txn, refund=result)
