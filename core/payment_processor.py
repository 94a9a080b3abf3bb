"""
Payment processor with per-order locking and idempotent initiation.

Orchestrates the payment flow for an order:
1. Validate the order is payable
2. Acquire the per-order payment lock
3. Derive the idempotency key from the attempt number
4. Call the provider gateway (nothing is written if it fails)
5. Record the transaction and its audit event
6. Compare-and-swap the order into processing
7. Commit and release the lock
"""
import uuid
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from core.ledger import PaymentTransactionLedger
from core.locking import OrderPaymentLock
from core.orders import PAYABLE_STATUSES, OrderService
from database.models import OrderStatus, PaymentProvider, PaymentTransaction
from integrations.gateways import PaymentGateway

logger = structlog.get_logger(__name__)


def resolve_gateway(
    gateways: Mapping[PaymentProvider, PaymentGateway], provider: PaymentProvider
) -> PaymentGateway:
    """Look up the gateway for ``provider``."""
    gateway = gateways.get(provider)
    if gateway is None:
        raise ValidationError(
            f"Payment method '{getattr(provider, 'value', provider)}' is not supported"
        )
    return gateway


class PaymentProcessor:
    """
    Main payment processing orchestrator.

    Creates provider payments for orders and polls providers for their
    outcome, keeping the transaction ledger and the order status in step.
    """

    def __init__(
        self,
        settings: Settings,
        orders: OrderService,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        ledger: Optional[PaymentTransactionLedger] = None,
        lock: Optional[OrderPaymentLock] = None,
    ):
        """
        Initialize payment processor.

        Args:
            settings: Application settings
            orders: Order service used for status transitions
            gateways: Gateway per payment provider
            ledger: Payment transaction ledger
            lock: Per-order payment lock (no-op without Redis)
        """
        self.settings = settings
        self.orders = orders
        self.gateways = gateways
        self.ledger = ledger or orders.ledger
        self.lock = lock or OrderPaymentLock(settings)

        logger.info(
            "payment_processor_initialized",
            providers=[p.value for p in gateways],
        )

    async def create_payment(
        self,
        order_id: uuid.UUID,
        provider: PaymentProvider,
        db: AsyncSession,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a provider payment for an order.

        The idempotency key is ``<order_id>:<attempt>``, where attempt counts
        the order's previous transactions. A retried request after a
        timeout therefore reuses the same key and the provider returns the
        same payment.

        Args:
            order_id: Order to pay
            provider: Provider to pay with
            db: Database session
            return_url: Where the provider sends the customer afterwards

        Returns:
            Dict[str, Any]: ``{"payment": ..., "order": ...}``

        Raises:
            NotFoundError: Unknown order
            InvalidTransition: Order is not pending or payment_failed
            ConflictError: Concurrent initiation for the same order
            ProviderError: Provider call failed; nothing was recorded
        """
        correlation_id = uuid.uuid4()
        gateway = resolve_gateway(self.gateways, provider)

        logger.info(
            "payment_creation_started",
            correlation_id=str(correlation_id),
            order_id=str(order_id),
            provider=provider.value,
        )

        async with self.lock.hold(order_id):
            order = await self.orders.get_order(order_id, db)
            if order.status not in PAYABLE_STATUSES:
                raise InvalidTransition(
                    order.status,
                    OrderStatus.PROCESSING,
                    message=f"Order {order_id} cannot be paid while {order.status.value}",
                )
            if order.total_amount_cents <= 0:
                raise ValidationError("Order total must be positive to be paid")

            expected_status = order.status
            attempt = await self.ledger.count_for_order(order_id, db) + 1
            idempotency_key = f"{order_id}:{attempt}"

            initiation = await gateway.create_payment(
                order_id=order_id,
                amount_cents=order.total_amount_cents,
                currency=order.currency,
                description=f"Order {order_id}",
                metadata={
                    "order_id": str(order_id),
                    "owner_id": str(order.owner_id),
                    "attempt": str(attempt),
                },
                idempotency_key=idempotency_key,
                return_url=return_url,
            )

            try:
                txn = await self.ledger.record_initiated(
                    order_id=order_id,
                    provider=provider,
                    external_ref=initiation.external_ref,
                    amount_cents=order.total_amount_cents,
                    currency=order.currency,
                    status=gateway.normalize_status(initiation.provider_status),
                    provider_status=initiation.provider_status,
                    provider_response=initiation.raw,
                    db=db,
                )
                await self.ledger.append_event(
                    order_id,
                    "payment.created",
                    {
                        "external_ref": initiation.external_ref,
                        "provider_status": initiation.provider_status,
                        "amount_cents": order.total_amount_cents,
                        "currency": order.currency,
                        "attempt": attempt,
                    },
                    db,
                    transaction=txn,
                    correlation_id=correlation_id,
                )

                try:
                    order = await self.orders.update_status(
                        order_id,
                        OrderStatus.PROCESSING,
                        expected_status,
                        db,
                        payment_method=provider,
                        external_payment_reference=initiation.external_ref,
                    )
                except StaleStateError:
                    order = await self.orders.get_order(order_id, db)
                    already_initiated = (
                        order.external_payment_reference == initiation.external_ref
                        and order.status in (OrderStatus.PROCESSING, OrderStatus.PAID)
                    )
                    if not already_initiated:
                        raise ConflictError(
                            f"Order {order_id} changed while the payment was being created",
                            http_status=409,
                        )

                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "payment_creation_raced",
                    correlation_id=str(correlation_id),
                    order_id=str(order_id),
                )
                raise ConflictError(
                    f"Payment for order {order_id} is already being created",
                    http_status=409,
                )
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "payment_created",
            correlation_id=str(correlation_id),
            order_id=str(order_id),
            provider=provider.value,
            external_ref=initiation.external_ref,
        )

        payment = txn.to_public_dict()
        payment["client_artifact"] = initiation.client_artifact
        return {"payment": payment, "order": order.to_public_dict()}

    async def get_transaction_by_reference(
        self, external_ref: str, db: AsyncSession
    ) -> PaymentTransaction:
        """Look up a transaction by its provider reference."""
        return await self.ledger.find_by_reference(external_ref, db)

    async def confirm_payment(self, external_ref: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Poll the provider for a payment's outcome and apply it.

        Args:
            external_ref: Provider payment reference
            db: Database session

        Returns:
            Dict[str, Any]: ``{"payment": ..., "order": ...}``; ``order`` is
            None if the order was deleted

        Raises:
            NotFoundError: Unknown payment reference
            ProviderError: Provider call failed
        """
        txn = await self.ledger.find_by_reference(external_ref, db)
        gateway = resolve_gateway(self.gateways, txn.provider)
        result = await gateway.confirm_payment(external_ref)

        order = None
        try:
            changed = await self.ledger.advance(
                txn, result.normalized, result.provider_status, {"last_poll": result.raw}, db
            )
            await self.ledger.append_event(
                txn.order_id,
                "payment.confirmation_polled",
                {
                    "external_ref": external_ref,
                    "provider_status": result.provider_status,
                    "normalized": result.normalized.value,
                    "changed": changed,
                },
                db,
                transaction=txn,
            )
            if changed:
                outcome = await self.orders.apply_payment_outcome(
                    txn.order_id,
                    result.normalized,
                    db,
                    provider=txn.provider,
                    external_ref=txn.external_transaction_id,
                )
                order = outcome.order
            if order is None:
                order = await self.orders.get_order(txn.order_id, db)
            await db.commit()
        except NotFoundError:
            await db.commit()
            logger.warning("payment_confirmed_for_missing_order", external_ref=external_ref)
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "payment_confirmation_applied",
            external_ref=external_ref,
            provider_status=result.provider_status,
            normalized=result.normalized.value,
        )
        return {
            "payment": txn.to_public_dict(),
            "order": order.to_public_dict() if order is not None else None,
        }

    async def get_payment_status(self, order_id: uuid.UUID, db: AsyncSession) -> Dict[str, Any]:
        """
        Payment summary of an order.

        Returns:
            Dict[str, Any]: order_id, payment_id, status, total_amount,
            payment_method and the latest transaction status
        """
        order = await self.orders.get_order(order_id, db)
        latest = await self.ledger.latest_for_order(order_id, db)
        return {
            "order_id": str(order.id),
            "payment_id": order.external_payment_reference,
            "status": order.status.value,
            "total_amount": order.total_amount_cents,
            "currency": order.currency,
            "payment_method": order.payment_method.value if order.payment_method else None,
            "payment_status": latest.status.value if latest is not None else None,
        }
