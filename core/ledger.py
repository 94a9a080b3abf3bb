"""
Payment transaction ledger.

Keeps one row per provider payment attempt plus an append-only audit trail of
every provider interaction. Status changes only move forward, so replayed or
late provider events leave the ledger untouched.
"""
import uuid
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, NotFoundError
from database.models import (
    OPEN_TRANSACTION_STATUSES,
    NormalizedStatus,
    PaymentEvent,
    PaymentProvider,
    PaymentTransaction,
    utcnow,
)

logger = structlog.get_logger(__name__)

_ADVANCES: Dict[NormalizedStatus, frozenset] = {
    NormalizedStatus.UNKNOWN: frozenset(
        {
            NormalizedStatus.PENDING,
            NormalizedStatus.PROCESSING,
            NormalizedStatus.COMPLETED,
            NormalizedStatus.FAILED,
            NormalizedStatus.CANCELLED,
        }
    ),
    NormalizedStatus.PENDING: frozenset(
        {
            NormalizedStatus.PROCESSING,
            NormalizedStatus.COMPLETED,
            NormalizedStatus.FAILED,
            NormalizedStatus.CANCELLED,
        }
    ),
    NormalizedStatus.PROCESSING: frozenset(
        {NormalizedStatus.COMPLETED, NormalizedStatus.FAILED, NormalizedStatus.CANCELLED}
    ),
    # A declined attempt can still be captured later on the same intent.
    NormalizedStatus.FAILED: frozenset({NormalizedStatus.COMPLETED}),
    NormalizedStatus.COMPLETED: frozenset({NormalizedStatus.REFUNDED}),
    NormalizedStatus.CANCELLED: frozenset(),
    NormalizedStatus.REFUNDED: frozenset(),
}


def can_advance(current: NormalizedStatus, new: NormalizedStatus) -> bool:
    """Whether a transaction in ``current`` may move to ``new``."""
    return new in _ADVANCES[current]


class PaymentTransactionLedger:
    """Record of provider payment attempts and their audit events."""

    async def find(
        self, provider: PaymentProvider, external_ref: str, db: AsyncSession
    ) -> Optional[PaymentTransaction]:
        """Look up a transaction by its provider-unique reference."""
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.provider == provider,
            PaymentTransaction.external_transaction_id == external_ref,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_reference(
        self, external_ref: str, db: AsyncSession
    ) -> PaymentTransaction:
        """
        Look up a transaction by reference without knowing the provider.

        Raises:
            NotFoundError: No transaction carries the reference
            ConflictError: The reference is used by both providers
        """
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.external_transaction_id == external_ref
        )
        result = await db.execute(stmt)
        matches = list(result.scalars().all())
        if not matches:
            raise NotFoundError(f"Payment {external_ref} not found")
        if len(matches) > 1:
            raise ConflictError(f"Payment reference {external_ref} is ambiguous")
        return matches[0]

    async def for_order(
        self, order_id: uuid.UUID, db: AsyncSession
    ) -> List[PaymentTransaction]:
        """All transactions of an order, newest first."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def latest_for_order(
        self, order_id: uuid.UUID, db: AsyncSession
    ) -> Optional[PaymentTransaction]:
        """Most recent payment attempt of an order."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_order(self, order_id: uuid.UUID, db: AsyncSession) -> int:
        """Number of payment attempts made for an order."""
        stmt = select(func.count()).where(PaymentTransaction.order_id == order_id)
        result = await db.execute(stmt)
        return int(result.scalar_one())

    async def open_for_order(
        self, order_id: uuid.UUID, db: AsyncSession
    ) -> Optional[PaymentTransaction]:
        """The single non-terminal transaction of an order, if any."""
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.status.in_(OPEN_TRANSACTION_STATUSES),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def settled_transaction(
        self, order_id: uuid.UUID, db: AsyncSession
    ) -> Optional[PaymentTransaction]:
        """The most recent completed transaction of an order."""
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == NormalizedStatus.COMPLETED,
            )
            .order_by(PaymentTransaction.updated_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def has_completed(self, order_id: uuid.UUID, db: AsyncSession) -> bool:
        """Whether money was captured for the order."""
        return await self.settled_transaction(order_id, db) is not None

    async def record_initiated(
        self,
        order_id: uuid.UUID,
        provider: PaymentProvider,
        external_ref: str,
        amount_cents: int,
        currency: str,
        status: NormalizedStatus,
        provider_status: Optional[str],
        provider_response: Optional[Dict[str, Any]],
        db: AsyncSession,
    ) -> PaymentTransaction:
        """
        Record a freshly created provider payment.

        Re-recording the same ``(provider, external_ref)`` returns the
        existing row, which makes retried initiations harmless.

        Raises:
            ConflictError: Another attempt for the order is still open
        """
        existing = await self.find(provider, external_ref, db)
        if existing is not None:
            return existing

        open_txn = await self.open_for_order(order_id, db)
        if open_txn is not None:
            raise ConflictError(
                f"Order {order_id} already has an open payment",
                details={"payment_id": open_txn.external_transaction_id},
            )

        txn = PaymentTransaction(
            order_id=order_id,
            provider=provider,
            external_transaction_id=external_ref,
            amount_cents=amount_cents,
            currency=currency.upper(),
            status=status,
            provider_status=provider_status,
            provider_response=provider_response,
        )
        db.add(txn)
        await db.flush()

        logger.info(
            "payment_transaction_recorded",
            order_id=str(order_id),
            provider=provider.value,
            external_ref=external_ref,
            status=status.value,
        )
        return txn

    async def upsert_status(
        self,
        order_id: uuid.UUID,
        provider: PaymentProvider,
        external_ref: str,
        status: NormalizedStatus,
        provider_status: Optional[str],
        amount_cents: int,
        currency: str,
        provider_response: Optional[Dict[str, Any]],
        db: AsyncSession,
    ) -> Tuple[PaymentTransaction, bool]:
        """
        Create the transaction or move it forward to ``status``.

        Returns:
            Tuple[PaymentTransaction, bool]: The row and whether it changed
        """
        txn = await self.find(provider, external_ref, db)
        if txn is None:
            if status in OPEN_TRANSACTION_STATUSES:
                open_txn = await self.open_for_order(order_id, db)
                if open_txn is not None:
                    raise ConflictError(
                        f"Order {order_id} already has an open payment",
                        details={"payment_id": open_txn.external_transaction_id},
                    )
            txn = PaymentTransaction(
                order_id=order_id,
                provider=provider,
                external_transaction_id=external_ref,
                amount_cents=amount_cents,
                currency=currency.upper(),
                status=status,
                provider_status=provider_status,
                provider_response=provider_response,
            )
            db.add(txn)
            await db.flush()
            logger.info(
                "payment_transaction_created_from_provider",
                order_id=str(order_id),
                provider=provider.value,
                external_ref=external_ref,
                status=status.value,
            )
            return txn, True

        changed = await self.advance(txn, status, provider_status, provider_response, db)
        return txn, changed

    async def advance(
        self,
        txn: PaymentTransaction,
        status: NormalizedStatus,
        provider_status: Optional[str],
        provider_response: Optional[Dict[str, Any]],
        db: AsyncSession,
    ) -> bool:
        """
        Move ``txn`` to ``status`` if the advance table allows it.

        Returns:
            bool: True if the row changed
        """
        if not can_advance(txn.status, status):
            logger.info(
                "payment_transaction_advance_skipped",
                external_ref=txn.external_transaction_id,
                current=txn.status.value,
                requested=status.value,
            )
            return False

        previous = txn.status
        txn.status = status
        txn.provider_status = provider_status
        if provider_response:
            txn.provider_response = {**(txn.provider_response or {}), **provider_response}
        txn.updated_at = utcnow()
        await db.flush()

        logger.info(
            "payment_transaction_advanced",
            external_ref=txn.external_transaction_id,
            previous=previous.value,
            status=status.value,
        )
        return True

    async def append_event(
        self,
        order_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        db: AsyncSession,
        transaction: Optional[PaymentTransaction] = None,
        provider: Optional[PaymentProvider] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentEvent:
        """
        Append an audit event. Events are never updated or deleted.

        Args:
            order_id: Order the interaction belongs to
            event_type: Event type (e.g., 'payment.created')
            event_data: Event payload
            db: Database session
            transaction: Transaction involved, if any
            provider: Provider involved, if any
            correlation_id: Correlation ID for tracing
        """
        event = PaymentEvent(
            order_id=order_id,
            transaction_id=transaction.id if transaction is not None else None,
            provider=provider or (transaction.provider if transaction is not None else None),
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id or uuid.uuid4(),
        )
        db.add(event)
        await db.flush()
        return event

    async def events_for_order(
        self, order_id: uuid.UUID, db: AsyncSession
    ) -> List[PaymentEvent]:
        """Audit trail of an order, oldest first."""
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.order_id == order_id)
            .order_by(PaymentEvent.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
