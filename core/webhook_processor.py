"""
Provider webhook processing with signature verification and deduplication.

Implements:
- Fail-closed signature verification per provider
- Delivery deduplication (Redis cache over a durable table)
- Transaction-level replay detection
- Order status reconciliation through compare-and-swap
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, SignatureError, ValidationError
from core.idempotency import WebhookDeduplicator
from core.ledger import PaymentTransactionLedger, can_advance
from core.orders import OrderService
from database.models import NormalizedStatus, Order, OrderStatus, PaymentProvider
from integrations.gateways import PaymentGateway, WebhookEvent
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class WebhookResult:
    """What processing a delivery did."""

    provider: PaymentProvider
    outcome: str  # applied, duplicate, replay, unknown_order, ignored, mismatch
    delivery_key: Optional[str] = None
    external_ref: Optional[str] = None
    order_id: Optional[uuid.UUID] = None
    order_status: Optional[OrderStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "outcome": self.outcome,
            "delivery_key": self.delivery_key,
            "external_ref": self.external_ref,
            "order_id": str(self.order_id) if self.order_id else None,
            "order_status": self.order_status.value if self.order_status else None,
        }


class WebhookProcessor:
    """
    Applies provider notifications to transactions and orders.

    Every accepted delivery is recorded in the same database transaction as
    the changes it caused, so redeliveries and concurrent duplicates are
    no-ops.
    """

    def __init__(
        self,
        orders: OrderService,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        deduplicator: WebhookDeduplicator,
        ledger: Optional[PaymentTransactionLedger] = None,
    ):
        """
        Initialize webhook processor.

        Args:
            orders: Order service used for status reconciliation
            gateways: Gateway per payment provider
            deduplicator: Delivery deduplicator
            ledger: Payment transaction ledger
        """
        self.orders = orders
        self.gateways = gateways
        self.deduplicator = deduplicator
        self.ledger = ledger or orders.ledger

    async def handle(
        self,
        provider: PaymentProvider,
        raw_payload: bytes,
        signature: Optional[str],
        db: AsyncSession,
    ) -> WebhookResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Args:
            provider: Provider the webhook endpoint belongs to
            raw_payload: Raw body (card) or the ``data`` field (local)
            signature: Signature sent by the provider
            db: Database session

        Returns:
            WebhookResult: Outcome of the delivery

        Raises:
            SignatureError: Signature missing or invalid; nothing was touched
            ValidationError: Payload is malformed
        """
        started = time.perf_counter()
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValidationError(f"No gateway configured for provider '{provider.value}'")

        if not gateway.verify_webhook_signature(raw_payload, signature):
            metrics.record_webhook(provider.value, "rejected", time.perf_counter() - started)
            logger.warning("webhook_signature_invalid", provider=provider.value)
            raise SignatureError("Invalid webhook signature")

        try:
            event = gateway.parse_webhook(raw_payload)
        except ValidationError:
            metrics.record_webhook(provider.value, "rejected", time.perf_counter() - started)
            logger.warning("webhook_payload_invalid", provider=provider.value)
            raise

        log = logger.bind(
            provider=provider.value,
            delivery_key=event.delivery_key,
            event_type=event.event_type,
            external_ref=event.external_ref,
        )
        log.info("processing_webhook_event", provider_status=event.provider_status)

        result = WebhookResult(
            provider=provider,
            outcome="duplicate",
            delivery_key=event.delivery_key,
            external_ref=event.external_ref,
            order_id=event.order_id,
        )

        if await self.deduplicator.is_processed(provider, event.delivery_key, db):
            log.info("webhook_event_already_processed")
            metrics.record_webhook(provider.value, "duplicate", time.perf_counter() - started)
            return result

        try:
            result = await self._apply(provider, event, result, db)
            await self.deduplicator.record(
                provider, event.delivery_key, result.outcome, db, external_ref=event.external_ref
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if not await self.deduplicator.is_processed(provider, event.delivery_key, db):
                # Lost a race on the transaction row; the provider will redeliver.
                log.warning("webhook_transaction_raced")
                raise ConflictError("Payment changed concurrently, retry later", http_status=409)
            log.info("webhook_event_raced")
            result.outcome = "duplicate"
            metrics.record_webhook(provider.value, "duplicate", time.perf_counter() - started)
            return result
        except Exception:
            await db.rollback()
            raise

        await self.deduplicator.remember(provider, event.delivery_key)
        metrics.record_webhook(provider.value, result.outcome, time.perf_counter() - started)
        log.info(
            "webhook_event_processed",
            outcome=result.outcome,
            order_id=str(result.order_id) if result.order_id else None,
        )
        return result

    async def _apply(
        self,
        provider: PaymentProvider,
        event: WebhookEvent,
        result: WebhookResult,
        db: AsyncSession,
    ) -> WebhookResult:
        if not event.external_ref:
            result.outcome = "ignored"
            return result

        txn = await self.ledger.find(provider, event.external_ref, db)

        if txn is not None and not can_advance(txn.status, event.normalized):
            logger.info(
                "webhook_replay_ignored",
                external_ref=event.external_ref,
                transaction_status=txn.status.value,
                event_status=event.normalized.value,
            )
            result.outcome = "replay"
            result.order_id = txn.order_id
            return result

        if txn is None and event.normalized == NormalizedStatus.UNKNOWN:
            result.outcome = "ignored"
            return result

        order_id = txn.order_id if txn is not None else event.order_id
        order = None
        if order_id is not None:
            order = await db.get(Order, order_id, populate_existing=True)
        if order is None:
            logger.warning(
                "webhook_unknown_order",
                external_ref=event.external_ref,
                order_id=str(order_id) if order_id else None,
            )
            result.outcome = "unknown_order"
            return result
        result.order_id = order.id

        try:
            txn, changed = await self.ledger.upsert_status(
                order_id=order.id,
                provider=provider,
                external_ref=event.external_ref,
                status=event.normalized,
                provider_status=event.provider_status,
                amount_cents=event.amount_cents or order.total_amount_cents,
                currency=event.currency or order.currency,
                provider_response={"last_event": event.raw},
                db=db,
            )
        except ConflictError as e:
            logger.warning(
                "webhook_transaction_conflict", order_id=str(order.id), error=e.message
            )
            await self.ledger.append_event(
                order.id,
                "webhook.ignored",
                {"delivery_key": event.delivery_key, "reason": e.message},
                db,
                provider=provider,
            )
            result.outcome = "mismatch"
            result.order_status = order.status
            return result

        await self.ledger.append_event(
            order.id,
            f"webhook.{event.event_type}",
            {
                "delivery_key": event.delivery_key,
                "provider_status": event.provider_status,
                "normalized": event.normalized.value,
                "changed": changed,
            },
            db,
            transaction=txn,
        )

        if not changed:
            result.outcome = "replay"
            result.order_status = order.status
            return result

        outcome = await self.orders.apply_payment_outcome(
            order.id, event.normalized, db, provider=provider, external_ref=event.external_ref
        )
        result.order_status = outcome.order.status if outcome.order is not None else order.status

        if outcome.result == "rejected":
            # e.g. a capture reported after the order was cancelled
            logger.warning(
                "webhook_business_mismatch",
                order_id=str(order.id),
                order_status=result.order_status.value,
                payment_status=event.normalized.value,
            )
            result.outcome = "mismatch"
            return result

        result.outcome = "ignored" if outcome.result == "ignored" else "applied"
        return result
