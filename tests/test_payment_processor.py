"""
Tests for payment initiation, confirmation polling and the per-order lock.
"""
import base64
import json
import uuid
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import pytest
import pytest_asyncio
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from core.ledger import PaymentTransactionLedger
from core.locking import OrderPaymentLock
from core.orders import OrderService
from core.payment_processor import PaymentProcessor
from database.models import NormalizedStatus, Order, OrderStatus, PaymentProvider
from integrations.card_gateway import CardGateway
from integrations.stripe_client import StripeError, StripeErrorType


@pytest_asyncio.fixture
async def order(
    test_db: AsyncSession, order_service: OrderService, products: Dict[str, uuid.UUID]
) -> Order:
    """A pending order worth 200."""
    return await order_service.create_order(
        uuid.uuid4(), [{"product_id": products["widget"], "quantity": 2}], test_db
    )


class TestCreatePayment:
    """Payment initiation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_payment(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        mock_stripe_client: AsyncMock,
        order: Order,
    ) -> None:
        result = await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        payment = result["payment"]
        assert payment["external_transaction_id"] == "pi_test_123"
        assert payment["status"] == "pending"
        assert payment["amount_cents"] == 200
        assert payment["client_artifact"]["client_secret"] == "pi_test_123_secret_abc"
        assert result["order"]["status"] == "processing"
        assert result["order"]["payment_method"] == "card"
        assert result["order"]["external_payment_reference"] == "pi_test_123"
        assert result["order"]["version"] == 2

        kwargs = mock_stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["idempotency_key"] == f"{order.id}:1"
        assert kwargs["amount_cents"] == 200
        assert kwargs["metadata"]["order_id"] == str(order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_payment(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        liqpay_requests: List[Any],
        order: Order,
    ) -> None:
        result = await payment_processor.create_payment(
            order.id, PaymentProvider.LOCAL, test_db, return_url="https://shop.test/done"
        )

        payment = result["payment"]
        assert payment["external_transaction_id"] == f"{order.id}:1"
        assert payment["provider_status"] == "invoice_wait"
        assert payment["status"] == "pending"
        artifact = payment["client_artifact"]
        params = json.loads(base64.b64decode(artifact["data"]))
        assert params["amount"] == 2.0
        assert params["result_url"] == "https://shop.test/done"
        assert result["order"]["payment_method"] == "local"
        # Checkout is built locally, LiqPay is not contacted.
        assert liqpay_requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_in_processing_is_not_payable(
        self, test_db: AsyncSession, payment_processor: PaymentProcessor, order: Order
    ) -> None:
        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        with pytest.raises(InvalidTransition):
            await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_order_is_not_payable(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        order_service: OrderService,
        mock_stripe_client: AsyncMock,
        order: Order,
    ) -> None:
        await order_service.cancel_order(order.id, test_db)

        with pytest.raises(InvalidTransition):
            await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)
        mock_stripe_client.create_payment_intent.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(
        self, test_db: AsyncSession, payment_processor: PaymentProcessor
    ) -> None:
        with pytest.raises(NotFoundError):
            await payment_processor.create_payment(uuid.uuid4(), PaymentProvider.CARD, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        order_service: OrderService,
        ledger: PaymentTransactionLedger,
        mock_stripe_client: AsyncMock,
        order: Order,
    ) -> None:
        mock_stripe_client.create_payment_intent.side_effect = StripeError(
            "timed out", StripeErrorType.TIMEOUT
        )

        with pytest.raises(ProviderError) as exc_info:
            await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        assert exc_info.value.timeout
        assert exc_info.value.retryable
        current = await order_service.get_order(order.id, test_db)
        assert current.status == OrderStatus.PENDING
        assert current.version == 1
        assert await ledger.count_for_order(order.id, test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_provider_failure_reuses_key(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        mock_stripe_client: AsyncMock,
        intent_factory: Any,
        order: Order,
    ) -> None:
        mock_stripe_client.create_payment_intent.side_effect = [
            StripeError("network", StripeErrorType.TRANSIENT),
            intent_factory(),
        ]

        with pytest.raises(ProviderError):
            await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)
        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        keys = [
            c.kwargs["idempotency_key"]
            for c in mock_stripe_client.create_payment_intent.call_args_list
        ]
        assert keys == [f"{order.id}:1", f"{order.id}:1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_attempt_after_failed_payment(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        ledger: PaymentTransactionLedger,
        mock_stripe_client: AsyncMock,
        intent_factory: Any,
        order: Order,
    ) -> None:
        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)
        mock_stripe_client.retrieve_payment_intent.return_value = intent_factory(
            status="canceled"
        )
        confirmed = await payment_processor.confirm_payment("pi_test_123", test_db)
        assert confirmed["order"]["status"] == "payment_failed"

        mock_stripe_client.create_payment_intent.return_value = intent_factory("pi_test_456")
        result = await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        assert result["order"]["status"] == "processing"
        assert result["order"]["external_payment_reference"] == "pi_test_456"
        kwargs = mock_stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["idempotency_key"] == f"{order.id}:2"
        assert await ledger.count_for_order(order.id, test_db) == 2
        attempts = await ledger.for_order(order.id, test_db)
        statuses = {t.external_transaction_id: t.status for t in attempts}
        assert statuses == {
            "pi_test_123": NormalizedStatus.CANCELLED,
            "pi_test_456": NormalizedStatus.PENDING,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_provider(
        self,
        test_settings: Settings,
        test_db: AsyncSession,
        order_service: OrderService,
        card_gateway: CardGateway,
        order: Order,
    ) -> None:
        processor = PaymentProcessor(
            test_settings, order_service, {PaymentProvider.CARD: card_gateway}
        )

        with pytest.raises(ValidationError):
            await processor.create_payment(order.id, PaymentProvider.LOCAL, test_db)


class TestConfirmPayment:
    """Polling the provider for the outcome."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_success(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        ledger: PaymentTransactionLedger,
        order: Order,
    ) -> None:
        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        result = await payment_processor.confirm_payment("pi_test_123", test_db)

        assert result["payment"]["status"] == "completed"
        assert result["order"]["status"] == "paid"
        events = await ledger.events_for_order(order.id, test_db)
        assert [e.event_type for e in events] == ["payment.created", "payment.confirmation_polled"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_confirmation_changes_nothing(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        order: Order,
    ) -> None:
        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        first = await payment_processor.confirm_payment("pi_test_123", test_db)
        second = await payment_processor.confirm_payment("pi_test_123", test_db)

        assert second["order"]["status"] == "paid"
        assert second["order"]["version"] == first["order"]["version"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_status_query(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        liqpay_requests: List[Any],
        order: Order,
    ) -> None:
        created = await payment_processor.create_payment(order.id, PaymentProvider.LOCAL, test_db)
        reference = created["payment"]["external_transaction_id"]

        result = await payment_processor.confirm_payment(reference, test_db)

        assert result["order"]["status"] == "paid"
        assert len(liqpay_requests) == 1
        form = parse_qs(liqpay_requests[0].content.decode())
        params = json.loads(base64.b64decode(form["data"][0]))
        assert params["action"] == "status"
        assert params["order_id"] == reference

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_still_waiting(
        self,
        test_db: AsyncSession,
        payment_processor: PaymentProcessor,
        liqpay_status: Dict[str, Any],
        order: Order,
    ) -> None:
        created = await payment_processor.create_payment(order.id, PaymentProvider.LOCAL, test_db)
        liqpay_status["status"] = "wait_accept"

        result = await payment_processor.confirm_payment(
            created["payment"]["external_transaction_id"], test_db
        )

        assert result["payment"]["status"] == NormalizedStatus.PROCESSING.value
        assert result["order"]["status"] == "processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference(
        self, test_db: AsyncSession, payment_processor: PaymentProcessor
    ) -> None:
        with pytest.raises(NotFoundError):
            await payment_processor.confirm_payment("pi_missing", test_db)


class TestPaymentStatus:
    """Payment summary of an order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_before_and_after_payment(
        self, test_db: AsyncSession, payment_processor: PaymentProcessor, order: Order
    ) -> None:
        before = await payment_processor.get_payment_status(order.id, test_db)
        assert before["status"] == "pending"
        assert before["payment_id"] is None
        assert before["payment_status"] is None

        await payment_processor.create_payment(order.id, PaymentProvider.CARD, test_db)
        after = await payment_processor.get_payment_status(order.id, test_db)

        assert after == {
            "order_id": str(order.id),
            "payment_id": "pi_test_123",
            "status": "processing",
            "total_amount": 200,
            "currency": "UAH",
            "payment_method": "card",
            "payment_status": "pending",
        }


class TestOrderPaymentLock:
    """Redis-backed initiation lock."""

    @staticmethod
    def _redis_with_lock(lock: AsyncMock) -> MagicMock:
        redis_client = MagicMock()
        redis_client.lock.return_value = lock
        return redis_client

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_busy_lock_rejects_initiation(
        self,
        test_settings: Settings,
        test_db: AsyncSession,
        order_service: OrderService,
        gateways: Dict[PaymentProvider, Any],
        mock_stripe_client: AsyncMock,
        order: Order,
    ) -> None:
        lock = AsyncMock()
        lock.acquire.return_value = False
        processor = PaymentProcessor(
            test_settings,
            order_service,
            gateways,
            lock=OrderPaymentLock(test_settings, self._redis_with_lock(lock)),
        )

        with pytest.raises(ConflictError) as exc_info:
            await processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        assert exc_info.value.http_status == 409
        mock_stripe_client.create_payment_intent.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_released_after_initiation(
        self,
        test_settings: Settings,
        test_db: AsyncSession,
        order_service: OrderService,
        gateways: Dict[PaymentProvider, Any],
        order: Order,
    ) -> None:
        lock = AsyncMock()
        lock.acquire.return_value = True
        redis_client = self._redis_with_lock(lock)
        processor = PaymentProcessor(
            test_settings,
            order_service,
            gateways,
            lock=OrderPaymentLock(test_settings, redis_client),
        )

        await processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        redis_client.lock.assert_called_once_with(
            f"lock:order_payment:{order.id}",
            timeout=test_settings.redis_lock_timeout,
            blocking_timeout=test_settings.redis_lock_blocking_timeout,
        )
        lock.release.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_status_guard(
        self,
        test_settings: Settings,
        test_db: AsyncSession,
        order_service: OrderService,
        gateways: Dict[PaymentProvider, Any],
        order: Order,
    ) -> None:
        lock = AsyncMock()
        lock.acquire.side_effect = RedisError("connection refused")
        processor = PaymentProcessor(
            test_settings,
            order_service,
            gateways,
            lock=OrderPaymentLock(test_settings, self._redis_with_lock(lock)),
        )

        result = await processor.create_payment(order.id, PaymentProvider.CARD, test_db)

        assert result["order"]["status"] == "processing"
        lock.release.assert_not_awaited()
