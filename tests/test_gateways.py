"""
Tests for the card (Stripe) and local (LiqPay) gateway adapters.
"""
import base64
import hashlib
import json
import uuid
from typing import Any, Callable, Dict, List, Tuple
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest

from config import Settings
from core.errors import ProviderError, UnsupportedOperation, ValidationError
from database.models import NormalizedStatus
from integrations.card_gateway import CardGateway
from integrations.local_gateway import (
    LocalGateway,
    order_id_from_reference,
    to_major_units,
    to_minor_units,
)
from integrations.stripe_client import StripeError, StripeErrorType


class TestCardGateway:
    """Stripe PaymentIntent adapter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_returns_client_secret(
        self, card_gateway: CardGateway, mock_stripe_client: AsyncMock
    ) -> None:
        order_id = uuid.uuid4()

        initiation = await card_gateway.create_payment(
            order_id=order_id,
            amount_cents=200,
            currency="UAH",
            description="Order",
            metadata={"attempt": "1"},
            idempotency_key=f"{order_id}:1",
        )

        assert initiation.external_ref == "pi_test_123"
        assert initiation.provider_status == "requires_payment_method"
        assert initiation.client_artifact == {
            "client_secret": "pi_test_123_secret_abc",
            "publishable_key": "pk_test_fake_key_for_testing",
        }
        kwargs = mock_stripe_client.create_payment_intent.await_args.kwargs
        assert kwargs["idempotency_key"] == f"{order_id}:1"
        assert kwargs["metadata"]["order_id"] == str(order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_error_becomes_provider_error(
        self, card_gateway: CardGateway, mock_stripe_client: AsyncMock
    ) -> None:
        mock_stripe_client.create_payment_intent.side_effect = StripeError(
            "timed out", StripeErrorType.TIMEOUT
        )

        with pytest.raises(ProviderError) as exc_info:
            await card_gateway.create_payment(
                uuid.uuid4(), 200, "UAH", "Order", {}, "key:1"
            )

        assert exc_info.value.timeout is True
        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 502

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment_normalizes(
        self, card_gateway: CardGateway, mock_stripe_client: AsyncMock
    ) -> None:
        result = await card_gateway.confirm_payment("pi_test_123")

        assert result.provider_status == "succeeded"
        assert result.normalized == NormalizedStatus.COMPLETED
        mock_stripe_client.retrieve_payment_intent.assert_awaited_once_with("pi_test_123")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("requires_payment_method", NormalizedStatus.PENDING),
            ("requires_action", NormalizedStatus.PENDING),
            ("processing", NormalizedStatus.PROCESSING),
            ("succeeded", NormalizedStatus.COMPLETED),
            ("payment_failed", NormalizedStatus.FAILED),
            ("canceled", NormalizedStatus.CANCELLED),
            ("refunded", NormalizedStatus.REFUNDED),
            ("something_new", NormalizedStatus.UNKNOWN),
            (None, NormalizedStatus.UNKNOWN),
        ],
    )
    def test_normalize_status(
        self, card_gateway: CardGateway, provider_status: Any, expected: NormalizedStatus
    ) -> None:
        assert card_gateway.normalize_status(provider_status) == expected

    @pytest.mark.unit
    def test_valid_signature(
        self, card_gateway: CardGateway, card_event: Callable[..., Tuple[bytes, str]]
    ) -> None:
        payload, signature = card_event("pi_test_123")
        assert card_gateway.verify_webhook_signature(payload, signature) is True

    @pytest.mark.unit
    def test_signature_from_other_secret_fails(
        self, card_gateway: CardGateway, card_event: Callable[..., Tuple[bytes, str]]
    ) -> None:
        payload, signature = card_event("pi_test_123", secret="whsec_someone_else")
        assert card_gateway.verify_webhook_signature(payload, signature) is False

    @pytest.mark.unit
    def test_tampered_payload_fails(
        self, card_gateway: CardGateway, card_event: Callable[..., Tuple[bytes, str]]
    ) -> None:
        payload, signature = card_event("pi_test_123")
        tampered = payload.replace(b"pi_test_123", b"pi_test_999")
        assert card_gateway.verify_webhook_signature(tampered, signature) is False

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "garbage"])
    def test_missing_or_garbled_signature_fails(
        self,
        card_gateway: CardGateway,
        card_event: Callable[..., Tuple[bytes, str]],
        signature: Any,
    ) -> None:
        payload, _ = card_event("pi_test_123")
        assert card_gateway.verify_webhook_signature(payload, signature) is False

    @pytest.mark.unit
    def test_parse_payment_intent_event(
        self, card_gateway: CardGateway, card_event: Callable[..., Tuple[bytes, str]]
    ) -> None:
        order_id = uuid.uuid4()
        payload, _ = card_event(
            "pi_test_123", "payment_intent.succeeded", order_id=order_id, event_id="evt_1"
        )

        event = card_gateway.parse_webhook(payload)

        assert event.delivery_key == "evt_1"
        assert event.external_ref == "pi_test_123"
        assert event.order_id == order_id
        assert event.provider_status == "succeeded"
        assert event.normalized == NormalizedStatus.COMPLETED
        assert event.amount_cents == 200
        assert event.currency == "UAH"

    @pytest.mark.unit
    def test_parse_charge_event_uses_payment_intent(self, card_gateway: CardGateway) -> None:
        payload = json.dumps(
            {
                "id": "evt_charge",
                "type": "charge.refunded",
                "data": {"object": {"id": "ch_1", "payment_intent": "pi_test_123"}},
            }
        ).encode()

        event = card_gateway.parse_webhook(payload)

        assert event.external_ref == "pi_test_123"
        assert event.normalized == NormalizedStatus.REFUNDED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            b"not json",
            b"[]",
            b'{"id": "evt_1"}',
            b'{"id": "evt_1", "type": "x", "data": {}}',
            b'{"id": "evt_1", "type": 5, "data": {"object": {}}}',
            b'{"id": 7, "type": "payment_intent.succeeded", "data": {"object": {}}}',
            b'{"id": "evt_1", "type": "payment_intent.succeeded",'
            b' "data": {"object": {"metadata": "order"}}}',
        ],
    )
    def test_malformed_event(self, card_gateway: CardGateway, payload: bytes) -> None:
        with pytest.raises(ValidationError):
            card_gateway.parse_webhook(payload)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self, card_gateway: CardGateway, mock_stripe_client: AsyncMock) -> None:
        result = await card_gateway.refund("pi_test_123", amount_cents=150, idempotency_key="r1")

        assert result.refund_id == "re_test_123"
        assert result.provider_status == "succeeded"
        mock_stripe_client.create_refund.assert_awaited_once_with(
            payment_intent_id="pi_test_123",
            amount_cents=150,
            reason="requested_by_customer",
            idempotency_key="r1",
        )


def _decode(data: str) -> Dict[str, Any]:
    return json.loads(base64.b64decode(data))


class TestLocalGateway:
    """LiqPay checkout adapter."""

    @pytest.mark.unit
    def test_signature_algorithm(self, local_gateway: LocalGateway) -> None:
        data = base64.b64encode(b'{"amount": 1}').decode()
        expected = base64.b64encode(
            hashlib.sha1(f"sandbox_private_key{data}sandbox_private_key".encode()).digest()
        ).decode()

        assert local_gateway.sign(data) == expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_builds_signed_checkout(
        self, local_gateway: LocalGateway
    ) -> None:
        order_id = uuid.uuid4()

        initiation = await local_gateway.create_payment(
            order_id=order_id,
            amount_cents=12345,
            currency="uah",
            description=f"Order {order_id}",
            metadata={},
            idempotency_key=f"{order_id}:1",
        )

        artifact = initiation.client_artifact
        params = _decode(artifact["data"])
        assert initiation.external_ref == f"{order_id}:1"
        assert initiation.provider_status == "invoice_wait"
        normalized = local_gateway.normalize_status(initiation.provider_status)
        assert normalized == NormalizedStatus.PENDING
        assert params["version"] == 3
        assert params["action"] == "pay"
        assert params["amount"] == 123.45
        assert params["currency"] == "UAH"
        assert params["order_id"] == f"{order_id}:1"
        assert params["server_url"].endswith("/payments/webhook/local")
        assert "sandbox" not in params
        assert artifact["signature"] == local_gateway.sign(artifact["data"])
        assert artifact["redirect_url"].startswith(artifact["checkout_url"] + "?")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sandbox_flag(
        self, test_settings: Settings, liqpay_http_client: httpx.AsyncClient
    ) -> None:
        gateway = LocalGateway(
            test_settings.model_copy(update={"liqpay_sandbox": True}),
            http_client=liqpay_http_client,
        )

        initiation = await gateway.create_payment(
            uuid.uuid4(), 100, "UAH", "Order", {}, "ref:1", return_url="https://shop.test/done"
        )

        params = _decode(initiation.client_artifact["data"])
        assert params["sandbox"] == 1
        assert params["result_url"] == "https://shop.test/done"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment_queries_status_api(
        self, local_gateway: LocalGateway, liqpay_requests: List[httpx.Request]
    ) -> None:
        result = await local_gateway.confirm_payment("ref:1")

        assert result.provider_status == "success"
        assert result.normalized == NormalizedStatus.COMPLETED
        assert len(liqpay_requests) == 1
        form = parse_qs(liqpay_requests[0].content.decode())
        params = _decode(form["data"][0])
        assert params["action"] == "status"
        assert params["order_id"] == "ref:1"
        assert form["signature"][0] == local_gateway.sign(form["data"][0])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment_error_result(
        self, local_gateway: LocalGateway, liqpay_status: Dict[str, Any]
    ) -> None:
        liqpay_status.clear()
        liqpay_status.update(
            {"result": "error", "err_code": "payment_not_found", "err_description": "missing"}
        )

        with pytest.raises(ProviderError) as exc_info:
            await local_gateway.confirm_payment("ref:1")
        assert exc_info.value.retryable is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,retryable", [(503, True), (403, False)])
    async def test_confirm_payment_http_error(
        self, test_settings: Settings, status_code: int, retryable: bool
    ) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(status_code))
        async with httpx.AsyncClient(transport=transport) as http_client:
            gateway = LocalGateway(test_settings, http_client=http_client)
            with pytest.raises(ProviderError) as exc_info:
                await gateway.confirm_payment("ref:1")

        assert exc_info.value.retryable is retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment_timeout(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            gateway = LocalGateway(test_settings, http_client=http_client)
            with pytest.raises(ProviderError) as exc_info:
                await gateway.confirm_payment("ref:1")

        assert exc_info.value.timeout is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment_invalid_json(self, test_settings: Settings) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        async with httpx.AsyncClient(transport=transport) as http_client:
            gateway = LocalGateway(test_settings, http_client=http_client)
            with pytest.raises(ProviderError):
                await gateway.confirm_payment("ref:1")

    @pytest.mark.unit
    def test_callback_signature(
        self, local_gateway: LocalGateway, liqpay_callback: Callable[..., Dict[str, str]]
    ) -> None:
        callback = liqpay_callback("ref:1")
        data = callback["data"].encode()

        assert local_gateway.verify_webhook_signature(data, callback["signature"]) is True
        assert local_gateway.verify_webhook_signature(data, "forged") is False
        assert local_gateway.verify_webhook_signature(data, "forg\u00e9d") is False
        assert local_gateway.verify_webhook_signature(data, "\ud800") is False
        assert local_gateway.verify_webhook_signature(data, None) is False
        assert local_gateway.verify_webhook_signature(b"", callback["signature"]) is False

    @pytest.mark.unit
    def test_parse_callback(
        self, local_gateway: LocalGateway, liqpay_callback: Callable[..., Dict[str, str]]
    ) -> None:
        order_id = uuid.uuid4()
        callback = liqpay_callback(f"{order_id}:2", status="failure", amount=12.5)
        data = callback["data"].encode()

        event = local_gateway.parse_webhook(data)

        assert event.delivery_key == hashlib.sha256(data).hexdigest()
        assert event.order_id == order_id
        assert event.external_ref == f"{order_id}:2"
        assert event.normalized == NormalizedStatus.FAILED
        assert event.amount_cents == 1250
        assert event.event_type == "liqpay.failure"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "data",
        [
            b"!!!not base64!!!",
            base64.b64encode(b"not json"),
            base64.b64encode(b'{"status": "success"}'),
            base64.b64encode(b"[1, 2]"),
        ],
    )
    def test_malformed_callback(self, local_gateway: LocalGateway, data: bytes) -> None:
        with pytest.raises(ValidationError):
            local_gateway.parse_webhook(data)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_is_unsupported(self, local_gateway: LocalGateway) -> None:
        with pytest.raises(UnsupportedOperation):
            await local_gateway.refund("ref:1", amount_cents=100)


class TestLocalHelpers:
    """Amount and reference conversions."""

    @pytest.mark.unit
    def test_amount_conversions(self) -> None:
        assert to_major_units(199) == 1.99
        assert to_minor_units("1.99") == 199
        assert to_minor_units(2) == 200
        assert to_minor_units(None) is None
        assert to_minor_units("abc") is None

    @pytest.mark.unit
    def test_order_id_from_reference(self) -> None:
        order_id = uuid.uuid4()
        assert order_id_from_reference(f"{order_id}:3") == order_id
        assert order_id_from_reference(str(order_id)) == order_id
        assert order_id_from_reference("external-123") is None
