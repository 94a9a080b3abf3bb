"""
Local payments through the LiqPay v3 checkout.

Checkout payloads are base64-encoded JSON signed with
``base64(sha1(private_key + data + private_key))``. The reference we hand to
LiqPay as ``order_id`` has the form ``<order uuid>:<attempt>`` and serves as
the external transaction reference.
"""
import base64
import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog

from config import Settings
from core.errors import ProviderError, UnsupportedOperation, ValidationError
from database.models import NormalizedStatus, PaymentProvider
from integrations.gateways import (
    ConfirmationResult,
    PaymentGateway,
    PaymentInitiation,
    RefundResult,
    WebhookEvent,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

LIQPAY_API_VERSION = 3
INITIAL_STATUS = "invoice_wait"


def to_major_units(amount_cents: int) -> float:
    return float(Decimal(amount_cents) / 100)


def to_minor_units(amount: Any) -> Optional[int]:
    if amount is None:
        return None
    try:
        return int((Decimal(str(amount)) * 100).to_integral_value())
    except InvalidOperation:
        return None


def order_id_from_reference(external_ref: str) -> Optional[uuid.UUID]:
    """Recover our order id from a ``<order uuid>:<attempt>`` reference."""
    head, _, _ = external_ref.rpartition(":")
    try:
        return uuid.UUID(head or external_ref)
    except ValueError:
        return None


class LocalGateway(PaymentGateway):
    """LiqPay-backed local gateway. Refunds are not available through the API."""

    provider = PaymentProvider.LOCAL
    status_map = {
        "success": NormalizedStatus.COMPLETED,
        "sandbox": NormalizedStatus.COMPLETED,
        "subscribed": NormalizedStatus.COMPLETED,
        "failure": NormalizedStatus.FAILED,
        "error": NormalizedStatus.FAILED,
        "reversed": NormalizedStatus.REFUNDED,
        "unsubscribed": NormalizedStatus.CANCELLED,
        "processing": NormalizedStatus.PROCESSING,
        "wait_accept": NormalizedStatus.PROCESSING,
        "wait_secure": NormalizedStatus.PROCESSING,
        "invoice_wait": NormalizedStatus.PENDING,
        "3ds_verify": NormalizedStatus.PENDING,
        "otp_verify": NormalizedStatus.PENDING,
    }

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize local gateway.

        Args:
            settings: Application settings
            http_client: Optional HTTP client for the LiqPay API
        """
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.provider_timeout_seconds
        )

    def sign(self, data: str) -> str:
        """LiqPay signature of a base64 ``data`` string."""
        private_key = self.settings.liqpay_private_key
        digest = hashlib.sha1(f"{private_key}{data}{private_key}".encode("utf-8")).digest()
        return base64.b64encode(digest).decode("ascii")

    def encode(self, params: Dict[str, Any]) -> Dict[str, str]:
        """Encode request parameters into a signed ``{data, signature}`` pair."""
        data = base64.b64encode(json.dumps(params).encode("utf-8")).decode("ascii")
        return {"data": data, "signature": self.sign(data)}

    async def create_payment(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        description: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
        return_url: Optional[str] = None,
    ) -> PaymentInitiation:
        """
        Build a signed checkout for the order.

        Nothing is sent to LiqPay here; the browser posts the artifact to the
        checkout URL. The idempotency key becomes the LiqPay ``order_id``.
        """
        params: Dict[str, Any] = {
            "version": LIQPAY_API_VERSION,
            "public_key": self.settings.liqpay_public_key,
            "action": "pay",
            "amount": to_major_units(amount_cents),
            "currency": currency.upper(),
            "description": description,
            "order_id": idempotency_key,
            "result_url": return_url or self.settings.default_return_url,
            "server_url": self.settings.local_webhook_url,
        }
        if self.settings.liqpay_sandbox:
            params["sandbox"] = 1

        signed = self.encode(params)
        checkout_url = self.settings.liqpay_checkout_url
        logger.info(
            "liqpay_checkout_created", order_id=str(order_id), external_ref=idempotency_key
        )

        return PaymentInitiation(
            external_ref=idempotency_key,
            provider_status=INITIAL_STATUS,
            client_artifact={
                "checkout_url": checkout_url,
                "data": signed["data"],
                "signature": signed["signature"],
                "redirect_url": f"{checkout_url}?{urlencode(signed)}",
            },
            raw={
                "order_id": idempotency_key,
                "amount": params["amount"],
                "currency": params["currency"],
            },
        )

    async def confirm_payment(self, external_ref: str) -> ConfirmationResult:
        """
        Query the LiqPay ``status`` API for a checkout.

        Raises:
            ProviderError: Timeout, transport failure, HTTP error or an
            ``error`` result from LiqPay
        """
        signed = self.encode(
            {
                "version": LIQPAY_API_VERSION,
                "public_key": self.settings.liqpay_public_key,
                "action": "status",
                "order_id": external_ref,
            }
        )

        started = time.perf_counter()
        status = "error"
        try:
            response = await self.http_client.post(
                self.settings.liqpay_api_url,
                data=signed,
                timeout=self.settings.provider_timeout_seconds,
            )
            if response.status_code >= 400:
                metrics.record_provider_error("local", "http_error")
                raise ProviderError(
                    f"LiqPay status API returned HTTP {response.status_code}",
                    provider=self.provider.value,
                    retryable=response.status_code >= 500,
                )
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("status response is not an object")
            status = "success"
        except httpx.TimeoutException as e:
            metrics.record_provider_error("local", "timeout")
            raise ProviderError(
                f"LiqPay status API timed out: {e}",
                provider=self.provider.value,
                timeout=True,
                original_error=e,
            )
        except httpx.HTTPError as e:
            metrics.record_provider_error("local", "transient")
            raise ProviderError(
                f"LiqPay status API unreachable: {e}",
                provider=self.provider.value,
                original_error=e,
            )
        except ValueError as e:
            metrics.record_provider_error("local", "permanent")
            raise ProviderError(
                "LiqPay status API returned invalid JSON",
                provider=self.provider.value,
                original_error=e,
            )
        finally:
            metrics.record_provider_call(
                "local", "status", status, time.perf_counter() - started
            )

        if body.get("result") == "error" and not body.get("status"):
            raise ProviderError(
                f"LiqPay status API error: {body.get('err_code')} {body.get('err_description')}",
                provider=self.provider.value,
                retryable=False,
            )

        provider_status = body.get("status") or ""
        logger.info(
            "liqpay_status_retrieved", external_ref=external_ref, status=provider_status
        )
        return ConfirmationResult(
            external_ref=external_ref,
            provider_status=provider_status,
            normalized=self.normalize_status(provider_status),
            raw=body,
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """Verify the ``signature`` sent along with a callback's ``data`` field."""
        if not signature or not raw_payload:
            return False
        try:
            expected = self.sign(raw_payload.decode("ascii")).encode("ascii")
            provided = signature.encode("utf-8")
        except UnicodeError:
            return False
        return hmac.compare_digest(expected, provided)

    def parse_webhook(self, raw_payload: bytes) -> WebhookEvent:
        """
        Decode a callback ``data`` field.

        The delivery key is the SHA-256 of ``data``, so a byte-identical
        redelivery is recognised as a duplicate.
        """
        try:
            payload = json.loads(base64.b64decode(raw_payload, validate=True))
            external_ref = str(payload["order_id"])
            provider_status = str(payload["status"])
        except (ValueError, TypeError, KeyError) as e:
            raise ValidationError(f"Malformed local webhook payload: {e}")
        if not isinstance(payload, dict):
            raise ValidationError("Malformed local webhook payload")

        currency = payload.get("currency")
        return WebhookEvent(
            delivery_key=hashlib.sha256(raw_payload).hexdigest(),
            event_type=f"liqpay.{provider_status}",
            order_id=order_id_from_reference(external_ref),
            external_ref=external_ref,
            provider_status=provider_status,
            normalized=self.normalize_status(provider_status),
            amount_cents=to_minor_units(payload.get("amount")),
            currency=str(currency).upper() if currency else None,
            raw=payload,
        )

    async def refund(
        self,
        external_ref: str,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        raise UnsupportedOperation(
            "LiqPay refunds are not available through the API",
            details={"provider": self.provider.value, "external_ref": external_ref},
        )

    async def close(self) -> None:
        """Close the HTTP client if this gateway created it."""
        if self._owns_client:
            await self.http_client.aclose()
