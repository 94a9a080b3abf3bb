"""Card payments through Stripe PaymentIntents."""
import json
import uuid
from typing import Any, Dict, Optional

import structlog

from config import Settings
from core.errors import ProviderError, ValidationError
from database.models import NormalizedStatus, PaymentProvider
from integrations.gateways import (
    ConfirmationResult,
    PaymentGateway,
    PaymentInitiation,
    RefundResult,
    WebhookEvent,
)
from integrations.stripe_client import StripeClient, StripeError, StripeErrorType

logger = structlog.get_logger(__name__)

# Event types whose outcome is not reflected in ``data.object.status``.
EVENT_PROVIDER_STATUS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "payment_failed",
    "payment_intent.canceled": "canceled",
    "payment_intent.processing": "processing",
    "payment_intent.requires_action": "requires_action",
    "charge.refunded": "refunded",
}


def _to_provider_error(error: StripeError) -> ProviderError:
    return ProviderError(
        str(error),
        provider=PaymentProvider.CARD.value,
        retryable=error.retryable,
        timeout=error.error_type == StripeErrorType.TIMEOUT,
        original_error=error,
    )


def _intent_summary(intent: Any) -> Dict[str, Any]:
    return {
        "id": getattr(intent, "id", None),
        "status": getattr(intent, "status", None),
        "amount": getattr(intent, "amount", None),
        "currency": getattr(intent, "currency", None),
    }


class CardGateway(PaymentGateway):
    """Stripe-backed card gateway."""

    provider = PaymentProvider.CARD
    status_map = {
        "requires_payment_method": NormalizedStatus.PENDING,
        "requires_confirmation": NormalizedStatus.PENDING,
        "requires_action": NormalizedStatus.PENDING,
        "processing": NormalizedStatus.PROCESSING,
        "requires_capture": NormalizedStatus.PROCESSING,
        "succeeded": NormalizedStatus.COMPLETED,
        "payment_failed": NormalizedStatus.FAILED,
        "canceled": NormalizedStatus.CANCELLED,
        "refunded": NormalizedStatus.REFUNDED,
    }

    def __init__(self, settings: Settings, stripe_client: Optional[StripeClient] = None):
        """
        Initialize card gateway.

        Args:
            settings: Application settings
            stripe_client: Optional Stripe client (built from settings if omitted)
        """
        self.settings = settings
        self.stripe_client = stripe_client or StripeClient(settings)

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
        Create a PaymentIntent for the order.

        The client artifact carries the ``client_secret`` and the publishable
        key the browser needs to confirm the card payment.
        """
        try:
            intent = await self.stripe_client.create_payment_intent(
                amount_cents=amount_cents,
                currency=currency,
                idempotency_key=idempotency_key,
                description=description,
                metadata={**metadata, "order_id": str(order_id)},
            )
        except StripeError as e:
            raise _to_provider_error(e)

        return PaymentInitiation(
            external_ref=intent.id,
            provider_status=intent.status,
            client_artifact={
                "client_secret": intent.client_secret,
                "publishable_key": self.settings.stripe_publishable_key,
            },
            raw=_intent_summary(intent),
        )

    async def confirm_payment(self, external_ref: str) -> ConfirmationResult:
        """Retrieve the PaymentIntent and normalize its status."""
        try:
            intent = await self.stripe_client.retrieve_payment_intent(external_ref)
        except StripeError as e:
            raise _to_provider_error(e)

        return ConfirmationResult(
            external_ref=external_ref,
            provider_status=intent.status,
            normalized=self.normalize_status(intent.status),
            raw=_intent_summary(intent),
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return self.stripe_client.verify_webhook(raw_payload, signature)

    def parse_webhook(self, raw_payload: bytes) -> WebhookEvent:
        """
        Decode a Stripe event.

        The delivery key is the event id. For charge events the external
        reference is the charge's PaymentIntent.
        """
        try:
            event = json.loads(raw_payload)
            event_id = event["id"]
            event_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, UnicodeDecodeError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed card webhook payload: {e}")
        if (
            not isinstance(obj, dict)
            or not isinstance(event_id, str)
            or not isinstance(event_type, str)
            or not event_id
            or not event_type
        ):
            raise ValidationError("Malformed card webhook payload")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Malformed card webhook metadata")

        if event_type.startswith("charge."):
            external_ref = obj.get("payment_intent") or ""
        else:
            external_ref = obj.get("id") or ""

        provider_status = EVENT_PROVIDER_STATUS.get(event_type) or obj.get("status") or ""

        order_id = None
        raw_order_id = metadata.get("order_id")
        if raw_order_id:
            try:
                order_id = uuid.UUID(str(raw_order_id))
            except ValueError:
                logger.warning(
                    "card_webhook_invalid_order_id", event_id=event_id, order_id=raw_order_id
                )

        currency = obj.get("currency")
        return WebhookEvent(
            delivery_key=event_id,
            event_type=event_type,
            order_id=order_id,
            external_ref=external_ref,
            provider_status=provider_status,
            normalized=self.normalize_status(provider_status),
            amount_cents=obj.get("amount"),
            currency=currency.upper() if currency else None,
            raw={"event_id": event_id, "type": event_type, "object": obj},
        )

    async def refund(
        self,
        external_ref: str,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund a PaymentIntent, fully or partially."""
        try:
            refund = await self.stripe_client.create_refund(
                payment_intent_id=external_ref,
                amount_cents=amount_cents,
                reason="requested_by_customer",
                idempotency_key=idempotency_key,
            )
        except StripeError as e:
            raise _to_provider_error(e)

        return RefundResult(
            refund_id=refund.id,
            external_ref=external_ref,
            amount_cents=getattr(refund, "amount", amount_cents),
            provider_status=refund.status,
            raw={
                "id": refund.id,
                "status": refund.status,
                "amount": getattr(refund, "amount", None),
            },
        )
