"""
Provider-neutral payment gateway interface.

Gateways talk to a payment provider and translate its vocabulary into
``NormalizedStatus``. They never read or write order state.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from database.models import NormalizedStatus, PaymentProvider


@dataclass(frozen=True)
class PaymentInitiation:
    """A payment created at the provider."""

    external_ref: str
    provider_status: str
    client_artifact: Dict[str, Any]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmationResult:
    """Current provider view of a payment."""

    external_ref: str
    provider_status: str
    normalized: NormalizedStatus
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    """A verified, decoded provider notification."""

    delivery_key: str
    event_type: str
    order_id: Optional[uuid.UUID]
    external_ref: str
    provider_status: str
    normalized: NormalizedStatus
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    """A refund issued by the provider."""

    refund_id: str
    external_ref: str
    amount_cents: Optional[int]
    provider_status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Base class for provider adapters."""

    provider: PaymentProvider
    status_map: Mapping[str, NormalizedStatus] = {}

    def normalize_status(self, provider_status: Optional[str]) -> NormalizedStatus:
        """
        Map a provider status onto the normalized vocabulary.

        Unmapped values become ``unknown`` and never drive a transition.
        """
        if not provider_status:
            return NormalizedStatus.UNKNOWN
        return self.status_map.get(provider_status.lower(), NormalizedStatus.UNKNOWN)

    @abstractmethod
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
        Create a payment at the provider.

        Raises:
            ProviderError: Network failure, timeout or provider rejection
        """

    @abstractmethod
    async def confirm_payment(self, external_ref: str) -> ConfirmationResult:
        """
        Ask the provider for the current status of a payment.

        Raises:
            ProviderError: Provider unreachable or rejected the request
        """

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """Check a webhook signature. Fails closed and never raises."""

    @abstractmethod
    def parse_webhook(self, raw_payload: bytes) -> WebhookEvent:
        """
        Decode a verified webhook payload.

        Raises:
            ValidationError: Payload is malformed
        """

    @abstractmethod
    async def refund(
        self,
        external_ref: str,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a settled payment.

        Raises:
            UnsupportedOperation: Provider has no refund API
            ProviderError: Provider unreachable or rejected the refund
        """

    async def close(self) -> None:
        """Release network resources held by the gateway."""
        return None
