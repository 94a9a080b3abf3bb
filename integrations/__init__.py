"""Payment provider integrations."""
from .card_gateway import CardGateway
from .gateways import (
    ConfirmationResult,
    PaymentGateway,
    PaymentInitiation,
    RefundResult,
    WebhookEvent,
)
from .local_gateway import LocalGateway
from .stripe_client import StripeClient, StripeError

__all__ = [
    "CardGateway",
    "ConfirmationResult",
    "LocalGateway",
    "PaymentGateway",
    "PaymentInitiation",
    "RefundResult",
    "StripeClient",
    "StripeError",
    "WebhookEvent",
]
