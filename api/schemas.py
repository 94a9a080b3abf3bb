"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from database.models import OrderStatus, PaymentProvider


class OrderItemRequest(BaseModel):
    """One requested order line."""

    product_id: UUID = Field(..., description="Product identifier")
    quantity: int = Field(..., gt=0, description="Units to order")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    items: List[OrderItemRequest] = Field(..., min_length=1, description="Order lines")
    payment_method: Optional[PaymentProvider] = Field(
        default=None, description="Provider the customer intends to pay with"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "123e4567-e89b-12d3-a456-426614174000", "quantity": 2}
                    ],
                    "payment_method": "card",
                }
            ]
        }
    }


class OrderItemResponse(BaseModel):
    """Response schema for an order line."""

    id: str
    product_id: str
    quantity: int
    unit_price_cents: int
    total_price_cents: int


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str = Field(..., description="Order ID")
    owner_id: str = Field(..., description="Owner user ID")
    total_amount_cents: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    status: OrderStatus = Field(..., description="Order status")
    payment_method: Optional[PaymentProvider] = Field(default=None, description="Payment method")
    external_payment_reference: Optional[str] = Field(
        default=None, description="Provider payment reference"
    )
    version: int = Field(..., description="Status change counter")
    items: List[OrderItemResponse] = Field(default_factory=list)
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a payment."""

    order_id: UUID = Field(..., description="Order to pay")
    payment_method: PaymentProvider = Field(..., description="Payment provider (card or local)")
    return_url: Optional[str] = Field(
        default=None, description="Where the provider redirects the customer afterwards"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "payment_method": "card",
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Response schema for a payment transaction."""

    id: str = Field(..., description="Transaction ID")
    order_id: str = Field(..., description="Order ID")
    provider: PaymentProvider = Field(..., description="Payment provider")
    external_transaction_id: str = Field(..., description="Provider payment reference")
    amount_cents: int = Field(..., description="Amount in minor units")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="Normalized payment status")
    provider_status: Optional[str] = Field(default=None, description="Raw provider status")
    client_artifact: Optional[Dict[str, Any]] = Field(
        default=None, description="What the client needs to complete the payment"
    )
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class PaymentWithOrderResponse(BaseModel):
    """Response schema for payment creation and confirmation."""

    payment: PaymentResponse
    order: Optional[OrderResponse] = None


class PaymentStatusResponse(BaseModel):
    """Response schema for an order's payment status."""

    order_id: str = Field(..., description="Order ID")
    payment_id: Optional[str] = Field(default=None, description="Provider payment reference")
    status: OrderStatus = Field(..., description="Order status")
    total_amount: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    payment_method: Optional[PaymentProvider] = Field(default=None, description="Payment method")
    payment_status: Optional[str] = Field(
        default=None, description="Normalized status of the latest payment attempt"
    )


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    amount_cents: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("amount_cents", "amount"),
        description="Partial refund amount in minor units (full refund if not specified)",
    )

    model_config = {
        "json_schema_extra": {"examples": [{"amount_cents": 500}, {}]}
    }


class RefundDetails(BaseModel):
    """Refund issued by the provider."""

    id: str = Field(..., description="Provider refund ID")
    amount_cents: Optional[int] = Field(default=None, description="Refunded amount")
    status: str = Field(..., description="Provider refund status")


class RefundResponse(BaseModel):
    """Response schema for refund."""

    refund: RefundDetails
    payment: PaymentResponse
    order: OrderResponse


class CardWebhookResponse(BaseModel):
    """Acknowledgement returned to the card provider."""

    received: bool = True
    outcome: Optional[str] = Field(default=None, description="Processing outcome")


class LocalWebhookResponse(BaseModel):
    """Acknowledgement returned to the local provider."""

    success: bool = True
    outcome: Optional[str] = Field(default=None, description="Processing outcome")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
