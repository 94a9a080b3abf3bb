"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreateOrderRequest,
    CreatePaymentRequest,
    OrderResponse,
    PaymentStatusResponse,
    PaymentWithOrderResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "create_app",
    "CreateOrderRequest",
    "CreatePaymentRequest",
    "OrderResponse",
    "PaymentStatusResponse",
    "PaymentWithOrderResponse",
    "RefundRequest",
    "RefundResponse",
]
