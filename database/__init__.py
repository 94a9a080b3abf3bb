"""Database package for the order payments service."""
from .connection import close_db, create_engine, create_session_factory, get_db, init_db
from .models import (
    Base,
    NormalizedStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentEvent,
    PaymentProvider,
    PaymentTransaction,
    Product,
    ProductStatus,
    WebhookDelivery,
)

__all__ = [
    "Base",
    "NormalizedStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentEvent",
    "PaymentProvider",
    "PaymentTransaction",
    "Product",
    "ProductStatus",
    "WebhookDelivery",
    "close_db",
    "create_engine",
    "create_session_factory",
    "get_db",
    "init_db",
]
