"""Core order, inventory and payment logic."""
from .errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStock,
    InvalidTransition,
    ManualRefundRequired,
    NotFoundError,
    OrderSystemError,
    ProviderError,
    SignatureError,
    StaleStateError,
    UnauthorizedError,
    UnsupportedOperation,
    ValidationError,
)

__all__ = [
    "ConflictError",
    "ForbiddenError",
    "InsufficientStock",
    "InvalidTransition",
    "ManualRefundRequired",
    "NotFoundError",
    "OrderSystemError",
    "ProviderError",
    "SignatureError",
    "StaleStateError",
    "UnauthorizedError",
    "UnsupportedOperation",
    "ValidationError",
]
