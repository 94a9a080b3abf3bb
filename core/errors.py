"""
Error taxonomy for order, inventory and payment operations.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer renders it with.
"""
from typing import Any, Dict, Optional


class OrderSystemError(Exception):
    """Base exception for all expected business outcomes."""

    code = "error"
    http_status = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human readable message
            details: Extra machine-readable fields for the response body
            http_status: Override of the class default status
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Body rendered by the API exception handler."""
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(OrderSystemError):
    """Bad input."""

    code = "validation_error"
    http_status = 400


class UnauthorizedError(OrderSystemError):
    """Caller identity missing or malformed."""

    code = "unauthorized"
    http_status = 401


class ForbiddenError(OrderSystemError):
    """Caller is not the owner or lacks the role."""

    code = "forbidden"
    http_status = 403


class NotFoundError(OrderSystemError):
    """Referenced entity does not exist."""

    code = "not_found"
    http_status = 404


class InsufficientStock(OrderSystemError):
    """Reservation exceeded the available inventory."""

    code = "insufficient_stock"
    http_status = 400

    def __init__(self, product_id: Any, requested: int, available: int):
        """
        Initialize error.

        Args:
            product_id: Product that ran short
            requested: Quantity asked for
            available: Stock at the time of the failed reservation
        """
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}",
            details={
                "product_id": str(product_id),
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidTransition(OrderSystemError):
    """Status change not in the order state machine."""

    code = "invalid_transition"
    http_status = 400

    def __init__(self, current: Any, target: Any, message: Optional[str] = None):
        """
        Initialize error.

        Args:
            current: Status the order is in
            target: Status that was requested
            message: Optional override message
        """
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            message or f"Cannot move order from {current_value} to {target_value}",
            details={"current_status": current_value, "target_status": target_value},
        )
        self.current = current
        self.target = target


class ConflictError(OrderSystemError):
    """Operation conflicts with the current state of the order."""

    code = "conflict"
    http_status = 400


class StaleStateError(OrderSystemError):
    """
    Compare-and-swap lost: the order changed since it was read.

    Internal retry signal; callers re-read and decide again.
    """

    code = "stale_state"
    http_status = 409

    def __init__(self, order_id: Any, expected: Any, current: Any):
        """
        Initialize error.

        Args:
            order_id: Order that was being updated
            expected: Status the caller assumed
            current: Status actually found
        """
        expected_value = getattr(expected, "value", expected)
        current_value = getattr(current, "value", current)
        super().__init__(
            f"Order {order_id} is {current_value}, expected {expected_value}",
            details={"expected_status": expected_value, "current_status": current_value},
        )
        self.order_id = order_id
        self.expected = expected
        self.current = current


class SignatureError(OrderSystemError):
    """Webhook signature could not be verified."""

    code = "invalid_signature"
    http_status = 400


class ProviderError(OrderSystemError):
    """
    Upstream payment provider failed.

    Raised before any local state is written, so the operation is safe to retry.
    """

    code = "provider_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retryable: bool = True,
        timeout: bool = False,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize error.

        Args:
            message: Detailed message (logged, not returned to clients)
            provider: Provider name
            retryable: Whether retrying may succeed
            timeout: Whether the provider did not answer in time
            original_error: Underlying exception
        """
        super().__init__(
            message,
            details={"provider": provider, "retryable": retryable, "timeout": timeout},
        )
        self.provider = provider
        self.retryable = retryable
        self.timeout = timeout
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Generic body; provider detail stays in the server logs."""
        return {
            "error": self.code,
            "message": "Payment provider request failed. Please retry later.",
            "details": self.details,
        }


class UnsupportedOperation(OrderSystemError):
    """The provider does not offer the requested capability."""

    code = "unsupported_operation"
    http_status = 400


class ManualRefundRequired(UnsupportedOperation):
    """Refund must be issued by hand in the provider's dashboard."""

    def __init__(self, order_id: Any, provider: str):
        """
        Initialize error.

        Args:
            order_id: Order awaiting refund
            provider: Provider without a refund API
        """
        super().__init__(
            f"Manual refund required: provider '{provider}' has no refund API",
            details={
                "order_id": str(order_id),
                "provider": provider,
                "manual_refund_required": True,
            },
        )
        self.order_id = order_id
        self.provider = provider
