"""
Request-scoped dependencies: caller identity and the services assembled in
``create_app``.
"""
import uuid
from dataclasses import dataclass

import structlog
from fastapi import Depends, Request

from config import Settings
from core.errors import ForbiddenError, UnauthorizedError
from core.orders import OrderService
from core.payment_processor import PaymentProcessor
from core.refunds import RefundCoordinator
from core.webhook_processor import WebhookProcessor
from database.models import Order
from monitoring.health import HealthCheck

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the upstream auth middleware."""

    id: uuid.UUID
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_caller(request: Request) -> Caller:
    """
    Read the caller from the identity headers.

    Raises:
        UnauthorizedError: Id header missing or not a UUID
    """
    settings: Settings = request.app.state.settings
    raw_id = request.headers.get(settings.caller_id_header)
    if not raw_id:
        raise UnauthorizedError("Authentication required")
    try:
        caller_id = uuid.UUID(raw_id)
    except ValueError:
        raise UnauthorizedError("Invalid caller id")

    role = (request.headers.get(settings.caller_role_header) or "user").strip().lower()
    structlog.contextvars.bind_contextvars(caller_id=str(caller_id))
    return Caller(id=caller_id, role=role)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    """Caller with the admin role, 403 otherwise."""
    if not caller.is_admin:
        raise ForbiddenError("Administrator role required")
    return caller


def authorize_order(order: Order, caller: Caller) -> None:
    """
    Allow the order's owner and administrators.

    Raises:
        ForbiddenError: Caller may not access the order
    """
    if not (caller.is_admin or order.belongs_to(caller.id)):
        raise ForbiddenError("Access to this order is denied")


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_payment_processor(request: Request) -> PaymentProcessor:
    return request.app.state.payment_processor


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def get_refund_coordinator(request: Request) -> RefundCoordinator:
    return request.app.state.refund_coordinator


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check
