"""
API routes for orders, payments, provider webhooks and monitoring.
"""
import json
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ValidationError
from core.orders import OrderService
from core.payment_processor import PaymentProcessor
from core.refunds import RefundCoordinator
from core.webhook_processor import WebhookProcessor
from database.connection import get_db
from database.models import OrderStatus, PaymentProvider
from monitoring.health import HealthCheck

from .dependencies import (
    Caller,
    authorize_order,
    get_caller,
    get_health_check,
    get_order_service,
    get_payment_processor,
    get_refund_coordinator,
    get_webhook_processor,
    require_admin,
)
from .schemas import (
    CardWebhookResponse,
    CreateOrderRequest,
    CreatePaymentRequest,
    HealthCheckResponse,
    LocalWebhookResponse,
    OrderResponse,
    PaymentStatusResponse,
    PaymentWithOrderResponse,
    RefundRequest,
    RefundResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order and reserve stock for every item",
)
async def create_order(
    request: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create an order in pending status. Nothing is reserved if any line fails."""
    logger.info("api_create_order_request", item_count=len(request.items))

    order = await orders.create_order(
        owner_id=caller.id,
        items=[item.model_dump() for item in request.items],
        db=db,
        payment_method=request.payment_method,
    )
    return order.to_public_dict()


@order_router.get(
    "",
    response_model=List[OrderResponse],
    summary="List own orders",
)
async def list_orders(
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Orders placed by the caller, newest first."""
    result = await orders.list_orders(
        caller.id, db, status=order_status, limit=limit, offset=offset
    )
    return [order.to_public_dict() for order in result]


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await orders.get_order(order_id, db)
    authorize_order(order, caller)
    return order.to_public_dict()


@order_router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
    description="Cancel a pending or processing order and release its stock",
)
async def cancel_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await orders.get_order(order_id, db)
    authorize_order(order, caller)

    order = await orders.cancel_order(order_id, db)
    logger.info("api_cancel_order_success", order_id=str(order_id))
    return order.to_public_dict()


@order_router.delete(
    "/{order_id}/items/{item_id}",
    response_model=OrderResponse,
    summary="Remove an order item",
    description="Remove one line from a pending order and release its stock",
)
async def remove_order_item(
    order_id: uuid.UUID,
    item_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await orders.get_order(order_id, db)
    authorize_order(order, caller)

    order = await orders.remove_item(order_id, item_id, db)
    return order.to_public_dict()


@order_router.delete(
    "/{order_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a cancelled order",
)
async def delete_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Response:
    order = await orders.get_order(order_id, db)
    authorize_order(order, caller)

    await orders.delete_order(order_id, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@payment_router.post(
    "/create",
    response_model=PaymentWithOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
    description="Create a provider payment for an order; retry-safe after timeouts",
)
async def create_payment(
    request: CreatePaymentRequest,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Start paying an order with the chosen provider."""
    logger.info(
        "api_create_payment_request",
        order_id=str(request.order_id),
        payment_method=request.payment_method.value,
    )

    order = await orders.get_order(request.order_id, db)
    authorize_order(order, caller)

    result = await processor.create_payment(
        request.order_id, request.payment_method, db, return_url=request.return_url
    )
    logger.info(
        "api_create_payment_success",
        order_id=str(request.order_id),
        payment_id=result["payment"]["external_transaction_id"],
    )
    return result


@payment_router.post(
    "/confirm/{payment_id}",
    response_model=PaymentWithOrderResponse,
    summary="Confirm a payment",
    description="Poll the provider for the payment outcome and apply it",
)
async def confirm_payment(
    payment_id: str,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    txn = await processor.get_transaction_by_reference(payment_id, db)
    order = await orders.get_order(txn.order_id, db)
    authorize_order(order, caller)

    return await processor.confirm_payment(payment_id, db)


@payment_router.post(
    "/webhook/card",
    response_model=CardWebhookResponse,
    summary="Card provider webhook",
    description="Stripe event notifications",
)
async def card_webhook(
    request: Request,
    webhooks: WebhookProcessor = Depends(get_webhook_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Verify the signature over the raw body and apply the event."""
    body = await request.body()
    signature = request.headers.get("Stripe-Signature") or request.headers.get("signature")

    result = await webhooks.handle(PaymentProvider.CARD, body, signature, db)
    return {"received": True, "outcome": result.outcome}


async def _local_callback_fields(request: Request) -> Dict[str, str]:
    """Extract ``data`` and ``signature`` from a JSON or urlencoded callback."""
    body = await request.body()
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Callback body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Callback body must be an object")
        fields = {k: payload.get(k) for k in ("data", "signature")}
    else:
        parsed = parse_qs(body.decode("utf-8", errors="replace"))
        fields = {k: (parsed.get(k) or [None])[0] for k in ("data", "signature")}

    if not isinstance(fields["data"], str) or not fields["data"]:
        raise ValidationError("Callback is missing the data field")
    return fields


@payment_router.post(
    "/webhook/local",
    response_model=LocalWebhookResponse,
    summary="Local provider webhook",
    description="LiqPay server callback (JSON or form encoded)",
)
async def local_webhook(
    request: Request,
    webhooks: WebhookProcessor = Depends(get_webhook_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    fields = await _local_callback_fields(request)
    signature = fields["signature"] if isinstance(fields["signature"], str) else None

    result = await webhooks.handle(
        PaymentProvider.LOCAL, fields["data"].encode("utf-8"), signature, db
    )
    return {"success": True, "outcome": result.outcome}


@payment_router.get(
    "/status/{order_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Payment summary of an order",
)
async def get_payment_status(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    orders: OrderService = Depends(get_order_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await orders.get_order(order_id, db)
    authorize_order(order, caller)

    return await processor.get_payment_status(order_id, db)


@payment_router.post(
    "/refund/{order_id}",
    response_model=RefundResponse,
    summary="Refund an order",
    description="Full or partial refund of a paid order (administrators only)",
)
async def refund_order(
    order_id: uuid.UUID,
    request: Optional[RefundRequest] = None,
    caller: Caller = Depends(require_admin),
    refunds: RefundCoordinator = Depends(get_refund_coordinator),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    amount_cents = request.amount_cents if request is not None else None
    logger.info(
        "api_refund_order_request",
        order_id=str(order_id),
        amount_cents=amount_cents,
        admin_id=str(caller.id),
    )

    outcome = await refunds.refund(order_id, db, amount_cents=amount_cents)
    return outcome.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(
    response: Response, health_check: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
