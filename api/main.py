"""
Main FastAPI application.

Order and payment consistency API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from config import Settings, get_settings
from core.errors import OrderSystemError, ProviderError
from core.idempotency import WebhookDeduplicator
from core.inventory import InventoryLedger
from core.ledger import PaymentTransactionLedger
from core.locking import OrderPaymentLock
from core.orders import OrderService
from core.payment_processor import PaymentProcessor
from core.refunds import RefundCoordinator
from core.webhook_processor import WebhookProcessor
from database.connection import close_db, create_engine, create_session_factory, init_db
from database.models import PaymentProvider
from integrations.card_gateway import CardGateway
from integrations.gateways import PaymentGateway
from integrations.local_gateway import LocalGateway
from monitoring.health import HealthCheck
from monitoring.logging import setup_logging

from .routes import monitoring_router, order_router, payment_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db(app.state.engine)
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    for gateway in app.state.gateways.values():
        await gateway.close()
    if app.state.owns_redis and app.state.redis is not None:
        await app.state.redis.aclose()
    try:
        await close_db(app.state.engine)
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OrderSystemError)
    async def order_system_error_handler(request: Request, exc: OrderSystemError) -> JSONResponse:
        """Render expected business outcomes with their own status code."""
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "request_rejected",
            error=exc.code,
            detail=exc.message,
            status_code=exc.http_status,
            provider_error=str(exc.original_error)
            if isinstance(exc, ProviderError) and exc.original_error
            else None,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "validation_error",
                "message": "Invalid request",
                "details": {"errors": jsonable_encoder(exc.errors())},
            },
        )

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    async def database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("database_unavailable", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "service_unavailable",
                "message": "Database is temporarily unavailable. Please try again later.",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )


def create_app(
    settings: Optional[Settings] = None,
    gateways: Optional[Mapping[PaymentProvider, PaymentGateway]] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> FastAPI:
    """
    Assemble the application and its services.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        gateways: Gateway per provider (Stripe and LiqPay gateways if omitted)
        redis_client: Redis client (created from ``settings.redis_url`` if omitted)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    owns_redis = False
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        owns_redis = True

    if gateways is None:
        gateways = {
            PaymentProvider.CARD: CardGateway(settings),
            PaymentProvider.LOCAL: LocalGateway(settings),
        }

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    ledger = PaymentTransactionLedger()
    order_service = OrderService(settings, InventoryLedger(), ledger)

    app = FastAPI(
        title="Order Payments Service",
        description=(
            "Orders with atomic stock reservation, card and local payments, "
            "idempotent webhook reconciliation and refunds."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.owns_redis = owns_redis
    app.state.gateways = gateways
    app.state.order_service = order_service
    app.state.payment_processor = PaymentProcessor(
        settings,
        order_service,
        gateways,
        ledger=ledger,
        lock=OrderPaymentLock(settings, redis_client),
    )
    app.state.webhook_processor = WebhookProcessor(
        order_service,
        gateways,
        WebhookDeduplicator(settings, redis_client),
        ledger=ledger,
    )
    app.state.refund_coordinator = RefundCoordinator(order_service, gateways, ledger=ledger)
    app.state.health_check = HealthCheck(session_factory, redis_client)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    _register_exception_handlers(app)

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    logger.info(
        "application_created",
        providers=[provider.value for provider in gateways],
        redis_enabled=redis_client is not None,
    )
    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
