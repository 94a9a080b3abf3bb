"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
import uuid
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Tuple
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.main import create_app
from config import Settings
from core.idempotency import WebhookDeduplicator
from core.inventory import InventoryLedger
from core.ledger import PaymentTransactionLedger
from core.orders import OrderService
from core.payment_processor import PaymentProcessor
from core.refunds import RefundCoordinator
from core.webhook_processor import WebhookProcessor
from database.connection import close_db, create_engine, create_session_factory, init_db
from database.models import PaymentProvider, Product, ProductStatus
from integrations.card_gateway import CardGateway
from integrations.local_gateway import LocalGateway
from integrations.stripe_client import StripeClient

WEBHOOK_SECRET = "whsec_test_fake_secret"
LIQPAY_PRIVATE_KEY = "sandbox_private_key"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a per-test SQLite file."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        liqpay_public_key="sandbox_public_key",
        liqpay_private_key=LIQPAY_PRIVATE_KEY,
        liqpay_api_url="https://liqpay.test/api/request",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        redis_url=None,
        app_name="order-payments-test",
        app_env="test",
        log_level="DEBUG",
        default_currency="UAH",
        provider_timeout_seconds=2.0,
        provider_retry_max_attempts=3,
        provider_retry_base_delay=0.01,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test engine and tables."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def products(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, uuid.UUID]:
    """Seed the catalog: widget (100, stock 5), gadget (250, stock 10), retired."""
    catalog = {
        "widget": Product(name="Widget", price_cents=100, inventory_count=5),
        "gadget": Product(name="Gadget", price_cents=250, inventory_count=10),
        "retired": Product(
            name="Retired", price_cents=999, inventory_count=3, status=ProductStatus.INACTIVE
        ),
    }
    async with session_factory() as session:
        session.add_all(catalog.values())
        await session.commit()
        return {name: product.id for name, product in catalog.items()}


@pytest.fixture
def inventory() -> InventoryLedger:
    return InventoryLedger()


@pytest.fixture
def ledger() -> PaymentTransactionLedger:
    return PaymentTransactionLedger()


@pytest.fixture
def order_service(
    test_settings: Settings, inventory: InventoryLedger, ledger: PaymentTransactionLedger
) -> OrderService:
    return OrderService(test_settings, inventory, ledger)


def make_intent(
    intent_id: str = "pi_test_123",
    status: str = "requires_payment_method",
    amount: int = 200,
    currency: str = "uah",
) -> SimpleNamespace:
    """Stand-in for a ``stripe.PaymentIntent``."""
    return SimpleNamespace(
        id=intent_id,
        status=status,
        amount=amount,
        currency=currency,
        client_secret=f"{intent_id}_secret_abc",
    )


@pytest.fixture
def intent_factory() -> Callable[..., SimpleNamespace]:
    return make_intent


@pytest.fixture
def mock_stripe_client(test_settings: Settings) -> AsyncMock:
    """Stripe client with mocked API calls and real webhook verification."""
    client = AsyncMock(spec=StripeClient)
    client.create_payment_intent.return_value = make_intent()
    client.retrieve_payment_intent.return_value = make_intent(status="succeeded")
    client.create_refund.return_value = SimpleNamespace(
        id="re_test_123", status="succeeded", amount=200
    )
    client.verify_webhook.side_effect = StripeClient(test_settings).verify_webhook
    return client


@pytest.fixture
def liqpay_status() -> Dict[str, Any]:
    """Body returned by the mocked LiqPay status API; tests may mutate it."""
    return {"result": "ok", "status": "success", "amount": 2.0, "currency": "UAH"}


@pytest.fixture
def liqpay_requests() -> list:
    return []


@pytest_asyncio.fixture
async def liqpay_http_client(
    liqpay_status: Dict[str, Any], liqpay_requests: list
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client whose transport answers like the LiqPay status API."""

    def handler(request: httpx.Request) -> httpx.Response:
        liqpay_requests.append(request)
        return httpx.Response(200, json=liqpay_status)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def card_gateway(test_settings: Settings, mock_stripe_client: AsyncMock) -> CardGateway:
    return CardGateway(test_settings, stripe_client=mock_stripe_client)


@pytest.fixture
def local_gateway(test_settings: Settings, liqpay_http_client: httpx.AsyncClient) -> LocalGateway:
    return LocalGateway(test_settings, http_client=liqpay_http_client)


@pytest.fixture
def gateways(card_gateway: CardGateway, local_gateway: LocalGateway) -> Dict[PaymentProvider, Any]:
    return {PaymentProvider.CARD: card_gateway, PaymentProvider.LOCAL: local_gateway}


@pytest.fixture
def payment_processor(
    test_settings: Settings,
    order_service: OrderService,
    gateways: Dict[PaymentProvider, Any],
    ledger: PaymentTransactionLedger,
) -> PaymentProcessor:
    return PaymentProcessor(test_settings, order_service, gateways, ledger=ledger)


@pytest.fixture
def webhook_processor(
    test_settings: Settings,
    order_service: OrderService,
    gateways: Dict[PaymentProvider, Any],
    ledger: PaymentTransactionLedger,
) -> WebhookProcessor:
    return WebhookProcessor(
        order_service, gateways, WebhookDeduplicator(test_settings), ledger=ledger
    )


@pytest.fixture
def refund_coordinator(
    order_service: OrderService,
    gateways: Dict[PaymentProvider, Any],
    ledger: PaymentTransactionLedger,
) -> RefundCoordinator:
    return RefundCoordinator(order_service, gateways, ledger=ledger)


@pytest.fixture
def card_event() -> Callable[..., Tuple[bytes, str]]:
    """Build a signed Stripe event: returns ``(raw_body, signature_header)``."""

    def build(
        intent_id: str,
        event_type: str = "payment_intent.succeeded",
        order_id: Optional[uuid.UUID] = None,
        event_id: Optional[str] = None,
        status: Optional[str] = None,
        amount: int = 200,
        secret: str = WEBHOOK_SECRET,
    ) -> Tuple[bytes, str]:
        obj: Dict[str, Any] = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": "uah",
            "metadata": {"order_id": str(order_id)} if order_id else {},
        }
        if status:
            obj["status"] = status
        payload = json.dumps(
            {
                "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
                "type": event_type,
                "data": {"object": obj},
            }
        )
        timestamp = int(time.time())
        signature = hmac.new(
            secret.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return payload.encode("utf-8"), f"t={timestamp},v1={signature}"

    return build


@pytest.fixture
def liqpay_callback(local_gateway: LocalGateway) -> Callable[..., Dict[str, str]]:
    """Build a signed LiqPay callback: returns ``{"data", "signature"}``."""

    def build(
        external_ref: str,
        status: str = "success",
        amount: float = 2.0,
        currency: str = "UAH",
        **extra: Any,
    ) -> Dict[str, str]:
        return local_gateway.encode(
            {
                "order_id": external_ref,
                "status": status,
                "amount": amount,
                "currency": currency,
                "action": "pay",
                **extra,
            }
        )

    return build


@pytest_asyncio.fixture
async def app(
    test_settings: Settings,
    engine: AsyncEngine,
    gateways: Dict[PaymentProvider, Any],
) -> Any:
    """Application wired to the test database and mocked providers."""
    application = create_app(test_settings, gateways=gateways)
    # ASGITransport does not run the lifespan; share the test engine instead.
    application.state.engine = engine
    application.state.session_factory = create_session_factory(engine)
    application.state.health_check.session_factory = application.state.session_factory
    return application


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("123e4567-e89b-12d3-a456-426614174000")


@pytest.fixture
def user_headers(user_id: uuid.UUID) -> Dict[str, str]:
    return {"X-User-ID": str(user_id), "X-User-Role": "user"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-User-ID": str(uuid.uuid4()), "X-User-Role": "admin"}
