"""SQLAlchemy database models for orders, inventory and payment transactions."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Type

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for all timestamps."""
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ProductStatus(str, Enum):
    """Catalog availability of a product."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentProvider(str, Enum):
    """Payment providers an order can be charged through."""

    CARD = "card"
    LOCAL = "local"


class NormalizedStatus(str, Enum):
    """Provider-independent payment status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


OPEN_TRANSACTION_STATUSES = (
    NormalizedStatus.PENDING,
    NormalizedStatus.PROCESSING,
    NormalizedStatus.UNKNOWN,
)


def _enum_column(enum_cls: Type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Inventory-relevant view of a catalog product.

    The catalog owns the row; this service only changes ``inventory_count``
    through the atomic statements in ``core.inventory``.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    inventory_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status"),
        nullable=False,
        default=ProductStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("inventory_count >= 0", name="non_negative_inventory"),
        CheckConstraint("price_cents >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return (
            f"<Product(id={self.id}, inventory_count={self.inventory_count}, "
            f"status={self.status})>"
        )


class Order(Base):
    """
    Customer order.

    ``total_amount_cents`` always equals the sum of its item line totals and
    ``owner_id`` never changes once set. ``version`` grows with every status
    change so callers can detect concurrent updates.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    payment_method: Mapped[PaymentProvider | None] = mapped_column(
        _enum_column(PaymentProvider, "order_payment_method"), nullable=True
    )
    external_payment_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )

    __table_args__ = (
        CheckConstraint("total_amount_cents >= 0", name="non_negative_total"),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
        Index("idx_orders_owner_status", "owner_id", "status"),
    )

    @validates("owner_id")
    def _guard_owner(self, key: str, value: uuid.UUID) -> uuid.UUID:
        if self.owner_id is not None and self.owner_id != value:
            raise ValueError("Order owner cannot be changed")
        return value

    def belongs_to(self, user_id: uuid.UUID) -> bool:
        """Check whether the order was placed by ``user_id``."""
        return self.owner_id == user_id

    def computed_total(self) -> int:
        """Sum of line totals for the current items."""
        return sum(item.line_total_cents for item in self.items)

    def to_public_dict(self) -> Dict[str, Any]:
        """Public representation returned by the API."""
        return {
            "id": str(self.id),
            "owner_id": str(self.owner_id),
            "total_amount_cents": self.total_amount_cents,
            "currency": self.currency,
            "status": self.status.value,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "external_payment_reference": self.external_payment_reference,
            "version": self.version,
            "items": [item.to_public_dict() for item in self.items],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, owner_id={self.owner_id}, "
            f"total={self.total_amount_cents}, status={self.status})>"
        )


class OrderItem(Base):
    """Order line. ``unit_price_cents`` is the product price captured at order time."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False, index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="non_negative_unit_price"),
    )

    @property
    def line_total_cents(self) -> int:
        """Quantity times the captured unit price."""
        return self.quantity * self.unit_price_cents

    def to_public_dict(self) -> Dict[str, Any]:
        """Public representation returned by the API."""
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.line_total_cents,
        }

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return (
            f"<OrderItem(id={self.id}, product_id={self.product_id}, "
            f"quantity={self.quantity})>"
        )


class PaymentTransaction(Base):
    """
    One payment attempt with a provider.

    Created when payment is initiated and afterwards changed only by
    confirmation polls, webhooks and refunds. Rows are never deleted, so
    ``order_id`` is deliberately not a foreign key.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider: Mapped[PaymentProvider] = mapped_column(
        _enum_column(PaymentProvider, "transaction_provider"), nullable=False
    )
    external_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[NormalizedStatus] = mapped_column(
        _enum_column(NormalizedStatus, "transaction_status"), nullable=False, index=True
    )
    provider_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_transaction_id", name="uq_provider_transaction"),
        CheckConstraint("amount_cents > 0", name="positive_transaction_amount"),
        Index(
            "uq_payment_transactions_open_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing', 'unknown')"),
            sqlite_where=text("status IN ('pending', 'processing', 'unknown')"),
        ),
    )

    @property
    def is_open(self) -> bool:
        """Whether the attempt can still change outcome."""
        return self.status in OPEN_TRANSACTION_STATUSES

    def to_public_dict(self) -> Dict[str, Any]:
        """Public representation returned by the API."""
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "provider": self.provider.value,
            "external_transaction_id": self.external_transaction_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status.value,
            "provider_status": self.provider_status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, provider={self.provider}, "
            f"external_id={self.external_transaction_id}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Every provider interaction for an order is appended here. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    provider: Mapped[PaymentProvider | None] = mapped_column(
        _enum_column(PaymentProvider, "event_provider"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, order_id={self.order_id}, "
            f"type={self.event_type})>"
        )


class WebhookDelivery(Base):
    """Durable record of every webhook delivery that has been processed."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    provider: Mapped[PaymentProvider] = mapped_column(
        _enum_column(PaymentProvider, "delivery_provider"), nullable=False
    )
    delivery_key: Mapped[str] = mapped_column(String(255), nullable=False)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "delivery_key", name="uq_webhook_delivery"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookDelivery."""
        return (
            f"<WebhookDelivery(provider={self.provider}, key={self.delivery_key}, "
            f"outcome={self.outcome})>"
        )
