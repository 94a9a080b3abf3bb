"""
Prometheus metrics for order and payment monitoring.

Tracks:
- Orders created and cancelled
- Inventory reservation outcomes
- Order status transitions and lost compare-and-swaps
- Payment provider calls and errors
- Webhook outcomes
- Refund outcomes
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_amount_cents = Histogram(
    "order_amount_cents",
    "Order totals in minor units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Applied order status transitions",
    ["from_status", "to_status"],
)

order_stale_state_total = Counter(
    "order_stale_state_total",
    "Order status compare-and-swap attempts that lost a race",
)

# Inventory metrics
inventory_reservations_total = Counter(
    "inventory_reservations_total",
    "Inventory reservation attempts",
    ["outcome"],  # reserved, insufficient, inactive, missing
)

inventory_releases_total = Counter(
    "inventory_releases_total",
    "Inventory releases",
    ["reason"],  # compensation, cancel, item_removed
)

# Provider metrics
provider_requests_total = Counter(
    "payment_provider_requests_total",
    "Total payment provider requests",
    ["provider", "operation", "status"],
)

provider_duration_seconds = Histogram(
    "payment_provider_duration_seconds",
    "Payment provider call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_errors_total = Counter(
    "payment_provider_errors_total",
    "Total payment provider errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit, timeout
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by outcome",
    ["provider", "outcome"],  # applied, duplicate, replay, unknown_order, ignored, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Refund attempts by outcome",
    ["provider", "outcome"],  # refunded, manual_required, failed
)

# Lock metrics
order_lock_acquisitions_total = Counter(
    "order_lock_acquisitions_total",
    "Order payment lock acquisitions",
    ["status"],  # acquired, busy
)

last_webhook_timestamp = Gauge(
    "last_webhook_timestamp",
    "Timestamp of the last processed webhook",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, amount_cents: int) -> None:
        """Record a created order."""
        orders_created_total.labels(currency=currency).inc()
        order_amount_cents.observe(amount_cents)

    @staticmethod
    def record_status_transition(from_status: str, to_status: str) -> None:
        """Record an applied status transition."""
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_stale_state() -> None:
        """Record a lost compare-and-swap."""
        order_stale_state_total.inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        """Record an inventory reservation attempt."""
        inventory_reservations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_release(reason: str) -> None:
        """Record an inventory release."""
        inventory_releases_total.labels(reason=reason).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a payment provider call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record a payment provider error."""
        provider_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook processing."""
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)
        last_webhook_timestamp.set(time.time())

    @staticmethod
    def record_refund(provider: str, outcome: str) -> None:
        """Record a refund attempt."""
        refunds_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_order_lock(status: str) -> None:
        """Record an order lock acquisition attempt."""
        order_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
