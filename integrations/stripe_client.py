"""
Stripe API client with retry logic and comprehensive error handling.

Implements:
- Per-call timeout with the blocking SDK run off the event loop
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent payment and refund creation
- Webhook signature verification
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    TIMEOUT = "timeout"  # No answer in time; safe to retry with the same key
    CIRCUIT_OPEN = "circuit_open"  # Not attempted at all


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Whether another attempt may succeed."""
        return self.error_type in (
            StripeErrorType.TRANSIENT,
            StripeErrorType.RATE_LIMIT,
            StripeErrorType.TIMEOUT,
        )


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func()`` with circuit breaker protection.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError("Circuit breaker is open", StripeErrorType.CIRCUIT_OPEN)

        try:
            result = await func()
        except StripeError as e:
            if e.error_type != StripeErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeClient:
    """
    Wrapper for Stripe API with production-grade error handling.

    Credentials are passed per request, so several clients with different
    keys can coexist in one process.
    """

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        """
        Initialize Stripe client.

        Args:
            settings: Application settings
            circuit_breaker: Optional circuit breaker (one per client by default)
        """
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._request_options: Dict[str, Any] = {
            "api_key": settings.stripe_secret_key,
            "stripe_version": settings.stripe_api_version,
        }

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, operation: str, error: stripe.StripeError) -> StripeError:
        """
        Log and classify a Stripe SDK error.

        Returns:
            StripeError: Classified error for the caller to raise
        """
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_provider_error("card", error_type.value)

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call_once(self, operation: str, func: Callable[[], T]) -> T:
        """Run one blocking SDK call in a worker thread under the timeout."""
        started = time.perf_counter()
        status = "error"
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func), timeout=self.settings.provider_timeout_seconds
            )
            status = "success"
            return result
        except asyncio.TimeoutError as e:
            logger.error(
                "stripe_api_timeout",
                operation=operation,
                timeout_seconds=self.settings.provider_timeout_seconds,
            )
            metrics.record_provider_error("card", StripeErrorType.TIMEOUT.value)
            raise StripeError(
                f"Stripe {operation} timed out", StripeErrorType.TIMEOUT, original_error=e
            )
        except stripe.StripeError as e:
            raise self._handle_stripe_error(operation, e)
        finally:
            metrics.record_provider_call(
                "card", operation, status, time.perf_counter() - started
            )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run an SDK call with circuit breaker, timeout and retries.

        Raises:
            StripeError: Classified error once retries are exhausted
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, StripeError) and e.retryable
            ),
            stop=stop_after_attempt(self.settings.provider_retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_base_delay,
                min=self.settings.provider_retry_base_delay,
                max=16,
            ),
            reraise=True,
        )
        result: Any = None
        async for attempt in retrying:
            with attempt:
                result = await self.circuit_breaker.call(
                    lambda: self._call_once(operation, func)
                )
        return result

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount_cents: Amount in minor units
            currency: Currency code (e.g., 'usd')
            idempotency_key: Idempotency key for preventing duplicates
            description: Optional description shown in the dashboard
            metadata: Optional metadata

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            kwargs: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "metadata": metadata or {},
                "automatic_payment_methods": {"enabled": True},
                "idempotency_key": idempotency_key,
            }
            if description:
                kwargs["description"] = description
            return stripe.PaymentIntent.create(**kwargs, **self._request_options)

        payment_intent = await self._call("create_payment_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a PaymentIntent by ID.

        Args:
            payment_intent_id: Stripe PaymentIntent ID

        Returns:
            stripe.PaymentIntent: Retrieved payment intent

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)

        def _retrieve() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(payment_intent_id, **self._request_options)

        return await self._call("retrieve_payment_intent", _retrieve)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Optional partial refund amount
            reason: Optional refund reason
            idempotency_key: Optional idempotency key

        Returns:
            stripe.Refund: Created refund

        Raises:
            StripeError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
            if amount_cents:
                kwargs["amount"] = amount_cents
            if reason:
                kwargs["reason"] = reason
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**kwargs, **self._request_options)

        refund = await self._call("create_refund", _create_refund)

        logger.info(
            "refund_created",
            refund_id=refund.id,
            status=refund.status,
        )
        return refund

    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        """
        Verify a webhook ``Stripe-Signature`` header against the endpoint secret.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            bool: True if the signature is valid and within tolerance
        """
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            return False
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            logger.warning("webhook_verification_error", error=str(e))
            return False
        return True
