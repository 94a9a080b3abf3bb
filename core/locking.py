"""Per-order payment initiation lock backed by Redis."""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError

from config import Settings
from core.errors import ConflictError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderPaymentLock:
    """
    Serializes payment initiation per order.

    Without a Redis client the lock is a no-op and the order status CAS is
    the only guard.
    """

    def __init__(self, settings: Settings, redis_client: Optional[aioredis.Redis] = None):
        self.settings = settings
        self.redis_client = redis_client

    @staticmethod
    def lock_name(order_id: uuid.UUID) -> str:
        return f"lock:order_payment:{order_id}"

    @asynccontextmanager
    async def hold(self, order_id: uuid.UUID) -> AsyncIterator[None]:
        """
        Hold the payment lock of ``order_id`` for the duration of the block.

        Raises:
            ConflictError: Another initiation holds the lock (HTTP 409)
        """
        if self.redis_client is None:
            yield
            return

        lock = self.redis_client.lock(
            self.lock_name(order_id),
            timeout=self.settings.redis_lock_timeout,
            blocking_timeout=self.settings.redis_lock_blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.warning("order_lock_unavailable", order_id=str(order_id), error=str(e))
            acquired = None

        if acquired is None:
            yield
            return

        if not acquired:
            metrics.record_order_lock("busy")
            logger.warning("order_lock_busy", order_id=str(order_id))
            raise ConflictError(
                f"Payment for order {order_id} is already being created",
                http_status=409,
            )

        metrics.record_order_lock("acquired")
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                logger.warning(
                    "order_lock_release_failed", order_id=str(order_id), error=str(e)
                )
