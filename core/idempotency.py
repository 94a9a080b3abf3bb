"""
Webhook delivery deduplication.

Two-tier system:
1. Redis cache for fast lookups (optional)
2. ``webhook_deliveries`` table as the durable source of truth

The database row is written in the same transaction as the state change the
delivery caused, so a delivery is either fully applied and recorded or not
recorded at all.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database.models import PaymentProvider, WebhookDelivery

logger = structlog.get_logger(__name__)


class WebhookDeduplicator:
    """Tracks which provider webhook deliveries were already processed."""

    def __init__(self, settings: Settings, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize deduplicator.

        Args:
            settings: Application settings
            redis_client: Optional Redis client used as a read-through cache
        """
        self.settings = settings
        self.redis_client = redis_client

    @staticmethod
    def cache_key(provider: PaymentProvider, delivery_key: str) -> str:
        """Redis key for a processed delivery."""
        return f"webhook:processed:{provider.value}:{delivery_key}"

    async def is_processed(
        self, provider: PaymentProvider, delivery_key: str, db: AsyncSession
    ) -> bool:
        """
        Check whether a delivery was already processed.

        Redis is consulted first; any Redis failure falls through to the
        database.

        Args:
            provider: Provider that sent the webhook
            delivery_key: Provider-unique delivery identity
            db: Database session

        Returns:
            bool: True if the delivery was seen before
        """
        if self.redis_client is not None:
            try:
                if await self.redis_client.exists(self.cache_key(provider, delivery_key)):
                    logger.info(
                        "webhook_delivery_cache_hit",
                        provider=provider.value,
                        delivery_key=delivery_key,
                        source="redis",
                    )
                    return True
            except RedisError as e:
                logger.warning(
                    "webhook_dedup_cache_error", error=str(e), delivery_key=delivery_key
                )

        stmt = select(WebhookDelivery.id).where(
            WebhookDelivery.provider == provider,
            WebhookDelivery.delivery_key == delivery_key,
        )
        result = await db.execute(stmt)
        if result.scalar_one_or_none() is None:
            return False

        logger.info(
            "webhook_delivery_cache_hit",
            provider=provider.value,
            delivery_key=delivery_key,
            source="database",
        )
        await self.remember(provider, delivery_key)
        return True

    async def record(
        self,
        provider: PaymentProvider,
        delivery_key: str,
        outcome: str,
        db: AsyncSession,
        external_ref: Optional[str] = None,
    ) -> WebhookDelivery:
        """
        Add the delivery row to the current transaction.

        A concurrent duplicate surfaces as an ``IntegrityError`` on flush or
        commit.
        """
        delivery = WebhookDelivery(
            provider=provider,
            delivery_key=delivery_key,
            external_transaction_id=external_ref,
            outcome=outcome,
        )
        db.add(delivery)
        await db.flush()
        return delivery

    async def remember(self, provider: PaymentProvider, delivery_key: str) -> None:
        """Cache a committed delivery in Redis."""
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self.cache_key(provider, delivery_key),
                self.settings.webhook_dedupe_cache_ttl,
                "1",
            )
        except RedisError as e:
            logger.warning(
                "webhook_dedup_cache_store_error", error=str(e), delivery_key=delivery_key
            )
