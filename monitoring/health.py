"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when configured)
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the database and optional Redis."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory of the application database
            redis_client: Redis client, if the deployment uses one
        """
        self.session_factory = session_factory
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {"status": "skipped", "service": "redis", "message": "Redis not configured"}

        try:
            await self.redis_client.ping()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; does not touch dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; verifies all dependencies are available."""
        return await self.check_all()
