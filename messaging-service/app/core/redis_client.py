import redis.asyncio as redis
from typing import Optional, List
import logging

from app.core.circuit_breaker import (
    redis_circuit_breaker,
    CircuitState
)

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client for Pub/Sub and work queues with circuit breaker protection"""

    def __init__(self, url: str = "redis://localhost:6379"):
        self.url = url
        self._client: Optional[redis.Redis] = None
        self._circuit_breaker = redis_circuit_breaker

    @property
    def circuit_state(self) -> CircuitState:
        """Get current circuit breaker state"""
        return self._circuit_breaker.state

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self):
        """Connect to Redis"""
        try:
            self._client = await redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._client.ping()
            # Reset circuit breaker on successful connection
            self._circuit_breaker.reset()
            logger.info("✅ Connected to Redis")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Disconnect from Redis"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    @property
    def client(self) -> redis.Redis:
        """Get Redis client"""
        if not self._client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def publish(self, channel: str, message: str):
        """Publish message to Pub/Sub channel with circuit breaker protection"""
        async with self._circuit_breaker:
            await self.client.publish(channel, message)

    # ==================== Work queue (list) methods ====================

    async def push_items(self, key: str, *values: str) -> int:
        """Append values to a list. Returns the new list length."""
        if not values:
            return 0
        async with self._circuit_breaker:
            return await self.client.rpush(key, *values)

    async def pop_items(self, key: str, count: int) -> List[str]:
        """Pop up to `count` values from the head of a list."""
        async with self._circuit_breaker:
            result = await self.client.lpop(key, count)
            return result or []
