from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

from flashflow.logging import get_logger


class RedisStore:
    """Redis-backed key/value store with the same interface as ``MemoryStore``."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        namespace: str = "flashflow",
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is used."""
        # A short-lived sync client keeps the async client off a temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[Any]:
        cached = await self.client.get(self._key(key))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as a miss
            self.logger.warning("redis_store_corrupt_entry", key=key)
            return None

    async def put(self, key: str, value: Any, *, ttl_seconds: Optional[int] = None) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        if ttl_seconds:
            await self.client.set(self._key(key), payload, ex=ttl_seconds)
        else:
            await self.client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
