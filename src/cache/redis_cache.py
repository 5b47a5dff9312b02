"""Optional Redis cache.

Strictly an optimization: every call is bounded by socket timeouts and any
failure (connection refused, timeout, bad payload) is logged and treated as
a miss or a no-op. A cache built without a client is disabled.
"""

import json
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.config.settings import Settings

logger = structlog.get_logger(__name__)

_SCAN_BATCH = 100


def create_redis_client(settings: Settings) -> Redis | None:
    """Build a lazily-connecting client, or None when REDIS_URL is empty."""
    if not settings.REDIS_URL:
        return None
    return Redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
        decode_responses=True,
    )


class RedisCache:
    def __init__(self, client: Redis | None) -> None:
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def get_json(self, key: str) -> Any | None:
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_payload_invalid", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self._client is None:
            return
        try:
            await self._client.set(key, json.dumps(value), ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def delete(self, *keys: str) -> None:
        if self._client is None or not keys:
            return
        try:
            await self._client.delete(*keys)
        except (RedisError, OSError) as exc:
            logger.warning("cache_delete_failed", keys=list(keys), error=str(exc))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the count removed."""
        if self._client is None:
            return 0
        removed = 0
        batch: list[str] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    removed += await self._client.delete(*batch)
                    batch = []
            if batch:
                removed += await self._client.delete(*batch)
        except (RedisError, OSError) as exc:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, error=str(exc))
        return removed

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("cache_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
