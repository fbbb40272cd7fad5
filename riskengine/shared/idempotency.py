"""Idempotency-key claims stored in Redis."""

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger()


class IdempotencyCache:
    """Claims request keys with ``SET NX EX`` so a repeated key is detected.

    Redis errors are logged and the claim is granted: callers must only use
    this for operations that are themselves safe to repeat.
    """

    def __init__(self, client: Redis, prefix: str = "idemp:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "idemp:") -> "IdempotencyCache":
        return cls(Redis.from_url(url), prefix=prefix)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Return True if ``key`` was not seen within the last ``ttl_seconds``."""
        cache_key = f"{self._prefix}{key}"
        try:
            claimed = await self._client.set(cache_key, "1", nx=True, ex=ttl_seconds)
        except RedisError as exc:
            logger.warning("idempotency_claim_failed", key=cache_key, error=str(exc))
            return True
        return bool(claimed)

    async def close(self) -> None:
        await self._client.aclose()
