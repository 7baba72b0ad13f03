from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed failed-login counters shared by every worker process."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling server-side lockout."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _key(key: str) -> str:
        return f"auth:lockout:{key}"

    async def load_lockout(self, key: str) -> Optional[Tuple[int, Optional[datetime]]]:
        data = await self.client.hgetall(self._key(key))
        if not data:
            return None
        attempts = int(data.get("attempts") or 0)
        locked_until = None
        raw_until = data.get("locked_until")
        if raw_until:
            locked_until = datetime.fromtimestamp(float(raw_until), tz=timezone.utc)
        return attempts, locked_until

    async def save_lockout(
        self,
        key: str,
        attempt_count: int,
        locked_until: Optional[datetime],
        ttl_seconds: int,
    ) -> None:
        redis_key = self._key(key)
        pipe = self.client.pipeline()
        pipe.delete(redis_key)
        mapping = {"attempts": attempt_count}
        if locked_until is not None:
            mapping["locked_until"] = locked_until.timestamp()
        pipe.hset(redis_key, mapping=mapping)
        pipe.expire(redis_key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def clear_lockout(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def close(self) -> None:
        await self.client.aclose()
