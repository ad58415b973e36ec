from __future__ import annotations

import logging
from typing import Any

import orjson
from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class RedisCache:
    """Short-lived cross-process keys: callback de-duplication and confirm claims.

    Conversation state and profile snapshots are never stored here; they live in the
    in-process ConversationStore.
    """

    def __init__(self, redis_url: str | None = None, namespace: str = "ctb", client: Redis | None = None) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(redis_url, decode_responses=False)
        self.redis = client
        self.namespace = namespace

    def key(self, *parts: Any) -> str:
        return ":".join([self.namespace, *(str(p) for p in parts)])

    async def close(self) -> None:
        if hasattr(self.redis, "aclose"):
            await self.redis.aclose()  # type: ignore[attr-defined]
            return
        await self.redis.close()  # type: ignore[func-returns-value]

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def get_json(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(key)
            if not raw:
                return None
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("cache_json_decode_error", extra={"event": "cache_json_decode_error"})
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_get_error", extra={"event": "cache_get_error", "reason": str(exc)})
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.redis.set(key, orjson.dumps(value), ex=ttl)
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_set_error", extra={"event": "cache_set_error", "reason": str(exc)})

    async def set_if_absent(self, key: str, ttl: int, value: str = "1") -> bool:
        """Atomically claim ``key``. Returns False when it was already claimed.

        Redis outages fail open for de-duplication keys; callers guarding fund-moving
        actions must use ``claim_strict``.
        """
        try:
            return bool(await self.redis.set(key, value.encode("utf-8"), nx=True, ex=ttl))
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_set_if_absent_error", extra={"event": "cache_set_if_absent_error", "reason": str(exc)})
            return True

    async def claim_strict(self, key: str, ttl: int) -> bool:
        """Like ``set_if_absent`` but fails closed when Redis is unreachable."""
        try:
            return bool(await self.redis.set(key, b"1", nx=True, ex=ttl))
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_claim_error", extra={"event": "cache_claim_error", "reason": str(exc)})
            return False

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys. Returns number of keys removed."""
        if not keys:
            return 0
        try:
            return int(await self.redis.delete(*keys))
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_delete_error", extra={"event": "cache_delete_error", "reason": str(exc)})
            return 0
