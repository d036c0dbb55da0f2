from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for event fan-out, failed-attempt windows and admin sessions."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Rolling window: drop members older than the window, add this attempt, count.
    _ATTEMPT_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
return redis.call('ZCARD', key)
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _attempt_key(subject: str) -> str:
        """Hash the subject so usernames and device ids cannot collide on delimiters."""
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"vauth:attempts:{digest}"

    @staticmethod
    def _admin_session_key(token: str) -> str:
        return f"vauth:admin_session:{hashlib.sha256(token.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        return await self.client.publish(channel, json.dumps(payload, default=str))

    async def record_failed_attempt(
        self, subject: str, window_seconds: int, *, now: Optional[float] = None
    ) -> int:
        """Record one failure for ``subject`` and return the count inside the window."""
        ts = time.time() if now is None else now
        member = f"{ts}:{uuid.uuid4().hex}"
        count = await self.client.eval(
            self._ATTEMPT_WINDOW_SCRIPT,
            1,
            self._attempt_key(subject),
            ts,
            window_seconds,
            member,
        )
        return int(count)

    async def clear_failed_attempts(self, subject: str) -> None:
        await self.client.delete(self._attempt_key(subject))

    async def set_admin_session(self, token: str, username: str, ttl_seconds: int) -> None:
        await self.client.set(self._admin_session_key(token), username, ex=max(1, ttl_seconds))

    async def get_admin_session(self, token: str) -> Optional[str]:
        return await self.client.get(self._admin_session_key(token))

    async def delete_admin_session(self, token: str) -> None:
        await self.client.delete(self._admin_session_key(token))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable surface as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        return self._sync_client.publish(channel, json.dumps(payload, default=str))

    async def record_failed_attempt(
        self, subject: str, window_seconds: int, *, now: Optional[float] = None
    ) -> int:
        ts = time.time() if now is None else now
        member = f"{ts}:{uuid.uuid4().hex}"
        count = self._sync_client.eval(
            RedisCache._ATTEMPT_WINDOW_SCRIPT,
            1,
            RedisCache._attempt_key(subject),
            ts,
            window_seconds,
            member,
        )
        return int(count)

    async def clear_failed_attempts(self, subject: str) -> None:
        self._sync_client.delete(RedisCache._attempt_key(subject))

    async def set_admin_session(self, token: str, username: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            RedisCache._admin_session_key(token), username, ex=max(1, ttl_seconds)
        )

    async def get_admin_session(self, token: str) -> Optional[str]:
        return self._sync_client.get(RedisCache._admin_session_key(token))

    async def delete_admin_session(self, token: str) -> None:
        self._sync_client.delete(RedisCache._admin_session_key(token))

    async def close(self) -> None:
        self._sync_client.close()
