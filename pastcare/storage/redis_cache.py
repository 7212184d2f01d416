from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _lockout_key(email: str) -> str:
    return f"auth:login:lockout:{email.lower()}"


def _attempts_key(email: str) -> str:
    return f"auth:login:attempts:{email.lower()}"


def _parse_locked_until(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    try:
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


class RedisCache:
    """Thin Redis wrapper for login failure counters and account lockouts."""

    # KEYS[1] lockout key, KEYS[2] attempts key
    # ARGV[1] max attempts, ARGV[2] window seconds,
    # ARGV[3] lockout seconds, ARGV[4] locked-until epoch
    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1, redis.call('GET', KEYS[1])}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], ARGV[4], 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts, ARGV[4]}
end

return {0, attempts, false}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_login_lockout(self, email: str) -> Optional[datetime]:
        """Return when the account lock expires, or None if not locked."""
        return _parse_locked_until(await self.client.get(_lockout_key(email)))

    async def atomic_login_failure(
        self,
        email: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 900,
    ) -> Tuple[bool, int, Optional[datetime]]:
        """Atomically count a failed login and lock the account at the threshold.

        Returns:
            Tuple of (locked, attempts, locked_until). ``attempts`` is -1 when
            the account was already locked.
        """
        locked_until = time.time() + lockout_seconds
        result = await self._login_failure(
            keys=[_lockout_key(email), _attempts_key(email)],
            args=[max_attempts, window_seconds, lockout_seconds, locked_until],
        )
        return bool(result[0]), int(result[1]), _parse_locked_until(result[2])

    async def clear_login_failures(self, email: str) -> None:
        """Drop the failure counter and any lock after a successful login."""
        pipe = self.client.pipeline()
        pipe.delete(_attempts_key(email))
        pipe.delete(_lockout_key(email))
        await pipe.execute()

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self._sync_client.register_script(
            RedisCache._LOGIN_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get_login_lockout(self, email: str) -> Optional[datetime]:
        return _parse_locked_until(self._sync_client.get(_lockout_key(email)))

    async def atomic_login_failure(
        self,
        email: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 900,
    ) -> Tuple[bool, int, Optional[datetime]]:
        locked_until = time.time() + lockout_seconds
        result = self._login_failure(
            keys=[_lockout_key(email), _attempts_key(email)],
            args=[max_attempts, window_seconds, lockout_seconds, locked_until],
        )
        return bool(result[0]), int(result[1]), _parse_locked_until(result[2])

    async def clear_login_failures(self, email: str) -> None:
        pipe = self._sync_client.pipeline()
        pipe.delete(_attempts_key(email))
        pipe.delete(_lockout_key(email))
        pipe.execute()

    async def close(self) -> None:
        self._sync_client.close()
