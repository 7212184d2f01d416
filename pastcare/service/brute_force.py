from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from pastcare.logging import get_logger
from pastcare.storage.models import LoginAttempt, utcnow
from pastcare.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class LoginAttemptStore(Protocol):
    def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttempt: ...

    def count_failed_login_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> int: ...

    def delete_login_attempts_before(self, cutoff: datetime) -> int: ...


class BruteForceProtection:
    """Per-account lockout and per-IP blocking for the login endpoint.

    Every attempt is persisted in the store. The per-account failure counter
    and lock live in Redis when a cache is configured and in a lock-guarded
    map otherwise; the per-IP check counts persisted failures.
    """

    def __init__(
        self,
        store: LoginAttemptStore,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        max_failed_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        attempt_window: timedelta = timedelta(minutes=15),
        max_ip_attempts: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_failed_attempts = max_failed_attempts
        self.lockout = lockout
        self.attempt_window = attempt_window
        self.max_ip_attempts = max_ip_attempts
        self.clock = clock
        self._state_lock = threading.Lock()
        self._failures: dict[str, tuple[int, datetime]] = {}  # email -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # email -> locked_until

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    async def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[datetime]:
        """Persist an attempt and update the account counter.

        Returns the lock expiry when this failure locked the account.
        """
        key = self._key(email)
        now = self.clock()
        self.store.record_login_attempt(
            key, success, ip_addr=ip_addr, user_agent=user_agent, attempted_at=now
        )
        if success:
            await self._clear(key)
            return None
        return await self._register_failure(key, now)

    async def _register_failure(self, key: str, now: datetime) -> Optional[datetime]:
        if self.cache:
            locked, attempts, locked_until = await self.cache.atomic_login_failure(
                key,
                max_attempts=self.max_failed_attempts,
                window_seconds=int(self.attempt_window.total_seconds()),
                lockout_seconds=int(self.lockout.total_seconds()),
            )
            if locked and attempts >= 0:
                logger.warning("account_lockout_triggered", email=key, attempts=attempts)
                return locked_until
            return None

        with self._state_lock:
            current = self._failures.get(key)
            attempts = 1
            window_start = now
            if current:
                count, prev_window_start = current
                if now - prev_window_start < self.attempt_window:
                    attempts = count + 1
                    window_start = prev_window_start
            if attempts >= self.max_failed_attempts:
                locked_until = now + self.lockout
                self._lockouts[key] = locked_until
                self._failures.pop(key, None)
            else:
                self._failures[key] = (attempts, window_start)
                return None
        logger.warning("account_lockout_triggered", email=key, attempts=attempts)
        return locked_until

    async def _clear(self, key: str) -> None:
        if self.cache:
            await self.cache.clear_login_failures(key)
            return
        with self._state_lock:
            self._failures.pop(key, None)
            self._lockouts.pop(key, None)

    async def account_locked_until(self, email: str) -> Optional[datetime]:
        key = self._key(email)
        if self.cache:
            return await self.cache.get_login_lockout(key)
        now = self.clock()
        with self._state_lock:
            locked_until = self._lockouts.get(key)
            if locked_until and locked_until > now:
                return locked_until
            if locked_until:
                # expired lock
                self._lockouts.pop(key, None)
        return None

    async def is_account_locked(self, email: str) -> bool:
        return await self.account_locked_until(email) is not None

    def is_ip_blocked(self, ip_addr: Optional[str]) -> bool:
        if not ip_addr:
            return False
        since = self.clock() - self.attempt_window
        failed = self.store.count_failed_login_attempts(since, ip_addr=ip_addr)
        if failed >= self.max_ip_attempts:
            logger.warning("ip_blocked", ip_addr=ip_addr, failed=failed)
            return True
        return False

    def cleanup_old_attempts(self, retention: timedelta = timedelta(days=30)) -> int:
        cutoff = self.clock() - retention
        removed = self.store.delete_login_attempts_before(cutoff)
        now = self.clock()
        with self._state_lock:
            for key in [k for k, until in self._lockouts.items() if until <= now]:
                self._lockouts.pop(key, None)
            for key in [
                k
                for k, (_, start) in self._failures.items()
                if now - start >= self.attempt_window
            ]:
                self._failures.pop(key, None)
        logger.info("login_attempts_cleaned", removed=removed, cutoff=cutoff.isoformat())
        return removed
