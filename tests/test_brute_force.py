"""Tests for login brute-force protection."""

from datetime import datetime, timedelta, timezone

import pytest

from pastcare.service.brute_force import BruteForceProtection
from pastcare.storage.memory import MemoryStore

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeLoginCache:
    """Async stand-in for the Redis login counters."""

    def __init__(self):
        self.calls = []
        self.cleared = []
        self.locked_until = None
        self.result = (False, 1, None)

    async def atomic_login_failure(self, email, **kwargs):
        self.calls.append((email, kwargs))
        return self.result

    async def clear_login_failures(self, email):
        self.cleared.append(email)

    async def get_login_lockout(self, email):
        return self.locked_until


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def protection(store, clock):
    return BruteForceProtection(store, None, clock=clock)


class TestAccountLockout:
    """In-memory counters used when no cache is configured."""

    async def test_locks_on_fifth_failure(self, protection, clock):
        for _ in range(4):
            assert await protection.record_login_attempt("a@example.com", False) is None
        assert await protection.is_account_locked("a@example.com") is False

        locked_until = await protection.record_login_attempt("a@example.com", False)

        assert locked_until == T0 + timedelta(minutes=15)
        assert await protection.is_account_locked("A@Example.com") is True

    async def test_lock_expires(self, protection, clock):
        for _ in range(5):
            await protection.record_login_attempt("a@example.com", False)
        clock.advance(minutes=15)

        assert await protection.account_locked_until("a@example.com") is None
        assert "a@example.com" not in protection._lockouts

    async def test_success_clears_counter(self, protection):
        for _ in range(4):
            await protection.record_login_attempt("a@example.com", False)
        await protection.record_login_attempt("a@example.com", True)
        for _ in range(4):
            await protection.record_login_attempt("a@example.com", False)

        assert await protection.is_account_locked("a@example.com") is False

    async def test_window_resets_counter(self, protection, clock):
        for _ in range(4):
            await protection.record_login_attempt("a@example.com", False)
        clock.advance(minutes=16)

        assert await protection.record_login_attempt("a@example.com", False) is None
        assert await protection.is_account_locked("a@example.com") is False

    async def test_attempts_are_persisted(self, protection, store):
        await protection.record_login_attempt(
            "A@example.com", False, ip_addr="1.2.3.4", user_agent="curl"
        )
        attempt = store.login_attempts[0]

        assert attempt.email == "a@example.com"
        assert attempt.ip_addr == "1.2.3.4"
        assert attempt.attempted_at == T0


class TestIpBlocking:
    async def test_blocks_after_ten_failures(self, protection, clock):
        for i in range(9):
            await protection.record_login_attempt(f"u{i}@example.com", False, ip_addr="9.9.9.9")
        assert protection.is_ip_blocked("9.9.9.9") is False

        await protection.record_login_attempt("u9@example.com", False, ip_addr="9.9.9.9")
        assert protection.is_ip_blocked("9.9.9.9") is True
        assert protection.is_ip_blocked("8.8.8.8") is False

        clock.advance(minutes=16)
        assert protection.is_ip_blocked("9.9.9.9") is False

    def test_missing_ip_never_blocked(self, protection):
        assert protection.is_ip_blocked(None) is False
        assert protection.is_ip_blocked("") is False


class TestCleanup:
    async def test_removes_old_attempts(self, protection, store, clock):
        await protection.record_login_attempt("a@example.com", False)
        clock.advance(days=31)
        await protection.record_login_attempt("a@example.com", True)

        assert protection.cleanup_old_attempts(timedelta(days=30)) == 1
        assert len(store.login_attempts) == 1


class TestCacheBackend:
    """Counters delegate to the cache when one is configured."""

    async def test_failure_uses_atomic_counter(self, store, clock):
        cache = FakeLoginCache()
        protection = BruteForceProtection(store, cache, clock=clock)

        assert await protection.record_login_attempt("A@example.com", False) is None
        email, kwargs = cache.calls[0]
        assert email == "a@example.com"
        assert kwargs == {"max_attempts": 5, "window_seconds": 900, "lockout_seconds": 900}

    async def test_lock_reported_from_cache(self, store, clock):
        cache = FakeLoginCache()
        until = T0 + timedelta(minutes=15)
        cache.result = (True, 5, until)
        protection = BruteForceProtection(store, cache, clock=clock)

        assert await protection.record_login_attempt("a@example.com", False) == until

        cache.locked_until = until
        assert await protection.account_locked_until("a@example.com") == until

    async def test_already_locked_does_not_retrigger(self, store, clock):
        cache = FakeLoginCache()
        cache.result = (True, -1, T0)
        protection = BruteForceProtection(store, cache, clock=clock)

        assert await protection.record_login_attempt("a@example.com", False) is None

    async def test_success_clears_cache(self, store, clock):
        cache = FakeLoginCache()
        protection = BruteForceProtection(store, cache, clock=clock)

        await protection.record_login_attempt("a@example.com", True)

        assert cache.cleared == ["a@example.com"]
