"""Unit tests for refresh-token session management.

Tests for:
- Session creation and the per-user session cap
- Eviction ordering and tie-breaks
- Validation of expired, revoked and unknown tokens
- touch / revoke / revoke_all semantics
- Retention cleanup
"""

from datetime import datetime, timedelta, timezone

import pytest

from pastcare.service.tokens import RefreshTokenService
from pastcare.storage.errors import StoreUnavailable
from pastcare.storage.memory import MemoryStore
from pastcare.storage.models import Role


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, seconds: float) -> datetime:
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def church(store):
    return store.create_church("Grace Chapel")


@pytest.fixture
def user(store, church):
    return store.create_user("ama@example.com", "Ama", role=Role.MEMBER, tenant_id=church.id)


def make_service(store, clock, *, max_active=5, ttl=timedelta(days=30)):
    return RefreshTokenService(store, ttl=ttl, max_active_per_user=max_active, clock=clock)


class TestCreateSession:
    """Tests for minting new sessions."""

    def test_new_session_fields(self, store, clock, user):
        """A fresh token is valid, unrevoked and expires after the configured ttl."""
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id, "10.0.0.1", "pytest")

        assert token.user_id == user.id
        assert token.tenant_id == user.tenant_id
        assert token.issued_at == T0
        assert token.last_used_at == T0
        assert token.expires_at == T0 + timedelta(days=30)
        assert token.revoked is False
        assert token.ip_addr == "10.0.0.1"
        assert token.user_agent == "pytest"
        assert service.validate(token.token) is not None

    def test_tokens_are_unique_and_long(self, store, clock, user):
        """Each session gets its own opaque token string."""
        service = make_service(store, clock, max_active=50)
        tokens = {service.create_session(user.id, user.tenant_id).token for _ in range(20)}

        assert len(tokens) == 20
        assert all(len(t) >= 32 for t in tokens)

    def test_superadmin_without_church(self, store, clock):
        """Platform users may hold sessions with no church."""
        admin = store.create_user("root@example.com", role=Role.SUPERADMIN)
        service = make_service(store, clock)

        token = service.create_session(admin.id, None)

        assert token.tenant_id is None
        assert service.validate(token.token) is not None

    def test_rejects_zero_cap(self, store, clock):
        with pytest.raises(ValueError):
            make_service(store, clock, max_active=0)


class TestSessionCap:
    """Tests for eviction when the user is at the session cap."""

    def test_two_session_scenario(self, store, clock, user):
        """A at t=0, B at t=10, C at t=20 with a cap of 2 revokes only A."""
        service = make_service(store, clock, max_active=2)
        clock.set(0)
        a = service.create_session(user.id, user.tenant_id)
        clock.set(10)
        b = service.create_session(user.id, user.tenant_id)
        assert service.validate(a.token) is not None
        assert service.validate(b.token) is not None

        clock.set(20)
        c = service.create_session(user.id, user.tenant_id)

        assert service.validate(a.token) is None
        assert store.get_refresh_token(a.token).revoked is True
        assert service.validate(b.token) is not None
        assert service.validate(c.token) is not None

    @pytest.mark.parametrize("cap", [1, 2, 3, 5])
    def test_n_plus_one_logins_keep_exactly_n(self, store, clock, user, cap):
        """After cap+1 logins exactly cap tokens are valid and the oldest is revoked."""
        service = make_service(store, clock, max_active=cap)
        created = []
        for i in range(cap + 1):
            clock.set(i * 10)
            created.append(service.create_session(user.id, user.tenant_id))

        valid = [t for t in created if service.validate(t.token)]
        assert len(valid) == cap
        assert service.validate(created[0].token) is None
        assert store.count_valid_refresh_tokens(user.id, clock()) == cap

    def test_recently_used_session_survives(self, store, clock, user):
        """Eviction follows last use, not issue time."""
        service = make_service(store, clock, max_active=2)
        clock.set(0)
        a = service.create_session(user.id, user.tenant_id)
        clock.set(10)
        b = service.create_session(user.id, user.tenant_id)
        clock.set(15)
        service.touch(service.validate(a.token))

        clock.set(20)
        service.create_session(user.id, user.tenant_id)

        assert service.validate(a.token) is not None
        assert service.validate(b.token) is None

    def test_tie_on_last_used_evicts_older_issue(self, store, clock, user):
        """With equal last_used_at the earlier-issued session is the one evicted."""
        service = make_service(store, clock, max_active=2)
        clock.set(0)
        a = service.create_session(user.id, user.tenant_id)
        clock.set(5)
        b = service.create_session(user.id, user.tenant_id)
        # both last used at t=5
        service.touch(service.validate(a.token))

        clock.set(5)
        service.create_session(user.id, user.tenant_id)

        assert service.validate(a.token) is None
        assert service.validate(b.token) is not None

    def test_same_instant_burst_is_deterministic(self, store, clock, user):
        """Logins sharing one timestamp still leave exactly cap valid sessions."""
        service = make_service(store, clock, max_active=3)
        for _ in range(6):
            service.create_session(user.id, user.tenant_id)

        assert len(service.list_active_sessions(user.id)) == 3

    def test_cap_is_per_user(self, store, clock, church, user):
        other = store.create_user("kofi@example.com", tenant_id=church.id)
        service = make_service(store, clock, max_active=1)
        mine = service.create_session(user.id, church.id)
        service.create_session(other.id, church.id)

        assert service.validate(mine.token) is not None

    def test_expired_tokens_do_not_count(self, store, clock, user):
        """Only valid tokens count toward the cap."""
        service = make_service(store, clock, max_active=2, ttl=timedelta(minutes=5))
        clock.set(0)
        old = service.create_session(user.id, user.tenant_id)
        clock.set(600)
        a = service.create_session(user.id, user.tenant_id)
        b = service.create_session(user.id, user.tenant_id)

        assert service.validate(a.token) is not None
        assert service.validate(b.token) is not None
        # expired but never revoked by eviction
        assert store.get_refresh_token(old.token).revoked is False


class TestValidate:
    """Tests for token validation."""

    def test_unknown_and_empty(self, store, clock):
        service = make_service(store, clock)
        assert service.validate("never-issued") is None
        assert service.validate("") is None

    def test_expired_token(self, store, clock, user):
        service = make_service(store, clock, ttl=timedelta(hours=1))
        token = service.create_session(user.id, user.tenant_id)

        clock.advance(minutes=59)
        assert service.validate(token.token) is not None
        clock.advance(minutes=1)
        assert service.validate(token.token) is None

    def test_revoked_token(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)
        service.revoke(token.token)

        assert service.validate(token.token) is None

    def test_validate_does_not_mutate(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)
        clock.advance(hours=1)

        service.validate(token.token)

        assert store.get_refresh_token(token.token).last_used_at == T0


class TestTouch:
    """Tests for recording session use."""

    def test_touch_bumps_last_used(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)
        clock.advance(minutes=30)

        touched = service.touch(service.validate(token.token))

        assert touched.last_used_at == T0 + timedelta(minutes=30)
        assert store.get_refresh_token(token.token).last_used_at == touched.last_used_at

    def test_touch_never_moves_backwards(self, store, clock, user):
        service = make_service(store, clock)
        clock.set(100)
        token = service.create_session(user.id, user.tenant_id)
        clock.set(50)

        touched = service.touch(token)

        assert touched.last_used_at == T0 + timedelta(seconds=100)

    def test_touch_keeps_expiry_and_revocation(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)
        service.revoke(token.token)
        clock.advance(days=1)

        touched = service.touch(token)

        assert touched.expires_at == token.expires_at
        assert touched.revoked is True


class TestRevoke:
    """Tests for single and bulk revocation."""

    def test_revoke_is_idempotent(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)

        assert service.revoke(token.token) is True
        first = store.get_refresh_token(token.token)
        assert service.revoke(token.token) is True
        second = store.get_refresh_token(token.token)

        assert first == second
        assert second.revoked is True

    def test_revoke_unknown_is_noop(self, store, clock):
        service = make_service(store, clock)
        assert service.revoke("missing") is False
        assert service.revoke("") is False

    def test_revoke_all(self, store, clock, user):
        """Three valid plus one revoked token all end revoked; a second call is safe."""
        service = make_service(store, clock)
        tokens = [service.create_session(user.id, user.tenant_id) for _ in range(4)]
        service.revoke(tokens[0].token)

        assert service.revoke_all(user.id) == 3
        assert all(store.get_refresh_token(t.token).revoked for t in tokens)
        assert service.revoke_all(user.id) == 0
        assert service.list_active_sessions(user.id) == []


class TestListActiveSessions:
    def test_ordered_by_recent_use(self, store, clock, user):
        service = make_service(store, clock)
        clock.set(0)
        a = service.create_session(user.id, user.tenant_id)
        clock.set(10)
        b = service.create_session(user.id, user.tenant_id)
        clock.set(20)
        service.touch(a)

        ids = [t.id for t in service.list_active_sessions(user.id)]

        assert ids == [a.id, b.id]


class TestCleanupExpired:
    """Tests for the retention sweep."""

    def test_retention_boundary(self, store, clock, user):
        """Tokens expired within the retention window stay; older ones go."""
        service = make_service(store, clock, ttl=timedelta(days=1))
        clock.set(0)
        long_gone = service.create_session(user.id, user.tenant_id)
        clock.advance(days=5)
        recent = service.create_session(user.id, user.tenant_id)
        clock.advance(days=5)
        live = service.create_session(user.id, user.tenant_id)

        # long_gone expired 9 days ago, recent expired 4 days ago
        removed = service.cleanup_expired(timedelta(days=7))

        assert removed == 1
        assert store.get_refresh_token(long_gone.token) is None
        assert store.get_refresh_token(recent.token) is not None
        assert service.validate(live.token) is not None

    def test_never_deletes_valid_tokens(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)

        assert service.cleanup_expired(timedelta(0)) == 0
        assert service.validate(token.token) is not None

    def test_revoked_but_unexpired_is_kept(self, store, clock, user):
        service = make_service(store, clock)
        token = service.create_session(user.id, user.tenant_id)
        service.revoke(token.token)

        service.cleanup_expired()

        assert store.get_refresh_token(token.token) is not None

    def test_negative_retention_rejected(self, store, clock):
        service = make_service(store, clock)
        with pytest.raises(ValueError):
            service.cleanup_expired(timedelta(days=-1))


class _FailingStore(MemoryStore):
    def get_refresh_token(self, token):
        raise StoreUnavailable("database unavailable")


class TestStoreFailures:
    def test_store_failure_propagates(self, clock):
        service = make_service(_FailingStore(), clock)
        with pytest.raises(StoreUnavailable):
            service.validate("anything")
        with pytest.raises(StoreUnavailable):
            service.revoke("anything")
