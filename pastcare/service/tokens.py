"""Refresh-token session management.

A refresh token is one login session on one device. This module issues them,
checks them, bumps their recency and revokes them, and caps how many valid
sessions a single user may hold at once by evicting the least recently used
ones when a new session is created.

All state lives in the store. The per-user store lock is the only point of
concurrency control; this service keeps nothing between calls.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional, Protocol

from pastcare.logging import get_logger
from pastcare.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)

DEFAULT_REFRESH_TOKEN_TTL = timedelta(days=30)
DEFAULT_MAX_ACTIVE_PER_USER = 5
DEFAULT_RETENTION = timedelta(days=7)


class RefreshTokenStore(Protocol):
    def user_token_lock(self, user_id: str) -> ContextManager[None]: ...

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def list_valid_refresh_tokens(
        self, user_id: str, now: datetime
    ) -> List[RefreshToken]: ...

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int: ...


def _recency_key(token: RefreshToken):
    return (token.last_used_at, token.issued_at, token.id)


class RefreshTokenService:
    """Issue, validate and revoke refresh tokens with a per-user session cap."""

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        ttl: timedelta = DEFAULT_REFRESH_TOKEN_TTL,
        max_active_per_user: int = DEFAULT_MAX_ACTIVE_PER_USER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_active_per_user < 1:
            raise ValueError("max_active_per_user must be at least 1")
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self.store = store
        self.ttl = ttl
        self.max_active_per_user = max_active_per_user
        self.clock = clock

    def create_session(
        self,
        user_id: str,
        tenant_id: Optional[str],
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshToken:
        """Mint a new refresh token, evicting the user's stalest sessions first.

        When the user already holds ``max_active_per_user`` valid tokens, the
        most recently used ``max_active_per_user - 1`` are kept and the rest
        are revoked, leaving room for the new one. Ties on ``last_used_at``
        are broken by later ``issued_at`` then larger ``id``.
        """
        with self.store.user_token_lock(user_id):
            now = self.clock()
            active = self.store.count_valid_refresh_tokens(user_id, now)
            if active >= self.max_active_per_user:
                self._evict(user_id, now)
            token = RefreshToken.new(
                user_id,
                tenant_id,
                self.ttl,
                now=now,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            saved = self.store.save_refresh_token(token)
        logger.info(
            "refresh_token_created",
            user_id=user_id,
            tenant_id=tenant_id,
            session_id=saved.id,
            expires_at=saved.expires_at.isoformat(),
        )
        return saved

    def _evict(self, user_id: str, now: datetime) -> None:
        valid = sorted(
            self.store.list_valid_refresh_tokens(user_id, now),
            key=_recency_key,
            reverse=True,
        )
        stale = valid[self.max_active_per_user - 1 :]
        for token in stale:
            token.revoked = True
            self.store.save_refresh_token(token)
        if stale:
            logger.info(
                "refresh_tokens_evicted",
                user_id=user_id,
                evicted=len(stale),
                session_ids=[t.id for t in stale],
            )

    def validate(self, token: str) -> Optional[RefreshToken]:
        """Return the stored token when it is unrevoked and unexpired."""
        if not token:
            return None
        found = self.store.get_refresh_token(token)
        if found is None or not found.is_valid(self.clock()):
            return None
        return found

    def touch(self, token: RefreshToken) -> RefreshToken:
        """Record use of a session; ``last_used_at`` never moves backwards."""
        now = self.clock()
        if now > token.last_used_at:
            token.last_used_at = now
        return self.store.save_refresh_token(token)

    def revoke(self, token: str) -> bool:
        """Revoke one token. Unknown tokens are ignored and return False."""
        if not token:
            return False
        found = self.store.get_refresh_token(token)
        if found is None:
            return False
        if not found.revoked:
            found.revoked = True
            self.store.save_refresh_token(found)
            logger.info(
                "refresh_token_revoked", user_id=found.user_id, session_id=found.id
            )
        return True

    def revoke_all(self, user_id: str) -> int:
        with self.store.user_token_lock(user_id):
            revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    def list_active_sessions(self, user_id: str) -> List[RefreshToken]:
        return sorted(
            self.store.list_valid_refresh_tokens(user_id, self.clock()),
            key=_recency_key,
            reverse=True,
        )

    def cleanup_expired(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Delete tokens that expired more than ``retention`` ago."""
        if retention < timedelta(0):
            raise ValueError("retention must not be negative")
        cutoff = self.clock() - retention
        removed = self.store.delete_refresh_tokens_expired_before(cutoff)
        logger.info(
            "refresh_tokens_cleaned", removed=removed, cutoff=cutoff.isoformat()
        )
        return removed
