from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    PASTOR = "pastor"
    TREASURER = "treasurer"
    FELLOWSHIP_HEAD = "fellowship_head"
    FELLOWSHIP_LEADER = "fellowship_leader"
    MEMBER_MANAGER = "member_manager"
    MEMBER = "member"


@dataclass
class Church:
    id: str
    name: str
    address: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    phone_number: Optional[str] = None
    role: Role = Role.MEMBER
    tenant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """One login session: an opaque bearer token bound to a user and church."""

    id: str
    token: str
    user_id: str
    tenant_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime
    revoked: bool = False
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: Optional[str],
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            # 256 bits, URL-safe
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            tenant_id=tenant_id,
            issued_at=issued,
            expires_at=issued + ttl,
            last_used_at=issued,
            revoked=False,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or utcnow()) < self.expires_at


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)
