from __future__ import annotations

import contextlib
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pastcare.logging import get_logger
from pastcare.storage.errors import ConstraintViolation
from pastcare.storage.models import (
    Church,
    LoginAttempt,
    RefreshToken,
    Role,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    Records are copied on the way in and out, so a caller only changes stored
    state through an explicit save, the same as with the Postgres store.
    When ``fs_root`` is given the state is mirrored to a JSON file.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.churches: Dict[str, Church] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so the per-user token lock can wrap nested store calls
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @contextlib.contextmanager
    def user_token_lock(self, user_id: str) -> Iterator[None]:
        with self._data_lock:
            yield

    # churches
    def create_church(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        phone_number: Optional[str] = None,
        email: Optional[str] = None,
        website: Optional[str] = None,
    ) -> Church:
        with self._data_lock:
            if self._church_name_taken(name):
                raise ConstraintViolation("church name already exists", {"field": "name"})
            church = Church(
                id=str(uuid.uuid4()),
                name=name,
                address=address,
                phone_number=phone_number,
                email=email,
                website=website,
            )
            self.churches[church.id] = church
            self._persist_state()
            return replace(church)

    def _church_name_taken(self, name: str) -> bool:
        lowered = name.strip().lower()
        return any(c.name.strip().lower() == lowered for c in self.churches.values())

    def church_name_exists(self, name: str) -> bool:
        with self._data_lock:
            return self._church_name_taken(name)

    def get_church(self, church_id: str) -> Optional[Church]:
        with self._data_lock:
            church = self.churches.get(church_id)
            return replace(church) if church else None

    # users / credentials
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        phone_number: Optional[str] = None,
        role: Role = Role.MEMBER,
        tenant_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id is not None and tenant_id not in self.churches:
                raise ConstraintViolation("church does not exist", {"tenant_id": tenant_id})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone_number=phone_number,
                role=Role(role),
                tenant_id=tenant_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": token.user_id})
            clash = next(
                (
                    t
                    for t in self.refresh_tokens.values()
                    if t.token == token.token and t.id != token.id
                ),
                None,
            )
            if clash is not None:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            stored = replace(token)
            existing = self.refresh_tokens.get(token.id)
            if existing is not None:
                # revocation is one-way and last use never moves backwards
                stored.revoked = stored.revoked or existing.revoked
                stored.last_used_at = max(existing.last_used_at, stored.last_used_at)
            self.refresh_tokens[token.id] = stored
            self._persist_state()
            return replace(stored)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            found = next(
                (t for t in self.refresh_tokens.values() if t.token == token), None
            )
            return replace(found) if found else None

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            found = self.refresh_tokens.get(token_id)
            return replace(found) if found else None

    def list_valid_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._data_lock:
            valid = [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_valid(now)
            ]
        return sorted(
            valid,
            key=lambda t: (t.last_used_at, t.issued_at, t.id),
            reverse=True,
        )

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_valid(now)
            )

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                tid for tid, t in self.refresh_tokens.items() if t.expires_at < cutoff
            ]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # login attempts
    def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=email,
            success=success,
            ip_addr=ip_addr,
            user_agent=user_agent,
            attempted_at=attempted_at or utcnow(),
        )
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
        return replace(attempt)

    def count_failed_login_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if not a.success
                and a.attempted_at >= since
                and (email is None or a.email == email)
                and (ip_addr is None or a.ip_addr == ip_addr)
            )

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            removed = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            if removed:
                self._persist_state()
            return removed

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "churches": [self._serialize_church(c) for c in self.churches.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": {
                uid: {"hash": h, "algo": algo}
                for uid, (h, algo) in self.credentials.items()
            },
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "login_attempts": [
                self._serialize_login_attempt(a) for a in self.login_attempts
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_state_load_failed", path=str(path), error=str(exc))
            return False
        self.churches = {
            c["id"]: self._deserialize_church(c) for c in data.get("churches", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            uid: (rec["hash"], rec["algo"])
            for uid, rec in data.get("credentials", {}).items()
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.login_attempts = [
            self._deserialize_login_attempt(a) for a in data.get("login_attempts", [])
        ]
        return True

    def _serialize_church(self, church: Church) -> dict:
        return {
            "id": church.id,
            "name": church.name,
            "address": church.address,
            "phone_number": church.phone_number,
            "email": church.email,
            "website": church.website,
            "created_at": self._serialize_datetime(church.created_at),
        }

    def _deserialize_church(self, data: dict) -> Church:
        return Church(
            id=data["id"],
            name=data["name"],
            address=data.get("address"),
            phone_number=data.get("phone_number"),
            email=data.get("email"),
            website=data.get("website"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "phone_number": user.phone_number,
            "role": user.role.value,
            "tenant_id": user.tenant_id,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            phone_number=data.get("phone_number"),
            role=Role(data.get("role", Role.MEMBER.value)),
            tenant_id=data.get("tenant_id"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token": token.token,
            "user_id": token.user_id,
            "tenant_id": token.tenant_id,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "revoked": token.revoked,
            "ip_addr": token.ip_addr,
            "user_agent": token.user_agent,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token=data["token"],
            user_id=data["user_id"],
            tenant_id=data.get("tenant_id"),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            revoked=data.get("revoked", False),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_login_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "email": attempt.email,
            "success": attempt.success,
            "ip_addr": attempt.ip_addr,
            "user_agent": attempt.user_agent,
            "attempted_at": self._serialize_datetime(attempt.attempted_at),
        }

    def _deserialize_login_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=data["id"],
            email=data["email"],
            success=data["success"],
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            attempted_at=self._deserialize_datetime(data["attempted_at"]),
        )
