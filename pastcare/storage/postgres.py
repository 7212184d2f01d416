from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from pastcare.logging import get_logger
from pastcare.storage.errors import ConstraintViolation, StoreUnavailable
from pastcare.storage.models import (
    Church,
    LoginAttempt,
    RefreshToken,
    Role,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS church (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT,
        phone_number TEXT,
        email TEXT,
        website TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS church_name_lower_idx ON church (lower(name))",
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        phone_number TEXT,
        role TEXT NOT NULL DEFAULT 'member',
        tenant_id UUID REFERENCES church(id) ON DELETE CASCADE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id UUID REFERENCES church(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        ip_addr TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id, revoked, expires_at)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_email_idx ON login_attempt (email, attempted_at)",
    "CREATE INDEX IF NOT EXISTS login_attempt_ip_idx ON login_attempt (ip_addr, attempted_at)",
)


class PostgresStore:
    """Postgres-backed store for churches, users and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # Connection of the enclosing user_token_lock block, if any
        self._bound_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar(
            "pastcare_bound_conn", default=None
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        bound = self._bound_conn.get()
        if bound is not None:
            yield bound
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @contextlib.contextmanager
    def user_token_lock(self, user_id: str) -> Iterator[None]:
        """Serialize token writes for one user inside a single transaction.

        Store calls made inside the block reuse the locked connection; the
        transaction commits when the block exits and rolls back on error.
        """
        if self._bound_conn.get() is not None:
            yield
            return
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))
            reset_token = self._bound_conn.set(conn)
            try:
                yield
            finally:
                self._bound_conn.reset(reset_token)

    # row mapping
    @staticmethod
    def _to_church(row: dict) -> Church:
        return Church(
            id=str(row["id"]),
            name=row["name"],
            address=row.get("address"),
            phone_number=row.get("phone_number"),
            email=row.get("email"),
            website=row.get("website"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _to_user(row: dict) -> User:
        tenant = row.get("tenant_id")
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            phone_number=row.get("phone_number"),
            role=Role(row.get("role") or Role.MEMBER.value),
            tenant_id=str(tenant) if tenant is not None else None,
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _to_refresh_token(row: dict) -> RefreshToken:
        tenant = row.get("tenant_id")
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            tenant_id=str(tenant) if tenant is not None else None,
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            last_used_at=row["last_used_at"],
            revoked=bool(row.get("revoked", False)),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _to_login_attempt(row: dict) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            email=row["email"],
            success=bool(row["success"]),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            attempted_at=row["attempted_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO church (id, name, address, phone_number, email, website)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, address, phone_number, email, website),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("church name already exists", {"field": "name"})
        return self._to_church(row)

    def church_name_exists(self, name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM church WHERE lower(name) = lower(%s) LIMIT 1",
                (name.strip(),),
            ).fetchone()
        return row is not None

    def get_church(self, church_id: str) -> Optional[Church]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM church WHERE id = %s", (church_id,)
            ).fetchone()
        return self._to_church(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, phone_number, role, tenant_id, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        name,
                        phone_number,
                        Role(role).value,
                        tenant_id,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("church does not exist", {"tenant_id": tenant_id})
        return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, token, user_id, tenant_id, issued_at, expires_at,
                        last_used_at, revoked, ip_addr, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET last_used_at = GREATEST(refresh_token.last_used_at, EXCLUDED.last_used_at),
                        revoked = refresh_token.revoked OR EXCLUDED.revoked,
                        ip_addr = EXCLUDED.ip_addr,
                        user_agent = EXCLUDED.user_agent
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.token,
                        token.user_id,
                        token.tenant_id,
                        token.issued_at,
                        token.expires_at,
                        token.last_used_at,
                        token.revoked,
                        token.ip_addr,
                        token.user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        return self._to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._to_refresh_token(row) if row else None

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshToken]:
        try:
            uuid.UUID(str(token_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._to_refresh_token(row) if row else None

    def list_valid_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND NOT revoked AND expires_at > %s
                ORDER BY last_used_at DESC, issued_at DESC, id DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._to_refresh_token(row) for row in rows]

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS active FROM refresh_token
                WHERE user_id = %s AND NOT revoked AND expires_at > %s
                """,
                (user_id, now),
            ).fetchone()
        return int(row["active"]) if row else 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND NOT revoked",
                (user_id,),
            )
            return result.rowcount

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (cutoff,)
            )
            return result.rowcount

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_attempt (id, email, ip_addr, user_agent, success, attempted_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    email,
                    ip_addr,
                    user_agent,
                    success,
                    attempted_at or utcnow(),
                ),
            ).fetchone()
        return self._to_login_attempt(row)

    def count_failed_login_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> int:
        clauses = ["NOT success", "attempted_at >= %s"]
        params: list[Any] = [since]
        if email is not None:
            clauses.append("email = %s")
            params.append(email)
        if ip_addr is not None:
            clauses.append("ip_addr = %s")
            params.append(ip_addr)
        query = "SELECT count(*) AS failed FROM login_attempt WHERE " + " AND ".join(clauses)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["failed"]) if row else 0

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_attempt WHERE attempted_at < %s", (cutoff,)
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
