from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from pastcare.config import Settings
from pastcare.logging import get_logger
from pastcare.service.brute_force import BruteForceProtection
from pastcare.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidSessionError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from pastcare.service.phone import PhoneNumberService
from pastcare.service.tokens import RefreshTokenService
from pastcare.storage.errors import ConstraintViolation
from pastcare.storage.models import Church, RefreshToken, Role, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_church(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        phone_number: Optional[str] = None,
        email: Optional[str] = None,
        website: Optional[str] = None,
    ) -> Church: ...

    def church_name_exists(self, name: str) -> bool: ...

    def get_church(self, church_id: str) -> Optional[Church]: ...

    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        phone_number: Optional[str] = None,
        role: Role = Role.MEMBER,
        tenant_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshToken]: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    tenant_id: Optional[str]
    email: Optional[str] = None


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: User
    session_id: str
    token_type: str = "bearer"


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Password login, access tokens and refresh-token sessions."""

    def __init__(
        self,
        store: AuthStore,
        tokens: RefreshTokenService,
        brute_force: BruteForceProtection,
        settings: Settings,
        *,
        phone_numbers: Optional[PhoneNumberService] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.brute_force = brute_force
        self.settings = settings
        self.phone_numbers = phone_numbers or PhoneNumberService(
            default_country_code=settings.default_country_code
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords
    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # access tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any malformed or expired token."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before trusting the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode("utf-8", "ignore")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_access_token(
        self, user: User, *, remember_me: bool = False
    ) -> Tuple[str, datetime]:
        now = self._now()
        ttl_minutes = (
            self.settings.remember_me_access_token_ttl_minutes
            if remember_me
            else self.settings.access_token_ttl_minutes
        )
        expires_at = now + timedelta(minutes=ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": Role(user.role).value,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    @staticmethod
    def _role_allows(role: Role, required: Role) -> bool:
        if role == required or required == Role.MEMBER:
            return True
        if role == Role.SUPERADMIN:
            return True
        # church admins hold every church-scoped role
        return role == Role.ADMIN and required != Role.SUPERADMIN

    async def authenticate(
        self,
        access_token: Optional[str],
        required_role: Optional[Role | str] = None,
    ) -> AuthContext:
        payload = self.decode_token(access_token)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError("invalid access token")
        user = self.store.get_user(str(payload.get("sub")))
        if not user or not user.is_active:
            raise AuthenticationError("user not found or inactive")
        if payload.get("tenant_id") != user.tenant_id or payload.get("role") != user.role.value:
            # role or church changed since the token was minted
            raise AuthenticationError("access token is stale")
        if required_role is not None and not self._role_allows(user.role, Role(required_role)):
            raise ForbiddenError(
                "insufficient role", detail={"required_role": Role(required_role).value}
            )
        return AuthContext(
            user_id=user.id, role=user.role, tenant_id=user.tenant_id, email=user.email
        )

    # registration
    def _validate_credentials(self, email: str, password: str) -> None:
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _normalize_phone(self, phone_number: Optional[str]) -> Optional[str]:
        if phone_number is None or not phone_number.strip():
            return None
        if not self.phone_numbers.is_valid(phone_number):
            raise ValidationError(
                "invalid phone number", detail={"field": "phone_number"}
            )
        return self.phone_numbers.normalize(phone_number)

    def _session_tokens(
        self,
        user: User,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> AuthTokens:
        access_token, expires_at = self.issue_access_token(user, remember_me=remember_me)
        session = self.tokens.create_session(
            user.id, user.tenant_id, ip_addr=ip_addr, user_agent=user_agent
        )
        return AuthTokens(
            access_token=access_token,
            refresh_token=session.token,
            expires_at=expires_at,
            user=user,
            session_id=session.id,
        )

    async def register_church(
        self,
        *,
        church_name: str,
        admin_email: str,
        admin_password: str,
        admin_name: str = "",
        admin_phone: Optional[str] = None,
        church_address: Optional[str] = None,
        church_phone: Optional[str] = None,
        church_email: Optional[str] = None,
        church_website: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthTokens:
        """Create a church with its first admin and sign that admin in."""
        name = (church_name or "").strip()
        email = _normalize_email(admin_email)
        if not name:
            raise ValidationError("church name is required", detail={"field": "church_name"})
        self._validate_credentials(email, admin_password)
        admin_phone = self._normalize_phone(admin_phone)
        church_phone = self._normalize_phone(church_phone)

        if self.store.church_name_exists(name):
            raise ConflictError("church name already registered", detail={"field": "church_name"})
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})

        try:
            church = self.store.create_church(
                name,
                address=church_address,
                phone_number=church_phone,
                email=church_email,
                website=church_website,
            )
            user = self.store.create_user(
                email,
                admin_name,
                phone_number=admin_phone,
                role=Role.ADMIN,
                tenant_id=church.id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, admin_password)
        self.logger.info("church_registered", church_id=church.id, user_id=user.id)
        return self._session_tokens(
            user, remember_me=False, ip_addr=ip_addr, user_agent=user_agent
        )

    async def register_user(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        phone_number: Optional[str] = None,
        role: Role | str = Role.MEMBER,
        tenant_id: Optional[str] = None,
    ) -> User:
        email = _normalize_email(email)
        self._validate_credentials(email, password)
        role = Role(role)
        if tenant_id is None and role != Role.SUPERADMIN:
            raise ValidationError("church is required", detail={"field": "tenant_id"})
        if tenant_id is not None and not self.store.get_church(tenant_id):
            raise NotFoundError("church not found", detail={"tenant_id": tenant_id})
        phone_number = self._normalize_phone(phone_number)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                email,
                name,
                phone_number=phone_number,
                role=role,
                tenant_id=tenant_id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, tenant_id=tenant_id, role=role.value)
        return user

    # sessions
    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthTokens:
        email = _normalize_email(email)
        if self.brute_force.is_ip_blocked(ip_addr):
            raise RateLimitedError(
                "too many failed login attempts from this address",
                detail={"ip_addr": ip_addr},
            )
        locked_until = await self.brute_force.account_locked_until(email)
        if locked_until:
            raise AccountLockedError("account temporarily locked", locked_until=locked_until)

        user = self.store.get_user_by_email(email)
        if not user or not user.is_active or not self.verify_password(user.id, password):
            newly_locked = await self.brute_force.record_login_attempt(
                email, False, ip_addr=ip_addr, user_agent=user_agent
            )
            self.logger.info("login_failed", email=email, ip_addr=ip_addr)
            if newly_locked:
                raise AccountLockedError("account temporarily locked", locked_until=newly_locked)
            raise AuthenticationError("invalid email or password")
        if user.tenant_id is None and user.role != Role.SUPERADMIN:
            raise AuthenticationError("user is not associated with a church")

        await self.brute_force.record_login_attempt(
            email, True, ip_addr=ip_addr, user_agent=user_agent
        )
        tokens = self._session_tokens(
            user, remember_me=remember_me, ip_addr=ip_addr, user_agent=user_agent
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            tenant_id=user.tenant_id,
            session_id=tokens.session_id,
            remember_me=remember_me,
        )
        return tokens

    async def refresh(self, refresh_token: str) -> AuthTokens:
        """Mint a new access token; the refresh token itself is not rotated."""
        record = self.tokens.validate(refresh_token)
        if record is None:
            raise InvalidSessionError("invalid or expired refresh token")
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise InvalidSessionError("session user is no longer active")
        record = self.tokens.touch(record)
        access_token, expires_at = self.issue_access_token(user)
        return AuthTokens(
            access_token=access_token,
            refresh_token=record.token,
            expires_at=expires_at,
            user=user,
            session_id=record.id,
        )

    async def logout(self, refresh_token: str) -> None:
        self.tokens.revoke(refresh_token)

    async def logout_everywhere(self, user_id: str) -> int:
        return self.tokens.revoke_all(user_id)

    async def list_sessions(self, user_id: str) -> list[RefreshToken]:
        return self.tokens.list_active_sessions(user_id)

    async def terminate_session(self, user_id: str, session_id: str) -> None:
        record = self.store.get_refresh_token_by_id(session_id)
        if not record or record.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        self.tokens.revoke(record.token)

    # request helpers
    @staticmethod
    def client_ip(
        headers: Optional[Mapping[str, str]], remote_addr: Optional[str] = None
    ) -> Optional[str]:
        """Client address, honouring proxy headers before the peer address."""
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        forwarded = (lowered.get("x-forwarded-for") or "").strip()
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = (lowered.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
        return remote_addr

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
