from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pastcare.config import get_settings, reset_settings_cache
from pastcare.logging import get_logger
from pastcare.service.auth import AuthService
from pastcare.service.brute_force import BruteForceProtection
from pastcare.service.maintenance import MaintenanceWorker
from pastcare.service.phone import PhoneNumberService
from pastcare.service.sms import AfricasTalkingGateway, SmsGatewayRouter, TwilioGateway
from pastcare.service.tokens import RefreshTokenService
from pastcare.storage.memory import MemoryStore
from pastcare.storage.postgres import PostgresStore
from pastcare.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the process."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login lockouts; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login lockouts are "
                    "tracked in process memory only."
                ),
                mode=fallback_mode,
            )

        self.tokens = RefreshTokenService(
            self.store,
            ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            max_active_per_user=self.settings.max_active_sessions_per_user,
        )
        self.brute_force = BruteForceProtection(
            self.store,
            self.cache,
            max_failed_attempts=self.settings.login_max_failed_attempts,
            lockout=timedelta(minutes=self.settings.login_lockout_minutes),
            attempt_window=timedelta(minutes=self.settings.login_attempt_window_minutes),
            max_ip_attempts=self.settings.login_max_ip_attempts,
        )
        self.phone_numbers = PhoneNumberService(
            default_country_code=self.settings.default_country_code
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.brute_force,
            self.settings,
            phone_numbers=self.phone_numbers,
        )
        self.sms = SmsGatewayRouter(
            self.phone_numbers,
            AfricasTalkingGateway(
                self.phone_numbers,
                self.settings.africas_talking_countries,
                sender_id=self.settings.africas_talking_sender_id,
            ),
            TwilioGateway(
                self.phone_numbers,
                self.settings.twilio_countries,
                from_number=self.settings.twilio_from_number,
            ),
        )
        self.maintenance = MaintenanceWorker(
            self.tokens,
            self.brute_force,
            interval=self.settings.maintenance_interval_seconds,
            token_retention=timedelta(days=self.settings.token_retention_days),
            attempt_retention=timedelta(days=self.settings.login_attempt_retention_days),
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            max_active_sessions_per_user=self.settings.max_active_sessions_per_user,
            maintenance_enabled=self.settings.maintenance_enabled,
        )

    async def start_background(self) -> None:
        if self.settings.maintenance_enabled:
            await self.maintenance.start()

    async def shutdown(self) -> None:
        await self.maintenance.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
