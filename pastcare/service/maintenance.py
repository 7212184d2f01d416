"""Periodic housekeeping for expired sessions and old login attempts."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from pastcare.logging import get_logger, set_correlation_id
from pastcare.service.brute_force import BruteForceProtection
from pastcare.service.tokens import RefreshTokenService

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 6 * 60 * 60


class MaintenanceWorker:
    """Background loop that compacts the token and login-attempt tables.

    Each pass deletes refresh tokens that expired more than
    ``token_retention`` ago and login attempts older than
    ``attempt_retention``. Neither affects whether any session is valid.
    """

    def __init__(
        self,
        tokens: RefreshTokenService,
        brute_force: BruteForceProtection,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        token_retention: timedelta = timedelta(days=7),
        attempt_retention: timedelta = timedelta(days=30),
    ) -> None:
        self.tokens = tokens
        self.brute_force = brute_force
        self.interval = interval
        self.token_retention = token_retention
        self.attempt_retention = attempt_retention
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def run_once(self) -> dict[str, int]:
        """Run one cleanup pass; store errors propagate to the caller."""
        tokens_removed = self.tokens.cleanup_expired(self.token_retention)
        attempts_removed = self.brute_force.cleanup_old_attempts(self.attempt_retention)
        logger.info(
            "maintenance_pass_completed",
            tokens_removed=tokens_removed,
            attempts_removed=attempts_removed,
        )
        return {"tokens_removed": tokens_removed, "attempts_removed": attempts_removed}

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            # one correlation id per pass
            set_correlation_id()
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "maintenance_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
