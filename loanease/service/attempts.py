from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.clock import Clock, SystemClock
from loanease.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def attempt_key(email: str, ip_address: Optional[str]) -> str:
    return f"{email.strip().lower()}|{ip_address or 'unknown'}"


class AttemptLimiter:
    """Counts failed login/2FA attempts per key and locks the key out at the limit.

    Uses the Redis Lua script when a cache is available; otherwise falls back
    to lock-protected process memory driven by the injected clock.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self.clock = clock or SystemClock()
        self.max_attempts = settings.max_login_attempts
        self.window = timedelta(minutes=settings.attempt_window_minutes)
        self.lockout = timedelta(minutes=settings.lockout_duration_minutes)
        self._state_lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    async def lockout_remaining(self, key: str) -> int:
        """Seconds until ``key`` may try again; 0 when it is not locked out."""
        if self.cache:
            return await self.cache.lockout_remaining(key)
        now = self.clock.now()
        with self._state_lock:
            locked_until = self._lockouts.get(key)
            if locked_until is None:
                return 0
            if locked_until <= now:
                # Expired lockout, clean up
                self._lockouts.pop(key, None)
                return 0
            return max(1, int((locked_until - now).total_seconds()))

    async def record_failure(self, key: str) -> Tuple[bool, int]:
        """Record one failed attempt.

        Returns:
            Tuple of (is_locked_out, attempts); attempts is -1 when the key
            was already locked out before this call.
        """
        if self.cache:
            locked, attempts = await self.cache.record_failed_attempt(
                key,
                max_attempts=self.max_attempts,
                window_seconds=int(self.window.total_seconds()),
                lockout_seconds=int(self.lockout.total_seconds()),
            )
        else:
            now = self.clock.now()
            with self._state_lock:
                locked_until = self._lockouts.get(key)
                if locked_until and locked_until > now:
                    return (True, -1)
                current = self._attempts.get(key)
                window_start = now
                attempts = 1
                if current:
                    count, prev_window_start = current
                    # Within the window, increment; otherwise start a new window
                    if now - prev_window_start < self.window:
                        attempts = count + 1
                        window_start = prev_window_start
                self._attempts[key] = (attempts, window_start)
                locked = attempts >= self.max_attempts
                if locked:
                    self._lockouts[key] = now + self.lockout
                    self._attempts.pop(key, None)
        if locked and attempts >= 0:
            logger.warning("attempt_lockout_triggered", attempts=attempts)
        return (locked, attempts)

    async def clear(self, key: str) -> None:
        if self.cache:
            await self.cache.clear_attempts(key)
            return
        with self._state_lock:
            self._attempts.pop(key, None)
            self._lockouts.pop(key, None)
