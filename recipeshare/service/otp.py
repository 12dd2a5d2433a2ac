from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from recipeshare.config import Settings
from recipeshare.logging import get_logger, security_event
from recipeshare.storage.models import OtpChallenge, utcnow
from recipeshare.storage.redis_cache import CacheBackend

logger = get_logger(__name__)


class OtpStore(Protocol):
    def issue_otp(self, user_id: str, code: str, expires_at: datetime) -> OtpChallenge: ...

    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool: ...


class OtpChallengeManager:
    """Issues and verifies one-time codes for accounts that need a second factor.

    Issuing a code retires every earlier unconsumed code for the same account,
    and verification consumes a code in one atomic store operation, so a code
    can succeed at most once even when two requests race with it. Failed
    attempts are counted per account; once the limit is hit every verification
    fails until the lockout lapses.
    """

    def __init__(
        self,
        store: OtpStore,
        settings: Settings,
        *,
        cache: Optional[CacheBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._state_lock = threading.Lock()
        # In-memory fallback when Redis is unavailable
        self._attempts: dict[str, tuple[int, datetime]] = {}  # user_id -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # user_id -> locked_until

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_ttl_minutes)

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_lockout_minutes)

    def generate_code(self) -> str:
        digits = self.settings.otp_digits
        return f"{secrets.randbelow(10 ** digits):0{digits}d}"

    async def issue(self, user_id: str) -> str:
        code = self.generate_code()
        challenge = self.store.issue_otp(user_id, code, self._clock() + self.ttl)
        logger.info(
            "otp_challenge_issued", user_id=user_id, expires_at=challenge.expires_at.isoformat()
        )
        return code

    async def resend(self, user_id: str) -> str:
        return await self.issue(user_id)

    def _well_formed(self, code: object) -> bool:
        return (
            isinstance(code, str)
            and len(code) == self.settings.otp_digits
            and code.isascii()
            and code.isdigit()
        )

    async def verify(self, user_id: str, code: str) -> bool:
        if await self.is_locked_out(user_id):
            security_event("otp_locked_out", logger=logger, user_id=user_id)
            return False
        now = self._clock()
        if self._well_formed(code) and self.store.consume_otp(user_id, code, now):
            await self._clear_attempts(user_id)
            return True
        await self._record_failure(user_id, now)
        return False

    async def is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_otp_lockout(user_id)
        now = self._clock()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str, now: datetime) -> None:
        max_attempts = self.settings.otp_max_attempts
        if self.cache:
            is_locked, attempts = await self.cache.record_otp_failure(
                user_id,
                max_attempts=max_attempts,
                lockout_seconds=int(self.lockout_window.total_seconds()),
            )
            if is_locked and attempts >= 0:
                logger.warning("otp_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        with self._state_lock:
            current = self._attempts.get(user_id)
            window_start = now
            attempts = 1
            if current:
                count, prev_window_start = current
                if now - prev_window_start < self.lockout_window:
                    attempts = count + 1
                    window_start = prev_window_start
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= max_attempts:
                self._lockouts[user_id] = now + self.lockout_window
                self._attempts.pop(user_id, None)
                logger.warning("otp_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_attempts(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_otp_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)

    def cleanup_expired_state(self) -> int:
        """Drop lapsed lockouts and attempt windows from the in-memory fallback."""
        now = self._clock()
        with self._state_lock:
            expired_lockouts = [
                user_id for user_id, until in self._lockouts.items() if until <= now
            ]
            for user_id in expired_lockouts:
                self._lockouts.pop(user_id, None)
            threshold = now - self.lockout_window
            expired_attempts = [
                user_id for user_id, (_, start) in self._attempts.items() if start <= threshold
            ]
            for user_id in expired_attempts:
                self._attempts.pop(user_id, None)
        return len(expired_lockouts) + len(expired_attempts)
