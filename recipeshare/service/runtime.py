from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from recipeshare.config import Settings, get_settings, reset_settings_cache
from recipeshare.logging import get_logger
from recipeshare.service.activity import ActivityMonitor
from recipeshare.service.auth import AuthService
from recipeshare.service.csrf import CsrfGuard
from recipeshare.service.otp import OtpChallengeManager
from recipeshare.service.sessions import SessionTrustManager
from recipeshare.storage.memory import MemoryStore
from recipeshare.storage.models import utcnow
from recipeshare.storage.postgres import PostgresStore
from recipeshare.storage.redis_cache import CacheBackend, RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


def _loggable_url(url: Optional[str]) -> Optional[str]:
    """Drop credentials from a connection URL before it reaches the logs."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        user = parts.username or ""
        return parts._replace(netloc=f"{user}:***@{host}").geturl()
    except ValueError:
        return "<unparseable url>"


@dataclass
class _Bucket:
    tokens: float
    updated: datetime


class Runtime:
    """Wires the store, the optional Redis cache and the auth services together.

    One instance serves the whole process. Every component reads the time
    through ``Runtime.now`` so tests can swap ``clock`` for a fake.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.clock: Callable[[], datetime] = utcnow
        self.store = self._open_store()
        self.cache = self._connect_cache()

        self.activity = ActivityMonitor(
            self.store,
            timedelta(minutes=self.settings.afk_timeout_minutes),
            clock=self.now,
        )
        self.sessions = SessionTrustManager(
            self.store,
            self.activity,
            max_age_minutes=self.settings.session_max_age_minutes,
            clock=self.now,
        )
        self.otp = OtpChallengeManager(
            self.store, self.settings, cache=self.cache, clock=self.now
        )
        self.csrf = CsrfGuard(self.settings.session_secret)
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            sessions=self.sessions,
            activity=self.activity,
            csrf=self.csrf,
            clock=self.now,
        )

        self._buckets: Dict[str, _Bucket] = {}
        self._buckets_lock = threading.Lock()

        logger.info(
            "runtime_ready",
            store="memory" if isinstance(self.store, MemoryStore) else "postgres",
            redis=self.cache is not None,
            afk_timeout_minutes=self.settings.afk_timeout_minutes,
            session_max_age_minutes=self.settings.session_max_age_minutes,
            expose_demo_otp=self.settings.expose_demo_otp,
        )

    def _open_store(self):
        if self.settings.use_memory_store:
            return MemoryStore()
        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "store_open_failed",
                database_url=_loggable_url(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _connect_cache(self) -> Optional[CacheBackend]:
        url = self.settings.redis_url
        failure: Optional[Exception] = None
        if url:
            # the sync client does not bind to the short-lived loops tests create
            cache = SyncRedisCache(url) if self.settings.test_mode else RedisCache(url)
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if self.settings.test_mode:
            mode = "TEST_MODE"
        elif self.settings.allow_redis_fallback_dev:
            mode = "ALLOW_REDIS_FALLBACK_DEV"
        else:
            raise RuntimeError(
                "Redis is unreachable and is required for rate limits and OTP lockouts; "
                "set TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true to run without it"
            ) from failure

        logger.warning(
            "redis_fallback_in_process",
            mode=mode,
            redis_url=_loggable_url(url),
            error=str(failure) if failure else "redis_url_missing",
        )
        return None

    def now(self) -> datetime:
        return self.clock()

    def take_local_token(self, key: str, limit: int, window_seconds: int, cost: int):
        """Token bucket kept in process memory; used when Redis is absent."""
        now = self.now()
        per_second = limit / window_seconds
        with self._buckets_lock:
            bucket = self._buckets.setdefault(key, _Bucket(float(limit), now))
            elapsed = max(0.0, (now - bucket.updated).total_seconds())
            bucket.tokens = min(float(limit), bucket.tokens + elapsed * per_second)
            bucket.updated = now
            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return True, int(bucket.tokens), 0
            wait = int((cost - bucket.tokens) / per_second) + 1
            return False, int(bucket.tokens), wait

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def _discard_cache(cache: Optional[CacheBackend]) -> None:
    if cache is None:
        return
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        asyncio.get_running_loop().create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Build a fresh runtime from freshly read settings. Refuses outside TEST_MODE."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            _discard_cache(runtime.cache)
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Spend ``cost`` tokens from the bucket named ``key``.

    Redis holds the buckets when it is configured so limits hold across
    workers; otherwise they live in this process. With ``return_remaining``
    the result is ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_window_invalid", key=key, window_seconds=window_seconds)
        window_seconds = DEFAULT_WINDOW_SECONDS
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    result = runtime.take_local_token(key, limit, window_seconds, cost)
    return result if return_remaining else result[0]
