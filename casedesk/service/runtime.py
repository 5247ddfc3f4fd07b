from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from casedesk.config import Settings, get_settings, reset_settings_cache
from casedesk.logging import get_logger
from casedesk.service.email import EmailService, Mailer
from casedesk.service.guard import AuthGuard
from casedesk.service.identity import IdentityService
from casedesk.service.otp import OtpEngine
from casedesk.service.tokens import SessionTokenService
from casedesk.storage.common import CredentialStore
from casedesk.storage.memory import MemoryStore
from casedesk.storage.models import utcnow
from casedesk.storage.postgres import PostgresStore
from casedesk.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Idle buckets are swept once the in-process map grows past this many keys
_LOCAL_RATE_LIMIT_PRUNE_THRESHOLD = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-scoped service instances for the FastAPI app.

    Collaborators can be injected (tests pass a fake mailer or a prepared
    store); anything not supplied is built from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(
                self.settings.database_url, pool_size=self.settings.database_pool_size
            )
        logger.info("runtime_store_initialized", store_type=type(self.store).__name__)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if not self.cache:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis, clear REDIS_URL, "
                        "or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    message="Rate limits are in-process only.",
                )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.mailer: Mailer = mailer or self.email
        self.tokens = SessionTokenService(self.settings)
        self.otp = OtpEngine(self.store, self.mailer, self.settings)
        self.identity = IdentityService(self.store, self.otp, self.tokens, self.settings)
        self.guard = AuthGuard(self.store, self.tokens, self.settings)

        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            signup_mode=self.settings.signup_mode.value,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def startup(self) -> None:
        await self.store.open()

    async def shutdown(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime


def _prune_idle_buckets(
    buckets: Dict[str, Tuple[float, datetime, int]], now: datetime
) -> None:
    """Drop buckets untouched for a whole window; they have refilled to full."""
    idle = [
        key
        for key, (_, last_ts, window_seconds) in buckets.items()
        if (now - last_ts).total_seconds() >= window_seconds
    ]
    for key in idle:
        del buckets[key]
    if idle:
        logger.debug("rate_limit_buckets_pruned", count=len(idle), remaining=len(buckets))


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    now = utcnow()
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        if len(runtime._local_rate_limits) > _LOCAL_RATE_LIMIT_PRUNE_THRESHOLD:
            _prune_idle_buckets(runtime._local_rate_limits, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


async def sweep_expired_codes(runtime: Runtime, interval_seconds: int) -> None:
    """Purge expired one-time codes every ``interval_seconds`` until cancelled."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            purged = await runtime.otp.purge_expired()
            logger.debug("otp_sweep_completed", purged=purged)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("otp_sweep_failed", error=str(exc))
            await asyncio.sleep(min(interval_seconds, 60))
