from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from trafficsafety.config import get_settings, reset_settings_cache
from trafficsafety.logging import get_logger
from trafficsafety.service.access_registry import AccessTokenRegistry
from trafficsafety.service.audit import StructlogAuditLogger
from trafficsafety.service.authenticator import Authenticator
from trafficsafety.service.clock import SystemClock
from trafficsafety.service.guard import AuthGuard
from trafficsafety.service.refresh_tokens import RefreshTokenManager
from trafficsafety.service.token_codec import TokenCodec
from trafficsafety.service.users import UserDirectory
from trafficsafety.storage.memory import MemoryStore
from trafficsafety.storage.postgres import PostgresStore
from trafficsafety.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# local buckets are swept once the table grows past this many keys
LOCAL_BUCKET_SWEEP_THRESHOLD = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for login rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; login rate limits are in-process only.",
                mode=fallback_mode,
            )

        self.clock = SystemClock()
        self.audit = StructlogAuditLogger()
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            default_ttl_seconds=self.settings.access_token_ttl_seconds,
            clock=self.clock,
        )
        self.registry = AccessTokenRegistry(self.store, self.clock)
        self.refresh_tokens = RefreshTokenManager(
            self.store,
            self.clock,
            default_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.users = UserDirectory(self.store, self.clock)
        self.authenticator = Authenticator(
            self.users,
            self.codec,
            self.registry,
            self.refresh_tokens,
            self.clock,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.guard = AuthGuard(
            self.codec,
            self.registry,
            self.users,
            self.audit,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
            try:
                asyncio.run(runtime.cache.close())
            except Exception:  # noqa: BLE001 - connection may already be closed
                pass

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _evict_idle_buckets(
    buckets: Dict[str, Tuple[float, datetime]], now: datetime, window_seconds: int
) -> None:
    # a bucket untouched for a whole window has refilled and equals a missing entry
    idle = [
        key
        for key, (_, last_ts) in buckets.items()
        if (now - last_ts).total_seconds() >= window_seconds
    ]
    for key in idle:
        del buckets[key]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in-process when Redis is disabled."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        if len(runtime._local_rate_limits) > LOCAL_BUCKET_SWEEP_THRESHOLD:
            _evict_idle_buckets(runtime._local_rate_limits, now, window_seconds)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
