from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse

from taskkeeper.config import Settings, get_settings, reset_settings_cache
from taskkeeper.logging import get_logger
from taskkeeper.service.attachments import AvatarPolicy
from taskkeeper.service.auth import SessionTokenManager
from taskkeeper.service.credentials import CredentialStore
from taskkeeper.service.email import EmailService
from taskkeeper.service.notifications import Notifier
from taskkeeper.service.tasks import TaskService
from taskkeeper.service.users import UserService
from taskkeeper.storage.memory import MemoryStore
from taskkeeper.storage.postgres import PostgresStore
from taskkeeper.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Return ``url`` with any password swapped for ``***``, for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        return "***unparseable***"
    if not password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return parsed._replace(netloc=f"{parsed.username or ''}:***@{host}").geturl()


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            return MemoryStore(fs_root=settings.shared_fs_root)
        return PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            dsn=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise


def _connect_cache(settings: Settings) -> Optional[Union[RedisCache, SyncRedisCache]]:
    """Connect the session cache, or return None where running without it is allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # the sync client keeps pytest's per-test event loops out of redis-py
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for the session cache; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
        ) from failure
    logger.warning(
        "session_cache_disabled",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "REDIS_URL not set",
    )
    return None


class Runtime:
    """The service graph shared by every request."""

    def __init__(self) -> None:
        self.settings = get_settings()
        self.store = _build_store(self.settings)
        self.cache = _connect_cache(self.settings)
        self.credentials = CredentialStore(self.store)
        self.tokens = SessionTokenManager(self.store, self.cache, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.notifier = Notifier(self.email)
        self.tasks = TaskService(
            self.store,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
        )
        self.users = UserService(
            self.store,
            self.credentials,
            self.tokens,
            self.tasks,
            self.notifier,
            avatar_policy=AvatarPolicy(max_bytes=self.settings.max_avatar_bytes),
            revoke_sessions_on_password_change=self.settings.revoke_sessions_on_password_change,
        )
        logger.info(
            "runtime_initialized",
            store="memory" if self.settings.use_memory_store else "postgres",
            session_cache=self.cache is not None,
            smtp=self.email.is_configured,
            token_ttl_minutes=self.settings.token_ttl_minutes,
        )

    async def close(self) -> None:
        """Flush pending notifications and release connections."""
        await self.notifier.drain()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
                runtime.cache.client.close()
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
