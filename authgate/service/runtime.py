from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthService
from authgate.service.clients import ClientDirectory
from authgate.service.provider import ProviderExchange
from authgate.service.signing import HmacJwtSigner
from authgate.service.tokens import TokenLedger
from authgate.storage.memory import MemoryStore
from authgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
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
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the auth subsystem."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        # Test runs keep state in memory only so each runtime starts empty
        fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
        self.store = MemoryStore(fs_root=fs_root)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if not self.cache and (self.settings.redis_url or self.settings.refresh_rotation_lock):
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Running without Redis; refresh rotation claims are disabled.",
            )

        self.signer = HmacJwtSigner(self.settings)
        self.directory = ClientDirectory(self.settings)
        self.provider = ProviderExchange(self.directory, self.settings)
        self.ledger = TokenLedger(
            self.store, self.signer, self.settings, cache=self.cache
        )
        self.auth = AuthService(
            self.store,
            self.directory,
            self.provider,
            self.ledger,
            self.signer,
            self.settings,
        )
        logger.info(
            "runtime_init_complete",
            web_clients=len(self.directory.list_clients()),
            redis_enabled=self.cache is not None,
        )


runtime: Optional[Runtime] = None
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
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
