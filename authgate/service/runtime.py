from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authgate.config import Settings, get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthCoordinator
from authgate.service.identity import (
    HttpIdentityBridge,
    IdentityBridge,
    MemoryIdentityBridge,
)
from authgate.service.oauth import OAuthClient
from authgate.service.tokens import TokenIssuer
from authgate.storage.ephemeral import (
    LinkSessionStore,
    OAuthStateStore,
    PasswordResetStore,
)
from authgate.storage.memory import MemoryCache
from authgate.storage.redis_cache import RedisCache
from authgate.storage.sessions import KeyValueCache, RevocationStore, SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: str) -> str:
    """Mask password in a connection URL for safe logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root: builds the stores and services once and wires them.

    Every collaborator may be passed in, which is how tests substitute fakes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[KeyValueCache] = None,
        identity: Optional[IdentityBridge] = None,
        oauth_client: Optional[OAuthClient] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.cache = cache or self._build_cache()
        self.identity = identity or self._build_identity()
        self.issuer = TokenIssuer(self.settings)
        self.sessions = SessionStore(self.cache)
        self.revocations = RevocationStore(self.cache)
        self.link_sessions = LinkSessionStore(self.cache)
        self.oauth_states = OAuthStateStore(self.cache)
        self.reset_tokens = PasswordResetStore(self.cache)
        self.oauth_client = oauth_client or OAuthClient(self.settings)
        self.auth = AuthCoordinator(
            self.settings,
            self.issuer,
            self.sessions,
            self.revocations,
            self.identity,
            link_sessions=self.link_sessions,
            oauth_states=self.oauth_states,
            oauth_client=self.oauth_client,
            reset_tokens=self.reset_tokens,
        )

    def _build_cache(self) -> KeyValueCache:
        if self.settings.use_memory_store:
            logger.info("runtime_cache_initialized", cache_type="memory")
            return MemoryCache()
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            if not self.settings.test_mode:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for sessions and revocations; start Redis or set "
                    "USE_MEMORY_STORE=true for a single-process store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode="TEST_MODE",
            )
            return MemoryCache()
        logger.info("runtime_cache_initialized", cache_type="redis")
        return cache

    def _build_identity(self) -> IdentityBridge:
        if self.settings.use_memory_store:
            return MemoryIdentityBridge()
        return HttpIdentityBridge(
            self.settings.identity_service_url,
            timeout=self.settings.identity_timeout_seconds,
        )

    async def close(self) -> None:
        close_identity = getattr(self.identity, "close", None)
        if close_identity is not None:
            await close_identity()
        await self.cache.close()


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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
