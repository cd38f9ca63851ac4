from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from baymax.config import AuthMode, Settings, get_settings, reset_settings_cache
from baymax.logging import get_logger
from baymax.service.auth import CredentialVerifier, build_verifier
from baymax.service.context import ContextAugmenter
from baymax.service.history import HistoryStore
from baymax.service.llm import ModelClient
from baymax.service.pipeline import ChatPipeline
from baymax.storage.common import ChatStore
from baymax.storage.memory import MemoryCache
from baymax.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging."""
    if not url:
        return url
    try:
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
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> ChatStore:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryCache()

    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            logger.info(
                "runtime_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for chat history and login lockout; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; history and lockout "
            "state are in-memory only."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[ChatStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            auth_mode=self.settings.auth_mode.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: ChatStore = store if store is not None else _build_store(self.settings)
        # One pooled client for JWKS, vector search and the model API
        self.http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(self.settings.model_timeout_seconds, connect=10.0),
        )
        self.verifier: CredentialVerifier = build_verifier(self.settings, self.store, self.http)
        self.history = HistoryStore(self.store, self.settings)
        self.augmenter = ContextAugmenter(
            self.http,
            self.settings.vector_api_url,
            timeout=self.settings.vector_timeout_seconds,
        )
        self.model = ModelClient(
            self.http,
            url=self.settings.completion_url,
            api_key=self.settings.groq_api_key,
            model=self.settings.model_id,
            temperature=self.settings.model_temperature,
            timeout=self.settings.model_timeout_seconds,
        )
        self.pipeline = ChatPipeline(self.history, self.augmenter, self.model)

        if not self.model.is_configured:
            logger.warning("model_api_key_missing", url=self.settings.completion_url)
        logger.info(
            "runtime_initialized",
            auth_mode=self.settings.auth_mode.value,
            store_type=type(self.store).__name__,
            vector_search_configured=bool(self.settings.vector_api_url),
            model=self.settings.model_id,
        )

    @property
    def auth_mode(self) -> AuthMode:
        return self.settings.auth_mode

    async def close(self) -> None:
        await self.http.aclose()
        await self.store.close()


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


def _close_quietly(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    try:
        if loop is not None:
            loop.create_task(previous.close())
        else:
            asyncio.run(previous.close())
    except Exception as exc:
        # Connections may already be closed or bound to a finished loop
        logger.debug("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    store: Optional[ChatStore] = None,
) -> Runtime:
    """Rebuild the runtime singleton from the current environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = settings or get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, transport=transport, store=store)
        return runtime
