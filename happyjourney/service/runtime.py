from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from happyjourney.config import Environment, RateLimitBackend, get_settings, reset_settings_cache
from happyjourney.logging import get_logger
from happyjourney.service.auth import AuthService
from happyjourney.service.email import EmailService
from happyjourney.service.identity import IdentityResolver
from happyjourney.service.rate_limit import InMemoryRateLimitStore, RateLimiter
from happyjourney.service.security_headers import compose_security_headers
from happyjourney.service.sessions import SessionManager
from happyjourney.service.tokens import TokenSigner
from happyjourney.service.votes import VoteService
from happyjourney.storage.memory import MemoryStore
from happyjourney.storage.postgres import PostgresStore
from happyjourney.storage.redis_cache import RedisRateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.redis: Optional[RedisRateLimitStore] = None
        self.rate_limit_store = self._build_rate_limit_store()
        self.rate_limiter = RateLimiter(
            self.rate_limit_store,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self.security_headers = compose_security_headers(self.settings)

        self.signer = TokenSigner(self.settings.auth_secret)
        if not self.signer.configured:
            # Requests still run; every identity resolves as anonymous
            logger.error("runtime_signing_key_unusable")
        self.sessions = SessionManager(self.store, self.settings)
        self.identity = IdentityResolver(self.signer, self.sessions)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.auth = AuthService(
            self.store, self.signer, self.sessions, self.email, self.settings
        )
        self.votes = VoteService(self.store)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            rate_limit_backend="redis" if self.redis else "memory",
            email_configured=self.email.is_configured,
            signing_key_configured=self.signer.configured,
        )

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)

    def _build_rate_limit_store(self):
        settings = self.settings
        if settings.rate_limit_backend != RateLimitBackend.REDIS:
            return InMemoryRateLimitStore()
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                store = RedisRateLimitStore(settings.redis_url)
                store.verify_connection()
                self.redis = store
                return store
            except Exception as exc:
                redis_error = exc
        if settings.is_production:
            raise RuntimeError(
                "RATE_LIMIT_BACKEND=redis needs a reachable REDIS_URL in production"
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Rate limits fall back to process-local counters",
        )
        return InMemoryRateLimitStore()


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
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.redis.close())
            except RuntimeError:
                asyncio.run(runtime.redis.close())
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with ENVIRONMENT=test")
        runtime = Runtime()
        return runtime
