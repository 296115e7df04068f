from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from otpgate.config import EnvironmentIndicator, get_settings, reset_settings_cache
from otpgate.logging import get_logger
from otpgate.service.challenges import ChallengeService
from otpgate.service.email import EmailSender, EmailService
from otpgate.service.errors import ConfigurationError
from otpgate.service.rate_limit import RateLimiter
from otpgate.service.refresh import RefreshTokenService
from otpgate.service.session import SessionService
from otpgate.service.suspension import SuspensionTracker
from otpgate.service.tokens import TokenIssuer
from otpgate.storage.memory import MemoryStore
from otpgate.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, email: Optional[EmailSender] = None):
        self.settings = get_settings()
        self.environment = EnvironmentIndicator()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.environment.value,
        )

        self.store: Union[MemoryStore, RedisStore] = self._build_store()

        self.challenges = ChallengeService(self.store, self.settings)
        self.rate_limiter = RateLimiter(
            self.store, self.settings, environment=self.environment
        )
        self.suspensions = SuspensionTracker(self.store, self.settings)
        self.tokens = TokenIssuer(self.settings, environment=self.environment)
        self.refresh_tokens = RefreshTokenService(self.store, self.settings)
        self.email = email or EmailService.from_settings(
            self.settings, environment=self.environment
        )
        if isinstance(self.email, EmailService) and not self.email.is_configured:
            if self.environment.is_hardened():
                logger.error("email_not_configured_delivery_disabled")
            else:
                logger.warning("email_not_configured_codes_logged_only")
        self.sessions = SessionService(
            settings=self.settings,
            challenges=self.challenges,
            rate_limiter=self.rate_limiter,
            suspensions=self.suspensions,
            tokens=self.tokens,
            refresh_tokens=self.refresh_tokens,
            email=self.email,
            environment=self.environment,
        )

        if self.environment.is_hardened():
            # Refuse to start with an unusable signing secret
            try:
                self.tokens.ensure_configured()
            except ConfigurationError:
                logger.critical("runtime_token_secret_unusable")
                raise

    def _build_store(self) -> Union[MemoryStore, RedisStore]:
        if self.settings.use_memory_store or not self.settings.redis_url:
            if not self.settings.use_memory_store:
                logger.warning("redis_url_missing_using_memory_store")
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore()

        store = RedisStore(self.settings.redis_url)
        try:
            store.verify_connection()
        except (RedisError, OSError) as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required for shared challenge, rate limit and session state; "
                    "start Redis or set USE_MEMORY_STORE=true for a single process."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode="TEST_MODE",
            )
            return MemoryStore()
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return store


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, email: Optional[EmailSender] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.store.close())
            else:
                loop.create_task(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(email=email)
        return runtime
