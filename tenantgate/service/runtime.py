from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from tenantgate.config import get_settings, reset_settings_cache, resolve_auth_mode
from tenantgate.logging import get_logger
from tenantgate.service.cookie_proxy import CookieForwarder
from tenantgate.service.lockout import LockoutPolicy, LoginAttemptStore
from tenantgate.service.login_flow import LoginFlow, build_login_flow
from tenantgate.service.mock_directory import MockDirectory
from tenantgate.service.oidc import OIDCClient
from tenantgate.service.session import SessionManager
from tenantgate.service.tenant_switch import TenantSwitcher
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Wires the mode-specific login flow, session manager and lockout store."""

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.mode = resolve_auth_mode()
        logger.info(
            "runtime_init_started",
            auth_mode=self.mode.value,
            environment=self.settings.environment,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore()
        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    message="login lockout counters are per-process only",
                )

        self.directory = MockDirectory()
        self.forwarder = CookieForwarder(self.settings, transport=transport)
        self.oidc = OIDCClient(self.settings, transport=transport)
        self.sessions = SessionManager(self.settings, self.store, self.oidc, self.forwarder)
        self.attempts = LoginAttemptStore(
            self.cache or self.store, policy=LockoutPolicy.from_settings(self.settings)
        )
        self.switcher = TenantSwitcher(self.mode, self.sessions, self.forwarder, self.directory)
        self.login_flow: LoginFlow = build_login_flow(self.mode, self)
        logger.info(
            "runtime_init_completed",
            lockout_backend="redis" if self.cache else "memory",
        )

    def use_transport(self, transport: Optional[httpx.AsyncBaseTransport]) -> None:
        """Route all upstream HTTP calls through ``transport`` (tests use MockTransport)."""
        self.forwarder.transport = transport
        self.oidc.transport = transport


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
