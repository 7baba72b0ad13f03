from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


class AuthMode(str, Enum):
    """Credential backends the platform can authenticate against."""

    MOCK = "mock"
    OAUTH = "oauth"
    LEGACY = "legacy"


DEFAULT_AUTH_MODE = AuthMode.OAUTH


# Capability registry consulted by routes and flows to gate behavior per mode
AUTH_MODE_FEATURES: dict[AuthMode, frozenset[str]] = {
    AuthMode.OAUTH: frozenset({"sso", "oidc", "provider_selection", "pkce"}),
    AuthMode.LEGACY: frozenset(
        {"credentials", "remember_me", "password_reset", "tenant_switch"}
    ),
    AuthMode.MOCK: frozenset(
        {"test_credentials", "development_mode", "quick_login", "tenant_switch"}
    ),
}

AUTH_MODE_DESCRIPTIONS: dict[AuthMode, str] = {
    AuthMode.OAUTH: "Sign in with your organization account using secure OAuth 2.0",
    AuthMode.LEGACY: "Sign in with your email and password using the classic login",
    AuthMode.MOCK: "Development mode - sign in with test credentials for development",
}


def parse_auth_mode(value: Any) -> AuthMode:
    """Map a raw configuration value onto an AuthMode.

    Matching is case-insensitive and ignores surrounding whitespace. Unset or
    unrecognized values fall back to ``oauth``.
    """
    if isinstance(value, AuthMode):
        return value
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_AUTH_MODE
    try:
        return AuthMode(value.strip().lower())
    except ValueError:
        logger.warning("auth_mode_unrecognized", value=value, fallback=DEFAULT_AUTH_MODE.value)
        return DEFAULT_AUTH_MODE


def supports_feature(mode: AuthMode | str, feature: str) -> bool:
    """Return True when ``mode`` advertises ``feature``; unknown features are False."""
    try:
        resolved = AuthMode(mode)
    except ValueError:
        return False
    return feature in AUTH_MODE_FEATURES.get(resolved, frozenset())


def describe_auth_mode(mode: AuthMode) -> str:
    return AUTH_MODE_DESCRIPTIONS.get(mode, "Unknown authentication mode")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    # Raw value; resolve_auth_mode() turns it into an AuthMode
    auth_mode: str | None = env_field(None, "AUTH_MODE")
    environment: str = env_field("development", "APP_ENV")
    api_url: str = env_field(
        "http://localhost:5000/",
        "API_URL",
        description="Base URL of the identity server (OIDC issuer and legacy API)",
    )
    app_url: str = env_field("http://localhost:3000", "APP_URL")
    # OAuth settings
    oauth_client_id: str = env_field("platform-web-dev", "OAUTH_CLIENT_ID")
    oauth_scopes: str = env_field(
        "openid profile email tenant:read user:read", "OAUTH_SCOPES"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_revocation_endpoint: str | None = env_field(
        None,
        "OAUTH_REVOCATION_ENDPOINT",
        description="Used when the discovery document does not advertise one",
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")
    # Session & cookies
    session_cookie_name: str = env_field("tenantgate.session", "SESSION_COOKIE_NAME")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    session_max_age_seconds: int = env_field(12 * 60 * 60, "SESSION_MAX_AGE_SECONDS")
    session_update_age_seconds: int = env_field(
        11 * 60 * 60,
        "SESSION_UPDATE_AGE_SECONDS",
        description="Elapsed age after which a session is renewed on use",
    )
    refresh_margin_seconds: int = env_field(60, "REFRESH_MARGIN_SECONDS")
    upstream_timeout_seconds: float = env_field(10.0, "UPSTREAM_TIMEOUT_SECONDS")
    # Lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")
    lockout_warning_threshold: int = env_field(3, "LOCKOUT_WARNING_THRESHOLD")
    # Infrastructure
    redis_url: str | None = env_field(None, "REDIS_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("api_url")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else f"{value}/"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def api_base(self) -> str:
        """Identity server base URL without the trailing slash."""
        return self.api_url.rstrip("/")

    @property
    def discovery_url(self) -> str:
        return f"{self.api_url}.well-known/openid-configuration"

    @property
    def redirect_uri(self) -> str:
        return self.oauth_redirect_uri or f"{self.app_url.rstrip('/')}/api/auth/callback/spearfish"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None
_auth_mode_cache: AuthMode | None = None


def resolve_auth_mode() -> AuthMode:
    """Resolve the process-wide auth mode once and cache it."""
    global _auth_mode_cache
    if _auth_mode_cache is None:
        _auth_mode_cache = parse_auth_mode(get_settings().auth_mode)
        logger.info("auth_mode_resolved", mode=_auth_mode_cache.value)
    return _auth_mode_cache


def reset_settings_cache() -> None:
    """Clear cached settings and auth mode so future calls re-read the environment."""

    global _settings_cache, _auth_mode_cache
    _settings_cache = None
    _auth_mode_cache = None
