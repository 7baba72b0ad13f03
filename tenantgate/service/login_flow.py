"""Login protocols for the three auth modes.

Each variant implements :class:`LoginFlow` and reports a :class:`LoginResult`
of the same shape, so callers never branch on the mode after dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Mapping, Optional, Protocol

from tenantgate.config import AuthMode, Settings
from tenantgate.logging import get_logger, log_auth_event
from tenantgate.service.auth_errors import (
    AuthErrorCode,
    AuthErrorDetails,
    AuthFlowError,
    create_auth_error,
)
from tenantgate.service.cookie_proxy import CookieForwarder, cookie_header_from
from tenantgate.service.mock_directory import MockDirectory
from tenantgate.service.oidc import (
    OIDCClient,
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
)
from tenantgate.service.session import (
    SessionManager,
    normalize_legacy_session,
    normalize_mock_user,
    normalize_provider_claims,
)
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import Credentials, PendingAuthorization, Session, utcnow

if TYPE_CHECKING:
    from tenantgate.service.runtime import Runtime

logger = get_logger(__name__)

LEGACY_LOGIN_PATH = "/api/auth/login"
LEGACY_SESSION_PATH = "/api/auth/session"


def safe_callback_url(value: Optional[str], default: str = "/") -> str:
    """Only same-origin relative paths may be used as post-login redirects."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    return value


@dataclass(frozen=True)
class RedirectTarget:
    url: str
    state: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    ok: bool
    error: Optional[AuthErrorDetails] = None
    redirect_url: Optional[str] = None
    session: Optional[Session] = None
    set_cookies: List[str] = field(default_factory=list)
    warning: Optional[str] = None

    @classmethod
    def success(
        cls,
        session: Session,
        *,
        redirect_url: Optional[str] = None,
        set_cookies: Optional[List[str]] = None,
    ) -> "LoginResult":
        return cls(
            ok=True,
            session=session,
            redirect_url=redirect_url,
            set_cookies=list(set_cookies or []),
        )

    @classmethod
    def failure(
        cls,
        code: Any,
        *,
        set_cookies: Optional[List[str]] = None,
        **context: Any,
    ) -> "LoginResult":
        details = code if isinstance(code, AuthErrorDetails) else create_auth_error(
            code, context=context
        )
        return cls(ok=False, error=details, set_cookies=list(set_cookies or []))

    def raise_for_error(self) -> None:
        if self.ok or self.error is None:
            return
        context = dict(self.error.context)
        if self.warning:
            context["warning"] = self.warning
        raise AuthFlowError(
            self.error.code,
            retry_after=self.error.retry_after,
            context=context,
            field=self.error.field,
        )


class LoginFlow(Protocol):
    mode: AuthMode

    async def initiate(self, *, callback_url: str = "/") -> Optional[RedirectTarget]: ...

    async def submit(
        self,
        credentials: Credentials,
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
        callback_url: str = "/",
    ) -> LoginResult: ...

    async def handle_callback(self, params: Mapping[str, str]) -> LoginResult: ...


class MockLoginFlow:
    """Directory lookup with no network I/O; development and tests only."""

    mode = AuthMode.MOCK

    def __init__(self, settings: Settings, directory: MockDirectory, sessions: SessionManager) -> None:
        self.settings = settings
        self.directory = directory
        self.sessions = sessions

    async def initiate(self, *, callback_url: str = "/") -> Optional[RedirectTarget]:
        return None

    async def submit(
        self,
        credentials: Credentials,
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
        callback_url: str = "/",
    ) -> LoginResult:
        user = self.directory.verify(credentials.email, credentials.password)
        if user is None:
            return LoginResult.failure(AuthErrorCode.CREDENTIALS_SIGNIN)
        session = normalize_mock_user(
            user.to_dict(),
            issued_at=utcnow(),
            max_age_seconds=self.settings.session_max_age_seconds,
        )
        tenant = self.directory.tenants.get(session.tenant_id)
        if tenant:
            session = session.with_changes(tenant_name=tenant["name"])
        stored, cookie = self.sessions.issue(session)
        return LoginResult.success(
            stored, redirect_url=safe_callback_url(callback_url), set_cookies=[cookie]
        )

    async def handle_callback(self, params: Mapping[str, str]) -> LoginResult:
        return LoginResult.failure(AuthErrorCode.CONFIGURATION, reason="callback_not_supported")


class OAuthLoginFlow:
    """OpenID Connect authorization-code flow with mandatory S256 PKCE."""

    mode = AuthMode.OAUTH

    def __init__(
        self,
        settings: Settings,
        oidc: OIDCClient,
        store: MemoryStore,
        sessions: SessionManager,
    ) -> None:
        self.settings = settings
        self.oidc = oidc
        self.store = store
        self.sessions = sessions

    async def initiate(self, *, callback_url: str = "/") -> Optional[RedirectTarget]:
        document = await self.oidc.discover()
        self.store.cleanup_expired(state_ttl_seconds=self.settings.oauth_state_ttl_seconds)
        verifier = generate_code_verifier()
        state = generate_state()
        redirect_uri = self.settings.redirect_uri
        self.store.put_pending(
            PendingAuthorization(
                state=state,
                code_verifier=verifier,
                redirect_uri=redirect_uri,
                callback_url=safe_callback_url(callback_url),
            )
        )
        url = self.oidc.build_authorization_url(
            document,
            state=state,
            code_challenge=code_challenge_s256(verifier),
            redirect_uri=redirect_uri,
        )
        logger.info("oauth_authorization_started")
        return RedirectTarget(url=url, state=state)

    async def submit(
        self,
        credentials: Credentials,
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
        callback_url: str = "/",
    ) -> LoginResult:
        # Passwords never pass through this client in oauth mode
        return LoginResult.failure(AuthErrorCode.CONFIGURATION, reason="password_login_disabled")

    async def handle_callback(self, params: Mapping[str, str]) -> LoginResult:
        provider_error = params.get("error")
        if provider_error:
            code = (
                AuthErrorCode.ACCESS_DENIED
                if provider_error == "access_denied"
                else AuthErrorCode.OIDC_ERROR
            )
            log_auth_event("login_failure", logger, mode=self.mode.value, reason=provider_error)
            return LoginResult.failure(code, provider_error=provider_error)

        state = params.get("state")
        code = params.get("code")
        pending = self.store.pop_pending(state) if state else None
        if (
            pending is None
            or not code
            or pending.is_expired(self.settings.oauth_state_ttl_seconds)
        ):
            log_auth_event("security_violation", logger, reason="oauth_state_invalid")
            return LoginResult.failure(AuthErrorCode.OIDC_ERROR, reason="invalid_state")

        try:
            tokens = await self.oidc.exchange_code(code, pending.code_verifier, pending.redirect_uri)
            claims = await self.oidc.fetch_userinfo(tokens.access_token)
        except AuthFlowError as exc:
            log_auth_event("login_failure", logger, mode=self.mode.value, code=exc.code.value)
            return LoginResult.failure(exc.details)

        session = normalize_provider_claims(
            claims,
            issued_at=utcnow(),
            max_age_seconds=self.settings.session_max_age_seconds,
            tokens=tokens,
        )
        stored, cookie = self.sessions.issue(session)
        return LoginResult.success(
            stored, redirect_url=pending.callback_url, set_cookies=[cookie]
        )


def legacy_status_error(status_code: int) -> AuthErrorCode:
    if status_code in (400, 401):
        return AuthErrorCode.INVALID_CREDENTIALS
    if status_code == 403:
        return AuthErrorCode.ACCESS_DENIED
    if status_code == 423:
        return AuthErrorCode.ACCOUNT_LOCKED
    if status_code == 429:
        return AuthErrorCode.TOO_MANY_ATTEMPTS
    if status_code >= 500:
        return AuthErrorCode.SERVER_ERROR
    return AuthErrorCode.UNEXPECTED_ERROR


class LegacyLoginFlow:
    """Cookie-forwarding proxy to the legacy identity server; holds no tokens."""

    mode = AuthMode.LEGACY

    def __init__(self, settings: Settings, forwarder: CookieForwarder) -> None:
        self.settings = settings
        self.forwarder = forwarder

    async def initiate(self, *, callback_url: str = "/") -> Optional[RedirectTarget]:
        return None

    async def submit(
        self,
        credentials: Credentials,
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
        callback_url: str = "/",
    ) -> LoginResult:
        params = {
            "useCookies": "true",
            "useSessionCookies": "false" if credentials.remember_me else "true",
        }
        try:
            login = await self.forwarder.forward(
                "POST",
                LEGACY_LOGIN_PATH,
                cookie_header=cookie_header,
                json={"email": credentials.email, "password": credentials.password},
                params=params,
                inbound_headers=inbound_headers,
            )
        except AuthFlowError as exc:
            return LoginResult.failure(exc.details)
        if not login.ok:
            return LoginResult.failure(
                legacy_status_error(login.status_code),
                set_cookies=login.set_cookies,
                upstream_status=login.status_code,
            )

        # Replay the cookies just issued so the session lookup sees the new login
        session_cookies = cookie_header_from(login.set_cookies, cookie_header)
        try:
            current = await self.forwarder.forward(
                "GET",
                LEGACY_SESSION_PATH,
                cookie_header=session_cookies,
                inbound_headers=inbound_headers,
            )
        except AuthFlowError as exc:
            return LoginResult.failure(exc.details, set_cookies=login.set_cookies)
        set_cookies = login.set_cookies + current.set_cookies
        if not current.ok or not isinstance(current.body, dict):
            logger.error("legacy_session_fetch_failed", status=current.status_code)
            code = (
                AuthErrorCode.SERVER_ERROR
                if current.status_code >= 500
                else AuthErrorCode.UNEXPECTED_ERROR
            )
            return LoginResult.failure(code, set_cookies=set_cookies)

        session = normalize_legacy_session(
            current.body,
            issued_at=utcnow(),
            max_age_seconds=self.settings.session_max_age_seconds,
        )
        return LoginResult.success(
            session, redirect_url=safe_callback_url(callback_url), set_cookies=set_cookies
        )

    async def handle_callback(self, params: Mapping[str, str]) -> LoginResult:
        return LoginResult.failure(AuthErrorCode.CONFIGURATION, reason="callback_not_supported")


def build_login_flow(mode: AuthMode, runtime: "Runtime") -> LoginFlow:
    match mode:
        case AuthMode.MOCK:
            return MockLoginFlow(runtime.settings, runtime.directory, runtime.sessions)
        case AuthMode.OAUTH:
            return OAuthLoginFlow(runtime.settings, runtime.oidc, runtime.store, runtime.sessions)
        case AuthMode.LEGACY:
            return LegacyLoginFlow(runtime.settings, runtime.forwarder)
    raise ValueError(f"unsupported auth mode: {mode!r}")
