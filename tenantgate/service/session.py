from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from http.cookies import SimpleCookie
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from tenantgate.config import AuthMode, Settings
from tenantgate.logging import get_logger, log_auth_event
from tenantgate.service.auth_errors import (
    REFRESH_ACCESS_TOKEN_ERROR,
    AuthErrorCode,
    AuthFlowError,
    is_fatal,
)
from tenantgate.service.cookie_proxy import CookieForwarder
from tenantgate.service.oidc import OIDCClient
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import Session, TokenSet, utcnow

logger = get_logger(__name__)

SIGN_IN_PATH = "/auth/signin"


# ---------------------------------------------------------------------------
# Normalization: pure transforms from each upstream shape into Session
# ---------------------------------------------------------------------------


def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_int_list(value: Any) -> List[int]:
    """Accept a list of ids or the comma-separated string some legacy servers send."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    if not isinstance(value, (list, tuple, set)):
        value = [value]
    result: List[int] = []
    for item in value:
        parsed = _as_int(item.strip() if isinstance(item, str) else item)
        if parsed and parsed not in result:
            result.append(parsed)
    return result


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item is not None and str(item)]
    return []


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _session_window(issued_at: Optional[datetime], max_age_seconds: int) -> Tuple[datetime, datetime]:
    issued = issued_at or utcnow()
    return issued, issued + timedelta(seconds=max_age_seconds)


def normalize_provider_claims(
    claims: Mapping[str, Any],
    *,
    issued_at: Optional[datetime] = None,
    max_age_seconds: int = 12 * 60 * 60,
    tokens: Optional[TokenSet] = None,
) -> Session:
    primary = _as_int(claims.get("primary_tenant_id")) or _as_int(claims.get("tenant_id"))
    tenant_id = (
        _as_int(claims.get("tenant_id")) if claims.get("tenant_id") is not None else primary
    )
    memberships = _as_int_list(claims.get("tenant_memberships"))
    if not memberships and tenant_id:
        memberships = [tenant_id]
    name = _as_str(claims.get("name")).strip()
    if not name:
        name = " ".join(
            part for part in (claims.get("given_name"), claims.get("family_name")) if part
        ) or _as_str(claims.get("preferred_username"))
    issued, expires = _session_window(issued_at, max_age_seconds)
    return Session(
        user_id=_as_str(claims.get("sub")),
        email=_as_str(claims.get("email")),
        name=name,
        tenant_id=tenant_id,
        primary_tenant_id=primary,
        tenant_memberships=memberships,
        roles=_as_str_list(claims.get("roles")),
        auth_type=AuthMode.OAUTH.value,
        issued_at=issued,
        expires_at=expires,
        tenant_name=claims.get("tenant_name") or None,
        access_token=tokens.access_token if tokens else None,
        access_token_expires_at=tokens.expires_at(issued) if tokens else None,
        refresh_token=tokens.refresh_token if tokens else None,
    )


def to_provider_claims(session: Session) -> Dict[str, Any]:
    return {
        "sub": session.user_id,
        "email": session.email,
        "name": session.name,
        "tenant_id": session.tenant_id,
        "primary_tenant_id": session.primary_tenant_id,
        "tenant_memberships": list(session.tenant_memberships),
        "tenant_name": session.tenant_name,
        "roles": list(session.roles),
    }


def normalize_legacy_session(
    data: Mapping[str, Any],
    *,
    issued_at: Optional[datetime] = None,
    max_age_seconds: int = 12 * 60 * 60,
) -> Session:
    tenant_id = _as_int(data.get("tenantId"))
    issued, expires = _session_window(issued_at, max_age_seconds)
    return Session(
        user_id=_as_str(data.get("userId") or data.get("id")),
        email=_as_str(data.get("email")),
        name=_as_str(data.get("name") or data.get("fullName")),
        tenant_id=tenant_id,
        primary_tenant_id=_as_int(data.get("primaryTenantId")) or tenant_id,
        tenant_memberships=_as_int_list(data.get("tenantMemberships")),
        roles=_as_str_list(data.get("roles")),
        auth_type=AuthMode.LEGACY.value,
        issued_at=issued,
        expires_at=expires,
        tenant_name=data.get("tenantName") or None,
    )


def to_legacy_session(session: Session) -> Dict[str, Any]:
    return {
        "userId": session.user_id,
        "email": session.email,
        "name": session.name,
        "roles": list(session.roles),
        "tenantId": session.tenant_id,
        "tenantName": session.tenant_name,
        "primaryTenantId": session.primary_tenant_id,
        "tenantMemberships": list(session.tenant_memberships),
    }


def normalize_mock_user(
    data: Mapping[str, Any],
    *,
    issued_at: Optional[datetime] = None,
    max_age_seconds: int = 12 * 60 * 60,
) -> Session:
    primary = _as_int(data.get("primaryTenantId"))
    tenant_id = _as_int(data.get("tenantId")) if data.get("tenantId") is not None else primary
    issued, expires = _session_window(issued_at, max_age_seconds)
    return Session(
        user_id=_as_str(data.get("id")),
        email=_as_str(data.get("email")),
        name=_as_str(data.get("fullName")),
        tenant_id=tenant_id,
        primary_tenant_id=primary,
        tenant_memberships=_as_int_list(data.get("tenantMemberships")),
        roles=_as_str_list(data.get("roles")),
        auth_type=AuthMode.MOCK.value,
        issued_at=issued,
        expires_at=expires,
        tenant_name=data.get("tenantName") or None,
    )


def to_mock_user(session: Session) -> Dict[str, Any]:
    return {
        "id": session.user_id,
        "email": session.email,
        "fullName": session.name,
        "tenantId": session.tenant_id,
        "tenantName": session.tenant_name,
        "primaryTenantId": session.primary_tenant_id,
        "tenantMemberships": list(session.tenant_memberships),
        "roles": list(session.roles),
        "authType": AuthMode.MOCK.value,
    }


def normalize_session(shape: AuthMode, raw: Mapping[str, Any], **kwargs: Any) -> Session:
    """Normalize ``raw`` according to the upstream shape its mode produces."""
    match AuthMode(shape):
        case AuthMode.OAUTH:
            return normalize_provider_claims(raw, **kwargs)
        case AuthMode.LEGACY:
            return normalize_legacy_session(raw, **kwargs)
        case AuthMode.MOCK:
            return normalize_mock_user(raw, **kwargs)


def denormalize_session(session: Session) -> Dict[str, Any]:
    match AuthMode(session.auth_type):
        case AuthMode.OAUTH:
            return to_provider_claims(session)
        case AuthMode.LEGACY:
            return to_legacy_session(session)
        case AuthMode.MOCK:
            return to_mock_user(session)


# ---------------------------------------------------------------------------
# Refresh, renewal and access checks
# ---------------------------------------------------------------------------


def needs_refresh(session: Session, now: datetime, margin_seconds: int = 60) -> bool:
    """True once the access token is within ``margin_seconds`` of its lifetime."""
    if not session.refresh_token or session.access_token_expires_at is None:
        return False
    max_age = (session.access_token_expires_at - session.issued_at).total_seconds()
    return (now - session.issued_at).total_seconds() > max_age - margin_seconds


def apply_refresh(session: Session, tokens: TokenSet, now: datetime) -> Session:
    # A rotated refresh token replaces the consumed one; otherwise the old one stays valid
    return replace(
        session,
        access_token=tokens.access_token,
        access_token_expires_at=tokens.expires_at(now),
        refresh_token=tokens.refresh_token or session.refresh_token,
        issued_at=now,
        error=None,
    )


def needs_renewal(
    session: Session, now: datetime, *, max_age_seconds: int, update_age_seconds: int
) -> bool:
    if session.is_expired(now):
        return False
    remaining = (session.expires_at - now).total_seconds()
    return max_age_seconds - remaining > update_age_seconds


def renew(session: Session, now: datetime, *, max_age_seconds: int) -> Session:
    return replace(session, expires_at=now + timedelta(seconds=max_age_seconds))


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    session: Optional[Session] = None
    redirect_url: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None


def sign_in_url(error: Optional[AuthErrorCode] = None, callback_url: Optional[str] = None) -> str:
    params = {}
    if error is not None:
        params["error"] = error.value
    if callback_url:
        params["callbackUrl"] = callback_url
    return f"{SIGN_IN_PATH}?{urlencode(params)}" if params else SIGN_IN_PATH


def check_access(
    session: Optional[Session], now: datetime, *, callback_url: Optional[str] = None
) -> AccessDecision:
    """Gate a protected resource on the current session."""
    if session is None:
        return AccessDecision(
            allowed=False, redirect_url=sign_in_url(callback_url=callback_url)
        )
    if (session.error and is_fatal(session.error)) or session.is_expired(now):
        return AccessDecision(
            allowed=False,
            session=session,
            redirect_url=sign_in_url(AuthErrorCode.TOKEN_EXPIRED, callback_url),
            error_code=AuthErrorCode.TOKEN_EXPIRED,
        )
    return AccessDecision(allowed=True, session=session)


# ---------------------------------------------------------------------------
# Cookie policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CookiePolicy:
    name: str
    secure: bool
    domain: Optional[str]
    max_age: int
    path: str = "/"
    same_site: str = "Lax"

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookiePolicy":
        production = settings.is_production
        return cls(
            name=settings.session_cookie_name,
            secure=production,
            domain=settings.cookie_domain if production else None,
            max_age=settings.session_max_age_seconds,
        )

    def render(self, value: str, *, max_age: Optional[int] = None) -> str:
        """Return a raw ``Set-Cookie`` header value for the session cookie."""
        jar: SimpleCookie = SimpleCookie()
        jar[self.name] = value
        morsel = jar[self.name]
        morsel["path"] = self.path
        morsel["httponly"] = True
        morsel["samesite"] = self.same_site
        morsel["max-age"] = str(self.max_age if max_age is None else max_age)
        if self.secure:
            morsel["secure"] = True
        if self.domain:
            morsel["domain"] = self.domain
        return morsel.OutputString()

    def render_clear(self) -> str:
        return self.render("", max_age=0)


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issues, refreshes, renews and ends in-process sessions.

    Refreshes are coalesced per session: concurrent callers await the same
    in-flight task, so a rotating refresh token is redeemed exactly once.
    """

    def __init__(
        self,
        settings: Settings,
        store: MemoryStore,
        oidc: OIDCClient,
        forwarder: CookieForwarder,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.oidc = oidc
        self.forwarder = forwarder
        self.clock = clock
        self.cookies = CookiePolicy.from_settings(settings)
        self._refreshing: Dict[str, asyncio.Task] = {}

    def issue(self, session: Session) -> Tuple[Session, str]:
        stored = self.store.save_session(session)
        log_auth_event(
            "session_created",
            logger,
            user_id=stored.user_id,
            auth_type=stored.auth_type,
            tenant_id=stored.tenant_id,
        )
        return stored, self.cookies.render(stored.session_id)

    def load(self, session_id: Optional[str]) -> Optional[Session]:
        return self.store.get_session(session_id)

    async def refresh(self, session: Session) -> Session:
        key = session.session_id or session.user_id
        task = self._refreshing.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(session))
            self._refreshing[key] = task

            def _forget(done: asyncio.Task, key: str = key) -> None:
                if self._refreshing.get(key) is done:
                    self._refreshing.pop(key, None)

            task.add_done_callback(_forget)
        else:
            logger.debug("session_refresh_coalesced", user_id=session.user_id)
        return await asyncio.shield(task)

    async def _do_refresh(self, session: Session) -> Session:
        if not session.refresh_token:
            return session
        now = self.clock()
        try:
            tokens = await self.oidc.refresh(session.refresh_token)
        except AuthFlowError:
            failed = replace(session, error=REFRESH_ACCESS_TOKEN_ERROR)
            if failed.session_id:
                self.store.update_session(failed)
            log_auth_event(
                "session_expired", logger, user_id=session.user_id, reason="refresh_failed"
            )
            return failed
        refreshed = apply_refresh(session, tokens, now)
        if refreshed.session_id:
            self.store.update_session(refreshed)
        logger.info(
            "session_refreshed",
            user_id=session.user_id,
            rotated=bool(tokens.refresh_token and tokens.refresh_token != session.refresh_token),
        )
        return refreshed

    async def current(
        self, session_id: Optional[str], *, callback_url: Optional[str] = None
    ) -> Tuple[AccessDecision, List[str]]:
        """Resolve the cookie's session, refreshing and renewing it as needed.

        Returns the access decision and any ``Set-Cookie`` values to send.
        """
        session = self.load(session_id)
        now = self.clock()
        if (
            session is not None
            and not session.error
            and needs_refresh(session, now, self.settings.refresh_margin_seconds)
        ):
            session = await self.refresh(session)

        decision = check_access(session, now, callback_url=callback_url)
        if not decision.allowed:
            if session is not None:
                # Unrecoverable: drop it so the next sign-in starts clean
                self.store.revoke_session(session.session_id)
                return decision, [self.cookies.render_clear()]
            return decision, []

        set_cookies: List[str] = []
        if needs_renewal(
            session,
            now,
            max_age_seconds=self.settings.session_max_age_seconds,
            update_age_seconds=self.settings.session_update_age_seconds,
        ):
            renewed = renew(session, now, max_age_seconds=self.settings.session_max_age_seconds)
            if self.store.update_session(renewed) is not None:
                session = renewed
                set_cookies.append(self.cookies.render(renewed.session_id))
                logger.debug("session_renewed", user_id=renewed.user_id)
        return AccessDecision(allowed=True, session=session), set_cookies

    async def sign_out(
        self,
        mode: AuthMode,
        session_id: Optional[str],
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> List[str]:
        """End the session everywhere it lives and return the cookies to send."""
        set_cookies: List[str] = []
        user_id: Optional[str] = None
        match mode:
            case AuthMode.LEGACY:
                try:
                    upstream = await self.forwarder.forward(
                        "POST",
                        "/api/auth/logout",
                        cookie_header=cookie_header,
                        inbound_headers=inbound_headers,
                    )
                    set_cookies.extend(upstream.set_cookies)
                except AuthFlowError as exc:
                    logger.warning("legacy_logout_failed", code=exc.code.value)
            case AuthMode.OAUTH:
                session = self.store.revoke_session(session_id)
                if session is not None:
                    user_id = session.user_id
                    if session.refresh_token:
                        await self.oidc.revoke(session.refresh_token)
            case AuthMode.MOCK:
                session = self.store.revoke_session(session_id)
                user_id = session.user_id if session else None
        set_cookies.append(self.cookies.render_clear())
        log_auth_event("logout", logger, mode=mode.value, user_id=user_id)
        return set_cookies
