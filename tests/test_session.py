"""Unit tests for session normalization, refresh, renewal and access checks.

Tests for:
- Normalizing provider, legacy and mock payloads into one Session shape
- Refresh token rotation and coalescing
- Failed refresh forcing re-authentication
- Sliding renewal and the session cookie
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from tenantgate.config import AuthMode, Settings
from tenantgate.service.auth_errors import REFRESH_ACCESS_TOKEN_ERROR, AuthErrorCode
from tenantgate.service.cookie_proxy import CookieForwarder
from tenantgate.service.oidc import OIDCClient
from tenantgate.service.session import (
    CookiePolicy,
    SessionManager,
    apply_refresh,
    check_access,
    denormalize_session,
    needs_refresh,
    needs_renewal,
    normalize_legacy_session,
    normalize_mock_user,
    normalize_provider_claims,
    normalize_session,
    sign_in_url,
)
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import Session, TokenSet

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
ISSUER = "http://identity.test"

DISCOVERY = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/connect/authorize",
    "token_endpoint": f"{ISSUER}/connect/token",
    "userinfo_endpoint": f"{ISSUER}/connect/userinfo",
    "revocation_endpoint": f"{ISSUER}/connect/revocation",
    "code_challenge_methods_supported": ["S256"],
}


@pytest.fixture
def settings():
    return Settings(api_url=f"{ISSUER}/", auth_mode="oauth")


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class TokenEndpoint:
    """Identity server double answering discovery and the token endpoint."""

    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload or {"access_token": "at-2", "expires_in": 3600}
        self.token_calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=DISCOVERY)
        if request.url.path == "/connect/token":
            self.token_calls.append(parse_qs(request.content.decode()))
            if self.status != 200:
                return httpx.Response(self.status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.payload)
        if request.url.path == "/connect/revocation":
            return httpx.Response(200)
        return httpx.Response(404)


def _manager(settings, endpoint, clock):
    transport = httpx.MockTransport(endpoint)
    store = MemoryStore()
    oidc = OIDCClient(settings, transport=transport)
    forwarder = CookieForwarder(settings, transport=transport)
    return SessionManager(settings, store, oidc, forwarder, clock=clock)


def _oauth_session(**overrides):
    values = dict(
        user_id="sub-1",
        email="person@example.com",
        tenant_id=1,
        primary_tenant_id=1,
        tenant_memberships=[1, 2],
        roles=["TenantUserRole"],
        auth_type="oauth",
        issued_at=T0,
        expires_at=T0 + timedelta(hours=12),
        access_token="at-1",
        access_token_expires_at=T0 + timedelta(hours=1),
        refresh_token="rt-1",
    )
    values.update(overrides)
    return Session(**values)


class TestNormalization:
    def test_provider_claims(self):
        session = normalize_provider_claims(
            {
                "sub": "abc",
                "email": "a@example.com",
                "given_name": "Ada",
                "family_name": "Lovelace",
                "tenant_id": "2",
                "primary_tenant_id": 1,
                "tenant_memberships": "1,2",
                "roles": ["TenantAdminRole"],
            },
            issued_at=T0,
        )
        assert session.user_id == "abc"
        assert session.name == "Ada Lovelace"
        assert session.tenant_id == 2
        assert session.primary_tenant_id == 1
        assert session.tenant_memberships == [1, 2]
        assert session.auth_type == "oauth"
        assert session.expires_at == T0 + timedelta(hours=12)

    def test_provider_claims_without_memberships_use_tenant(self):
        session = normalize_provider_claims({"sub": "abc", "tenant_id": 4})
        assert session.tenant_memberships == [4]
        assert session.primary_tenant_id == 4

    def test_provider_tokens_are_attached(self):
        tokens = TokenSet(access_token="at", expires_in=600, refresh_token="rt")
        session = normalize_provider_claims({"sub": "abc"}, issued_at=T0, tokens=tokens)
        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.access_token_expires_at == T0 + timedelta(seconds=600)

    def test_legacy_payload(self):
        session = normalize_legacy_session(
            {
                "userId": "42",
                "email": "legacy@example.com",
                "fullName": "Legacy Person",
                "tenantId": 3,
                "tenantName": "Sales Demo",
                "tenantMemberships": [1, 3],
                "roles": "TenantUserRole,ReportViewer",
            }
        )
        assert session.name == "Legacy Person"
        assert session.primary_tenant_id == 3
        assert session.roles == ["TenantUserRole", "ReportViewer"]
        assert session.auth_type == "legacy"
        assert session.tenant_name == "Sales Demo"

    def test_mock_user_defaults_tenant_to_primary(self):
        session = normalize_mock_user(
            {"id": "admin-001", "primaryTenantId": 1, "tenantMemberships": [1, 2, 3]}
        )
        assert session.tenant_id == 1
        assert session.auth_type == "mock"

    @pytest.mark.parametrize("mode", list(AuthMode))
    def test_denormalize_then_normalize_preserves_identity(self, mode):
        original = Session(
            user_id="u-9",
            email="nine@example.com",
            name="Nine",
            tenant_id=2,
            primary_tenant_id=1,
            tenant_memberships=[1, 2],
            roles=["TenantAdminRole", "TenantUserRole"],
            auth_type=mode.value,
            tenant_name="Spearfish Sandbox",
        )
        again = normalize_session(mode, denormalize_session(original))

        assert again.user_id == original.user_id
        assert again.tenant_id == original.tenant_id
        assert again.primary_tenant_id == original.primary_tenant_id
        assert again.tenant_memberships == original.tenant_memberships
        assert again.roles == original.roles
        assert again.auth_type == original.auth_type
        assert again.tenant_name == original.tenant_name


class TestRefreshPredicates:
    def test_needs_refresh_inside_margin(self):
        session = _oauth_session()
        assert not needs_refresh(session, T0 + timedelta(minutes=58))
        assert needs_refresh(session, T0 + timedelta(minutes=59, seconds=30))

    def test_no_refresh_token_never_refreshes(self):
        session = _oauth_session(refresh_token=None)
        assert not needs_refresh(session, T0 + timedelta(hours=2))

    def test_rotation_replaces_refresh_token(self):
        later = T0 + timedelta(hours=1)
        refreshed = apply_refresh(
            _oauth_session(error="x"),
            TokenSet(access_token="at-2", expires_in=300, refresh_token="rt-2"),
            later,
        )
        assert refreshed.refresh_token == "rt-2"
        assert refreshed.access_token == "at-2"
        assert refreshed.access_token_expires_at == later + timedelta(seconds=300)
        assert refreshed.error is None

    def test_absent_refresh_token_keeps_previous(self):
        refreshed = apply_refresh(_oauth_session(), TokenSet(access_token="at-2"), T0)
        assert refreshed.refresh_token == "rt-1"

    def test_renewal_after_update_age(self):
        session = _oauth_session()
        kwargs = dict(max_age_seconds=12 * 3600, update_age_seconds=11 * 3600)
        assert not needs_renewal(session, T0 + timedelta(hours=1), **kwargs)
        assert needs_renewal(session, T0 + timedelta(hours=11, minutes=1), **kwargs)
        assert not needs_renewal(session, T0 + timedelta(hours=13), **kwargs)


class TestCheckAccess:
    def test_no_session_redirects_to_sign_in(self):
        decision = check_access(None, T0, callback_url="/dashboard")
        assert not decision.allowed
        assert decision.redirect_url == "/auth/signin?callbackUrl=%2Fdashboard"

    def test_failed_refresh_forces_sign_in(self):
        decision = check_access(_oauth_session(error=REFRESH_ACCESS_TOKEN_ERROR), T0)
        assert not decision.allowed
        assert decision.error_code is AuthErrorCode.TOKEN_EXPIRED
        assert decision.redirect_url == "/auth/signin?error=TokenExpired"

    def test_expired_session_forces_sign_in(self):
        decision = check_access(_oauth_session(), T0 + timedelta(hours=12))
        assert decision.redirect_url == sign_in_url(AuthErrorCode.TOKEN_EXPIRED)

    def test_valid_session_allowed(self):
        decision = check_access(_oauth_session(), T0 + timedelta(minutes=5))
        assert decision.allowed


class TestCookiePolicy:
    def test_development_cookie(self, settings):
        raw = CookiePolicy.from_settings(settings).render("abc")
        assert raw.startswith("tenantgate.session=abc")
        assert "HttpOnly" in raw
        assert "SameSite=Lax" in raw
        assert "Path=/" in raw
        assert "Max-Age=43200" in raw
        assert "Secure" not in raw

    def test_production_cookie_is_secure_and_scoped(self):
        settings = Settings(environment="production", cookie_domain=".example.com")
        raw = CookiePolicy.from_settings(settings).render("abc")
        assert "Secure" in raw
        assert "Domain=.example.com" in raw

    def test_clear_cookie(self, settings):
        assert "Max-Age=0" in CookiePolicy.from_settings(settings).render_clear()


class TestSessionManager:
    async def test_failed_refresh_marks_session_and_denies_access(self, settings):
        endpoint = TokenEndpoint(status=400)
        clock = Clock(T0 + timedelta(minutes=59, seconds=30))
        manager = _manager(settings, endpoint, clock)
        stored, _ = manager.issue(_oauth_session())

        decision, set_cookies = await manager.current(stored.session_id)

        assert len(endpoint.token_calls) == 1
        assert not decision.allowed
        assert decision.session.error == REFRESH_ACCESS_TOKEN_ERROR
        assert decision.redirect_url == "/auth/signin?error=TokenExpired"
        assert "Max-Age=0" in set_cookies[0]
        assert manager.load(stored.session_id) is None

    async def test_refresh_rotates_and_persists(self, settings):
        endpoint = TokenEndpoint(
            payload={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600}
        )
        clock = Clock(T0 + timedelta(minutes=59, seconds=30))
        manager = _manager(settings, endpoint, clock)
        stored, _ = manager.issue(_oauth_session())

        decision, _ = await manager.current(stored.session_id)

        assert decision.allowed
        assert decision.session.refresh_token == "rt-2"
        assert manager.load(stored.session_id).access_token == "at-2"
        assert endpoint.token_calls[0]["grant_type"] == ["refresh_token"]
        assert endpoint.token_calls[0]["refresh_token"] == ["rt-1"]

    async def test_concurrent_refreshes_share_one_request(self, settings):
        endpoint = TokenEndpoint(
            payload={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600}
        )
        manager = _manager(settings, endpoint, Clock(T0 + timedelta(minutes=59, seconds=30)))
        stored, _ = manager.issue(_oauth_session())

        results = await asyncio.gather(*(manager.refresh(stored) for _ in range(5)))

        assert len(endpoint.token_calls) == 1
        assert {r.refresh_token for r in results} == {"rt-2"}

    async def test_renewal_reissues_cookie(self, settings):
        manager = _manager(settings, TokenEndpoint(), Clock(T0 + timedelta(hours=11, minutes=30)))
        stored, _ = manager.issue(_oauth_session(refresh_token=None))

        decision, set_cookies = await manager.current(stored.session_id)

        assert decision.allowed
        assert decision.session.expires_at == T0 + timedelta(hours=23, minutes=30)
        assert set_cookies and stored.session_id in set_cookies[0]

    async def test_oauth_sign_out_revokes_refresh_token(self, settings):
        revoked = []

        def handler(request):
            if request.url.path == "/connect/revocation":
                revoked.append(parse_qs(request.content.decode())["token"][0])
                return httpx.Response(200)
            if request.url.path.endswith("openid-configuration"):
                return httpx.Response(200, content=json.dumps(DISCOVERY))
            return httpx.Response(404)

        manager = _manager(settings, handler, Clock())
        stored, _ = manager.issue(_oauth_session())

        set_cookies = await manager.sign_out(AuthMode.OAUTH, stored.session_id)

        assert revoked == ["rt-1"]
        assert manager.load(stored.session_id) is None
        assert "Max-Age=0" in set_cookies[-1]
