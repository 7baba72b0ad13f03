"""Tests for the OpenID Connect client and PKCE helpers."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from tenantgate.config import Settings
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.service.oidc import (
    DiscoveryDocument,
    OIDCClient,
    code_challenge_s256,
    generate_code_verifier,
)

ISSUER = "http://identity.test"

DISCOVERY = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/connect/authorize",
    "token_endpoint": f"{ISSUER}/connect/token",
    "userinfo_endpoint": f"{ISSUER}/connect/userinfo",
    "code_challenge_methods_supported": ["plain", "S256"],
}


@pytest.fixture
def settings():
    return Settings(api_url=ISSUER, oauth_client_id="web-client")


def _client(settings, handler):
    return OIDCClient(settings, transport=httpx.MockTransport(handler))


class TestPkce:
    def test_rfc7636_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verifier_length_and_uniqueness(self):
        first, second = generate_code_verifier(), generate_code_verifier()
        assert 43 <= len(first) <= 128
        assert first != second


class TestDiscovery:
    def test_rejects_provider_without_s256(self):
        document = dict(DISCOVERY, code_challenge_methods_supported=["plain"])
        with pytest.raises(AuthFlowError) as exc_info:
            DiscoveryDocument.parse(document)
        assert exc_info.value.code is AuthErrorCode.CONFIGURATION

    def test_rejects_missing_endpoints(self):
        document = {k: v for k, v in DISCOVERY.items() if k != "token_endpoint"}
        with pytest.raises(AuthFlowError) as exc_info:
            DiscoveryDocument.parse(document)
        assert exc_info.value.details.context["missing"] == ["token_endpoint"]

    async def test_discovery_is_cached(self, settings):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(200, json=DISCOVERY)

        client = _client(settings, handler)
        first = await client.discover()
        second = await client.discover()

        assert first is second
        assert calls == [f"{ISSUER}/.well-known/openid-configuration"]

    async def test_unreachable_provider_is_configuration_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AuthFlowError) as exc_info:
            await _client(settings, handler).discover()
        assert exc_info.value.code is AuthErrorCode.CONFIGURATION


class TestAuthorizationUrl:
    def test_carries_pkce_parameters(self, settings):
        client = OIDCClient(settings)
        url = client.build_authorization_url(
            DiscoveryDocument.parse(DISCOVERY),
            state="st-1",
            code_challenge="challenge",
            redirect_uri="http://app.test/api/auth/callback/spearfish",
        )
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.path == "/connect/authorize"
        assert params["response_type"] == "code"
        assert params["client_id"] == "web-client"
        assert params["state"] == "st-1"
        assert params["code_challenge"] == "challenge"
        assert params["code_challenge_method"] == "S256"
        assert "openid" in params["scope"].split()


class TestTokenEndpoint:
    async def test_rejected_code_is_oidc_error(self, settings):
        def handler(request):
            if request.url.path == "/connect/token":
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=DISCOVERY)

        with pytest.raises(AuthFlowError) as exc_info:
            await _client(settings, handler).exchange_code("code", "verifier", "http://cb")
        assert exc_info.value.code is AuthErrorCode.OIDC_ERROR

    async def test_token_response_without_access_token_is_provider_error(self, settings):
        def handler(request):
            if request.url.path == "/connect/token":
                return httpx.Response(200, json={"token_type": "Bearer"})
            return httpx.Response(200, json=DISCOVERY)

        with pytest.raises(AuthFlowError) as exc_info:
            await _client(settings, handler).exchange_code("code", "verifier", "http://cb")
        assert exc_info.value.code is AuthErrorCode.PROVIDER_ERROR

    async def test_refresh_failure_is_refresh_token_error(self, settings):
        def handler(request):
            if request.url.path == "/connect/token":
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json=DISCOVERY)

        with pytest.raises(AuthFlowError) as exc_info:
            await _client(settings, handler).refresh("rt-1")
        assert exc_info.value.code is AuthErrorCode.REFRESH_TOKEN_ERROR

    async def test_userinfo_requires_subject(self, settings):
        def handler(request):
            if request.url.path == "/connect/userinfo":
                assert request.headers["Authorization"] == "Bearer at-1"
                return httpx.Response(200, json={"email": "x@example.com"})
            return httpx.Response(200, json=DISCOVERY)

        with pytest.raises(AuthFlowError) as exc_info:
            await _client(settings, handler).fetch_userinfo("at-1")
        assert exc_info.value.code is AuthErrorCode.PROVIDER_ERROR

    async def test_revoke_without_endpoint_returns_false(self, settings):
        client = _client(settings, lambda request: httpx.Response(200, json=DISCOVERY))
        assert await client.revoke("rt-1") is False
