"""Tests for re-scoping a session to another tenant."""

import httpx
import pytest

from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.storage.models import Credentials, Session

SWITCHED_LEGACY_SESSION = {
    "userId": "77",
    "email": "legacy@spearfish.io",
    "name": "Legacy User",
    "tenantId": 2,
    "tenantName": "Spearfish Sandbox",
    "primaryTenantId": 1,
    "roles": ["TenantUserRole"],
}


def _legacy_session(**overrides):
    values = dict(
        user_id="77",
        email="legacy@spearfish.io",
        tenant_id=1,
        primary_tenant_id=1,
        tenant_memberships=[1, 2],
        auth_type="legacy",
    )
    values.update(overrides)
    return Session(**values)


async def _mock_login(runtime, email="admin@spearfish.io", password="Password123!"):
    result = await runtime.login_flow.submit(Credentials(email=email, password=password))
    assert result.ok
    return result.session


class TestMockSwitch:
    async def test_switch_rotates_session(self, runtime_for):
        runtime = runtime_for("mock")
        session = await _mock_login(runtime)

        result = await runtime.switcher.switch_tenant(session, 2)

        assert result.session.tenant_id == 2
        assert result.session.tenant_name == "Spearfish Sandbox"
        assert result.session.session_id != session.session_id
        assert result.session.session_id in result.set_cookies[0]
        assert result.body["tenantId"] == 2
        # The old session is no longer usable and the input was not mutated
        assert runtime.store.get_session(session.session_id) is None
        assert session.tenant_id == 1

    async def test_non_member_is_rejected_unchanged(self, runtime_for):
        runtime = runtime_for("mock")
        session = await _mock_login(runtime, "user@spearfish.io", "UserPass123!")

        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(session, 2)

        assert exc_info.value.code is AuthErrorCode.ACCESS_DENIED
        assert exc_info.value.status_code == 400
        assert runtime.store.get_session(session.session_id).tenant_id == 1

    async def test_missing_session_is_token_invalid(self, runtime_for):
        runtime = runtime_for("mock")
        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(None, 1)
        assert exc_info.value.code is AuthErrorCode.TOKEN_INVALID

    async def test_revoked_session_cannot_switch(self, runtime_for):
        runtime = runtime_for("mock")
        session = await _mock_login(runtime)
        runtime.store.revoke_session(session.session_id)

        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(session, 2)
        assert exc_info.value.code is AuthErrorCode.TOKEN_INVALID

    async def test_list_tenants_for_memberships(self, runtime_for):
        runtime = runtime_for("mock")
        session = await _mock_login(runtime)
        tenants = await runtime.switcher.list_tenants(session)
        assert [t.id for t in tenants] == [1, 2, 3]
        assert tenants[2].type == "SalesDemo"


class TestLegacySwitch:
    async def test_forwards_put_and_cookies(self, runtime_for):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, request.headers.get("cookie")))
            return httpx.Response(
                200,
                json=SWITCHED_LEGACY_SESSION,
                headers=[("set-cookie", ".AspNetCore.Identity.Application=new; path=/; httponly")],
            )

        runtime = runtime_for("legacy", handler)
        result = await runtime.switcher.switch_tenant(
            _legacy_session(),
            2,
            cookie_header=".AspNetCore.Identity.Application=old",
        )

        assert seen == [
            ("PUT", "/api/auth/session/tenant/2", ".AspNetCore.Identity.Application=old")
        ]
        assert result.set_cookies == [".AspNetCore.Identity.Application=new; path=/; httponly"]
        assert result.session.tenant_id == 2
        # Upstream omitted memberships, so the previous ones carry over
        assert result.session.tenant_memberships == [1, 2]

    async def test_response_without_tenant_takes_requested_tenant(self, runtime_for):
        def handler(request):
            return httpx.Response(
                200,
                json={"userId": "77", "email": "legacy@spearfish.io"},
                headers=[("set-cookie", ".AspNetCore.Identity.Application=new; path=/")],
            )

        runtime = runtime_for("legacy", handler)
        result = await runtime.switcher.switch_tenant(_legacy_session(), 2)

        assert result.session.tenant_id == 2
        assert result.session.tenant_memberships == [1, 2]
        assert result.session.primary_tenant_id == 1
        assert result.set_cookies == [".AspNetCore.Identity.Application=new; path=/"]

    async def test_response_for_other_tenant_is_rejected(self, runtime_for):
        runtime = runtime_for(
            "legacy", lambda request: httpx.Response(200, json=dict(SWITCHED_LEGACY_SESSION, tenantId=1))
        )
        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(_legacy_session(), 2)
        assert exc_info.value.code is AuthErrorCode.UNEXPECTED_ERROR

    async def test_response_outside_memberships_is_rejected(self, runtime_for):
        runtime = runtime_for(
            "legacy",
            lambda request: httpx.Response(
                200, json=dict(SWITCHED_LEGACY_SESSION, tenantMemberships=[1, 3])
            ),
        )
        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(_legacy_session(), 2)
        assert exc_info.value.code is AuthErrorCode.UNEXPECTED_ERROR

    async def test_non_member_makes_no_upstream_call(self, runtime_for):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=SWITCHED_LEGACY_SESSION)

        runtime = runtime_for("legacy", handler)
        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(_legacy_session(), 3)

        assert exc_info.value.code is AuthErrorCode.ACCESS_DENIED
        assert calls == []

    @pytest.mark.parametrize(
        "status,code,http_status",
        [
            (403, AuthErrorCode.ACCESS_DENIED, 400),
            (404, AuthErrorCode.ACCESS_DENIED, 400),
            (401, AuthErrorCode.TOKEN_INVALID, 401),
            (500, AuthErrorCode.SERVER_ERROR, 502),
        ],
    )
    async def test_upstream_rejections(self, runtime_for, status, code, http_status):
        runtime = runtime_for("legacy", lambda request: httpx.Response(status))
        with pytest.raises(AuthFlowError) as exc_info:
            await runtime.switcher.switch_tenant(_legacy_session(), 2)
        assert exc_info.value.code is code
        assert exc_info.value.status_code == http_status

    async def test_list_tenants_falls_back_to_session(self, runtime_for):
        runtime = runtime_for("legacy", lambda request: httpx.Response(404))
        tenants = await runtime.switcher.list_tenants(_legacy_session(tenant_name="Spearfish"))
        assert [(t.id, t.name) for t in tenants] == [(1, "Spearfish"), (2, "Tenant 2")]


async def test_oauth_tenant_listing_not_implemented(runtime_for):
    runtime = runtime_for("oauth")
    with pytest.raises(AuthFlowError) as exc_info:
        await runtime.switcher.list_tenants(None)
    assert exc_info.value.status_code == 501
