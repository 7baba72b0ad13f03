from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from tenantgate.config import AuthMode
from tenantgate.logging import get_logger
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError, is_fatal
from tenantgate.service.cookie_proxy import CookieForwarder
from tenantgate.service.mock_directory import MockDirectory
from tenantgate.service.session import SessionManager, normalize_legacy_session
from tenantgate.storage.models import Session, Tenant, UpstreamResponse, utcnow

logger = get_logger(__name__)

LEGACY_SWITCH_PATH = "/api/auth/session/tenant/{tenant_id}"
LEGACY_TENANTS_PATH = "/api/tenants"


@dataclass(frozen=True)
class TenantSwitchResult:
    session: Session
    set_cookies: List[str] = field(default_factory=list)
    body: Dict[str, Any] = field(default_factory=dict)


def _legacy_switch_error(response: UpstreamResponse) -> AuthFlowError:
    status = response.status_code
    if status in (400, 403, 404):
        return AuthFlowError(
            AuthErrorCode.ACCESS_DENIED,
            "tenant switch rejected",
            status_code=400,
            context={"upstream_status": status},
        )
    if status == 401:
        return AuthFlowError(AuthErrorCode.TOKEN_INVALID)
    if status >= 500:
        return AuthFlowError(AuthErrorCode.SERVER_ERROR, context={"upstream_status": status})
    return AuthFlowError(AuthErrorCode.UNEXPECTED_ERROR, context={"upstream_status": status})


class TenantSwitcher:
    """Re-scopes an existing session to another tenant the user belongs to.

    The input session is never mutated. Callers must drop it and use the
    returned one, together with the returned ``Set-Cookie`` values.
    """

    def __init__(
        self,
        mode: AuthMode,
        sessions: SessionManager,
        forwarder: CookieForwarder,
        directory: MockDirectory,
    ) -> None:
        self.mode = mode
        self.sessions = sessions
        self.forwarder = forwarder
        self.directory = directory

    def _require_valid(self, session: Optional[Session]) -> Session:
        if session is None or (session.error and is_fatal(session.error)) or session.is_expired(utcnow()):
            raise AuthFlowError(AuthErrorCode.TOKEN_INVALID)
        return session

    async def switch_tenant(
        self,
        session: Optional[Session],
        tenant_id: int,
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> TenantSwitchResult:
        current = self._require_valid(session)
        if not current.is_member(tenant_id):
            logger.warning(
                "tenant_switch_denied",
                user_id=current.user_id,
                tenant_id=tenant_id,
                current_tenant_id=current.tenant_id,
            )
            raise AuthFlowError(
                AuthErrorCode.ACCESS_DENIED,
                "not a member of the requested tenant",
                status_code=400,
                context={"tenant_id": tenant_id},
            )

        match self.mode:
            case AuthMode.LEGACY:
                result = await self._switch_legacy(
                    current, tenant_id, cookie_header=cookie_header, inbound_headers=inbound_headers
                )
            case AuthMode.MOCK | AuthMode.OAUTH:
                result = self._switch_in_process(current, tenant_id)
        logger.info(
            "tenant_switched",
            user_id=current.user_id,
            from_tenant_id=current.tenant_id,
            to_tenant_id=result.session.tenant_id,
            forwarded_cookies=len(result.set_cookies),
        )
        return result

    async def _switch_legacy(
        self,
        current: Session,
        tenant_id: int,
        *,
        cookie_header: Optional[str],
        inbound_headers: Optional[Mapping[str, str]],
    ) -> TenantSwitchResult:
        response = await self.forwarder.forward(
            "PUT",
            LEGACY_SWITCH_PATH.format(tenant_id=tenant_id),
            cookie_header=cookie_header,
            inbound_headers=inbound_headers,
        )
        if not response.ok:
            raise _legacy_switch_error(response)
        if not isinstance(response.body, dict):
            raise AuthFlowError(AuthErrorCode.UNEXPECTED_ERROR, "tenant switch returned no session")
        switched = normalize_legacy_session(
            response.body,
            issued_at=utcnow(),
            max_age_seconds=self.sessions.settings.session_max_age_seconds,
        )
        switched = self._reconcile_legacy_switch(current, switched, tenant_id)
        return TenantSwitchResult(
            session=switched, set_cookies=list(response.set_cookies), body=response.body
        )

    def _reconcile_legacy_switch(
        self, current: Session, switched: Session, tenant_id: int
    ) -> Session:
        """Fill what the upstream switch response left out from the current session.

        A response naming another tenant, or one whose tenant ends up outside
        the memberships, is rejected rather than handed back to the caller.
        """
        if switched.tenant_id and switched.tenant_id != tenant_id:
            logger.error(
                "tenant_switch_mismatch",
                user_id=current.user_id,
                requested_tenant_id=tenant_id,
                upstream_tenant_id=switched.tenant_id,
            )
            raise AuthFlowError(
                AuthErrorCode.UNEXPECTED_ERROR,
                "tenant switch returned a different tenant",
                context={"tenant_id": tenant_id},
            )
        switched = switched.with_changes(
            tenant_id=tenant_id,
            user_id=switched.user_id or current.user_id,
            email=switched.email or current.email,
            primary_tenant_id=switched.primary_tenant_id or current.primary_tenant_id,
            # Upstream omitted memberships; the previous list still applies
            tenant_memberships=list(switched.tenant_memberships or current.tenant_memberships),
        )
        if not switched.is_member(tenant_id):
            logger.error(
                "tenant_switch_not_member",
                user_id=current.user_id,
                tenant_id=tenant_id,
                upstream_memberships=switched.tenant_memberships,
            )
            raise AuthFlowError(
                AuthErrorCode.UNEXPECTED_ERROR,
                "tenant switch returned a session outside its memberships",
                context={"tenant_id": tenant_id},
            )
        return switched

    def _switch_in_process(self, current: Session, tenant_id: int) -> TenantSwitchResult:
        if self.sessions.load(current.session_id) is None:
            raise AuthFlowError(AuthErrorCode.TOKEN_INVALID)
        tenant = self.directory.tenants.get(tenant_id)
        updated = current.with_changes(
            tenant_id=tenant_id,
            tenant_name=tenant["name"] if tenant else None,
        )
        rotated = self.sessions.store.rotate_session(current.session_id, updated)
        cookie = self.sessions.cookies.render(rotated.session_id)
        return TenantSwitchResult(session=rotated, set_cookies=[cookie], body=rotated.to_dict())

    async def list_tenants(
        self,
        session: Optional[Session],
        *,
        cookie_header: Optional[str] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> List[Tenant]:
        match self.mode:
            case AuthMode.OAUTH:
                raise AuthFlowError(
                    AuthErrorCode.CONFIGURATION,
                    "tenant listing is not available in oauth mode",
                    status_code=501,
                )
            case AuthMode.MOCK:
                current = self._require_valid(session)
                return [Tenant.from_dict(t) for t in self.directory.tenants_for(current.tenant_memberships)]
            case AuthMode.LEGACY:
                return await self._list_legacy(
                    session, cookie_header=cookie_header, inbound_headers=inbound_headers
                )
        return []

    async def _list_legacy(
        self,
        session: Optional[Session],
        *,
        cookie_header: Optional[str],
        inbound_headers: Optional[Mapping[str, str]],
    ) -> List[Tenant]:
        response = await self.forwarder.forward(
            "GET",
            LEGACY_TENANTS_PATH,
            cookie_header=cookie_header,
            inbound_headers=inbound_headers,
        )
        if response.status_code == 401:
            raise AuthFlowError(AuthErrorCode.TOKEN_INVALID)
        if response.ok and isinstance(response.body, list) and response.body:
            return [
                Tenant.from_dict(
                    {
                        "id": item.get("id") or item.get("tenantId"),
                        "name": item.get("name") or item.get("tenantName"),
                        "type": item.get("type") or "Unknown",
                        "description": item.get("description") or "",
                    }
                )
                for item in response.body
                if isinstance(item, dict)
            ]
        if session is None:
            return []
        # Fall back to what the session itself knows about
        logger.info("legacy_tenants_fallback", status=response.status_code)
        tenants = []
        for tid in session.tenant_memberships:
            name = session.tenant_name if tid == session.tenant_id and session.tenant_name else f"Tenant {tid}"
            tenants.append(Tenant(id=tid, name=name, type="Unknown"))
        return tenants
