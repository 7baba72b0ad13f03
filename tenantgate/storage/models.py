from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str = field(repr=False)
    remember_me: bool = False


@dataclass(frozen=True)
class Tenant:
    id: int
    name: str
    type: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tenant":
        return cls(
            id=int(data.get("id") or 0),
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
        }


@dataclass(frozen=True)
class Session:
    """Canonical, backend-agnostic session.

    Instances are never mutated in place; refresh, renewal and tenant switch
    all return a new Session via ``dataclasses.replace``.
    """

    user_id: str
    email: str = ""
    name: str = ""
    tenant_id: int = 0
    primary_tenant_id: int = 0
    tenant_memberships: List[int] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    auth_type: str = "oauth"
    issued_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + timedelta(hours=12))
    refresh_token: Optional[str] = field(default=None, repr=False)
    access_token: Optional[str] = field(default=None, repr=False)
    access_token_expires_at: Optional[datetime] = None
    tenant_name: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None

    def is_member(self, tenant_id: int) -> bool:
        return tenant_id in self.tenant_memberships

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def with_changes(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Public JSON view; tokens never leave the process."""
        return {
            "userId": self.user_id,
            "email": self.email,
            "name": self.name,
            "tenantId": self.tenant_id,
            "tenantName": self.tenant_name,
            "primaryTenantId": self.primary_tenant_id,
            "tenantMemberships": list(self.tenant_memberships),
            "roles": list(self.roles),
            "authType": self.auth_type,
            "issuedAt": _iso(self.issued_at),
            "expiresAt": _iso(self.expires_at),
            "error": self.error,
        }


@dataclass(frozen=True)
class TokenSet:
    access_token: str = field(repr=False)
    expires_in: int = 3600
    refresh_token: Optional[str] = field(default=None, repr=False)
    id_token: Optional[str] = field(default=None, repr=False)
    token_type: str = "Bearer"
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("token response missing access_token")
        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600
        return cls(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=data.get("refresh_token") or None,
            id_token=data.get("id_token") or None,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )

    def expires_at(self, issued_at: datetime) -> datetime:
        return issued_at + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class PendingAuthorization:
    """PKCE material held between the authorization redirect and the callback."""

    state: str
    code_verifier: str = field(repr=False)
    redirect_uri: str
    callback_url: str = "/"
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.created_at + timedelta(seconds=ttl_seconds)


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    body: Any = None
    # Raw Set-Cookie header values in the order the upstream sent them
    set_cookies: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
