from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantgate.service.validation import LoginForm, normalize_email


class LoginRequest(LoginForm):
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl", max_length=2048)


class PasswordResetEmailRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return normalize_email(value)


class AuthModeResponse(BaseModel):
    mode: str
    features: List[str]
    description: str


class SessionUser(BaseModel):
    """Public session view; mirrors ``Session.to_dict``."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: str = ""
    name: str = ""
    tenant_id: int = Field(default=0, alias="tenantId")
    tenant_name: Optional[str] = Field(default=None, alias="tenantName")
    primary_tenant_id: int = Field(default=0, alias="primaryTenantId")
    tenant_memberships: List[int] = Field(default_factory=list, alias="tenantMemberships")
    roles: List[str] = Field(default_factory=list)
    auth_type: str = Field(alias="authType")
    issued_at: Optional[str] = Field(default=None, alias="issuedAt")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    error: Optional[str] = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    user: Optional[SessionUser] = None
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")


class MeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    authenticated: bool
    session: Optional[SessionUser] = None
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")
    error: Optional[str] = None


class TenantResponse(BaseModel):
    id: int
    name: str
    type: str = ""
    description: str = ""


class MessageResponse(BaseModel):
    success: bool = True
    message: str


def dump(model: BaseModel) -> Dict[str, Any]:
    """Serialize with the camelCase aliases the browser client expects."""
    return model.model_dump(by_alias=True)
