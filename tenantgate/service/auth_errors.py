"""Canonical authentication error taxonomy.

Every failure surfaced by a login flow, the session manager or the tenant
switch protocol is expressed as one of the codes below. Each code owns a
fixed record describing what the user sees, whether the operation may be
retried, and which recovery actions the UI should offer.
"""

from __future__ import annotations

from dataclasses import dataclass, field as dc_field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from tenantgate.service.errors import ServiceError


class AuthErrorCode(str, Enum):
    CREDENTIALS_SIGNIN = "CredentialsSignin"
    ACCESS_DENIED = "AccessDenied"
    VERIFICATION = "Verification"
    CONFIGURATION = "Configuration"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    INVALID_CREDENTIALS = "InvalidCredentials"
    TOO_MANY_ATTEMPTS = "TooManyAttempts"
    ACCOUNT_LOCKED = "AccountLocked"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_INVALID = "TokenInvalid"
    NETWORK_ERROR = "NetworkError"
    SERVER_ERROR = "ServerError"
    VALIDATION_ERROR = "ValidationError"
    PROVIDER_ERROR = "ProviderError"
    OIDC_ERROR = "OIDCError"
    REFRESH_TOKEN_ERROR = "RefreshTokenError"
    UNEXPECTED_ERROR = "UnexpectedError"
    DEFAULT = "Default"


class ActionKind(str, Enum):
    RETRY = "retry"
    RESET = "reset"
    REDIRECT = "redirect"
    CONTACT_SUPPORT = "contact_support"
    CHANGE_PASSWORD = "change_password"


# Marker stored on a session whose refresh failed; aliases RefreshTokenError
REFRESH_ACCESS_TOKEN_ERROR = "RefreshAccessTokenError"

SIGN_IN_PATH = "/auth/signin"


@dataclass(frozen=True)
class AuthErrorAction:
    kind: ActionKind
    label: str
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.kind.value, "label": self.label}
        if self.url:
            payload["url"] = self.url
        return payload


@dataclass(frozen=True)
class AuthErrorDetails:
    code: AuthErrorCode
    message: str
    user_message: str
    retryable: bool
    actions: Tuple[AuthErrorAction, ...] = ()
    retry_after: Optional[int] = None
    field: Optional[str] = None
    context: Dict[str, Any] = dc_field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
            "actions": [action.to_dict() for action in self.actions],
        }
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        if self.field:
            payload["field"] = self.field
        return payload


def _retry(label: str = "Try Again") -> AuthErrorAction:
    return AuthErrorAction(ActionKind.RETRY, label)


def _support(label: str = "Contact Support") -> AuthErrorAction:
    return AuthErrorAction(ActionKind.CONTACT_SUPPORT, label)


def _reset(label: str) -> AuthErrorAction:
    return AuthErrorAction(ActionKind.RESET, label)


def _sign_in(label: str) -> AuthErrorAction:
    return AuthErrorAction(ActionKind.REDIRECT, label, url=SIGN_IN_PATH)


AUTH_ERROR_CATALOG: Dict[AuthErrorCode, AuthErrorDetails] = {
    AuthErrorCode.CREDENTIALS_SIGNIN: AuthErrorDetails(
        code=AuthErrorCode.CREDENTIALS_SIGNIN,
        message="Invalid credentials provided",
        user_message="Invalid email or password. Please check your credentials and try again.",
        retryable=True,
        actions=(_retry(), _reset("Forgot Password?")),
    ),
    AuthErrorCode.ACCESS_DENIED: AuthErrorDetails(
        code=AuthErrorCode.ACCESS_DENIED,
        message="Access denied by provider or authorization server",
        user_message="Access denied. Please contact your administrator.",
        retryable=False,
        actions=(_support(),),
    ),
    AuthErrorCode.VERIFICATION: AuthErrorDetails(
        code=AuthErrorCode.VERIFICATION,
        message="Email verification required",
        user_message="Please verify your email address before signing in.",
        retryable=False,
        actions=(_sign_in("Back to Sign In"), _support()),
    ),
    AuthErrorCode.CONFIGURATION: AuthErrorDetails(
        code=AuthErrorCode.CONFIGURATION,
        message="Authentication provider configuration error",
        user_message="Authentication service is temporarily unavailable. Please try again later.",
        retryable=True,
        retry_after=300,
        actions=(_retry("Try Again Later"), _support()),
    ),
    AuthErrorCode.ACCOUNT_NOT_FOUND: AuthErrorDetails(
        code=AuthErrorCode.ACCOUNT_NOT_FOUND,
        message="No account found with the provided email",
        user_message="No account found with this email address.",
        retryable=False,
        field="email",
        actions=(_sign_in("Check Email Address"), _support()),
    ),
    AuthErrorCode.INVALID_CREDENTIALS: AuthErrorDetails(
        code=AuthErrorCode.INVALID_CREDENTIALS,
        message="The provided credentials are invalid",
        user_message="Invalid email or password.",
        retryable=True,
        actions=(_retry(), _reset("Reset Password")),
    ),
    AuthErrorCode.TOO_MANY_ATTEMPTS: AuthErrorDetails(
        code=AuthErrorCode.TOO_MANY_ATTEMPTS,
        message="Too many failed login attempts",
        user_message="Too many failed attempts. Please try again later.",
        retryable=True,
        retry_after=900,
        actions=(_retry("Try Again Later"), _reset("Reset Password")),
    ),
    AuthErrorCode.ACCOUNT_LOCKED: AuthErrorDetails(
        code=AuthErrorCode.ACCOUNT_LOCKED,
        message="Account is temporarily locked",
        user_message="Account temporarily locked due to security reasons.",
        retryable=True,
        retry_after=900,
        actions=(_retry("Try Again Later"), _support()),
    ),
    AuthErrorCode.TOKEN_EXPIRED: AuthErrorDetails(
        code=AuthErrorCode.TOKEN_EXPIRED,
        message="Authentication token has expired",
        user_message="Your session has expired. Please sign in again.",
        retryable=True,
        actions=(_retry("Sign In Again"),),
    ),
    AuthErrorCode.TOKEN_INVALID: AuthErrorDetails(
        code=AuthErrorCode.TOKEN_INVALID,
        message="Authentication token is invalid",
        user_message="Authentication failed. Please sign in again.",
        retryable=True,
        actions=(_retry("Sign In Again"),),
    ),
    AuthErrorCode.NETWORK_ERROR: AuthErrorDetails(
        code=AuthErrorCode.NETWORK_ERROR,
        message="Network connection error",
        user_message="Connection failed. Please check your internet connection and try again.",
        retryable=True,
        actions=(_retry(),),
    ),
    AuthErrorCode.SERVER_ERROR: AuthErrorDetails(
        code=AuthErrorCode.SERVER_ERROR,
        message="Internal server error",
        user_message="Server error. Please try again later.",
        retryable=True,
        retry_after=300,
        actions=(_retry("Try Again Later"), _support()),
    ),
    AuthErrorCode.VALIDATION_ERROR: AuthErrorDetails(
        code=AuthErrorCode.VALIDATION_ERROR,
        message="Form validation failed",
        user_message="Please check your input and try again.",
        retryable=True,
        actions=(_retry("Correct and Try Again"),),
    ),
    AuthErrorCode.PROVIDER_ERROR: AuthErrorDetails(
        code=AuthErrorCode.PROVIDER_ERROR,
        message="Authentication provider error",
        user_message="Authentication service error. Please try again.",
        retryable=True,
        actions=(_retry(),),
    ),
    AuthErrorCode.OIDC_ERROR: AuthErrorDetails(
        code=AuthErrorCode.OIDC_ERROR,
        message="OIDC authentication flow error",
        user_message="Sign-in process failed. Please try again.",
        retryable=True,
        actions=(_retry(),),
    ),
    AuthErrorCode.REFRESH_TOKEN_ERROR: AuthErrorDetails(
        code=AuthErrorCode.REFRESH_TOKEN_ERROR,
        message="Token refresh failed",
        user_message="Session renewal failed. Please sign in again.",
        retryable=True,
        actions=(_retry("Sign In Again"),),
    ),
    AuthErrorCode.UNEXPECTED_ERROR: AuthErrorDetails(
        code=AuthErrorCode.UNEXPECTED_ERROR,
        message="An unexpected error occurred",
        user_message="An unexpected error occurred. Please try again.",
        retryable=True,
        actions=(_retry(), _support()),
    ),
    AuthErrorCode.DEFAULT: AuthErrorDetails(
        code=AuthErrorCode.DEFAULT,
        message="Unknown authentication error",
        user_message="An error occurred during sign in. Please try again.",
        retryable=True,
        actions=(_retry(),),
    ),
}

# HTTP status used when a code is raised through the API layer
_STATUS_FOR_CODE: Dict[AuthErrorCode, int] = {
    AuthErrorCode.CREDENTIALS_SIGNIN: 401,
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_NOT_FOUND: 401,
    AuthErrorCode.ACCESS_DENIED: 403,
    AuthErrorCode.VERIFICATION: 403,
    AuthErrorCode.TOKEN_EXPIRED: 401,
    AuthErrorCode.TOKEN_INVALID: 401,
    AuthErrorCode.REFRESH_TOKEN_ERROR: 401,
    AuthErrorCode.TOO_MANY_ATTEMPTS: 429,
    AuthErrorCode.ACCOUNT_LOCKED: 423,
    AuthErrorCode.VALIDATION_ERROR: 400,
    AuthErrorCode.OIDC_ERROR: 400,
    AuthErrorCode.CONFIGURATION: 500,
    AuthErrorCode.NETWORK_ERROR: 502,
    AuthErrorCode.SERVER_ERROR: 502,
    AuthErrorCode.PROVIDER_ERROR: 502,
    AuthErrorCode.UNEXPECTED_ERROR: 500,
    AuthErrorCode.DEFAULT: 500,
}

FATAL_SESSION_CODES = frozenset({AuthErrorCode.REFRESH_TOKEN_ERROR})


def parse_auth_error_code(code: Any) -> AuthErrorCode:
    """Resolve a raw code string; unknown codes fall back to ``Default``."""
    if isinstance(code, AuthErrorCode):
        return code
    if code == REFRESH_ACCESS_TOKEN_ERROR:
        return AuthErrorCode.REFRESH_TOKEN_ERROR
    try:
        return AuthErrorCode(code)
    except ValueError:
        return AuthErrorCode.DEFAULT


def get_auth_error_details(code: Any) -> AuthErrorDetails:
    return AUTH_ERROR_CATALOG[parse_auth_error_code(code)]


def create_auth_error(
    code: Any,
    *,
    context: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> AuthErrorDetails:
    """Copy the catalog record for ``code`` with call-site context attached."""
    base = get_auth_error_details(code)
    return replace(
        base,
        context=dict(context or {}),
        field=field or base.field,
        retry_after=retry_after if retry_after is not None else base.retry_after,
    )


def status_for_code(code: AuthErrorCode) -> int:
    return _STATUS_FOR_CODE.get(code, 500)


def is_fatal(code: Any) -> bool:
    """Fatal codes invalidate the current session and force re-authentication."""
    return parse_auth_error_code(code) in FATAL_SESSION_CODES


class AuthFlowError(ServiceError):
    """A ServiceError carrying one canonical auth error code."""

    def __init__(
        self,
        code: Any,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ) -> None:
        self.details = create_auth_error(
            code, context=context, field=field, retry_after=retry_after
        )
        self.code = self.details.code
        super().__init__(
            message or self.details.message,
            status_code=status_code or status_for_code(self.code),
            detail=self.details.to_dict(),
            error_code=self.code.value,
        )

    @property
    def retryable(self) -> bool:
        return self.details.retryable


__all__ = [
    "AUTH_ERROR_CATALOG",
    "ActionKind",
    "AuthErrorAction",
    "AuthErrorCode",
    "AuthErrorDetails",
    "AuthFlowError",
    "REFRESH_ACCESS_TOKEN_ERROR",
    "create_auth_error",
    "get_auth_error_details",
    "is_fatal",
    "parse_auth_error_code",
    "status_for_code",
]
