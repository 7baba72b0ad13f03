from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple

from fastapi import APIRouter, Path, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from tenantgate.api.schemas import (
    AuthModeResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordResetEmailRequest,
    SessionUser,
    TenantResponse,
    dump,
)
from tenantgate.config import AUTH_MODE_FEATURES, AuthMode, describe_auth_mode, supports_feature
from tenantgate.logging import get_logger, log_auth_event
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.service.cookie_proxy import cookie_header_from
from tenantgate.service.lockout import attempt_key, request_origin
from tenantgate.service.login_flow import LEGACY_SESSION_PATH, safe_callback_url
from tenantgate.service.runtime import Runtime, get_runtime
from tenantgate.service.session import normalize_legacy_session, sign_in_url
from tenantgate.storage.models import Session, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

LEGACY_PASSWORD_RESET_PATH = "/api/auth/password/resetemail"


def _forward_cookies(response: Response, set_cookies: Iterable[str]) -> Response:
    """Append upstream or locally issued ``Set-Cookie`` values in order."""
    for raw in set_cookies:
        response.headers.append("set-cookie", raw)
    return response


def _json(content: Any, *, status_code: int = 200, set_cookies: Iterable[str] = ()) -> JSONResponse:
    return _forward_cookies(JSONResponse(status_code=status_code, content=content), set_cookies)


def _require_mode(runtime: Runtime, *modes: AuthMode, feature: str) -> None:
    if runtime.mode not in modes:
        raise AuthFlowError(
            AuthErrorCode.CONFIGURATION,
            f"{feature} is not available in {runtime.mode.value} mode",
            status_code=400,
        )


async def _legacy_session(request: Request, runtime: Runtime) -> Tuple[Optional[Session], List[str]]:
    upstream = await runtime.forwarder.forward(
        "GET",
        LEGACY_SESSION_PATH,
        cookie_header=request.headers.get("cookie"),
        inbound_headers=request.headers,
    )
    if not upstream.ok or not isinstance(upstream.body, dict):
        return None, list(upstream.set_cookies)
    session = normalize_legacy_session(
        upstream.body,
        issued_at=utcnow(),
        max_age_seconds=runtime.settings.session_max_age_seconds,
    )
    return session, list(upstream.set_cookies)


def _replayed_cookie_header(request: Request, set_cookies: List[str]) -> Optional[str]:
    """Inbound ``Cookie`` header updated with cookies issued earlier in this request."""
    existing = request.headers.get("cookie")
    if not set_cookies:
        return existing
    return cookie_header_from(set_cookies, existing) or existing


async def _current_session(request: Request, runtime: Runtime) -> Tuple[Optional[Session], List[str]]:
    """Resolve the caller's canonical session for the active mode."""
    if runtime.mode is AuthMode.LEGACY:
        return await _legacy_session(request, runtime)
    decision, set_cookies = await runtime.sessions.current(
        request.cookies.get(runtime.settings.session_cookie_name)
    )
    return (decision.session if decision.allowed else None), set_cookies


@router.get("/auth/mode", response_model=AuthModeResponse, tags=["auth"])
async def auth_mode():
    runtime = get_runtime()
    return AuthModeResponse(
        mode=runtime.mode.value,
        features=sorted(AUTH_MODE_FEATURES[runtime.mode]),
        description=describe_auth_mode(runtime.mode),
    )


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password sign-in for mock and legacy modes.

    Attempts are counted server-side per email and origin; a locked key is
    rejected with 423 without contacting the identity server.
    """
    runtime = get_runtime()
    _require_mode(runtime, AuthMode.MOCK, AuthMode.LEGACY, feature="password sign-in")
    credentials = body.to_credentials()
    origin = request_origin(request.headers, request.client.host if request.client else None)
    log_auth_event("login_attempt", logger, mode=runtime.mode.value)
    result = await runtime.attempts.submit(
        attempt_key(credentials.email, origin),
        runtime.login_flow,
        credentials,
        cookie_header=request.headers.get("cookie"),
        inbound_headers=request.headers,
        callback_url=safe_callback_url(body.callback_url),
    )
    if not result.ok:
        log_auth_event(
            "login_failure",
            logger,
            mode=runtime.mode.value,
            code=result.error.code.value if result.error else None,
        )
        result.raise_for_error()
    session = result.session
    log_auth_event(
        "login_success",
        logger,
        mode=runtime.mode.value,
        user_id=session.user_id,
        tenant_id=session.tenant_id,
    )
    payload = LoginResponse(
        success=True,
        message="Login successful",
        user=SessionUser.model_validate(session.to_dict()),
        redirect_url=result.redirect_url,
    )
    return _json(dump(payload), set_cookies=result.set_cookies)


@router.get("/auth/signin/oauth", tags=["auth"])
async def oauth_signin(callback_url: Optional[str] = Query(default=None, alias="callbackUrl")):
    runtime = get_runtime()
    _require_mode(runtime, AuthMode.OAUTH, feature="single sign-on")
    target = await runtime.login_flow.initiate(callback_url=safe_callback_url(callback_url))
    return RedirectResponse(target.url, status_code=302)


@router.get("/auth/callback/spearfish", tags=["auth"])
async def oauth_callback(request: Request):
    runtime = get_runtime()
    _require_mode(runtime, AuthMode.OAUTH, feature="single sign-on")
    result = await runtime.login_flow.handle_callback(dict(request.query_params))
    if not result.ok:
        code = result.error.code if result.error else AuthErrorCode.DEFAULT
        return RedirectResponse(sign_in_url(code), status_code=302)
    log_auth_event(
        "login_success",
        logger,
        mode=runtime.mode.value,
        user_id=result.session.user_id,
        tenant_id=result.session.tenant_id,
    )
    response = RedirectResponse(result.redirect_url or "/", status_code=302)
    return _forward_cookies(response, result.set_cookies)


@router.get("/auth/session", tags=["auth"])
async def legacy_session_proxy(request: Request):
    """Legacy session passthrough; mock has no upstream session and oauth is in-process."""
    runtime = get_runtime()
    match runtime.mode:
        case AuthMode.MOCK:
            raise AuthFlowError(
                AuthErrorCode.TOKEN_INVALID, "no upstream session in mock mode", status_code=401
            )
        case AuthMode.OAUTH:
            raise AuthFlowError(
                AuthErrorCode.CONFIGURATION,
                "sessions are handled in-process in oauth mode",
                status_code=400,
            )
    upstream = await runtime.forwarder.forward(
        "GET",
        LEGACY_SESSION_PATH,
        cookie_header=request.headers.get("cookie"),
        inbound_headers=request.headers,
    )
    if not upstream.ok:
        return _json(
            {"error": "Failed to fetch session"},
            status_code=upstream.status_code,
            set_cookies=upstream.set_cookies,
        )
    return _json(upstream.body, set_cookies=upstream.set_cookies)


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(request: Request, callback_url: Optional[str] = Query(default=None, alias="callbackUrl")):
    """Protected-resource check; refreshes or renews the session as needed."""
    runtime = get_runtime()
    if runtime.mode is AuthMode.LEGACY:
        session, set_cookies = await _legacy_session(request, runtime)
        if session is None:
            body = MeResponse(
                authenticated=False,
                redirect_url=sign_in_url(callback_url=safe_callback_url(callback_url, default="")),
            )
            return _json(dump(body), status_code=401, set_cookies=set_cookies)
        body = MeResponse(authenticated=True, session=SessionUser.model_validate(session.to_dict()))
        return _json(dump(body), set_cookies=set_cookies)

    decision, set_cookies = await runtime.sessions.current(
        request.cookies.get(runtime.settings.session_cookie_name),
        callback_url=safe_callback_url(callback_url, default="") or None,
    )
    if not decision.allowed:
        body = MeResponse(
            authenticated=False,
            redirect_url=decision.redirect_url,
            error=decision.error_code.value if decision.error_code else None,
        )
        return _json(dump(body), status_code=401, set_cookies=set_cookies)
    body = MeResponse(
        authenticated=True, session=SessionUser.model_validate(decision.session.to_dict())
    )
    return _json(dump(body), set_cookies=set_cookies)


@router.put("/auth/session/tenant/{tenant_id}", tags=["auth"])
async def switch_tenant(request: Request, tenant_id: int = Path(..., ge=1)):
    runtime = get_runtime()
    session, session_cookies = await _current_session(request, runtime)
    result = await runtime.switcher.switch_tenant(
        session,
        tenant_id,
        cookie_header=_replayed_cookie_header(request, session_cookies),
        inbound_headers=request.headers,
    )
    return _json(result.body, set_cookies=[*session_cookies, *result.set_cookies])


@router.get("/tenants", response_model=List[TenantResponse], tags=["tenants"])
async def list_tenants(request: Request):
    runtime = get_runtime()
    session: Optional[Session] = None
    session_cookies: List[str] = []
    if runtime.mode is not AuthMode.OAUTH:
        session, session_cookies = await _current_session(request, runtime)
    tenants = await runtime.switcher.list_tenants(
        session,
        cookie_header=_replayed_cookie_header(request, session_cookies),
        inbound_headers=request.headers,
    )
    return _json(
        [dump(TenantResponse(**tenant.to_dict())) for tenant in tenants],
        set_cookies=session_cookies,
    )


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(request: Request):
    runtime = get_runtime()
    set_cookies = await runtime.sessions.sign_out(
        runtime.mode,
        request.cookies.get(runtime.settings.session_cookie_name),
        cookie_header=request.headers.get("cookie"),
        inbound_headers=request.headers,
    )
    return _json(dump(MessageResponse(message="Signed out")), set_cookies=set_cookies)


@router.post("/auth/password/resetemail", response_model=MessageResponse, tags=["auth"])
async def password_reset_email(body: PasswordResetEmailRequest, request: Request):
    runtime = get_runtime()
    if not supports_feature(runtime.mode, "password_reset"):
        raise AuthFlowError(
            AuthErrorCode.CONFIGURATION,
            f"password reset is not available in {runtime.mode.value} mode",
            status_code=400,
        )
    upstream = await runtime.forwarder.forward(
        "POST",
        LEGACY_PASSWORD_RESET_PATH,
        cookie_header=request.headers.get("cookie"),
        json={"email": body.email},
        inbound_headers=request.headers,
    )
    if upstream.status_code >= 500:
        raise AuthFlowError(AuthErrorCode.SERVER_ERROR, context={"upstream_status": upstream.status_code})
    # Same answer whether or not the account exists
    payload = MessageResponse(
        message="If an account exists for that email, a password reset link has been sent."
    )
    return _json(dump(payload), set_cookies=upstream.set_cookies)
