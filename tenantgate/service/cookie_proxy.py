"""Generic "forward with cookies" helper for the legacy identity server.

Every legacy route (login, session, tenant switch, logout, password reset,
tenant listing) goes through :meth:`CookieForwarder.forward`. The inbound
``Cookie`` header is passed through untouched, a small allow-list of
security-relevant request headers is forwarded, and every upstream
``Set-Cookie`` header is returned verbatim and in order.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import httpx

from tenantgate.config import Settings
from tenantgate.logging import get_correlation_id, get_logger
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.storage.models import UpstreamResponse

logger = get_logger(__name__)

# Request headers worth carrying to the identity server
FORWARDED_HEADERS = (
    "user-agent",
    "x-forwarded-for",
    "x-forwarded-proto",
    "x-real-ip",
    "accept-language",
)


class CookieForwarder:
    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport

    def url_for(self, path: str) -> str:
        return f"{self.settings.api_base}/{path.lstrip('/')}"

    def _build_headers(
        self, cookie_header: Optional[str], inbound_headers: Optional[Mapping[str, str]]
    ) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if cookie_header:
            headers["Cookie"] = cookie_header
        for name in FORWARDED_HEADERS:
            value = (inbound_headers or {}).get(name)
            if value:
                headers[name] = value
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id
        return headers

    async def forward(
        self,
        method: str,
        path: str,
        *,
        cookie_header: Optional[str] = None,
        json: Any = None,
        params: Optional[Mapping[str, str]] = None,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamResponse:
        """Send one request upstream and capture its status, JSON body and cookies.

        Transport failures raise a retryable ``NetworkError``; HTTP error
        statuses are returned to the caller, which owns their mapping.
        """
        url = self.url_for(path)
        headers = self._build_headers(cookie_header, inbound_headers)
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.upstream_timeout_seconds,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method.upper(), url, headers=headers, json=json, params=params
                )
        except httpx.HTTPError as exc:
            logger.error(
                "upstream_request_failed",
                method=method.upper(),
                path=path,
                error_type=type(exc).__name__,
            )
            raise AuthFlowError(AuthErrorCode.NETWORK_ERROR) from exc

        set_cookies = response.headers.get_list("set-cookie")
        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {"message": response.text[:500]}
        logger.info(
            "upstream_response",
            method=method.upper(),
            path=path,
            status=response.status_code,
            forwarded_cookies=len(set_cookies),
        )
        return UpstreamResponse(
            status_code=response.status_code, body=body, set_cookies=set_cookies
        )


def cookie_header_from(set_cookies: list[str], existing: Optional[str] = None) -> str:
    """Build a request ``Cookie`` header from ``Set-Cookie`` values.

    Used to replay the cookies a login just issued on the follow-up session
    fetch. Later cookies override earlier ones with the same name.
    """
    jar: Dict[str, str] = {}
    if existing:
        for part in existing.split(";"):
            name, sep, value = part.strip().partition("=")
            if sep and name:
                jar[name] = value
    for raw in set_cookies:
        pair = raw.split(";", 1)[0].strip()
        name, sep, value = pair.partition("=")
        if sep and name:
            jar[name] = value
    return "; ".join(f"{name}={value}" for name, value in jar.items())
