from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.storage.models import TokenSet

logger = get_logger(__name__)

REQUIRED_DISCOVERY_FIELDS = ("authorization_endpoint", "token_endpoint", "userinfo_endpoint")


def generate_code_verifier() -> str:
    # 64 random bytes encode to 86 chars, inside the 43-128 range PKCE allows
    return secrets.token_urlsafe(64)


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class DiscoveryDocument:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    revocation_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    code_challenge_methods_supported: tuple = field(default_factory=tuple)

    @classmethod
    def parse(cls, data: Any) -> "DiscoveryDocument":
        """Validate a discovery document; anything unusable is a Configuration error."""
        if not isinstance(data, dict):
            raise AuthFlowError(AuthErrorCode.CONFIGURATION, "discovery document is not an object")
        missing = [name for name in REQUIRED_DISCOVERY_FIELDS if not data.get(name)]
        if missing:
            raise AuthFlowError(
                AuthErrorCode.CONFIGURATION,
                "discovery document incomplete",
                context={"missing": missing},
            )
        methods = data.get("code_challenge_methods_supported") or []
        if not isinstance(methods, list) or "S256" not in methods:
            raise AuthFlowError(
                AuthErrorCode.CONFIGURATION,
                "provider does not support S256 PKCE",
                context={"methods": methods if isinstance(methods, list) else []},
            )
        return cls(
            issuer=str(data.get("issuer") or ""),
            authorization_endpoint=str(data["authorization_endpoint"]),
            token_endpoint=str(data["token_endpoint"]),
            userinfo_endpoint=str(data["userinfo_endpoint"]),
            revocation_endpoint=data.get("revocation_endpoint") or None,
            end_session_endpoint=data.get("end_session_endpoint") or None,
            code_challenge_methods_supported=tuple(methods),
        )


class OIDCClient:
    """Talks to the identity server's OpenID Connect endpoints.

    A fresh ``httpx.AsyncClient`` is opened per call so the client is safe to
    share across event loops; tests inject an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self._discovery: Optional[DiscoveryDocument] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.upstream_timeout_seconds,
            follow_redirects=False,
            transport=self.transport,
        )

    async def discover(self, *, force: bool = False) -> DiscoveryDocument:
        if self._discovery is not None and not force:
            return self._discovery
        url = self.settings.discovery_url
        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oidc_discovery_failed", error_type=type(exc).__name__)
            raise AuthFlowError(AuthErrorCode.CONFIGURATION, "discovery document unavailable") from exc
        document = DiscoveryDocument.parse(data)
        self._discovery = document
        logger.info("oidc_discovery_loaded", issuer=document.issuer)
        return document

    def build_authorization_url(
        self,
        document: DiscoveryDocument,
        *,
        state: str,
        code_challenge: str,
        redirect_uri: str,
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.oauth_client_id,
            "redirect_uri": redirect_uri,
            "scope": self.settings.oauth_scopes,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        separator = "&" if "?" in document.authorization_endpoint else "?"
        return f"{document.authorization_endpoint}{separator}{urlencode(params)}"

    async def _post_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        document = await self.discover()
        async with self._client() as client:
            response = await client.post(
                document.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("token response is not an object")
        return payload

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenSet:
        try:
            payload = await self._post_token(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "client_id": self.settings.oauth_client_id,
                    "code_verifier": code_verifier,
                }
            )
            return TokenSet.from_response(payload)
        except httpx.HTTPStatusError as exc:
            logger.error("oidc_code_exchange_rejected", status_code=exc.response.status_code)
            raise AuthFlowError(AuthErrorCode.OIDC_ERROR, "authorization code rejected") from exc
        except httpx.HTTPError as exc:
            logger.error("oidc_code_exchange_failed", error_type=type(exc).__name__)
            raise AuthFlowError(AuthErrorCode.NETWORK_ERROR) from exc
        except ValueError as exc:
            logger.error("oidc_token_parse_error", error=str(exc))
            raise AuthFlowError(AuthErrorCode.PROVIDER_ERROR, "malformed token response") from exc

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        document = await self.discover()
        try:
            async with self._client() as client:
                response = await client.get(
                    document.userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                response.raise_for_status()
                claims = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oidc_userinfo_failed", error_type=type(exc).__name__)
            raise AuthFlowError(AuthErrorCode.PROVIDER_ERROR, "userinfo unavailable") from exc
        if not isinstance(claims, dict) or not claims.get("sub"):
            raise AuthFlowError(AuthErrorCode.PROVIDER_ERROR, "userinfo missing subject")
        return claims

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Redeem a refresh token; any failure is a RefreshTokenError."""
        try:
            payload = await self._post_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.settings.oauth_client_id,
                }
            )
            return TokenSet.from_response(payload)
        except (httpx.HTTPError, ValueError, AuthFlowError) as exc:
            logger.warning("oidc_refresh_failed", error_type=type(exc).__name__)
            raise AuthFlowError(AuthErrorCode.REFRESH_TOKEN_ERROR) from exc

    async def revoke(self, token: str) -> bool:
        """Best-effort revocation; returns False when it could not be confirmed."""
        endpoint = self.settings.oauth_revocation_endpoint
        if not endpoint:
            try:
                endpoint = (await self.discover()).revocation_endpoint
            except AuthFlowError:
                endpoint = None
        if not endpoint:
            logger.warning("oidc_revocation_unavailable")
            return False
        try:
            async with self._client() as client:
                response = await client.post(
                    endpoint,
                    data={"token": token, "client_id": self.settings.oauth_client_id},
                )
        except httpx.HTTPError as exc:
            logger.warning("oidc_revocation_failed", error_type=type(exc).__name__)
            return False
        if response.status_code >= 400:
            logger.warning("oidc_revocation_rejected", status_code=response.status_code)
            return False
        return True
