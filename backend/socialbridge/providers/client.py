"""Generic OAuth 2.0 client driven by a ProviderDescriptor"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from socialbridge.core.config import settings
from socialbridge.core.errors import ProviderApiError, ProviderNotConfigured, TokenExchangeFailed
from socialbridge.core.logging import describe_secret, scrub
from socialbridge.providers.descriptor import ProviderDescriptor

oauth_logger = logging.getLogger("oauth")


def default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS)


@dataclass
class TokenGrant:
    """Tokens returned by a provider token endpoint"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    # Non-secret identifiers some providers put in the token response (TikTok open_id)
    extra: Dict[str, Any] = field(default_factory=dict)


def _expiry_from(payload: Dict[str, Any], now: Optional[datetime] = None) -> Optional[datetime]:
    expires_in = payload.get("expires_in")
    if expires_in in (None, ""):
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=seconds)


def _error_message(payload: Any) -> Optional[str]:
    """Pull a provider error out of a token response body, if there is one"""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not error:
        return None
    # Graph API nests the error object, Google and TikTok use flat strings
    if isinstance(error, dict):
        return error.get("message") or error.get("type") or "unknown error"
    description = payload.get("error_description")
    return f"{error}: {description}" if description else str(error)


class ProviderClient:
    """Consent URL construction and token endpoint calls for one provider

    The HTTP client is created per operation from `http_client_factory` so tests
    can hand in an ``httpx.AsyncClient(transport=httpx.MockTransport(...))``.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: Optional[List[str]] = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = default_http_client,
    ):
        self.descriptor = descriptor
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes) if scopes else list(descriptor.default_scopes)
        self.http_client_factory = http_client_factory

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def supports_refresh(self) -> bool:
        return self.descriptor.supports_refresh

    @property
    def supports_long_lived_exchange(self) -> bool:
        return self.descriptor.supports_long_lived_exchange

    def ensure_configured(self):
        """Raise ProviderNotConfigured when client credentials are missing"""
        if not self.client_id:
            raise ProviderNotConfigured(self.name, f"{self.name.upper()}_CLIENT_ID")
        if not self.client_secret:
            raise ProviderNotConfigured(self.name, f"{self.name.upper()}_CLIENT_SECRET")

    def build_authorization_url(self, state: str) -> str:
        params = {
            self.descriptor.client_id_param: self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.descriptor.scope_separator.join(self.scopes),
            "state": state,
        }
        params.update(self.descriptor.authorize_params)
        return f"{self.descriptor.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Trade an authorization code for tokens"""
        return await self._token_request({
            self.descriptor.client_id_param: self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }, "code exchange")

    async def exchange_long_lived(self, short_lived: TokenGrant) -> TokenGrant:
        """Swap a short-lived Graph API user token for a long-lived (~60 day) one"""
        grant = await self._token_request({
            "grant_type": "fb_exchange_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "fb_exchange_token": short_lived.access_token,
        }, "long-lived exchange")
        grant.extra = {**short_lived.extra, **grant.extra}
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Redeem a refresh token. Providers that do not rotate return no new refresh token."""
        return await self._token_request({
            self.descriptor.client_id_param: self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }, "refresh")

    async def _token_request(self, params: Dict[str, str], operation: str) -> TokenGrant:
        oauth_logger.debug(
            f"{self.name} {operation}: {self.descriptor.token_request_method} {self.descriptor.token_url}"
        )
        try:
            async with self.http_client_factory() as client:
                if self.descriptor.token_request_method == "GET":
                    response = await client.get(self.descriptor.token_url, params=params)
                else:
                    response = await client.post(
                        self.descriptor.token_url,
                        data=params,
                        headers={"Content-Type": "application/x-www-form-urlencoded"}
                    )
        except httpx.HTTPError as e:
            oauth_logger.error(f"{self.name} {operation} failed: {type(e).__name__}")
            raise TokenExchangeFailed(self.name, f"Could not reach {self.name}: {type(e).__name__}")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code != 200:
            message = _error_message(payload) or response.text[:200]
            oauth_logger.error(f"{self.name} {operation} rejected with HTTP {response.status_code}: {message}")
            oauth_logger.debug(f"{self.name} {operation} response body: {scrub(payload)}")
            raise TokenExchangeFailed(self.name, f"{self.name} {operation} failed: {message}",
                                      upstream_status=response.status_code)

        if not isinstance(payload, dict):
            raise TokenExchangeFailed(self.name, f"{self.name} returned a non-JSON token response",
                                      upstream_status=502)

        # TikTok reports errors with HTTP 200
        message = _error_message(payload)
        if message:
            oauth_logger.error(f"{self.name} {operation} returned error: {message}")
            raise TokenExchangeFailed(self.name, f"{self.name} {operation} failed: {message}", upstream_status=400)

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenExchangeFailed(self.name, f"No access_token in {self.name} response", upstream_status=502)

        refresh_token = payload.get("refresh_token") or None
        extra = {key: str(payload[key]) for key in ("open_id",) if payload.get(key)}
        oauth_logger.info(
            f"{self.name} {operation} succeeded: access_token={describe_secret(access_token)}, "
            f"refresh_token={describe_secret(refresh_token)}, expires_in={payload.get('expires_in')}"
        )
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_expiry_from(payload),
            extra=extra,
        )


async def get_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    access_token: str,
    params: Optional[Dict[str, Any]] = None,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Authenticated call against a provider API, returning the decoded body

    Raises:
        ProviderApiError: network failure, non-2xx status or non-JSON body
    """
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        response = await client.request(method, url, params=params, json=json_body, headers=headers)
    except httpx.HTTPError as e:
        raise ProviderApiError(provider, f"Could not reach {provider}: {type(e).__name__}")

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if response.status_code >= 300 or not isinstance(payload, dict):
        message = _error_message(payload) or f"HTTP {response.status_code}"
        oauth_logger.warning(f"{provider} API call {url} failed: {message}")
        raise ProviderApiError(provider, f"{provider} API error: {message}", upstream_status=response.status_code)
    return payload
