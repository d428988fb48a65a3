"""OAuth token handling for HubSpot.

TokenHolder owns the single access token for the process and is passed
explicitly to the HubSpot client and the OAuth routes. It never refreshes
on its own: refresh happens at OAuth callback or on an explicit
``refresh()`` call. A missing or locally-expired token raises AuthError.

HubSpotOAuth wraps the two token-endpoint grants (authorization_code and
refresh_token) with the same tenacity retry used by the CRM client.
"""

from __future__ import annotations

import secrets
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.enrollsync.sync.errors import AuthError, CrmApiError
from src.enrollsync.sync.schemas import TokenSet

logger = structlog.get_logger(__name__)

_oauth_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class TokenStore(Protocol):
    async def load_token(self) -> TokenSet | None: ...

    async def save_token(self, token: TokenSet) -> None: ...


class HubSpotOAuth:
    """HubSpot OAuth 2.0 authorization-code flow.

    Args:
        client_id: App client id.
        client_secret: App client secret.
        redirect_uri: Callback URL registered with the app.
        scopes: Space-separated scope list requested at authorize time.
        authorize_url: HubSpot consent screen URL.
        api_base: HubSpot API base (token endpoint lives at /oauth/v1/token).
    """

    TIMEOUT = 15.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: str,
        authorize_url: str = "https://app.hubspot.com/oauth/authorize",
        api_base: str = "https://api.hubapi.com",
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._authorize_url = authorize_url
        self._token_url = f"{api_base.rstrip('/')}/oauth/v1/token"

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def authorization_url(self, state: str | None = None) -> tuple[str, str]:
        """Build the consent URL; returns (url, state)."""
        state = state or secrets.token_urlsafe(16)
        query = urlencode(
            {
                "client_id": self._client_id,
                "scope": self._scopes,
                "redirect_uri": self._redirect_uri,
                "state": state,
            }
        )
        return f"{self._authorize_url}?{query}", state

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "code": code,
            }
        )
        return TokenSet.from_token_response(data)

    async def refresh(self, refresh_token: str) -> TokenSet:
        data = await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
            }
        )
        return TokenSet.from_token_response(data, previous_refresh_token=refresh_token)

    @_oauth_retry
    async def _post_form(self, form: dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.TIMEOUT) as client:
            return await client.post(
                self._token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

    async def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._post_form(form)
        except httpx.HTTPError as exc:
            raise CrmApiError(f"HubSpot token endpoint unreachable: {exc}", operation="oauth") from exc

        if response.status_code in (400, 401, 403):
            message = _oauth_error_message(response)
            logger.warning(
                "oauth.token_rejected",
                grant_type=form.get("grant_type"),
                status_code=response.status_code,
            )
            raise AuthError(f"HubSpot rejected the token request: {message}")
        if response.status_code >= 400:
            raise CrmApiError(
                f"HubSpot token endpoint error: {_oauth_error_message(response)}",
                crm_status=response.status_code,
                operation="oauth",
            )

        data = response.json()
        if "access_token" not in data:
            raise CrmApiError("HubSpot token response missing access_token", operation="oauth")
        logger.info("oauth.token_issued", grant_type=form.get("grant_type"))
        return data


def _oauth_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return body.get("message") or body.get("error_description") or body.get("error") or str(body)


class TokenHolder:
    """Owner of the current HubSpot access token.

    Args:
        oauth: Token-endpoint client used by ``refresh()`` and ``exchange_code()``.
        store: Persistence for the token (the sync ledger), optional.
        token: Initial token, e.g. a private-app token from configuration.
    """

    def __init__(
        self,
        oauth: HubSpotOAuth | None = None,
        store: TokenStore | None = None,
        token: TokenSet | None = None,
    ) -> None:
        self._oauth = oauth
        self._store = store
        self._token = token

    @property
    def token(self) -> TokenSet | None:
        return self._token

    def get(self) -> str:
        """Return a usable access token.

        Raises:
            AuthError: No token, or the token's expiry has passed.
        """
        if self._token is None:
            raise AuthError("HubSpot is not connected; complete OAuth or set HUBSPOT_ACCESS_TOKEN")
        if self._token.is_expired():
            raise AuthError("HubSpot access token expired; call POST /oauth/refresh")
        return self._token.access_token

    def set(self, token: TokenSet) -> None:
        self._token = token

    async def load(self) -> TokenSet | None:
        """Load a persisted token; keeps the current one if nothing is stored."""
        if self._store is None:
            return self._token
        stored = await self._store.load_token()
        if stored is not None:
            self._token = stored
            logger.info("oauth.token_loaded", expired=stored.is_expired())
        return self._token

    async def exchange_code(self, code: str) -> TokenSet:
        if self._oauth is None:
            raise AuthError("OAuth is not configured")
        token = await self._oauth.exchange_code(code)
        await self._persist(token)
        return token

    async def refresh(self) -> TokenSet:
        """Exchange the stored refresh token for a new access token.

        Raises:
            AuthError: OAuth not configured, no refresh token, or HubSpot
                rejected the refresh token.
        """
        if self._oauth is None:
            raise AuthError("OAuth is not configured")
        if self._token is None or not self._token.refresh_token:
            raise AuthError("No refresh token available; re-authorize the HubSpot app")
        token = await self._oauth.refresh(self._token.refresh_token)
        await self._persist(token)
        return token

    async def _persist(self, token: TokenSet) -> None:
        self._token = token
        if self._store is not None:
            await self._store.save_token(token)
