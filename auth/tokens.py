"""
auth/tokens.py -- OAuth authorization-code exchange against provider instances.

Built on authlib's AsyncOAuth2Client (an httpx.AsyncClient subclass). A
short-lived client is created per call from the provider's stored
registration, because every provider has its own client_id/secret.

Flow, as driven by the device-authorization web pages:
  authorization_url()  -> browser is sent to {provider}/oauth/authorize
  exchange_code()      -> POST {provider}/oauth/token (client_secret_post),
                          then GET /api/v1/accounts/verify_credentials
  store_token()        -> persisted, optionally as the identity's primary token

Mastodon tokens normally do not expire, so refresh() exists for providers
that do issue refresh tokens. There is no retry policy beyond the per-call
timeout; a failed refresh surfaces as UpstreamError and the user logs in
again.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError

from auth.models import ProviderRegistration, ProviderToken
from auth.providers import ProviderRegistry, normalize_provider_url
from auth.store import AuthStore, isoformat, utcnow
from core.errors import NotFoundError, UpstreamError
from core.fetcher import bounded, expect_json

logger = logging.getLogger("terminalpub.auth.tokens")

AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"  # noqa: S105 -- URL path, not a password
VERIFY_CREDENTIALS_PATH = "/api/v1/accounts/verify_credentials"


class TokenService:
    """Authorization URLs, code exchange, token storage and refresh.

    transport is only set by tests (httpx.MockTransport); production uses
    the default network transport.
    """

    def __init__(
        self,
        store: AuthStore,
        providers: ProviderRegistry,
        timeout: float = 30.0,
        user_agent: str = "terminalpub",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._providers = providers
        self._timeout = timeout
        self._user_agent = user_agent
        self._transport = transport
        self._clock = clock

    def _client(self, registration: ProviderRegistration, token: dict | None = None) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=registration.client_id,
            client_secret=registration.client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=registration.scopes,
            redirect_uri=registration.redirect_uri,
            token=token,
            timeout=self._timeout,
            headers={"User-Agent": self._user_agent},
            transport=self._transport,
        )

    async def authorization_url(self, provider_url: str, state: str) -> str:
        """Return the provider URL the browser should be redirected to.

        Registers with the provider first if this is its first use.
        """
        registration = await self._providers.get_or_register(provider_url)
        async with self._client(registration) as client:
            url, _ = client.create_authorization_url(f"{registration.provider_url}{AUTHORIZE_PATH}", state=state)
        return url

    async def exchange_code(self, provider_url: str, code: str) -> ProviderToken:
        """Exchange an authorization code and fetch the account it belongs to.

        The returned token has no identity_id yet; the caller resolves the
        identity from token.account and then calls store_token().

        Raises:
            UpstreamError: the provider rejected the code or answered garbage.
            UpstreamTimeoutError: the provider did not answer in time.
        """
        url = normalize_provider_url(provider_url)
        registration = await self._providers.get_or_register(url)
        async with self._client(registration) as client:
            what = f"token exchange with {url}"
            try:
                token = await bounded(
                    client.fetch_token(f"{url}{TOKEN_PATH}", code=code, grant_type="authorization_code"),
                    self._timeout,
                    what,
                )
            except (OAuthError, ValueError) as exc:
                logger.warning("%s rejected: %s", what, exc)
                raise UpstreamError(f"{what} failed: {exc}") from exc
            if not token.get("access_token"):
                raise UpstreamError(f"{what} returned no access token")

            what = f"account lookup on {url}"
            resp = await bounded(client.get(f"{url}{VERIFY_CREDENTIALS_PATH}"), self._timeout, what)
            account = expect_json(resp, what)
        if not isinstance(account, dict) or not account.get("id"):
            raise UpstreamError(f"{what} returned no account id")

        return ProviderToken(
            provider_url=url,
            remote_account_id=str(account["id"]),
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            token_type=token.get("token_type") or "Bearer",
            scopes=token.get("scope") or registration.scopes,
            expires_at=self._expiry(token),
            username=account.get("username") or account.get("acct") or "",
            display_name=account.get("display_name") or "",
            avatar_url=account.get("avatar") or "",
        )

    def _expiry(self, token: dict) -> str | None:
        expires_in = token.get("expires_in")
        if not expires_in:
            return None
        return isoformat(self._clock() + timedelta(seconds=int(expires_in)))

    async def store_token(self, identity_id: int, token: ProviderToken, primary: bool = True) -> ProviderToken:
        """Persist token for identity_id. primary=True demotes the identity's other tokens."""
        token.identity_id = identity_id
        token.is_primary = primary
        token.id = self._store.save_token(token, isoformat(self._clock()))
        return token

    async def primary_token(self, identity_id: int) -> ProviderToken:
        token = self._store.get_primary_token(identity_id)
        if token is None:
            raise NotFoundError("identity has no primary provider token", identity_id=identity_id)
        return token

    async def refresh(self, token: ProviderToken) -> ProviderToken:
        """Exchange token.refresh_token for a new access token and persist it.

        Raises:
            UpstreamError: no refresh token, or the provider refused it.
            UpstreamTimeoutError: the provider did not answer in time.
        """
        if not token.refresh_token:
            raise UpstreamError("token has no refresh token; log in again")
        registration = await self._providers.get_or_register(token.provider_url)
        what = f"token refresh with {token.provider_url}"
        async with self._client(registration) as client:
            try:
                fresh = await bounded(
                    client.refresh_token(f"{registration.provider_url}{TOKEN_PATH}", refresh_token=token.refresh_token),
                    self._timeout,
                    what,
                )
            except (OAuthError, ValueError) as exc:
                logger.warning("%s rejected: %s", what, exc)
                raise UpstreamError(f"{what} failed: {exc}") from exc
        if not fresh.get("access_token"):
            raise UpstreamError(f"{what} returned no access token")

        token.access_token = fresh["access_token"]
        token.refresh_token = fresh.get("refresh_token") or token.refresh_token
        token.expires_at = self._expiry(fresh)
        if token.identity_id is not None:
            token.id = self._store.save_token(token, isoformat(self._clock()))
        return token
