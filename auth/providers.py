"""
auth/providers.py -- Dynamic OAuth client registration per provider instance.

There is no fixed list of providers. Whatever Mastodon-compatible instance a
user names becomes a provider the first time someone logs in through it: we
announce ourselves with POST /api/v1/apps and keep the returned client
credentials forever after.

Registering twice for the same instance is harmless for the provider but
wasteful and leaves orphaned clients behind, so first registration is
serialized:

  1. Read the store. Hit -> done (the common path, no locking).
  2. Take the per-provider asyncio.Lock and read the store again -- another
     coroutine in this process may have finished registering while we waited.
  3. Register over HTTP and insert. If the insert hits the UNIQUE constraint
     another *process* won; read its row and use that instead.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from sqlalchemy.exc import IntegrityError

from auth.models import ProviderRegistration
from auth.store import AuthStore, isoformat, utcnow
from core.errors import MalformedInputError, UpstreamError
from core.fetcher import bounded, expect_json

logger = logging.getLogger("terminalpub.auth.providers")

APPS_PATH = "/api/v1/apps"


def normalize_provider_url(url: str) -> str:
    """Canonical provider URL: https://<host>[/path], no trailing slash.

    "Mastodon.Social/", "http://mastodon.social" and "https://mastodon.social"
    all map to "https://mastodon.social".
    """
    value = (url or "").strip()
    for scheme in ("https://", "http://"):
        if value.lower().startswith(scheme):
            value = value[len(scheme) :]
            break
    value = value.rstrip("/")
    if not value or any(ch.isspace() for ch in value):
        raise MalformedInputError("provider URL is empty or contains whitespace", url=url)
    host, sep, path = value.partition("/")
    return f"https://{host.lower()}{sep}{path}"


class ProviderRegistry:
    """Get-or-register OAuth client credentials for provider instances.

    Usage:
        registry = ProviderRegistry(store, client, redirect_uri=..., scopes=[...], ...)
        registration = await registry.get_or_register("mastodon.social")
    """

    def __init__(
        self,
        store: AuthStore,
        client: httpx.AsyncClient,
        redirect_uri: str,
        scopes: list[str],
        app_name: str,
        website: str,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._client = client
        self._redirect_uri = redirect_uri
        self._scopes = " ".join(scopes)
        self._app_name = app_name
        self._website = website
        self._timeout = timeout
        self._clock = clock
        # provider_url -> [lock, holders and waiters]
        self._locks: dict[str, list] = {}

    @asynccontextmanager
    async def _registration_lock(self, provider_url: str) -> AsyncIterator[None]:
        """Serialize first registration per provider.

        The lock lives only while someone holds or waits on it, so the map
        stays bounded no matter how many instance URLs users type.
        """
        entry = self._locks.get(provider_url)
        if entry is None:
            entry = self._locks[provider_url] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[provider_url]

    async def get(self, provider_url: str) -> ProviderRegistration | None:
        """Return the stored registration without registering. None if unknown."""
        return self._store.get_registration(normalize_provider_url(provider_url))

    async def get_or_register(self, provider_url: str) -> ProviderRegistration:
        """Return client credentials for provider_url, registering on first use.

        Raises:
            MalformedInputError: provider_url cannot be normalized.
            UpstreamError: the provider rejected the registration or answered garbage.
            UpstreamTimeoutError: the provider did not answer in time.
        """
        url = normalize_provider_url(provider_url)
        registration = self._store.get_registration(url)
        if registration is not None:
            return registration

        async with self._registration_lock(url):
            registration = self._store.get_registration(url)
            if registration is not None:
                return registration

            registration = await self._register(url)
            try:
                registration.id = self._store.create_registration(registration, isoformat(self._clock()))
            except IntegrityError:
                stored = self._store.get_registration(url)
                if stored is None:
                    raise
                logger.info("Provider %s was registered concurrently; using stored credentials", url)
                return stored
        logger.info("Registered OAuth client with provider %s", url)
        return registration

    async def _register(self, provider_url: str) -> ProviderRegistration:
        what = f"app registration with {provider_url}"
        resp = await bounded(
            self._client.post(
                f"{provider_url}{APPS_PATH}",
                json={
                    "client_name": self._app_name,
                    "redirect_uris": self._redirect_uri,
                    "scopes": self._scopes,
                    "website": self._website,
                },
            ),
            self._timeout,
            what,
        )
        data = expect_json(resp, what, ok=(200, 201))
        if not isinstance(data, dict) or not data.get("client_id") or not data.get("client_secret"):
            raise UpstreamError(f"{what} returned no client credentials")
        return ProviderRegistration(
            provider_url=provider_url,
            client_id=str(data["client_id"]),
            client_secret=str(data["client_secret"]),
            redirect_uri=str(data.get("redirect_uri") or self._redirect_uri),
            scopes=self._scopes,
        )
