"""
auth/identity.py -- Creating and finding identities for provider accounts.

An identity is created the first time someone completes a device login
with a provider account that has never been seen before. Its RSA key pair
is generated at that moment and never changes afterwards: remote servers
cache the public key under the actor URL, so rotating it would break every
existing follow relationship.

Handle derivation:
  "alice" on https://mastodon.social  ->  "alice@mastodon_social"
  "bob@other.example" (remote acct)   ->  "bob@other_example"

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from urllib.parse import urlsplit

from sqlalchemy.exc import IntegrityError

from auth.models import Identity
from auth.store import AuthStore, isoformat, utcnow
from core.errors import ConflictError, MalformedInputError, NotFoundError
from federation.keys import generate_key_pair

logger = logging.getLogger("terminalpub.auth.identity")

_MAX_HANDLE_ATTEMPTS = 10


def derive_handle(provider_url: str, acct: str) -> str:
    """Build the local handle for a provider account."""
    acct = (acct or "").strip().lstrip("@")
    if not acct:
        raise MalformedInputError("provider account has no acct")
    if "@" not in acct:
        host = urlsplit(provider_url).hostname or provider_url
        acct = f"{acct}@{host}"
    return acct.replace(".", "_")


class IdentityService:
    """Get-or-create identities for authenticated provider accounts.

    account is the provider's account document (Mastodon
    verify_credentials shape: at least "id" and "acct").
    """

    def __init__(
        self,
        store: AuthStore,
        base_url: str,
        clock: Callable[[], datetime] = utcnow,
        keygen: Callable[[], tuple[str, str]] = generate_key_pair,
    ) -> None:
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._clock = clock
        self._keygen = keygen

    def actor_url(self, handle: str) -> str:
        return f"{self._base_url}/users/{handle}"

    async def get(self, identity_id: int) -> Identity:
        identity = self._store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("identity not found", identity_id=identity_id)
        return identity

    def _belongs_to(self, identity: Identity, provider_url: str, remote_id: str) -> bool:
        return identity.provider_url == provider_url and identity.remote_account_id == remote_id

    async def get_by_handle(self, handle: str) -> Identity:
        identity = self._store.get_identity_by_handle(handle)
        if identity is None:
            raise NotFoundError("identity not found", handle=handle)
        return identity

    async def get_or_create(self, provider_url: str, account: dict) -> Identity:
        """Return the identity linked to this provider account, creating it if needed.

        A handle already held by a different account (after a rename, or two
        hosts that only differ by "." vs "_") is never handed over: the new
        account gets the next free "<handle>_<n>".

        Raises:
            MalformedInputError: the account document lacks id or acct.
            ConflictError: no free handle was found.
        """
        remote_id = str(account.get("id") or "")
        if not remote_id:
            raise MalformedInputError("provider account has no id")
        acct = account.get("acct") or account.get("username") or ""
        base_handle = derive_handle(provider_url, acct)

        existing = self._store.get_identity_by_account(provider_url, remote_id)
        if existing is not None:
            return existing

        for attempt in range(_MAX_HANDLE_ATTEMPTS):
            handle = base_handle if attempt == 0 else f"{base_handle}_{attempt + 1}"
            holder = self._store.get_identity_by_handle(handle)
            if holder is not None:
                if holder.remote_account_id is None:
                    self._store.link_account(holder.id, provider_url, remote_id, acct, isoformat(self._clock()))
                    return self._store.get_identity(holder.id)
                if self._belongs_to(holder, provider_url, remote_id):
                    return holder
                continue

            created = self._create(handle, provider_url, remote_id, acct)
            if created is not None:
                return created
            # Lost a race for this handle. Same account: take the winner's row.
            winner = self._store.get_identity_by_account(provider_url, remote_id)
            if winner is not None:
                return winner

        raise ConflictError("no free handle for provider account", handle=base_handle)

    def _create(self, handle: str, provider_url: str, remote_id: str, acct: str) -> Identity | None:
        """Insert a new identity. None when the handle was taken concurrently."""
        private_pem, public_pem = self._keygen()
        identity = Identity(
            handle=handle,
            private_key_pem=private_pem,
            public_key_pem=public_pem,
            provider_url=provider_url,
            remote_account_id=remote_id,
            remote_acct=acct,
            actor_url=self.actor_url(handle),
        )
        try:
            identity_id = self._store.create_identity(identity, isoformat(self._clock()))
        except IntegrityError:
            return None
        logger.info("Created identity %s (id=%d) for %s", handle, identity_id, provider_url)
        return self._store.get_identity(identity_id)
