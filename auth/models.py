"""
auth/models.py -- Domain dataclasses for identity and session entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape of a row.

Timestamps are fixed-width UTC ISO-8601 strings (see auth/store.py) so they
compare correctly both in Python and inside SQL.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Identity:
    """A durable local account, linked to at most one remote provider account.

    handle is "acct@host" with dots replaced by underscores, so it is safe to
    use as the local ActivityPub preferred username.

    private_key_pem / public_key_pem are generated exactly once when the
    identity is created and never rotated by this package.
    """

    handle: str
    private_key_pem: str
    public_key_pem: str
    id: int | None = None
    provider_url: str | None = None
    remote_account_id: str | None = None
    remote_acct: str | None = None
    actor_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def key_id(self) -> str:
        """keyId advertised in outgoing HTTP signatures."""
        return f"{self.actor_url}#main-key"


@dataclass
class KeyBinding:
    """An SSH public key bound to an identity.

    Both public_key and fingerprint are UNIQUE in the store, so one key can
    never belong to two identities.
    """

    identity_id: int
    public_key: str
    fingerprint: str
    key_type: str
    id: int | None = None
    comment: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None


@dataclass
class ProviderRegistration:
    """OAuth client credentials for one provider instance. Created on first use."""

    provider_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class ProviderToken:
    """An OAuth access token for an identity's account on a provider."""

    provider_url: str
    remote_account_id: str
    access_token: str
    identity_id: int | None = None
    id: int | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scopes: str = ""
    expires_at: str | None = None
    username: str = ""
    display_name: str = ""
    avatar_url: str = ""
    is_primary: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def account(self) -> dict:
        """The linked account in the shape IdentityService.get_or_create expects."""
        return {"id": self.remote_account_id, "acct": self.username}


@dataclass
class DeviceAuthorization:
    """One device-flow login attempt.

    authorized flips False -> True exactly once and never back. consumed_at
    is stamped when the terminal side has picked up the identity.
    """

    user_code: str
    device_code: str
    provider_url: str
    verification_uri: str
    expires_at: str
    id: int | None = None
    session_token: str | None = None
    authorized: bool = False
    identity_id: int | None = None
    consumed_at: str | None = None
    created_at: str | None = None


@dataclass
class SessionRecord:
    """A terminal connection's session. identity_id is None while anonymous."""

    id: str
    expires_at: str
    identity_id: int | None = None
    handle: str | None = None
    public_key: str | None = None
    address: str | None = None
    anonymous: bool = True
    created_at: str | None = None
    last_seen_at: str | None = None
