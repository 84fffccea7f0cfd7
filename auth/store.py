"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; the _row_to_* functions are the mappers.
Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  UNIQUE constraints are the serialization point for every "first writer
  wins" decision (handle, key fingerprint, key text, provider URL, user and
  device codes). Callers catch sqlalchemy.exc.IntegrityError, re-read, and
  classify the outcome. Conditional UPDATEs (authorize_device, consume_device,
  upgrade_session) return the affected row count so callers can tell whether
  their write was the one that happened.

  UNIQUE(provider_url, remote_account_id) on identities is enforced in code
  rather than SQL because SQLite treats two NULL values as distinct, and
  local-only identities have no linked account.

Timestamps:
  Stored as fixed-width UTC strings (isoformat() below) so "expires_at > :now"
  compares chronologically inside SQLite.

Layer rule: no imports from api/, web/, federation/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from auth.models import DeviceAuthorization, Identity, KeyBinding, ProviderRegistration, ProviderToken, SessionRecord

logger = logging.getLogger("terminalpub.store")

_DEFAULT_DB_URL = "sqlite:///terminalpub.db"
_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("handle", String(255), nullable=False, unique=True),
    Column("provider_url", String(255)),
    Column("remote_account_id", String(255)),
    Column("remote_acct", String(255)),
    Column("private_key_pem", Text, nullable=False),
    Column("public_key_pem", Text, nullable=False),
    Column("actor_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_key_bindings = Table(
    "key_bindings",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("public_key", Text, nullable=False, unique=True),
    Column("fingerprint", String(64), nullable=False, unique=True),
    Column("key_type", String(64), nullable=False),
    Column("comment", Text),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_provider_registrations = Table(
    "provider_registrations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_url", String(255), nullable=False, unique=True),
    Column("client_id", Text, nullable=False),
    Column("client_secret", Text, nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("scopes", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_provider_tokens = Table(
    "provider_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("provider_url", String(255), nullable=False),
    Column("remote_account_id", String(255), nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("token_type", String(30), nullable=False, server_default="Bearer"),
    Column("scopes", Text, nullable=False, server_default=""),
    Column("expires_at", String(32)),
    Column("username", String(255), nullable=False, server_default=""),
    Column("display_name", Text, nullable=False, server_default=""),
    Column("avatar_url", Text, nullable=False, server_default=""),
    Column("is_primary", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("identity_id", "provider_url", "remote_account_id", name="uq_provider_token_account"),
)

_device_authorizations = Table(
    "device_authorizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_code", String(9), nullable=False, unique=True),
    Column("device_code", String(64), nullable=False, unique=True),
    Column("provider_url", String(255), nullable=False),
    Column("session_token", String(64)),
    Column("verification_uri", Text, nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("authorized", Integer, nullable=False, server_default="0"),
    Column("identity_id", Integer),
    Column("consumed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("identity_id", Integer, index=True),
    Column("handle", String(255)),
    Column("public_key", Text),
    Column("address", String(255)),
    Column("anonymous", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_seen_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Fixed-width UTC representation: 2024-01-01T00:00:00.000000Z."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for every durable identity-core entity.

    Usage:
        store = AuthStore("sqlite:///terminalpub.db")
        identity_id = store.create_identity(identity, now=isoformat(clock()))
        store.close()

    Write methods take the current time as `now` instead of reading a clock,
    so the services above decide what "now" is (and tests can move it).
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        kwargs: dict = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if db_url in _MEMORY_URLS:
                # One shared connection, otherwise every checkout sees a fresh empty DB.
                kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **kwargs)
        if db_url.startswith("sqlite") and db_url not in _MEMORY_URLS:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Run SELECT 1. Used by the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity, now: str) -> int:
        """Insert a new identity and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the handle already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    handle=identity.handle,
                    provider_url=identity.provider_url,
                    remote_account_id=identity.remote_account_id,
                    remote_acct=identity.remote_acct,
                    private_key_pem=identity.private_key_pem,
                    public_key_pem=identity.public_key_pem,
                    actor_url=identity.actor_url,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_identity(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_handle(self, handle: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.handle == handle)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_account(self, provider_url: str, remote_account_id: str) -> Identity | None:
        """Look up the identity linked to (provider_url, remote_account_id)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(
                    (_identities.c.provider_url == provider_url)
                    & (_identities.c.remote_account_id == remote_account_id)
                )
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def link_account(self, identity_id: int, provider_url: str, remote_account_id: str, remote_acct: str, now: str) -> None:
        """Associate a remote account with an identity that has none yet."""
        with self.engine.connect() as conn:
            conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.remote_account_id.is_(None)))
                .values(
                    provider_url=provider_url,
                    remote_account_id=remote_account_id,
                    remote_acct=remote_acct,
                    updated_at=now,
                )
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Key bindings
    # ------------------------------------------------------------------

    def find_binding(self, fingerprint: str, public_key: str) -> KeyBinding | None:
        """Return the binding matching either the fingerprint or the exact key text."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _key_bindings.select()
                .where(or_(_key_bindings.c.fingerprint == fingerprint, _key_bindings.c.public_key == public_key))
                .limit(1)
            ).fetchone()
        return _row_to_binding(row) if row is not None else None

    def create_binding(self, binding: KeyBinding, now: str) -> int:
        """Insert a binding and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the fingerprint or the key
        text is already bound (to anyone).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _key_bindings.insert().values(
                    identity_id=binding.identity_id,
                    public_key=binding.public_key,
                    fingerprint=binding.fingerprint,
                    key_type=binding.key_type,
                    comment=binding.comment,
                    last_used_at=now,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def touch_binding(self, binding_id: int, now: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_key_bindings.update().where(_key_bindings.c.id == binding_id).values(last_used_at=now))
            conn.commit()

    def list_bindings(self, identity_id: int) -> list[KeyBinding]:
        """Return all bindings for an identity, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _key_bindings.select()
                .where(_key_bindings.c.identity_id == identity_id)
                .order_by(_key_bindings.c.created_at, _key_bindings.c.id)
            ).fetchall()
        return [_row_to_binding(r) for r in rows]

    def delete_binding(self, binding_id: int, identity_id: int) -> bool:
        """Delete a binding. identity_id is checked so one identity cannot revoke another's key.

        Returns True if a binding was deleted, False if not found or wrong owner.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _key_bindings.delete().where(
                    (_key_bindings.c.id == binding_id) & (_key_bindings.c.identity_id == identity_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Provider registrations
    # ------------------------------------------------------------------

    def get_registration(self, provider_url: str) -> ProviderRegistration | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _provider_registrations.select().where(_provider_registrations.c.provider_url == provider_url)
            ).fetchone()
        return _row_to_registration(row) if row is not None else None

    def create_registration(self, registration: ProviderRegistration, now: str) -> int:
        """Insert a registration. Raises IntegrityError if the provider is already registered."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _provider_registrations.insert().values(
                    provider_url=registration.provider_url,
                    client_id=registration.client_id,
                    client_secret=registration.client_secret,
                    redirect_uri=registration.redirect_uri,
                    scopes=registration.scopes,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Provider tokens
    # ------------------------------------------------------------------

    def save_token(self, token: ProviderToken, now: str) -> int:
        """Insert or update the token for (identity, provider, remote account).

        When token.is_primary is set, every other token of the identity loses
        its primary flag in the same transaction.
        """
        values = dict(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            scopes=token.scopes,
            expires_at=token.expires_at,
            username=token.username,
            display_name=token.display_name,
            avatar_url=token.avatar_url,
            is_primary=1 if token.is_primary else 0,
            updated_at=now,
        )
        key = (
            (_provider_tokens.c.identity_id == token.identity_id)
            & (_provider_tokens.c.provider_url == token.provider_url)
            & (_provider_tokens.c.remote_account_id == token.remote_account_id)
        )
        with self.engine.connect() as conn:
            if token.is_primary:
                conn.execute(
                    _provider_tokens.update()
                    .where(_provider_tokens.c.identity_id == token.identity_id)
                    .values(is_primary=0)
                )
            existing = conn.execute(_provider_tokens.select().where(key)).fetchone()
            if existing is not None:
                conn.execute(_provider_tokens.update().where(key).values(**values))
                token_id = existing.id
            else:
                result = conn.execute(
                    _provider_tokens.insert().values(
                        identity_id=token.identity_id,
                        provider_url=token.provider_url,
                        remote_account_id=token.remote_account_id,
                        created_at=now,
                        **values,
                    )
                )
                token_id = result.inserted_primary_key[0]
            conn.commit()
        return token_id

    def get_primary_token(self, identity_id: int) -> ProviderToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _provider_tokens.select().where(
                    (_provider_tokens.c.identity_id == identity_id) & (_provider_tokens.c.is_primary == 1)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    # ------------------------------------------------------------------
    # Device authorizations
    # ------------------------------------------------------------------

    def create_device_authorization(self, auth: DeviceAuthorization, now: str) -> int:
        """Insert a pending authorization. Raises IntegrityError on a code collision."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _device_authorizations.insert().values(
                    user_code=auth.user_code,
                    device_code=auth.device_code,
                    provider_url=auth.provider_url,
                    session_token=auth.session_token,
                    verification_uri=auth.verification_uri,
                    expires_at=auth.expires_at,
                    authorized=0,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_device_by_user_code(self, user_code: str) -> DeviceAuthorization | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_authorizations.select().where(_device_authorizations.c.user_code == user_code)
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_device_by_device_code(self, device_code: str) -> DeviceAuthorization | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_authorizations.select().where(_device_authorizations.c.device_code == device_code)
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def authorize_device(self, user_code: str, identity_id: int, now: str) -> bool:
        """Mark a pending, unexpired code as authorized.

        Single conditional UPDATE -- returns True only for the caller whose
        write actually flipped the flag.
        """
        t = _device_authorizations
        with self.engine.connect() as conn:
            result = conn.execute(
                t.update()
                .where((t.c.user_code == user_code) & (t.c.authorized == 0) & (t.c.expires_at > now))
                .values(authorized=1, identity_id=identity_id)
            )
            conn.commit()
        return result.rowcount > 0

    def consume_device(self, device_code: str, now: str) -> bool:
        """Stamp consumed_at on an authorized, unexpired, unconsumed row."""
        t = _device_authorizations
        with self.engine.connect() as conn:
            result = conn.execute(
                t.update()
                .where(
                    (t.c.device_code == device_code)
                    & (t.c.authorized == 1)
                    & (t.c.consumed_at.is_(None))
                    & (t.c.expires_at > now)
                )
                .values(consumed_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_stale_devices(self, now: str) -> int:
        """Delete expired rows and consumed rows. Returns the number deleted."""
        t = _device_authorizations
        with self.engine.connect() as conn:
            result = conn.execute(t.delete().where((t.c.expires_at <= now) | (t.c.consumed_at.is_not(None))))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, record: SessionRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=record.id,
                    identity_id=record.identity_id,
                    handle=record.handle,
                    public_key=record.public_key,
                    address=record.address,
                    anonymous=1 if record.anonymous else 0,
                    created_at=record.created_at,
                    last_seen_at=record.last_seen_at,
                    expires_at=record.expires_at,
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, now: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_seen_at=now))
            conn.commit()
        return result.rowcount > 0

    def upgrade_session(self, session_id: str, identity_id: int, handle: str, expires_at: str, now: str) -> bool:
        """Attach an identity to an unexpired session and extend its expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.expires_at > now))
                .values(identity_id=identity_id, handle=handle, anonymous=0, expires_at=expires_at, last_seen_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def delete_expired_sessions(self, now: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now))
            conn.commit()
        return result.rowcount

    def list_sessions(self, identity_id: int, now: str) -> list[SessionRecord]:
        """Return the unexpired sessions of an identity, most recently seen first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.identity_id == identity_id) & (_sessions.c.expires_at > now))
                .order_by(_sessions.c.last_seen_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        handle=row.handle,
        provider_url=row.provider_url,
        remote_account_id=row.remote_account_id,
        remote_acct=row.remote_acct,
        private_key_pem=row.private_key_pem,
        public_key_pem=row.public_key_pem,
        actor_url=row.actor_url,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_binding(row) -> KeyBinding:
    return KeyBinding(
        id=row.id,
        identity_id=row.identity_id,
        public_key=row.public_key,
        fingerprint=row.fingerprint,
        key_type=row.key_type,
        comment=row.comment,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def _row_to_registration(row) -> ProviderRegistration:
    return ProviderRegistration(
        id=row.id,
        provider_url=row.provider_url,
        client_id=row.client_id,
        client_secret=row.client_secret,
        redirect_uri=row.redirect_uri,
        scopes=row.scopes,
        created_at=row.created_at,
    )


def _row_to_token(row) -> ProviderToken:
    return ProviderToken(
        id=row.id,
        identity_id=row.identity_id,
        provider_url=row.provider_url,
        remote_account_id=row.remote_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_type=row.token_type,
        scopes=row.scopes,
        expires_at=row.expires_at,
        username=row.username,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        is_primary=bool(row.is_primary),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_device(row) -> DeviceAuthorization:
    return DeviceAuthorization(
        id=row.id,
        user_code=row.user_code,
        device_code=row.device_code,
        provider_url=row.provider_url,
        session_token=row.session_token,
        verification_uri=row.verification_uri,
        expires_at=row.expires_at,
        authorized=bool(row.authorized),
        identity_id=row.identity_id,
        consumed_at=row.consumed_at,
        created_at=row.created_at,
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        identity_id=row.identity_id,
        handle=row.handle,
        public_key=row.public_key,
        address=row.address,
        anonymous=bool(row.anonymous),
        created_at=row.created_at,
        last_seen_at=row.last_seen_at,
        expires_at=row.expires_at,
    )
