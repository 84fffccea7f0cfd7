"""
auth/session.py -- Terminal sessions across the durable store and the cache.

Two tiers:
  durable (AuthStore.sessions)  -- source of truth, written first, always.
  cache   (SessionCache/Redis)  -- read accelerator with a TTL equal to the
                                   session's remaining lifetime.

Rules every method follows:
  * Write durable first. Cache writes afterwards are best-effort; a failed
    cache write is logged by SessionCache and otherwise ignored.
  * Upgrading a session (anonymous -> authenticated) deletes the cached copy
    instead of rewriting it. A cached anonymous copy is also checked against
    the durable row on every hit, so a read after an upgrade never sees the
    anonymous version, even when the deletion did not reach Redis.
  * An expired session found in either tier is deleted from both and
    reported as ExpiredError.
  * last_seen_at is refreshed in a detached task after every successful
    read; that refresh only touches the durable row.

Lifetimes: authenticated sessions 24 h, anonymous sessions 1 h by default.
Config validation guarantees the anonymous lifetime is the shorter one.

Layer rule: may import cache/ (the only auth module that does).
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timedelta

from auth.models import SessionRecord
from auth.store import AuthStore, isoformat, parse_iso, utcnow
from cache.store import SessionCache
from core.background import DetachedRunner
from core.errors import ExpiredError, NotFoundError

logger = logging.getLogger("terminalpub.auth.session")

SESSION_TTL_SECONDS = 24 * 60 * 60
ANONYMOUS_SESSION_TTL_SECONDS = 60 * 60


def new_session_id() -> str:
    """128 random bits, URL-safe."""
    return secrets.token_urlsafe(16)


class SessionManager:
    """Create, read, upgrade and expire terminal sessions.

    Usage:
        sessions = SessionManager(store, cache, DetachedRunner(timeout=5))
        record = await sessions.create(public_key, "203.0.113.7")
        record = await sessions.get(record.id)
        record = await sessions.upgrade(record.id, identity.id)
    """

    def __init__(
        self,
        store: AuthStore,
        cache: SessionCache,
        runner: DetachedRunner,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        anonymous_ttl_seconds: int = ANONYMOUS_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if anonymous_ttl_seconds >= ttl_seconds:
            raise ValueError("anonymous sessions must expire before authenticated ones")
        self._store = store
        self._cache = cache
        self._runner = runner
        self.ttl_seconds = ttl_seconds
        self.anonymous_ttl_seconds = anonymous_ttl_seconds
        self._clock = clock

    def _remaining(self, record: SessionRecord, now: datetime) -> int:
        return int((parse_iso(record.expires_at) - now).total_seconds())

    async def _cache_put(self, record: SessionRecord, now: datetime) -> None:
        remaining = self._remaining(record, now)
        if remaining > 0:
            await self._cache.set(record.id, asdict(record), ttl=remaining)

    async def create(
        self, public_key: str | None, address: str | None, identity_id: int | None = None
    ) -> SessionRecord:
        """Start a session. Anonymous unless identity_id is given.

        Raises:
            NotFoundError: identity_id does not exist.
        """
        handle = None
        if identity_id is not None:
            identity = self._store.get_identity(identity_id)
            if identity is None:
                raise NotFoundError("identity not found", identity_id=identity_id)
            handle = identity.handle

        now = self._clock()
        anonymous = identity_id is None
        lifetime = self.anonymous_ttl_seconds if anonymous else self.ttl_seconds
        record = SessionRecord(
            id=new_session_id(),
            identity_id=identity_id,
            handle=handle,
            public_key=public_key,
            address=address,
            anonymous=anonymous,
            created_at=isoformat(now),
            last_seen_at=isoformat(now),
            expires_at=isoformat(now + timedelta(seconds=lifetime)),
        )
        self._store.create_session(record)
        await self._cache_put(record, now)
        logger.info("Session created (anonymous=%s, identity=%s)", anonymous, identity_id)
        return record

    async def get(self, session_id: str) -> SessionRecord:
        """Read-through lookup.

        Raises:
            NotFoundError: no such session.
            ExpiredError: the session has expired (it is deleted as a side effect).
        """
        now = self._clock()
        record = await self._from_cache(session_id)
        if record is not None and record.anonymous and not self._durably_anonymous(record):
            # Upgraded (or deleted) since it was cached, and the invalidation
            # that should have removed this copy did not reach Redis.
            await self._cache.invalidate(session_id)
            record = None
        if record is None:
            record = self._store.get_session(session_id)
            if record is None:
                raise NotFoundError("session not found")
            if self._remaining(record, now) <= 0:
                await self.delete(session_id)
                raise ExpiredError("session expired")
            await self._cache_put(record, now)
            # An upgrade may have landed between the durable read and the
            # cache write; never leave the older copy behind.
            current = self._store.get_session(session_id)
            if current is None or (current.identity_id, current.expires_at) != (record.identity_id, record.expires_at):
                await self._cache.invalidate(session_id)
        elif self._remaining(record, now) <= 0:
            await self.delete(session_id)
            raise ExpiredError("session expired")

        self._runner.spawn(lambda: self._store.touch_session(session_id, isoformat(now)), "session last_seen_at refresh")
        return record

    def _durably_anonymous(self, cached: SessionRecord) -> bool:
        current = self._store.get_session(cached.id)
        return current is not None and current.anonymous and current.expires_at == cached.expires_at

    async def _from_cache(self, session_id: str) -> SessionRecord | None:
        data = await self._cache.get(session_id)
        if data is None:
            return None
        try:
            return SessionRecord(**data)
        except TypeError:
            logger.warning("Cached session %s has an unexpected shape; dropping it", session_id)
            await self._cache.invalidate(session_id)
            return None

    async def touch(self, session_id: str) -> None:
        """Stamp last_seen_at. Raises NotFoundError for an unknown session."""
        if not self._store.touch_session(session_id, isoformat(self._clock())):
            raise NotFoundError("session not found")

    async def upgrade(self, session_id: str, identity_id: int) -> SessionRecord:
        """Attach identity_id to a live session and extend it to the full lifetime.

        The cached copy is invalidated, not rewritten.

        Raises:
            NotFoundError: the session or the identity does not exist.
            ExpiredError: the session has already expired.
        """
        identity = self._store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("identity not found", identity_id=identity_id)

        now = self._clock()
        expires_at = isoformat(now + timedelta(seconds=self.ttl_seconds))
        if not self._store.upgrade_session(session_id, identity_id, identity.handle, expires_at, isoformat(now)):
            if self._store.get_session(session_id) is None:
                raise NotFoundError("session not found")
            raise ExpiredError("session expired")

        if not await self._cache.invalidate(session_id):
            logger.warning("Session %s upgraded but its cached anonymous copy could not be dropped", session_id)
        logger.info("Session upgraded to identity %s", identity.handle)
        return self._store.get_session(session_id)

    async def delete(self, session_id: str) -> bool:
        """Remove a session from both tiers. Returns False if it did not exist."""
        deleted = self._store.delete_session(session_id)
        await self._cache.invalidate(session_id)
        return deleted

    async def sweep(self) -> int:
        """Delete expired durable rows. Cached copies expire on their own TTL."""
        removed = self._store.delete_expired_sessions(isoformat(self._clock()))
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed

    async def list_for_identity(self, identity_id: int) -> list[SessionRecord]:
        """Live sessions of an identity, most recently seen first."""
        return self._store.list_sessions(identity_id, isoformat(self._clock()))
