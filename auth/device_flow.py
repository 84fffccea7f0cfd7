"""
auth/device_flow.py -- OAuth device authorization, terminal side and browser side.

A terminal cannot show an OAuth consent page, so login is split in two:

  terminal                                browser
  --------                                -------
  initiate()  -> shows XXXX-XXXX
                                          GET/POST /device with the code
                                          authorization_url() -> provider consent
                                          /oauth/callback -> authorize()
  poll() every `interval` seconds
    ... authorized -> consume() -> bind key, upgrade session

State machine of one DeviceAuthorization row:

  pending --authorize()--> authorized --consume()--> consumed
     |                         |
     +------ expires_at -------+--> expired (terminal; wins over everything)

authorize() is the only writer of the authorized flag and is a single
conditional UPDATE, so two browsers racing on the same code cannot both
succeed. poll() never writes.

Codes:
  device_code -- 32 base32 characters from 32 random bytes; never shown to a
                 human, only held by the polling terminal.
  user_code   -- 8 base32 characters shown as XXXX-XXXX. Input is accepted
                 case-insensitively, with or without the hyphen.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.models import DeviceAuthorization
from auth.providers import normalize_provider_url
from auth.store import AuthStore, isoformat, utcnow
from auth.tokens import TokenService
from core.errors import (
    AlreadyAuthorizedError,
    ConflictError,
    ExpiredError,
    MalformedInputError,
    NotFoundError,
)

logger = logging.getLogger("terminalpub.auth.device_flow")

DEVICE_CODE_LENGTH = 32
USER_CODE_LENGTH = 8
DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_INTERVAL_SECONDS = 5

# Accepted on input; generated codes only ever use the base32 subset.
_USER_CODE_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")
_MAX_CODE_ATTEMPTS = 5

PENDING = "pending"
AUTHORIZED = "authorized"
CONSUMED = "consumed"
EXPIRED = "expired"


def _random_base32(length: int) -> str:
    encoded = base64.b32encode(secrets.token_bytes(length)).decode("ascii").rstrip("=")
    return encoded[:length]


def generate_codes() -> tuple[str, str]:
    """Return a fresh (device_code, user_code) pair."""
    user = _random_base32(USER_CODE_LENGTH)
    return _random_base32(DEVICE_CODE_LENGTH), f"{user[:4]}-{user[4:]}"


def normalize_user_code(code: str) -> str:
    """Canonical XXXX-XXXX form of user-typed input.

    Raises MalformedInputError unless the input is 8 letters or digits once
    whitespace and hyphens are removed.
    """
    raw = "".join(ch for ch in (code or "") if not ch.isspace() and ch != "-").upper()
    if len(raw) != USER_CODE_LENGTH or not set(raw) <= _USER_CODE_ALPHABET:
        raise MalformedInputError("user code must be 8 characters like ABCD-EFGH")
    return f"{raw[:4]}-{raw[4:]}"


@dataclass(frozen=True)
class DeviceGrant:
    """What initiate() hands the terminal: show user_code, keep device_code."""

    user_code: str
    device_code: str
    verification_uri: str
    expires_at: datetime
    expires_in: int
    interval: int


@dataclass(frozen=True)
class PollResult:
    status: str
    identity_id: int | None = None


class DeviceFlowCoordinator:
    """Issues, authorizes and resolves device codes.

    Usage:
        flow = DeviceFlowCoordinator(store, tokens, verification_uri="https://example.com/device")
        grant = await flow.initiate("mastodon.social", session_token=session.id)
        ...
        identity_id = await flow.wait_for_authorization(grant.device_code)
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        verification_uri: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        codes: Callable[[], tuple[str, str]] = generate_codes,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self.verification_uri = verification_uri
        self.ttl_seconds = ttl_seconds
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._codes = codes

    def _now(self) -> str:
        return isoformat(self._clock())

    # ------------------------------------------------------------------
    # Terminal side
    # ------------------------------------------------------------------

    async def initiate(self, provider_url: str, session_token: str | None = None) -> DeviceGrant:
        """Create a pending authorization for provider_url.

        Raises:
            MalformedInputError: provider_url cannot be normalized.
        """
        url = normalize_provider_url(provider_url)
        now = self._clock()
        expires_at = now + timedelta(seconds=self.ttl_seconds)

        for attempt in range(1, _MAX_CODE_ATTEMPTS + 1):
            device_code, user_code = self._codes()
            row = DeviceAuthorization(
                user_code=user_code,
                device_code=device_code,
                provider_url=url,
                session_token=session_token,
                verification_uri=self.verification_uri,
                expires_at=isoformat(expires_at),
            )
            try:
                self._store.create_device_authorization(row, isoformat(now))
                break
            except IntegrityError:
                logger.warning("Device code collision (attempt %d/%d), regenerating", attempt, _MAX_CODE_ATTEMPTS)
        else:
            raise ConflictError("could not allocate a unique device code")

        logger.info("Device authorization %s issued for %s", user_code, url)
        return DeviceGrant(
            user_code=user_code,
            device_code=device_code,
            verification_uri=self.verification_uri,
            expires_at=expires_at,
            expires_in=self.ttl_seconds,
            interval=self.interval_seconds,
        )

    async def poll(self, device_code: str) -> PollResult:
        """Report the state of a device code. Never writes.

        Raises:
            NotFoundError: unknown device code (or already swept).
        """
        row = self._store.get_device_by_device_code(device_code)
        if row is None:
            raise NotFoundError("unknown device code")
        if row.expires_at <= self._now():
            return PollResult(EXPIRED)
        if row.consumed_at is not None:
            return PollResult(CONSUMED, row.identity_id)
        if row.authorized:
            return PollResult(AUTHORIZED, row.identity_id)
        return PollResult(PENDING)

    async def consume(self, device_code: str) -> int:
        """Mark an authorized code as picked up and return its identity id.

        Raises:
            NotFoundError: unknown device code.
            ExpiredError: the code expired.
            ConflictError: the code is not authorized yet, or was already consumed.
        """
        if self._store.consume_device(device_code, self._now()):
            row = self._store.get_device_by_device_code(device_code)
            return row.identity_id
        row = self._store.get_device_by_device_code(device_code)
        if row is None:
            raise NotFoundError("unknown device code")
        if row.expires_at <= self._now():
            raise ExpiredError("device code expired")
        if row.consumed_at is not None:
            raise ConflictError("device code was already consumed")
        raise ConflictError("device code is not authorized yet")

    async def wait_for_authorization(self, device_code: str) -> int:
        """Poll every interval until the code is authorized, then consume it.

        Returns the authorized identity id.

        Raises:
            ExpiredError: the code expired before anyone authorized it.
            NotFoundError: the code disappeared (swept) while waiting.
            ConflictError: another poller consumed the code first.
        """
        while True:
            result = await self.poll(device_code)
            if result.status == AUTHORIZED:
                return await self.consume(device_code)
            if result.status == EXPIRED:
                raise ExpiredError("device code expired before it was authorized")
            if result.status == CONSUMED:
                raise ConflictError("device code was already consumed")
            await self._sleep(self.interval_seconds)

    # ------------------------------------------------------------------
    # Browser side
    # ------------------------------------------------------------------

    async def resolve_by_user_code(self, code: str) -> DeviceAuthorization:
        """Return the authorization for a user-typed code.

        Raises:
            MalformedInputError: not a well-formed user code.
            NotFoundError: no such code.
            ExpiredError: the code expired.
        """
        user_code = normalize_user_code(code)
        row = self._store.get_device_by_user_code(user_code)
        if row is None:
            raise NotFoundError("unknown user code")
        if row.expires_at <= self._now():
            raise ExpiredError("user code expired")
        return row

    async def authorization_url(self, code: str) -> str:
        """Provider consent URL for a user code; the canonical code travels as state.

        Raises:
            AlreadyAuthorizedError: the code was already used.
            plus everything resolve_by_user_code() and provider registration raise.
        """
        row = await self.resolve_by_user_code(code)
        if row.authorized:
            raise AlreadyAuthorizedError("this code has already been used")
        return await self._tokens.authorization_url(row.provider_url, state=row.user_code)

    async def authorize(self, code: str, identity_id: int) -> DeviceAuthorization:
        """Mark a pending code as authorized for identity_id.

        Raises:
            MalformedInputError: not a well-formed user code.
            NotFoundError: no such code.
            ExpiredError: the code expired.
            AlreadyAuthorizedError: the code was authorized before.
        """
        user_code = normalize_user_code(code)
        now = self._now()
        if self._store.authorize_device(user_code, identity_id, now):
            logger.info("Device authorization %s granted to identity %d", user_code, identity_id)
            return self._store.get_device_by_user_code(user_code)

        row = self._store.get_device_by_user_code(user_code)
        if row is None:
            raise NotFoundError("unknown user code")
        if row.expires_at <= now:
            raise ExpiredError("user code expired")
        raise AlreadyAuthorizedError("this code has already been used")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Delete expired and consumed rows. Returns the number removed."""
        removed = self._store.delete_stale_devices(self._now())
        if removed:
            logger.info("Swept %d device authorizations", removed)
        return removed
