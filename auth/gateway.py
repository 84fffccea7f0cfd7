"""
auth/gateway.py -- What the terminal front end calls, as explicit states.

The SSH server drives a connection through a small state machine and renders
whatever state it is handed:

    connect() +-> Authenticated                     (key already bound)
              +-> Anonymous --start_login()--> AwaitingAuthorization
                                                  | check_login(), every interval
                                                  +--> AwaitingAuthorization (still pending)
                                                  +--> Authenticated (key bound, session upgraded)
                                                  +--> LoginExpired (start over)

States are frozen dataclasses, so the caller matches on the type instead of
inspecting flags.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from auth.device_flow import AUTHORIZED, EXPIRED, PENDING, DeviceFlowCoordinator, DeviceGrant
from auth.identity import IdentityService
from auth.models import Identity, SessionRecord
from auth.session import SessionManager
from auth.sshkey import IdentityRegistry
from core.errors import AlreadyBoundError, MalformedInputError, NotFoundError

logger = logging.getLogger("terminalpub.auth.gateway")


@dataclass(frozen=True)
class Authenticated:
    session: SessionRecord
    identity: Identity


@dataclass(frozen=True)
class Anonymous:
    session: SessionRecord
    public_key: str | None = None


@dataclass(frozen=True)
class AwaitingAuthorization:
    session: SessionRecord
    grant: DeviceGrant
    public_key: str | None = None


@dataclass(frozen=True)
class LoginExpired:
    session: SessionRecord
    reason: str = "expired"


ConnectionState = Union[Authenticated, Anonymous, AwaitingAuthorization, LoginExpired]


class ConnectionGateway:
    def __init__(
        self,
        registry: IdentityRegistry,
        identities: IdentityService,
        sessions: SessionManager,
        flow: DeviceFlowCoordinator,
    ) -> None:
        self._registry = registry
        self._identities = identities
        self._sessions = sessions
        self._flow = flow

    async def connect(self, public_key: str | None, address: str | None) -> Authenticated | Anonymous:
        """Recognize a returning key or open an anonymous session.

        A key that does not parse is treated like no key at all.
        """
        if public_key:
            try:
                identity = await self._registry.lookup(public_key)
            except NotFoundError:
                pass
            except MalformedInputError as exc:
                logger.warning("Ignoring unparseable key from %s: %s", address, exc)
                public_key = None
            else:
                session = await self._sessions.create(public_key, address, identity_id=identity.id)
                return Authenticated(session=session, identity=identity)

        session = await self._sessions.create(public_key, address)
        return Anonymous(session=session, public_key=public_key)

    async def start_login(self, state: Anonymous | LoginExpired, provider_url: str) -> AwaitingAuthorization:
        """Issue a device code tied to the connection's session."""
        grant = await self._flow.initiate(provider_url, session_token=state.session.id)
        public_key = getattr(state, "public_key", None) or state.session.public_key
        return AwaitingAuthorization(session=state.session, grant=grant, public_key=public_key)

    async def check_login(self, state: AwaitingAuthorization) -> ConnectionState:
        """Poll once and advance the state.

        On authorization the code is consumed, the presented key bound to the
        identity (a key already bound to that same identity is fine) and the
        session upgraded.

        Raises:
            ConflictError: the presented key belongs to a different identity.
        """
        try:
            result = await self._flow.poll(state.grant.device_code)
        except NotFoundError:
            return LoginExpired(session=state.session, reason="not_found")

        if result.status == PENDING:
            return state
        if result.status == EXPIRED:
            return LoginExpired(session=state.session)
        if result.status != AUTHORIZED:
            return LoginExpired(session=state.session, reason=result.status)

        identity_id = await self._flow.consume(state.grant.device_code)
        if state.public_key:
            try:
                await self._registry.bind(identity_id, state.public_key)
            except AlreadyBoundError:
                pass
        session = await self._sessions.upgrade(state.session.id, identity_id)
        identity = await self._identities.get(identity_id)
        logger.info("Login completed for %s", identity.handle)
        return Authenticated(session=session, identity=identity)
