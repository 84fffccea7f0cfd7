"""
tests/utils.py -- Test doubles shared by the test modules.

  InMemoryRedis     -- the subset of redis.asyncio.Redis that SessionCache uses
  FakeClock         -- settable UTC clock handed to services as clock=
  MastodonProvider  -- httpx.MockTransport handler imitating a Mastodon instance
  SSH key helpers   -- freshly generated OpenSSH public key lines
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from redis.exceptions import ConnectionError as RedisConnectionError

from auth.providers import ProviderRegistry
from auth.tokens import TokenService
from core.config import Settings
from federation.keys import generate_key_pair

# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class InMemoryRedis:
    """Dict-backed stand-in for redis.asyncio.Redis (decode_responses=True).

    Expiry is checked against time.monotonic() on read. Set fail=True to make
    every call raise a redis ConnectionError, as a Redis outage would.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires <= time.monotonic():
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self._data[key] = (value, time.monotonic() + ex if ex else None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    def ttl_of(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - time.monotonic()

    def raw(self, key: str) -> Optional[dict[str, Any]]:
        entry = self._data.get(key)
        return json.loads(entry[0]) if entry else None

    def put_raw(self, key: str, value: str) -> None:
        self._data[key] = (value, None)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Mastodon instance
# ---------------------------------------------------------------------------


class MastodonProvider:
    """Request handler for httpx.MockTransport.

    Serves /api/v1/apps, /oauth/token and verify_credentials. Every request
    is recorded in `requests`. Set the status attributes per test to
    simulate failures (e.g. token_status = 400).
    """

    def __init__(self, account: Optional[dict[str, Any]] = None) -> None:
        self.account = account or {
            "id": "109",
            "username": "alice",
            "acct": "alice",
            "display_name": "Alice",
            "avatar": "https://mastodon.example/avatars/alice.png",
        }
        self.requests: list[httpx.Request] = []
        self.apps_status = 200
        self.token_status = 200
        self.token_body: dict[str, Any] = {
            "access_token": "access-abc",
            "token_type": "Bearer",
            "scope": "read write follow",
            "created_at": 1700000000,
        }
        self.registrations = 0

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/v1/apps" and request.method == "POST":
            if self.apps_status != 200:
                return httpx.Response(self.apps_status, text="registrations closed")
            self.registrations += 1
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": str(self.registrations),
                    "name": body["client_name"],
                    "redirect_uri": body["redirect_uris"],
                    "client_id": f"client-{self.registrations}",
                    "client_secret": f"secret-{self.registrations}",
                },
            )
        if path == "/oauth/token" and request.method == "POST":
            form = parse_qs(request.content.decode())
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "bad code"},
                )
            if form.get("grant_type") == ["refresh_token"]:
                return httpx.Response(200, json={**self.token_body, "access_token": "access-refreshed"})
            return httpx.Response(200, json=self.token_body)
        if path == "/api/v1/accounts/verify_credentials":
            if request.headers.get("Authorization") != f"Bearer {self.token_body['access_token']}":
                return httpx.Response(401, json={"error": "The access token is invalid"})
            return httpx.Response(200, json=self.account)
        return httpx.Response(404, json={"error": "Record not found"})


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def ed25519_public_key(comment: str = "alice@laptop") -> str:
    key = ed25519.Ed25519PrivateKey.generate().public_key()
    line = key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH).decode()
    return f"{line} {comment}" if comment else line


def rsa_public_key(comment: str = "") -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048).public_key()
    line = key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH).decode()
    return f"{line} {comment}" if comment else line


def ecdsa_public_key() -> str:
    key = ec.generate_private_key(ec.SECP256R1()).public_key()
    return key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH).decode()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

BASE_URL = "https://tp.example"
PROVIDER_URL = "https://mastodon.example"


def make_settings(**overrides) -> Settings:
    values = {
        "base_url": BASE_URL,
        "domain": "tp.example",
        "oauth_callback_url": f"{BASE_URL}/oauth/callback",
        "database_url": "sqlite://",
    }
    values.update(overrides)
    return Settings(**values)


_KEYPAIR: Optional[tuple[str, str]] = None


def shared_keypair() -> tuple[str, str]:
    """One RSA pair per test run; generating 2048-bit keys per identity is slow."""
    global _KEYPAIR
    if _KEYPAIR is None:
        _KEYPAIR = generate_key_pair()
    return _KEYPAIR


def make_token_service(store, transport: httpx.MockTransport, clock) -> TokenService:
    """TokenService plus ProviderRegistry, both talking to the mock instance."""
    providers = ProviderRegistry(
        store,
        httpx.AsyncClient(transport=transport),
        redirect_uri=f"{BASE_URL}/oauth/callback",
        scopes=["read", "write", "follow"],
        app_name="terminalpub",
        website=BASE_URL,
        clock=clock,
    )
    return TokenService(store, providers, timeout=5.0, transport=transport, clock=clock)
