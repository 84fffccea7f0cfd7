"""
tests/test_sshkey.py -- SSH key parsing and the key -> identity registry.

Covers:
  - Parsing of ed25519, RSA and ECDSA keys; comment handling
  - OpenSSH-compatible SHA256 fingerprints, independent of the comment
  - Malformed keys: wrong type, bad base64, type mismatch, truncated blob
  - lookup(): hit, miss, last_used_at refresh in the background
  - bind(): new binding, AlreadyBoundError, ConflictError, concurrent binds
  - list_keys() and revoke()
"""

from __future__ import annotations

import asyncio
import base64
import hashlib

import pytest

from auth.models import Identity
from auth.sshkey import IdentityRegistry, fingerprint, parse_public_key
from auth.store import isoformat
from core.errors import AlreadyBoundError, ConflictError, MalformedInputError, NotFoundError
from tests.utils import ecdsa_public_key, ed25519_public_key, rsa_public_key, shared_keypair


def _make_identity(store, clock, handle: str) -> int:
    private_pem, public_pem = shared_keypair()
    identity = Identity(
        handle=handle,
        private_key_pem=private_pem,
        public_key_pem=public_pem,
        actor_url=f"https://tp.example/users/{handle}",
    )
    return store.create_identity(identity, isoformat(clock()))


@pytest.fixture()
def registry(store, runner, clock) -> IdentityRegistry:
    return IdentityRegistry(store, runner, clock=clock)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("make_key", [ed25519_public_key, rsa_public_key, ecdsa_public_key])
def test_parse_supported_key_types(make_key):
    text = make_key()
    parsed = parse_public_key(text)
    assert parsed.key_type == text.split()[0]
    assert parsed.canonical == " ".join(text.split()[:2])


def test_fingerprint_matches_openssh_format():
    text = ed25519_public_key()
    blob = base64.b64decode(text.split()[1])
    expected = "SHA256:" + base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
    assert fingerprint(text) == expected
    assert len(expected) == len("SHA256:") + 43


def test_fingerprint_ignores_comment_and_whitespace():
    text = ed25519_public_key(comment="")
    assert fingerprint(text) == fingerprint(f"  {text}   someone@elsewhere \n")
    assert parse_public_key(f"{text} a comment with spaces").comment == "a comment with spaces"


@pytest.mark.parametrize(
    "text",
    [
        "",
        "ssh-ed25519",
        "ssh-foo AAAAC3NzaC1lZDI1NTE5AAAAIGx0",
        "ssh-ed25519 !!!notbase64!!!",
        "ssh-ed25519 AAAA",
    ],
)
def test_malformed_keys_are_rejected(text):
    with pytest.raises(MalformedInputError):
        parse_public_key(text)


def test_declared_type_must_match_blob():
    blob = ed25519_public_key(comment="").split()[1]
    with pytest.raises(MalformedInputError):
        parse_public_key(f"ssh-rsa {blob}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lookup_unbound_key_is_not_found(registry):
    with pytest.raises(NotFoundError):
        await registry.lookup(ed25519_public_key())


@pytest.mark.asyncio
async def test_bind_then_lookup(registry, store, clock, runner):
    identity_id = _make_identity(store, clock, "alice@mastodon_example")
    key = ed25519_public_key()

    binding = await registry.bind(identity_id, key)
    assert binding.id is not None
    assert binding.fingerprint == fingerprint(key)
    assert binding.comment == "alice@laptop"

    clock.advance(60)
    identity = await registry.lookup(key)
    assert identity.id == identity_id
    await runner.drain()
    (stored,) = store.list_bindings(identity_id)
    assert stored.last_used_at == isoformat(clock())


@pytest.mark.asyncio
async def test_lookup_matches_same_key_with_other_comment(registry, store, clock):
    identity_id = _make_identity(store, clock, "alice@mastodon_example")
    key = ed25519_public_key(comment="")
    await registry.bind(identity_id, f"{key} laptop")
    identity = await registry.lookup(f"{key} desktop")
    assert identity.id == identity_id


@pytest.mark.asyncio
async def test_bind_same_identity_twice_is_already_bound(registry, store, clock):
    identity_id = _make_identity(store, clock, "alice@mastodon_example")
    key = ed25519_public_key()
    await registry.bind(identity_id, key)
    with pytest.raises(AlreadyBoundError):
        await registry.bind(identity_id, key)


@pytest.mark.asyncio
async def test_bind_to_other_identity_conflicts(registry, store, clock):
    alice = _make_identity(store, clock, "alice@mastodon_example")
    bob = _make_identity(store, clock, "bob@mastodon_example")
    key = ed25519_public_key()
    await registry.bind(alice, key)
    with pytest.raises(ConflictError):
        await registry.bind(bob, key)
    assert (await registry.lookup(key)).id == alice


@pytest.mark.asyncio
async def test_identity_may_own_many_keys(registry, store, clock):
    identity_id = _make_identity(store, clock, "alice@mastodon_example")
    await registry.bind(identity_id, ed25519_public_key())
    await registry.bind(identity_id, ecdsa_public_key())
    assert len(await registry.list_keys(identity_id)) == 2


@pytest.mark.asyncio
async def test_concurrent_binds_have_exactly_one_winner(store, runner, clock):
    alice = _make_identity(store, clock, "alice@mastodon_example")
    bob = _make_identity(store, clock, "bob@mastodon_example")
    key = ed25519_public_key()

    # Both registries see "unbound" on their pre-check; the UNIQUE
    # constraint decides.
    original_find = store.find_binding
    calls = {"n": 0}

    def stale_find(fp, public_key):
        calls["n"] += 1
        if calls["n"] <= 2:
            return None
        return original_find(fp, public_key)

    store.find_binding = stale_find
    registry = IdentityRegistry(store, runner, clock=clock)
    results = await asyncio.gather(registry.bind(alice, key), registry.bind(bob, key), return_exceptions=True)

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)
    assert len(store.list_bindings(alice)) + len(store.list_bindings(bob)) == 1


@pytest.mark.asyncio
async def test_revoke(registry, store, clock):
    alice = _make_identity(store, clock, "alice@mastodon_example")
    bob = _make_identity(store, clock, "bob@mastodon_example")
    key = ed25519_public_key()
    binding = await registry.bind(alice, key)

    with pytest.raises(NotFoundError):
        await registry.revoke(bob, binding.id)
    await registry.revoke(alice, binding.id)
    with pytest.raises(NotFoundError):
        await registry.lookup(key)
    with pytest.raises(NotFoundError):
        await registry.revoke(alice, binding.id)
