"""
tests/test_federation_client.py -- Signed actor fetches and deliveries.

The mock remote server verifies every incoming signature with the sender's
public key, the same check a real ActivityPub server performs.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from core.errors import UpstreamError, UpstreamTimeoutError
from federation.client import ACTIVITY_JSON, actor_inbox, deliver, fetch_actor
from federation.keys import generate_key_pair
from federation.signatures import is_trusted
from tests.utils import shared_keypair

KEY_ID = "https://tp.example/users/alice@mastodon_example#main-key"
ACTOR = {
    "id": "https://remote.example/users/bob",
    "type": "Person",
    "inbox": "https://remote.example/users/bob/inbox",
    "endpoints": {"sharedInbox": "https://remote.example/inbox"},
}


class RemoteServer:
    def __init__(self, public_pem: str) -> None:
        self.public_pem = public_pem
        self.received: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.received.append(request)
        body = request.content if request.method == "POST" else None
        if not is_trusted(request, self.public_pem, body=body):
            return httpx.Response(401, json={"error": "Verification failed"})
        if request.method == "GET" and request.url.path == "/users/bob":
            return httpx.Response(200, json=ACTOR, headers={"Content-Type": ACTIVITY_JSON})
        if request.method == "POST" and request.url.path == "/inbox":
            return httpx.Response(202)
        return httpx.Response(404)


@pytest.fixture()
def remote() -> RemoteServer:
    return RemoteServer(shared_keypair()[1])


@pytest.fixture()
def client(remote) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(remote))


@pytest.mark.asyncio
async def test_fetch_actor_is_signed(client, remote):
    actor = await fetch_actor(client, ACTOR["id"], shared_keypair()[0], KEY_ID)
    assert actor["type"] == "Person"
    (request,) = remote.received
    assert 'keyId="' + KEY_ID in request.headers["Signature"]
    assert "activity+json" in request.headers["Accept"]


@pytest.mark.asyncio
async def test_fetch_actor_with_wrong_key_is_refused(client):
    other_private, _ = generate_key_pair()
    with pytest.raises(UpstreamError) as exc_info:
        await fetch_actor(client, ACTOR["id"], other_private, KEY_ID)
    assert exc_info.value.context["status"] == 401


@pytest.mark.asyncio
async def test_deliver_signs_body_with_digest(client, remote):
    activity = {"type": "Follow", "actor": "https://tp.example/users/alice", "object": ACTOR["id"]}
    status = await deliver(client, actor_inbox(ACTOR), activity, shared_keypair()[0], KEY_ID)
    assert status == 202
    (request,) = remote.received
    assert "Digest" in request.headers
    assert json.loads(request.content) == activity


@pytest.mark.asyncio
async def test_deliver_non_2xx_is_upstream_error(client):
    with pytest.raises(UpstreamError):
        await deliver(client, "https://remote.example/nowhere", {"type": "Like"}, shared_keypair()[0], KEY_ID)


@pytest.mark.asyncio
async def test_fetch_actor_timeout():
    async def hang(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json=ACTOR)

    client = httpx.AsyncClient(transport=httpx.MockTransport(hang))
    with pytest.raises(UpstreamTimeoutError):
        await fetch_actor(client, ACTOR["id"], shared_keypair()[0], KEY_ID, timeout=0.05)


def test_actor_inbox_prefers_shared_inbox():
    assert actor_inbox(ACTOR) == "https://remote.example/inbox"
    assert actor_inbox({"inbox": "https://remote.example/users/bob/inbox"}) == "https://remote.example/users/bob/inbox"
    with pytest.raises(UpstreamError):
        actor_inbox({"id": "https://remote.example/users/ghost"})
