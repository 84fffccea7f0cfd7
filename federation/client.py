"""
federation/client.py -- Signed requests to remote ActivityPub servers.

Most servers refuse unsigned actor fetches ("authorized fetch"), so every
outgoing request carries an HTTP signature made with the local identity's
key (federation/signatures.py).

Requests are built with client.build_request() and signed before send()
so the signature covers exactly the bytes that go on the wire.
"""

import json
import logging
from typing import Any

import httpx

from core.errors import UpstreamError
from core.fetcher import bounded, expect_json
from federation.signatures import sign_request

logger = logging.getLogger("terminalpub.federation.client")

ACTIVITY_JSON = "application/activity+json"
ACCEPT_ACTIVITY = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
FETCH_TIMEOUT = 10.0


async def fetch_actor(
    client: httpx.AsyncClient,
    actor_url: str,
    private_key_pem: str,
    key_id: str,
    timeout: float = FETCH_TIMEOUT,
) -> dict[str, Any]:
    """GET an actor document with a signed request.

    Raises:
        UpstreamError: non-200 answer or a body that is not a JSON object.
        UpstreamTimeoutError: no answer within timeout.
    """
    request = client.build_request("GET", actor_url, headers={"Accept": ACCEPT_ACTIVITY})
    sign_request(request, private_key_pem, key_id)
    what = f"actor fetch {actor_url}"
    resp = await bounded(client.send(request), timeout, what)
    actor = expect_json(resp, what)
    if not isinstance(actor, dict):
        raise UpstreamError(f"{what} returned a non-object body")
    return actor


async def deliver(
    client: httpx.AsyncClient,
    inbox_url: str,
    activity: dict[str, Any],
    private_key_pem: str,
    key_id: str,
    timeout: float = FETCH_TIMEOUT,
) -> int:
    """POST one activity to an inbox with a signed request and Digest.

    Single attempt; there is no retry queue. Returns the response status.

    Raises:
        UpstreamError: the inbox answered with a non-2xx status.
        UpstreamTimeoutError: no answer within timeout.
    """
    body = json.dumps(activity).encode("utf-8")
    request = client.build_request("POST", inbox_url, content=body, headers={"Content-Type": ACTIVITY_JSON})
    sign_request(request, private_key_pem, key_id)
    what = f"delivery to {inbox_url}"
    resp = await bounded(client.send(request), timeout, what)
    if not 200 <= resp.status_code < 300:
        logger.warning("%s returned HTTP %d", what, resp.status_code)
        raise UpstreamError(f"{what} returned HTTP {resp.status_code}", status=resp.status_code)
    return resp.status_code


def actor_inbox(actor: dict[str, Any]) -> str:
    """Inbox to deliver to: the shared inbox when advertised, else the actor's own.

    Raises UpstreamError when the actor document has neither.
    """
    endpoints = actor.get("endpoints")
    if isinstance(endpoints, dict):
        shared = endpoints.get("sharedInbox")
        if isinstance(shared, str) and shared:
            return shared
    inbox = actor.get("inbox")
    if isinstance(inbox, str) and inbox:
        return inbox
    raise UpstreamError("actor document has no inbox", actor=actor.get("id"))
