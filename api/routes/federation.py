"""
api/routes/federation.py -- Discovery endpoints that make identities federate.

Routes:
  GET /.well-known/webfinger?resource=acct:<handle>@<domain>  -- JRD document
  GET /users/{handle}                                         -- actor document

Remote servers verifying a signature made by sign_request() take the keyId
("<actor_url>#main-key"), fetch the actor, and read publicKey.publicKeyPem.
Serving it here is what makes outgoing signatures checkable at all.

Handles contain an "@" themselves ("alice@mastodon_example"), so the webfinger
resource is split on its LAST "@": everything before it is the handle.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from auth.identity import IdentityService
from auth.models import Identity
from core.errors import MalformedInputError, NotFoundError

router = APIRouter()

ACTIVITY_JSON = "application/activity+json; charset=utf-8"
JRD_JSON = "application/jrd+json; charset=utf-8"

_CONTEXT = [
    "https://www.w3.org/ns/activitystreams",
    "https://w3id.org/security/v1",
]

# Discovery documents are public and fetched cross-origin by web clients.
_PUBLIC_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _actor_id(request: Request, identity: Identity) -> str:
    return identity.actor_url or request.app.state.identities.actor_url(identity.handle)


def build_actor(identity: Identity, actor_id: str, base_url: str) -> dict[str, Any]:
    return {
        "@context": _CONTEXT,
        "id": actor_id,
        "type": "Person",
        "preferredUsername": identity.handle,
        "name": identity.remote_acct or identity.handle,
        "inbox": f"{actor_id}/inbox",
        "outbox": f"{actor_id}/outbox",
        "followers": f"{actor_id}/followers",
        "following": f"{actor_id}/following",
        "manuallyApprovesFollowers": False,
        "published": identity.created_at,
        "publicKey": {
            "id": f"{actor_id}#main-key",
            "owner": actor_id,
            "publicKeyPem": identity.public_key_pem,
        },
        "endpoints": {"sharedInbox": f"{base_url.rstrip('/')}/inbox"},
    }


@router.get("/.well-known/webfinger")
async def webfinger(request: Request, resource: str = "") -> JSONResponse:
    """Resolve acct:<handle>@<our domain> to the actor URL.

    Raises:
        MalformedInputError: resource missing or not an acct: URI (400).
        NotFoundError: another domain, or no such handle (404).
    """
    if not resource.startswith("acct:") or "@" not in resource:
        raise MalformedInputError("resource must look like acct:<handle>@<domain>")
    handle, _, domain = resource[len("acct:"):].rpartition("@")
    if not handle:
        raise MalformedInputError("resource must look like acct:<handle>@<domain>")
    if domain.lower() != request.app.state.settings.domain.lower():
        raise NotFoundError("unknown domain", domain=domain)

    identities: IdentityService = request.app.state.identities
    identity = await identities.get_by_handle(handle)
    actor_id = _actor_id(request, identity)
    return JSONResponse(
        {
            "subject": resource,
            "aliases": [actor_id],
            "links": [
                {"rel": "self", "type": "application/activity+json", "href": actor_id},
            ],
        },
        media_type=JRD_JSON,
        headers=_PUBLIC_HEADERS,
    )


@router.get("/users/{handle}")
async def actor(request: Request, handle: str) -> JSONResponse:
    """The actor document, including the key remote servers verify our signatures with."""
    identities: IdentityService = request.app.state.identities
    identity = await identities.get_by_handle(handle)
    document = build_actor(identity, _actor_id(request, identity), request.app.state.settings.base_url)
    return JSONResponse(document, media_type=ACTIVITY_JSON, headers=_PUBLIC_HEADERS)
