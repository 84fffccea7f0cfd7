"""
fetcher.py -- Shared plumbing for every outbound HTTP call.

Provider registration, token exchange, token refresh and signed actor
fetches all go through bounded() so each call has a hard upper time limit
and fails with a typed error instead of hanging the caller.

Clients are created per component via new_client() and handed in by the
application lifespan, so tests can pass an httpx.AsyncClient built on
httpx.MockTransport instead.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, Optional, TypeVar

import httpx

from core.errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger("terminalpub.fetcher")

T = TypeVar("T")

# max_redirects=3 replaces the httpx default of 20 -- provider endpoints are
# fixed API paths, so a long redirect chain only ever means something is wrong.
_MAX_REDIRECTS = 3


def new_client(timeout: float, user_agent: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Build the AsyncClient used for provider and federation calls."""
    return httpx.AsyncClient(
        timeout=timeout,
        headers={"User-Agent": user_agent},
        follow_redirects=True,
        max_redirects=_MAX_REDIRECTS,
        transport=transport,
    )


async def bounded(call: Awaitable[T], timeout: float, what: str) -> T:
    """Await an outbound call with a hard deadline.

    asyncio.wait_for covers the whole exchange (connect, send, read) -- the
    httpx timeout alone only bounds each individual socket operation.

    Raises:
        UpstreamTimeoutError: the deadline passed (either ours or httpx's).
        UpstreamError: any other transport-level failure.
    """
    try:
        return await asyncio.wait_for(call, timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        logger.warning("%s timed out after %.1fs", what, timeout)
        raise UpstreamTimeoutError(f"{what} timed out", timeout=timeout) from exc
    except httpx.HTTPError as exc:
        logger.warning("%s failed: %s", what, exc)
        raise UpstreamError(f"{what} failed: {exc}") from exc


def expect_json(resp: httpx.Response, what: str, ok: tuple[int, ...] = (200,)) -> Any:
    """Return the decoded JSON body, or raise UpstreamError on bad status or body.

    The first 200 characters of a failing body are kept in the error context
    for logging; providers often put the useful message there.
    """
    if resp.status_code not in ok:
        snippet = resp.text[:200]
        logger.warning("%s returned HTTP %d: %s", what, resp.status_code, snippet)
        raise UpstreamError(f"{what} returned HTTP {resp.status_code}", status=resp.status_code, body=snippet)
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(f"{what} returned a non-JSON body") from exc
