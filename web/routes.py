"""
web/routes.py -- Browser half of the device login, as Jinja2 pages.

The terminal shows a code like ABCD-EFGH and a URL. The user opens the URL,
types the code, consents at their own provider instance and lands back on
the callback, which authorizes the code. The terminal, polling, then sees
the authorization and finishes the login on its side.

Routes:
  GET  /device            -- code entry form (?code= pre-fills it)
  POST /device            -- validate the code, redirect to the provider (rate-limited)
  GET  /oauth/callback    -- provider redirect target; state carries the user code

Error pages only ever show messages from _ERROR_MESSAGES, never raw query
parameters or exception text.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.device_flow import DeviceFlowCoordinator
from auth.identity import IdentityService
from auth.tokens import TokenService
from core.config import get_settings
from core.errors import (
    AlreadyAuthorizedError,
    ExpiredError,
    MalformedInputError,
    NotFoundError,
    TerminalpubError,
    UpstreamError,
)
from core.limiter import limiter

logger = logging.getLogger("terminalpub.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_ERROR_MESSAGES: dict[str, str] = {
    "invalid_code": "That does not look like a valid code. Codes look like ABCD-EFGH.",
    "unknown_code": "That code was not found. Check your terminal for the current code.",
    "expired": "That code has expired. Start the login again from your terminal.",
    "already_used": "This code has already been used. You can return to your terminal.",
    "upstream": "Your instance could not be reached. Please try again in a moment.",
    "denied": "Authorization was cancelled at your instance.",
    "oauth_failed": "Login with your instance failed. Please start again from your terminal.",
}

_STATUS_FOR: dict[str, int] = {
    "invalid_code": 400,
    "unknown_code": 404,
    "expired": 410,
    "already_used": 200,
    "upstream": 502,
    "denied": 400,
    "oauth_failed": 400,
}


def _error_key(exc: TerminalpubError) -> str:
    if isinstance(exc, AlreadyAuthorizedError):
        return "already_used"
    if isinstance(exc, ExpiredError):
        return "expired"
    if isinstance(exc, NotFoundError):
        return "unknown_code"
    if isinstance(exc, MalformedInputError):
        return "invalid_code"
    if isinstance(exc, UpstreamError):
        return "upstream"
    return "oauth_failed"


def _device_rate_limit() -> str:
    return get_settings().device_rate_limit


def _render_form(request: Request, code: str = "", error: Optional[str] = None) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "device.html",
        {"code": code, "error": _ERROR_MESSAGES.get(error) if error else None},
        status_code=_STATUS_FOR.get(error, 200) if error else 200,
    )


def _render_result(request: Request, handle: Optional[str] = None, error: Optional[str] = None) -> HTMLResponse:
    response = templates.TemplateResponse(
        request,
        "device_result.html",
        {
            "handle": handle,
            "notice": _ERROR_MESSAGES[error] if error == "already_used" else None,
            "error": _ERROR_MESSAGES[error] if error and error != "already_used" else None,
        },
        status_code=_STATUS_FOR.get(error, 200) if error else 200,
    )
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# GET/POST /device
# ---------------------------------------------------------------------------


@router.get("/device", response_class=HTMLResponse)
def device_form(request: Request, code: str = "") -> HTMLResponse:
    """Render the code entry form. ?code= pre-fills it (never rendered unescaped)."""
    return _render_form(request, code=code[:16])


@router.post("/device", response_class=HTMLResponse)
@limiter.limit(_device_rate_limit)
async def device_submit(request: Request, user_code: str = Form("")):
    """Resolve the typed code and send the browser to the provider's consent page."""
    flow: DeviceFlowCoordinator = request.app.state.device_flow
    try:
        url = await flow.authorization_url(user_code)
    except AlreadyAuthorizedError:
        return _render_result(request, error="already_used")
    except TerminalpubError as exc:
        key = _error_key(exc)
        logger.info("Device code submission rejected: %s", exc.code)
        return _render_form(request, code=user_code[:16], error=key)
    return RedirectResponse(url, status_code=302)


# ---------------------------------------------------------------------------
# GET /oauth/callback
# ---------------------------------------------------------------------------


@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> HTMLResponse:
    """Finish the browser side: exchange the code, find or create the identity, authorize.

    Flow:
      1. state is the user code -- resolve it (must be unexpired and unused).
      2. Exchange the authorization code with the code's provider.
      3. Get or create the identity for the provider account.
      4. Store the token as the identity's primary token.
      5. authorize() the user code -- the terminal's next poll picks it up.
    """
    if error:
        logger.info("Provider returned error on callback: %s", error[:64])
        return _render_result(request, error="denied")
    if not code or not state:
        return _render_result(request, error="oauth_failed")

    flow: DeviceFlowCoordinator = request.app.state.device_flow
    tokens: TokenService = request.app.state.tokens
    identities: IdentityService = request.app.state.identities

    try:
        pending = await flow.resolve_by_user_code(state)
        if pending.authorized:
            return _render_result(request, error="already_used")
        token = await tokens.exchange_code(pending.provider_url, code)
        identity = await identities.get_or_create(pending.provider_url, token.account)
        await tokens.store_token(identity.id, token, primary=True)
        await flow.authorize(pending.user_code, identity.id)
    except TerminalpubError as exc:
        logger.warning("Device login callback failed: %s (%s)", exc.code, exc.message)
        return _render_result(request, error=_error_key(exc))

    return _render_result(request, handle=identity.handle)
