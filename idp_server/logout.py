"""
OIDC RP-initiated logout (GET /logout).
Ends the provider session (server-side row and cookie), then redirects to post_logout_redirect_uri
when it is registered for the client named by id_token_hint or client_id.
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from idp_server.config import SESSION_COOKIE
from idp_server.database import get_db
from idp_server.dependencies import get_provider
from idp_server.provider import Provider
from idp_server.tokens import decode_token
from idp_server.views import render_error

logger = logging.getLogger(__name__)
router = APIRouter()


def _client_id_from_hint(id_token_hint: str | None) -> str | None:
    if not id_token_hint or not id_token_hint.strip():
        return None
    payload = decode_token(id_token_hint.strip())
    if not payload:
        return None
    aud = payload.get("aud")
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return aud


@router.get("/logout")
def logout(
    request: Request,
    id_token_hint: str | None = None,
    post_logout_redirect_uri: str | None = None,
    client_id: str | None = None,
    state: str | None = None,
    db: Session = Depends(get_db),
    provider: Provider = Depends(get_provider),
):
    session = provider.current_session(db, request)
    if session is not None:
        provider.end_session(db, session.uid)
        logger.info("session ended for account_id=%s", session.account_id)

    client_id = _client_id_from_hint(id_token_hint) or client_id
    response = None
    if client_id and post_logout_redirect_uri and post_logout_redirect_uri.strip():
        client = provider.get_client(db, client_id)
        if not client or not client.post_logout_redirect_uri_allowed(post_logout_redirect_uri.strip()):
            response = HTMLResponse(
                render_error("Invalid request", "post_logout_redirect_uri not allowed for this client."),
                status_code=400,
            )
        else:
            redirect_url = post_logout_redirect_uri.strip()
            if state and state.strip():
                redirect_url = f"{redirect_url}{'&' if '?' in redirect_url else '?'}{urlencode({'state': state.strip()})}"
            response = RedirectResponse(url=redirect_url, status_code=303)
    if response is None:
        response = HTMLResponse(render_error("Signed out", "You are signed out. Close this window or return to the application."))
    response.delete_cookie(SESSION_COOKIE)
    return response
