"""
Authorization endpoint.
GET /authorize: validate the request, then either issue a code (signed-in session with enough grant)
or start an interaction and send the browser to /interaction/{uid}.
GET /authorize/resume/{uid}: apply a finished interaction's result (session, grant, error) and
continue: next interaction, error redirect, or code.
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from idp_server.audit import EVENT_CODE_ISSUED, get_client_ip, log_audit
from idp_server.config import ALLOWED_SCOPES, PKCE_METHODS, PKCE_REQUIRED, RESUME_COOKIE
from idp_server.database import get_db
from idp_server.dependencies import get_provider
from idp_server.interaction_types import PriorSession, Prompt
from idp_server.models import Client
from idp_server.provider import Provider

logger = logging.getLogger(__name__)
router = APIRouter()

# prompt=none error per required prompt (OIDC Core 3.1.2.6)
_PROMPT_NONE_ERRORS = {
    "login": "login_required",
    "consent": "consent_required",
    "select_account": "account_selection_required",
}


def _redirect_error(redirect_uri: str, error: str, error_description: str, state: str | None) -> RedirectResponse:
    params = {"error": error, "error_description": error_description}
    if state:
        params["state"] = state
    sep = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(url=f"{redirect_uri}{sep}{urlencode(params)}", status_code=303)


def _redirect_code(redirect_uri: str, code: str, state: str | None) -> RedirectResponse:
    params = {"code": code}
    if state:
        params["state"] = state
    sep = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(url=f"{redirect_uri}{sep}{urlencode(params)}", status_code=303)


def _bad_request(message: str) -> HTMLResponse:
    return HTMLResponse(f"<h1>Invalid request</h1><p>{message}</p>", status_code=400)


def _validate_scope(scope: str | None, client: Client) -> tuple[bool, str]:
    """Return (ok, normalized_scope_or_error). openid is mandatory."""
    requested = set(s for s in (scope or "").split() if s)
    if "openid" not in requested:
        return False, "openid scope must be requested"
    invalid = requested - ALLOWED_SCOPES
    if invalid:
        return False, f"Invalid scope(s): {', '.join(sorted(invalid))}"
    if not client.scope_allowed(requested):
        return False, "Requested scope not allowed for this client"
    return True, " ".join(sorted(requested))


def _issue_code(
    provider: Provider,
    db: Session,
    request: Request,
    client: Client,
    params: dict,
    session: PriorSession,
) -> RedirectResponse:
    granted = provider.granted_scopes(db, session.account_id, client.client_id)
    scope = " ".join(s for s in params["scope"].split() if s in granted)
    code = provider.issue_code(db, client.client_id, params, session.account_id, scope)
    log_audit(
        db,
        EVENT_CODE_ISSUED,
        client_id=client.client_id,
        account_id=session.account_id,
        ip=get_client_ip(request),
    )
    return _redirect_code(params["redirect_uri"], code, params.get("state"))


def _continue(
    provider: Provider,
    db: Session,
    request: Request,
    client: Client,
    params: dict,
    session: PriorSession | None,
    result: dict,
) -> RedirectResponse:
    """Next step of an authorization: interaction, prompt=none error, or code."""
    prompt: Prompt | None = provider.next_prompt(db, client, params, session, result)
    if prompt is None:
        return _issue_code(provider, db, request, client, params, session)
    if "none" in (params.get("prompt") or "").split():
        return _redirect_error(
            params["redirect_uri"],
            _PROMPT_NONE_ERRORS.get(prompt.name, "interaction_required"),
            f"{prompt.name} prompt required but prompt=none was requested",
            params.get("state"),
        )
    uid = provider.create_interaction(db, client.client_id, params, prompt, session, last_submission=result)
    return provider.interaction_redirect(uid)


@router.get("/authorize")
def authorize(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    nonce: str | None = None,
    prompt: str | None = None,
    login_hint: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    db: Session = Depends(get_db),
    provider: Provider = Depends(get_provider),
):
    """
    OAuth2/OIDC authorization endpoint. client_id and redirect_uri (exact match) are checked before
    anything is redirected; later errors go back to the client's redirect_uri.
    """
    if not client_id or not redirect_uri:
        return _bad_request("client_id and redirect_uri are required.")
    client = provider.get_client(db, client_id)
    if not client:
        return _bad_request("Unknown client_id.")
    if not client.redirect_uri_allowed(redirect_uri):
        return _bad_request("redirect_uri not allowed.")

    if response_type != "code":
        return _redirect_error(redirect_uri, "unsupported_response_type", "response_type must be 'code'", state)
    if not client.response_type_allowed("code"):
        return _redirect_error(redirect_uri, "unauthorized_client", "client may not use response_type=code", state)

    ok, scope_result = _validate_scope(scope, client)
    if not ok:
        return _redirect_error(redirect_uri, "invalid_scope", scope_result, state)

    if PKCE_REQUIRED and not code_challenge:
        return _redirect_error(redirect_uri, "invalid_request", "code_challenge is required", state)
    if code_challenge and code_challenge_method not in PKCE_METHODS:
        return _redirect_error(
            redirect_uri, "invalid_request", f"code_challenge_method must be one of {', '.join(PKCE_METHODS)}", state
        )

    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": response_type,
        "scope": scope_result,
        "state": state,
        "nonce": nonce,
        "prompt": prompt,
        "login_hint": login_hint,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
    }
    # Carried through interactions to code issuance
    params = {k: v for k, v in params.items() if v}
    session = provider.current_session(db, request)
    return _continue(provider, db, request, client, params, session, {})


@router.get("/authorize/resume/{uid}")
def authorize_resume(
    request: Request,
    uid: str,
    db: Session = Depends(get_db),
    provider: Provider = Depends(get_provider),
):
    """Consume a finished interaction (once) and carry its result into the authorization."""
    finished = provider.consume_interaction(db, request, uid)
    params, result = finished.params, finished.result

    client = provider.get_client(db, finished.client_id)
    if client is None:
        return _bad_request("Client no longer exists.")

    if "error" in result:
        logger.info("interaction %s ended with error=%s", uid, result["error"])
        response = _redirect_error(
            params["redirect_uri"], result["error"], result.get("error_description", ""), params.get("state")
        )
    else:
        session = provider.current_session(db, request)
        new_session = None
        if "login" in result:
            account_id = result["login"]["account"]
            if session is None or session.account_id != account_id:
                new_session = provider.create_session(db, account_id, previous=session)
                session = new_session
        if "consent" in result:
            if session is None:
                return _bad_request("Consent without a signed-in session.")
            provider.add_grant(db, session.account_id, client.client_id, set(params["scope"].split()))
        response = _continue(provider, db, request, client, params, session, result)
        if new_session is not None:
            provider.set_session_cookie(response, new_session)

    response.delete_cookie(RESUME_COOKIE, path=f"/authorize/resume/{uid}")
    return response
