"""
Interaction controller: the screens the engine sends the browser to when an authorization
request needs human input. Each request re-reads the interaction from the engine, branches on its
prompt, and either renders a view (uid stays valid) or resumes the engine with one result (terminal).

GET  /interaction/{uid}           login, account selection, consent or generic view
POST /interaction/{uid}/login     loginId + password
POST /interaction/{uid}/continue  confirm (or switch) the already signed-in account
POST /interaction/{uid}/confirm   consent
GET  /interaction/{uid}/abort     access_denied
Engine and store errors are not caught here; the app's exception handlers render them.
"""
import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import HTMLResponse
from fastapi.routing import APIRoute

from idp_server.accounts import AccountResolver, claims_for_scope
from idp_server.audit import (
    EVENT_CONSENT_ALLOW,
    EVENT_INTERACTION_ABORT,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    AuditLogger,
    get_client_ip,
)
from idp_server.authenticator import Authenticator
from idp_server.config import CLAIMS_BY_SCOPE
from idp_server.dependencies import (
    get_audit,
    get_authenticator,
    get_engine,
    get_login_limiter,
    get_resolver,
)
from idp_server.errors import SessionStateError
from idp_server.interaction_types import (
    ACCESS_DENIED,
    ConsentResult,
    InteractionSession,
    LoginResult,
    PromptName,
    ProtocolEngine,
    SelectAccountResult,
)
from idp_server.rate_limit import SlidingWindowLimiter
from idp_server.views import render_interaction, render_login, render_select_account

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid loginId or password."


def set_no_cache(response: Response) -> Response:
    response.headers["Pragma"] = "no-cache"
    response.headers["Cache-Control"] = "no-cache, no-store"
    return response


class NoCacheRoute(APIRoute):
    """Every interaction response is uncacheable."""

    def get_route_handler(self) -> Callable:
        handler = super().get_route_handler()

        async def no_cache_handler(request: Request) -> Response:
            return set_no_cache(await handler(request))

        return no_cache_handler


router = APIRouter(prefix="/interaction", route_class=NoCacheRoute)


def _login_page(client, details: InteractionSession, flash: str | None = None, login_hint: str | None = None) -> HTMLResponse:
    params = dict(details.params)
    if login_hint is not None:
        params["login_hint"] = login_hint
    return HTMLResponse(render_login(client, details.uid, params, details.prompt.details, flash=flash))


# --- GET /interaction/{uid}: one handler per prompt kind ---

PromptHandler = Callable[
    [Request, InteractionSession, object, ProtocolEngine, AccountResolver], Awaitable[Response]
]


async def _show_select_account(request, details, client, engine, resolver) -> Response:
    if details.session is None:
        # Nothing to select yet; the engine continues with a login step
        return await engine.interaction_finished(
            request, SelectAccountResult(), merge_with_last_submission=False
        )
    identity = await resolver.resolve(details.session.account_id)
    if identity is None:
        logger.info("select_account: session account %s no longer exists", details.session.account_id)
        return _login_page(client, details)
    claims = claims_for_scope(identity, details.scopes or ["openid", "profile"])
    return HTMLResponse(render_select_account(client, details.uid, details.params, claims))


async def _show_login(request, details, client, engine, resolver) -> Response:
    return _login_page(client, details)


async def _show_consent(request, details, client, engine, resolver) -> Response:
    return HTMLResponse(
        render_interaction(
            client,
            details.uid,
            details.params,
            details.prompt.name,
            scopes=details.scopes,
            claims_by_scope=CLAIMS_BY_SCOPE,
            can_confirm=True,
        )
    )


async def _show_generic(request, details, client, engine, resolver) -> Response:
    # Prompts without a dedicated screen: show what the engine asked for; nothing here resolves them
    return HTMLResponse(
        render_interaction(
            client,
            details.uid,
            details.params,
            details.prompt.name,
            details=details.prompt.details,
            scopes=details.scopes,
            can_confirm=False,
        )
    )


PROMPT_HANDLERS: dict[PromptName, PromptHandler] = {
    PromptName.SELECT_ACCOUNT: _show_select_account,
    PromptName.LOGIN: _show_login,
    PromptName.CONSENT: _show_consent,
    PromptName.OTHER: _show_generic,
}

_unhandled = set(PromptName) - PROMPT_HANDLERS.keys()
if _unhandled:
    raise RuntimeError(f"No interaction handler for prompts: {sorted(p.value for p in _unhandled)}")


@router.get("/{uid}")
async def interaction_show(
    request: Request,
    uid: str,
    engine: ProtocolEngine = Depends(get_engine),
    resolver: AccountResolver = Depends(get_resolver),
):
    details = await engine.interaction_details(request)
    client = await engine.find_client(details.client_id)
    logger.debug("interaction %s prompt=%s client_id=%s", uid, details.prompt.name, details.client_id)
    handler = PROMPT_HANDLERS[details.prompt.kind]
    return await handler(request, details, client, engine, resolver)


@router.post("/{uid}/login")
async def interaction_login(
    request: Request,
    uid: str,
    loginId: str = Form(""),
    password: str = Form(""),
    engine: ProtocolEngine = Depends(get_engine),
    authenticator: Authenticator = Depends(get_authenticator),
    audit: AuditLogger = Depends(get_audit),
    limiter: SlidingWindowLimiter = Depends(get_login_limiter),
):
    """Check credentials. Failure re-renders the login form in place; success resumes with the account id."""
    allowed, retry_after = limiter.check_and_consume(f"login:{get_client_ip(request) or 'unknown'}")
    if not allowed:
        return HTMLResponse(
            "<h1>Too many requests</h1><p>Try again later.</p>",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )

    details = await engine.interaction_details(request)
    client = await engine.find_client(details.client_id)

    account_id = await authenticator.authenticate(loginId, password)
    if account_id is None:
        await audit.record(EVENT_LOGIN_FAIL, request, client_id=details.client_id, outcome=OUTCOME_FAIL)
        return _login_page(client, details, flash=INVALID_CREDENTIALS, login_hint=loginId)

    await audit.record(EVENT_LOGIN_OK, request, client_id=details.client_id, account_id=account_id)
    return await engine.interaction_finished(
        request, LoginResult(account=account_id), merge_with_last_submission=False
    )


@router.post("/{uid}/continue")
async def interaction_continue(
    request: Request,
    uid: str,
    switch: str = Form(""),
    engine: ProtocolEngine = Depends(get_engine),
):
    """Account selection: keep the signed-in account, or switch by signing in again."""
    details = await engine.interaction_details(request)
    if details.prompt.kind is not PromptName.SELECT_ACCOUNT:
        # Keeping the current account only answers account selection, never a login prompt
        raise SessionStateError(f"continue not allowed for prompt {details.prompt.name}", uid=uid)
    if details.session is None or switch.lower() in ("true", "1", "yes"):
        client = await engine.find_client(details.client_id)
        return _login_page(client, details)
    return await engine.interaction_finished(
        request, LoginResult(account=details.session.account_id), merge_with_last_submission=False
    )


@router.post("/{uid}/confirm")
async def interaction_confirm(
    request: Request,
    uid: str,
    engine: ProtocolEngine = Depends(get_engine),
    audit: AuditLogger = Depends(get_audit),
):
    """Consent. Merged with the earlier submission so consent given across prompts accumulates."""
    details = await engine.interaction_details(request)
    response = await engine.interaction_finished(
        request, ConsentResult(), merge_with_last_submission=True
    )
    account_id = details.session.account_id if details.session else None
    await audit.record(EVENT_CONSENT_ALLOW, request, client_id=details.client_id, account_id=account_id)
    return response


@router.get("/{uid}/abort")
async def interaction_abort(
    request: Request,
    uid: str,
    engine: ProtocolEngine = Depends(get_engine),
    audit: AuditLogger = Depends(get_audit),
):
    response = await engine.interaction_finished(
        request, ACCESS_DENIED, merge_with_last_submission=False
    )
    await audit.record(EVENT_INTERACTION_ABORT, request)
    return response
