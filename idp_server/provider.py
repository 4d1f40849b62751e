"""
In-process OIDC engine state: interactions, login sessions, grants and authorization codes.

The interaction controller talks to this class only through the ProtocolEngine methods
(interaction_details, interaction_finished, find_client). The /authorize router uses the rest.
Interaction uids are bound to the browser by path-scoped cookies: "_interaction" for
/interaction/{uid} and "_interaction_resume" for /authorize/resume/{uid}.
"""
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from idp_server import config
from idp_server.errors import SessionStateError
from idp_server.interaction_types import (
    InteractionSession,
    PriorSession,
    Prompt,
    ResumeResult,
    result_to_payload,
)
from idp_server.models import AuthorizationCode, Client, Grant, Interaction, LoginSession

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _expired(at: datetime) -> bool:
    # SQLite returns naive datetimes; values are always stored in UTC
    return at.replace(tzinfo=timezone.utc) < _now()


def _scope_set(scope: str | None) -> set[str]:
    return {s for s in (scope or "").split() if s}


# Result kinds each prompt accepts; "error" (abort) is accepted everywhere
_ACCEPTED_RESULTS = {
    "login": {"login"},
    "select_account": {"select_account", "login"},
    "consent": {"consent"},
}


def _result_kind(payload: dict) -> str:
    if "error" in payload:
        return "error"
    (kind,) = payload.keys()
    return kind


@dataclass(frozen=True)
class FinishedInteraction:
    """A consumed interaction, as the resume endpoint sees it."""
    uid: str
    client_id: str
    params: dict
    result: dict


class Provider:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    # --- ProtocolEngine interface (async, used by the interaction controller) ---

    async def interaction_details(self, request: Request) -> InteractionSession:
        uid = request.path_params.get("uid")
        cookie_uid = request.cookies.get(config.INTERACTION_COOKIE)
        return await run_in_threadpool(self._interaction_details, uid, cookie_uid)

    async def interaction_finished(
        self,
        request: Request,
        result: ResumeResult,
        *,
        merge_with_last_submission: bool,
    ) -> Response:
        uid = request.path_params.get("uid")
        cookie_uid = request.cookies.get(config.INTERACTION_COOKIE)
        await run_in_threadpool(
            self._finish_interaction, uid, cookie_uid, result_to_payload(result), merge_with_last_submission
        )
        response = RedirectResponse(url=f"/authorize/resume/{uid}", status_code=303)
        response.delete_cookie(config.INTERACTION_COOKIE, path=f"/interaction/{uid}")
        return response

    async def find_client(self, client_id: str | None) -> Client | None:
        if not client_id:
            return None
        return await run_in_threadpool(self._find_client, client_id)

    # --- sync internals ---

    def _find_client(self, client_id: str) -> Client | None:
        db = self._session_factory()
        try:
            return self.get_client(db, client_id)
        finally:
            db.close()

    def _check_cookie(self, uid: str | None, cookie_uid: str | None) -> str:
        if not uid:
            raise SessionStateError("interaction uid missing")
        if cookie_uid != uid:
            raise SessionStateError("interaction session not found for this browser", uid=uid)
        return uid

    def _interaction_details(self, uid: str | None, cookie_uid: str | None) -> InteractionSession:
        uid = self._check_cookie(uid, cookie_uid)
        db = self._session_factory()
        try:
            row = db.query(Interaction).filter(Interaction.uid == uid).first()
            if row is None or row.finished or _expired(row.expires_at):
                raise SessionStateError("interaction session not found or expired", uid=uid)
            session = None
            if row.session_uid and row.account_id:
                session = PriorSession(uid=row.session_uid, account_id=row.account_id)
            return InteractionSession(
                uid=row.uid,
                prompt=Prompt(
                    name=row.prompt_name,
                    reasons=json.loads(row.prompt_reasons or "[]"),
                    details=json.loads(row.prompt_details or "{}"),
                ),
                params=row.get_params(),
                session=session,
                last_submission=row.get_last_submission(),
            )
        finally:
            db.close()

    def _finish_interaction(self, uid: str | None, cookie_uid: str | None, payload: dict, merge: bool) -> None:
        uid = self._check_cookie(uid, cookie_uid)
        db = self._session_factory()
        try:
            row = db.query(Interaction).filter(Interaction.uid == uid).first()
            if row is None or row.finished or _expired(row.expires_at):
                raise SessionStateError("interaction session not found or expired", uid=uid)
            kind = _result_kind(payload)
            if kind != "error" and kind not in _ACCEPTED_RESULTS.get(row.prompt_name, set()):
                raise SessionStateError(f"{kind} result does not answer prompt {row.prompt_name}", uid=uid)
            result = {**row.get_last_submission(), **payload} if merge else payload
            # Conditional update: only one finish per uid wins
            updated = (
                db.query(Interaction)
                .filter(Interaction.uid == uid, Interaction.finished.is_(False))
                .update({"result": json.dumps(result), "finished": True}, synchronize_session=False)
            )
            db.commit()
            if updated != 1:
                raise SessionStateError("interaction already finished", uid=uid)
            logger.debug("interaction %s finished with %s", uid, sorted(result))
        finally:
            db.close()

    # --- used by the /authorize router (sync, caller owns the DB session) ---

    def get_client(self, db: Session, client_id: str) -> Client | None:
        return db.query(Client).filter(Client.client_id == client_id).first()

    def current_session(self, db: Session, request: Request) -> PriorSession | None:
        uid = request.cookies.get(config.SESSION_COOKIE)
        if not uid:
            return None
        row = db.query(LoginSession).filter(LoginSession.uid == uid).first()
        if row is None or _expired(row.expires_at):
            return None
        return PriorSession(uid=row.uid, account_id=row.account_id)

    def create_session(self, db: Session, account_id: str, previous: PriorSession | None = None) -> PriorSession:
        if previous is not None:
            self.end_session(db, previous.uid)
        uid = secrets.token_urlsafe(24)
        db.add(LoginSession(uid=uid, account_id=account_id, expires_at=_now() + timedelta(seconds=config.SESSION_TTL)))
        db.commit()
        return PriorSession(uid=uid, account_id=account_id)

    def end_session(self, db: Session, uid: str) -> None:
        db.query(LoginSession).filter(LoginSession.uid == uid).delete(synchronize_session=False)
        db.commit()

    def set_session_cookie(self, response: Response, session: PriorSession) -> None:
        response.set_cookie(
            config.SESSION_COOKIE,
            session.uid,
            max_age=config.SESSION_TTL,
            httponly=True,
            secure=config.COOKIE_SECURE,
            samesite="none" if config.COOKIE_SECURE else "lax",
        )

    def granted_scopes(self, db: Session, account_id: str, client_id: str) -> set[str]:
        grant = (
            db.query(Grant)
            .filter(Grant.account_id == account_id, Grant.client_id == client_id)
            .first()
        )
        if grant is None or _expired(grant.expires_at):
            return set()
        return grant.scopes()

    def add_grant(self, db: Session, account_id: str, client_id: str, scopes: set[str]) -> set[str]:
        """Merge scopes into the account's grant for client; returns the full granted set."""
        expires_at = _now() + timedelta(seconds=config.GRANT_TTL)
        grant = (
            db.query(Grant)
            .filter(Grant.account_id == account_id, Grant.client_id == client_id)
            .first()
        )
        if grant is None:
            grant = Grant(account_id=account_id, client_id=client_id, scope="", expires_at=expires_at)
            db.add(grant)
            merged = set(scopes)
        else:
            merged = (set() if _expired(grant.expires_at) else grant.scopes()) | scopes
            grant.expires_at = expires_at
        grant.scope = " ".join(sorted(merged))
        db.commit()
        return merged

    def next_prompt(
        self,
        db: Session,
        client: Client,
        params: dict,
        session: PriorSession | None,
        result: dict,
    ) -> Prompt | None:
        """The prompt still required before a code can be issued, or None."""
        requested = set((params.get("prompt") or "").split())
        if "select_account" in requested and not ({"select_account", "login"} & result.keys()):
            return Prompt(name="select_account", reasons=["select_account_prompt"])
        if session is None:
            return Prompt(name="login", reasons=["no_session"])
        if "login" in requested and "login" not in result:
            return Prompt(name="login", reasons=["login_prompt"])
        missing = _scope_set(params.get("scope")) - self.granted_scopes(db, session.account_id, client.client_id)
        if missing:
            return Prompt(
                name="consent",
                reasons=["op_scopes_missing"],
                details={"missingOIDCScope": sorted(missing)},
            )
        if "consent" in requested and "consent" not in result:
            return Prompt(name="consent", reasons=["consent_prompt"])
        return None

    def create_interaction(
        self,
        db: Session,
        client_id: str,
        params: dict,
        prompt: Prompt,
        session: PriorSession | None,
        last_submission: dict | None = None,
    ) -> str:
        uid = secrets.token_urlsafe(24)
        db.add(
            Interaction(
                uid=uid,
                client_id=client_id,
                prompt_name=prompt.name,
                prompt_reasons=json.dumps(prompt.reasons),
                prompt_details=json.dumps(prompt.details),
                params=json.dumps(params),
                session_uid=session.uid if session else None,
                account_id=session.account_id if session else None,
                last_submission=json.dumps(last_submission) if last_submission else None,
                expires_at=_now() + timedelta(seconds=config.INTERACTION_TTL),
            )
        )
        db.commit()
        logger.debug("interaction %s created for client_id=%s prompt=%s", uid, client_id, prompt.name)
        return uid

    def interaction_redirect(self, uid: str) -> RedirectResponse:
        """Send the browser to the interaction screens, binding the uid to it by cookies."""
        response = RedirectResponse(url=f"/interaction/{uid}", status_code=303)
        for name, path in (
            (config.INTERACTION_COOKIE, f"/interaction/{uid}"),
            (config.RESUME_COOKIE, f"/authorize/resume/{uid}"),
        ):
            response.set_cookie(
                name,
                uid,
                max_age=config.INTERACTION_TTL,
                path=path,
                httponly=True,
                secure=config.COOKIE_SECURE,
                samesite="lax",
            )
        return response

    def consume_interaction(self, db: Session, request: Request, uid: str) -> FinishedInteraction:
        """Take a finished interaction out of the store. A uid can be consumed once."""
        if request.cookies.get(config.RESUME_COOKIE) != uid:
            raise SessionStateError("interaction session not found for this browser", uid=uid)
        row = db.query(Interaction).filter(Interaction.uid == uid).first()
        if row is None or _expired(row.expires_at):
            raise SessionStateError("interaction session not found or expired", uid=uid)
        if not row.finished:
            raise SessionStateError("interaction has not been finished", uid=uid)
        finished = FinishedInteraction(
            uid=row.uid,
            client_id=row.client_id,
            params=row.get_params(),
            result=row.get_result(),
        )
        # Conditional delete: of concurrent resumes only the one that removes the row proceeds
        deleted = (
            db.query(Interaction)
            .filter(Interaction.uid == uid, Interaction.finished.is_(True))
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted != 1:
            raise SessionStateError("interaction already consumed", uid=uid)
        return finished

    def issue_code(self, db: Session, client_id: str, params: dict, account_id: str, scope: str) -> str:
        code = secrets.token_urlsafe(32)
        db.add(
            AuthorizationCode(
                code=code,
                client_id=client_id,
                redirect_uri=params["redirect_uri"],
                account_id=account_id,
                scope=scope,
                code_challenge=params.get("code_challenge") or None,
                code_challenge_method=params.get("code_challenge_method") or None,
                nonce=params.get("nonce") or None,
                expires_at=_now() + timedelta(seconds=config.AUTHORIZATION_CODE_TTL),
            )
        )
        db.commit()
        return code
