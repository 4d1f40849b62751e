"""
Audit logging. Security-relevant events only; no tokens, passwords, or request bodies.
"""
import logging

from fastapi import Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from idp_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CONSENT_ALLOW = "consent_allow"
EVENT_INTERACTION_ABORT = "interaction_abort"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_CLIENT_REGISTERED = "client_registered"
EVENT_CLIENT_UPDATED = "client_updated"
EVENT_CLIENT_DELETED = "client_deleted"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host); forwarded headers are handled by the server."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    account_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens or passwords."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            account_id=account_id,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()
    logger.info("audit %s client_id=%s account_id=%s outcome=%s", event_type, client_id, account_id, outcome)


class AuditLogger:
    """Async front for log_audit, used from handlers that hold no DB session."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _write(self, event_type: str, **kwargs) -> None:
        db = self._session_factory()
        try:
            log_audit(db, event_type, **kwargs)
        finally:
            db.close()

    async def record(
        self,
        event_type: str,
        request: Request | None = None,
        *,
        client_id: str | None = None,
        account_id: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
    ) -> None:
        await run_in_threadpool(
            self._write,
            event_type,
            client_id=client_id,
            account_id=account_id,
            ip=get_client_ip(request),
            outcome=outcome,
        )
