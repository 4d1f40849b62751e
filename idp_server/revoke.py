"""
Token revocation (POST /revoke), RFC 7009.
Refresh tokens are revoked server-side; access tokens are stateless JWTs and simply expire.
"""
import logging

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session

from idp_server.audit import EVENT_TOKEN_REVOKED, get_client_ip, log_audit
from idp_server.client_auth import require_client_auth
from idp_server.database import get_db
from idp_server.models import RefreshToken

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    token: str = Form(...),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """Always 200 for an authenticated client, even for unknown tokens, so nothing leaks."""
    if not token or not token.strip():
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "error_description": "token is required"})
    client = require_client_auth(db, request, client_id, client_secret)

    hint = (token_type_hint or "").strip().lower()
    if hint in ("", "refresh_token"):
        rt = db.query(RefreshToken).filter(RefreshToken.token == token.strip()).first()
        if rt and rt.client_id == client.client_id and not rt.revoked:
            rt.revoked = True
            db.commit()
            log_audit(
                db,
                EVENT_TOKEN_REVOKED,
                client_id=client.client_id,
                account_id=rt.account_id,
                ip=get_client_ip(request),
            )
            logger.debug("Revoked refresh token id=%s", rt.id)
    return {}
