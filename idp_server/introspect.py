"""
Token introspection (POST /introspect), RFC 7662. The caller must authenticate as a client;
a client only learns about tokens issued to itself.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session

from idp_server.client_auth import require_client_auth
from idp_server.database import get_db
from idp_server.models import RefreshToken
from idp_server.tokens import decode_token

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/introspect")
def introspect(
    request: Request,
    token: str = Form(...),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """Return whether the token is active, and its claims when it is."""
    if not token or not token.strip():
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "error_description": "token is required"},
        )
    client = require_client_auth(db, request, client_id, client_secret)
    hint = (token_type_hint or "").strip().lower()
    token_value = token.strip()

    if hint in ("", "access_token"):
        payload = decode_token(token_value)
        if payload and payload.get("client_id") == client.client_id:
            return {
                "active": True,
                "token_type": "access_token",
                "scope": payload.get("scope", ""),
                "client_id": payload.get("client_id"),
                "sub": payload.get("sub"),
                "exp": payload.get("exp"),
                "iat": payload.get("iat"),
                "iss": payload.get("iss"),
                "aud": payload.get("aud"),
            }

    if hint in ("", "refresh_token"):
        rt = db.query(RefreshToken).filter(RefreshToken.token == token_value).first()
        if (
            rt
            and not rt.revoked
            and rt.client_id == client.client_id
            and rt.expires_at.replace(tzinfo=timezone.utc) >= datetime.now(timezone.utc)
        ):
            return {
                "active": True,
                "token_type": "refresh_token",
                "scope": rt.scope or "",
                "sub": rt.account_id,
                "exp": int(rt.expires_at.replace(tzinfo=timezone.utc).timestamp()),
                "client_id": rt.client_id,
            }

    return {"active": False}
