"""
Token endpoint (POST /token): authorization_code (PKCE S256), refresh_token (rotating) and
client_credentials grants. Clients authenticate with client_secret_basic or client_secret_post.
"""
import hashlib
import hmac
import logging
import re
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from idp_server.accounts import AccountResolver, claims_for_scope
from idp_server.audit import (
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    get_client_ip,
    log_audit,
)
from idp_server.client_auth import require_client_auth
from idp_server.config import ACCESS_TOKEN_TTL, CLIENT_CREDENTIALS_TTL, REFRESH_TOKEN_TTL
from idp_server.database import get_db
from idp_server.dependencies import get_resolver, get_token_limiter
from idp_server.models import AuthorizationCode, Client, RefreshToken
from idp_server.rate_limit import SlidingWindowLimiter
from idp_server.tokens import issue_access_token, issue_id_token

logger = logging.getLogger(__name__)
router = APIRouter()


def _error(error: str, description: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "error_description": description})


def _expired(at: datetime) -> bool:
    return at.replace(tzinfo=timezone.utc) < datetime.now(timezone.utc)


# RFC 7636 section 4.1: unreserved characters, 43 to 128 long
_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


def _pkce_verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """Verify PKCE: S256 only; SHA256(verifier) base64url == challenge."""
    if method != "S256":
        return False
    if not _VERIFIER_RE.fullmatch(code_verifier):
        return False
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return hmac.compare_digest(computed, code_challenge)


@dataclass
class _Redeemed:
    """Account-bound grant being exchanged for tokens."""
    account_id: str
    scope: str
    nonce: str | None = None


def _redeem_code(
    db: Session,
    client: Client,
    code: str | None,
    redirect_uri: str | None,
    code_verifier: str | None,
) -> _Redeemed:
    if not code or not redirect_uri or not code_verifier:
        raise _error(
            "invalid_request",
            "code, redirect_uri, and code_verifier are required for authorization_code grant",
        )
    auth_code = db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()
    if not auth_code:
        raise _error("invalid_grant", "Invalid or expired authorization code")
    if auth_code.used:
        raise _error("invalid_grant", "Authorization code already used")
    if _expired(auth_code.expires_at):
        raise _error("invalid_grant", "Authorization code expired")
    if auth_code.client_id != client.client_id:
        raise _error("invalid_grant", "Client mismatch")
    if auth_code.redirect_uri != redirect_uri:
        raise _error("invalid_grant", "redirect_uri mismatch")
    if not _pkce_verify(code_verifier, auth_code.code_challenge or "", auth_code.code_challenge_method):
        raise _error("invalid_grant", "PKCE verification failed")

    auth_code.used = True
    db.commit()
    return _Redeemed(account_id=auth_code.account_id, scope=auth_code.scope or "", nonce=auth_code.nonce)


def _redeem_refresh_token(db: Session, client: Client, refresh_token: str | None, scope: str | None) -> _Redeemed:
    if not refresh_token:
        raise _error("invalid_request", "refresh_token is required")
    rt = db.query(RefreshToken).filter(RefreshToken.token == refresh_token).first()
    if not rt or rt.revoked:
        raise _error("invalid_grant", "Invalid or revoked refresh token")
    if _expired(rt.expires_at):
        raise _error("invalid_grant", "Refresh token expired")
    if rt.client_id != client.client_id:
        raise _error("invalid_grant", "Client mismatch")

    granted = set(rt.scope.split())
    if scope:
        requested = set(scope.split())
        if not requested <= granted:
            raise _error("invalid_scope", "Requested scope exceeds the original grant")
        granted = requested

    # Rotate: the presented token is spent whatever happens next
    rt.revoked = True
    db.commit()
    return _Redeemed(account_id=rt.account_id, scope=" ".join(sorted(granted)))


def _token_response(
    db: Session,
    request: Request,
    client: Client,
    redeemed: _Redeemed,
    claims: dict,
    grant_type: str,
) -> dict:
    access_token = issue_access_token(redeemed.account_id, client.client_id, redeemed.scope)
    response = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_TTL,
        "scope": redeemed.scope,
    }
    if "openid" in redeemed.scope.split():
        response["id_token"] = issue_id_token(redeemed.account_id, client.client_id, redeemed.nonce, claims)

    if client.grant_type_allowed("refresh_token"):
        rt_value = secrets.token_urlsafe(48)
        db.add(
            RefreshToken(
                token=rt_value,
                account_id=redeemed.account_id,
                client_id=client.client_id,
                scope=redeemed.scope,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=REFRESH_TOKEN_TTL),
            )
        )
        db.commit()
        response["refresh_token"] = rt_value

    log_audit(
        db,
        EVENT_TOKEN_REFRESHED if grant_type == "refresh_token" else EVENT_TOKEN_ISSUED,
        client_id=client.client_id,
        account_id=redeemed.account_id,
        ip=get_client_ip(request),
    )
    return response


def _client_credentials(db: Session, request: Request, client: Client, scope: str | None) -> dict:
    if not client.is_confidential:
        raise _error("unauthorized_client", "client_credentials requires a confidential client")
    requested = set((scope or "").split())
    if "openid" in requested:
        raise _error("invalid_scope", "openid is not available for client_credentials")
    if not client.scope_allowed(requested):
        raise _error("invalid_scope", "Requested scope not allowed for this client")
    scope_str = " ".join(sorted(requested))
    access_token = issue_access_token(client.client_id, client.client_id, scope_str, ttl=CLIENT_CREDENTIALS_TTL)
    log_audit(db, EVENT_TOKEN_ISSUED, client_id=client.client_id, ip=get_client_ip(request))
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": CLIENT_CREDENTIALS_TTL,
        "scope": scope_str,
    }


@router.post("/token")
async def token(
    request: Request,
    grant_type: str = Form(...),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    db: Session = Depends(get_db),
    resolver: AccountResolver = Depends(get_resolver),
    limiter: SlidingWindowLimiter = Depends(get_token_limiter),
):
    """
    authorization_code: code + PKCE verifier -> access_token, id_token (openid), refresh_token (if allowed).
    refresh_token: rotate the refresh token, new access_token (and id_token for openid).
    client_credentials: access_token for the client itself.
    """
    allowed, retry_after = limiter.check_and_consume(f"token:{get_client_ip(request) or 'unknown'}")
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "slow_down", "error_description": "Too many token requests"},
            headers={"Retry-After": str(retry_after)},
        )

    if grant_type not in ("authorization_code", "refresh_token", "client_credentials"):
        raise _error("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

    client = await run_in_threadpool(require_client_auth, db, request, client_id, client_secret)
    if not client.grant_type_allowed(grant_type):
        raise _error("unauthorized_client", f"Client may not use {grant_type}")

    if grant_type == "client_credentials":
        return await run_in_threadpool(_client_credentials, db, request, client, scope)
    if grant_type == "authorization_code":
        redeemed = await run_in_threadpool(_redeem_code, db, client, code, redirect_uri, code_verifier)
    else:
        redeemed = await run_in_threadpool(_redeem_refresh_token, db, client, refresh_token, scope)

    identity = await resolver.resolve(redeemed.account_id)
    if identity is None:
        raise _error("invalid_grant", "Account no longer exists")
    claims = claims_for_scope(identity, redeemed.scope)
    response = await run_in_threadpool(_token_response, db, request, client, redeemed, claims, grant_type)
    logger.info("%s grant: tokens issued for client_id=%s sub=%s", grant_type, client.client_id, redeemed.account_id)
    return response
