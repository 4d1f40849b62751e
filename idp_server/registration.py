"""
Dynamic client registration (RFC 7591) and client configuration (RFC 7592).
POST /reg needs the initial access token (OAUTH_REGISTRATION_INITIAL_TOKEN); unset disables the endpoint.
GET, PUT and DELETE /reg/{client_id} need the registration access token returned at registration.
An update replaces the metadata and keeps that token.
"""
import hmac
import json
import logging
import secrets
import time
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from idp_server import config
from idp_server.audit import (
    EVENT_CLIENT_DELETED,
    EVENT_CLIENT_REGISTERED,
    EVENT_CLIENT_UPDATED,
    get_client_ip,
    log_audit,
)
from idp_server.database import get_db
from idp_server.models import AuthorizationCode, Client, Grant, RefreshToken
from idp_server.seed import hash_password, verify_password

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=False)

_AUTH_METHODS = {"client_secret_basic", "client_secret_post", "none"}
_GRANT_TYPES = {"authorization_code", "refresh_token", "client_credentials"}


class ClientRegistration(BaseModel):
    redirect_uris: list[str] = Field(default_factory=list)
    post_logout_redirect_uris: list[str] = Field(default_factory=list)
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code"])
    token_endpoint_auth_method: str = "client_secret_basic"
    application_type: str = "web"
    scope: str | None = None


class ClientUpdate(ClientRegistration):
    client_id: str
    client_secret: str | None = None


def _metadata_error(error: str, description: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": error, "error_description": description})


def _is_absolute_url(uri: str) -> bool:
    parsed = urlparse(uri)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and not parsed.fragment


def _validate(body: ClientRegistration) -> None:
    if body.token_endpoint_auth_method not in _AUTH_METHODS:
        raise _metadata_error("invalid_client_metadata", "unsupported token_endpoint_auth_method")
    unknown = set(body.grant_types) - _GRANT_TYPES
    if unknown:
        raise _metadata_error("invalid_client_metadata", f"unsupported grant_types: {', '.join(sorted(unknown))}")
    if set(body.response_types) - {"code"}:
        raise _metadata_error("invalid_client_metadata", "only response_type code is supported")
    if "authorization_code" in body.grant_types:
        if "code" not in body.response_types:
            raise _metadata_error("invalid_client_metadata", "authorization_code requires response_type code")
        if not body.redirect_uris:
            raise _metadata_error("invalid_redirect_uri", "redirect_uris is required")
    if "client_credentials" in body.grant_types and body.token_endpoint_auth_method == "none":
        raise _metadata_error("invalid_client_metadata", "client_credentials requires client authentication")
    for uri in body.redirect_uris + body.post_logout_redirect_uris:
        if not _is_absolute_url(uri):
            raise _metadata_error("invalid_redirect_uri", f"not an absolute http(s) URI: {uri}")
    if body.scope is not None and set(body.scope.split()) - config.ALLOWED_SCOPES:
        raise _metadata_error("invalid_client_metadata", "scope contains unsupported values")


def _bearer(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Bearer token required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


@router.post("/reg", status_code=201)
def register_client(
    request: Request,
    body: ClientRegistration,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    if not config.REGISTRATION_INITIAL_TOKEN:
        raise HTTPException(status_code=404, detail="Not Found")
    if not hmac.compare_digest(_bearer(credentials).encode("utf-8"), config.REGISTRATION_INITIAL_TOKEN.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Invalid initial access token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    _validate(body)

    client_id = secrets.token_urlsafe(16)
    client_secret = None if body.token_endpoint_auth_method == "none" else secrets.token_urlsafe(32)
    registration_token = secrets.token_urlsafe(32)
    client = Client(
        client_id=client_id,
        client_secret_hash=hash_password(client_secret) if client_secret else None,
        application_type=body.application_type,
        redirect_uris=json.dumps(body.redirect_uris),
        post_logout_redirect_uris=json.dumps(body.post_logout_redirect_uris),
        response_types=json.dumps(body.response_types),
        grant_types=json.dumps(body.grant_types),
        scope=body.scope,
        token_endpoint_auth_method=body.token_endpoint_auth_method,
        registration_access_token_hash=hash_password(registration_token),
    )
    db.add(client)
    db.commit()
    log_audit(db, EVENT_CLIENT_REGISTERED, client_id=client_id, ip=get_client_ip(request))

    response = client.to_metadata()
    response.update(
        {
            "client_id_issued_at": int(time.time()),
            "registration_access_token": registration_token,
            "registration_client_uri": f"{config.ISSUER}/reg/{client_id}",
        }
    )
    if client_secret:
        response["client_secret"] = client_secret
        response["client_secret_expires_at"] = 0
    return response


def _registered_client(db: Session, client_id: str, credentials: HTTPAuthorizationCredentials | None) -> Client:
    """The client the registration access token belongs to, or 401."""
    token = _bearer(credentials)
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if (
        client is None
        or not client.registration_access_token_hash
        or not verify_password(token, client.registration_access_token_hash)
    ):
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Invalid registration access token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return client


@router.get("/reg/{client_id}")
def read_client(
    client_id: str,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    return _registered_client(db, client_id, credentials).to_metadata()


@router.put("/reg/{client_id}")
def update_client(
    request: Request,
    client_id: str,
    body: ClientUpdate,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    client = _registered_client(db, client_id, credentials)
    if body.client_id != client_id:
        raise _metadata_error("invalid_client_metadata", "client_id does not match the registration")
    if body.client_secret is not None and not (
        client.client_secret_hash and verify_password(body.client_secret, client.client_secret_hash)
    ):
        raise _metadata_error("invalid_client_metadata", "client_secret does not match the registration")
    _validate(body)

    # Switching to a confidential auth method issues a secret; switching to "none" drops it
    client_secret = None
    if body.token_endpoint_auth_method == "none":
        client.client_secret_hash = None
    elif not client.client_secret_hash:
        client_secret = secrets.token_urlsafe(32)
        client.client_secret_hash = hash_password(client_secret)

    client.application_type = body.application_type
    client.redirect_uris = json.dumps(body.redirect_uris)
    client.post_logout_redirect_uris = json.dumps(body.post_logout_redirect_uris)
    client.response_types = json.dumps(body.response_types)
    client.grant_types = json.dumps(body.grant_types)
    client.scope = body.scope
    client.token_endpoint_auth_method = body.token_endpoint_auth_method
    db.commit()
    log_audit(db, EVENT_CLIENT_UPDATED, client_id=client_id, ip=get_client_ip(request))

    response = client.to_metadata()
    response["registration_client_uri"] = f"{config.ISSUER}/reg/{client_id}"
    if client_secret:
        response["client_secret"] = client_secret
        response["client_secret_expires_at"] = 0
    return response


@router.delete("/reg/{client_id}", status_code=204)
def delete_client(
    request: Request,
    client_id: str,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    client = _registered_client(db, client_id, credentials)
    db.query(Grant).filter(Grant.client_id == client_id).delete(synchronize_session=False)
    db.query(AuthorizationCode).filter(AuthorizationCode.client_id == client_id).delete(synchronize_session=False)
    db.query(RefreshToken).filter(RefreshToken.client_id == client_id).update(
        {"revoked": True}, synchronize_session=False
    )
    db.delete(client)
    db.commit()
    log_audit(db, EVENT_CLIENT_DELETED, client_id=client_id, ip=get_client_ip(request))
    logger.info("client %s deleted through its registration access token", client_id)
    return Response(status_code=204)
