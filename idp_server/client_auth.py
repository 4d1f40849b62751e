"""
Client authentication at the token, introspection and revocation endpoints (RFC 6749 §2.3.1):
client_secret_basic (Authorization: Basic) or client_secret_post (form fields).
"""
import base64
import binascii
import logging

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from idp_server.models import Client
from idp_server.seed import verify_password

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header_value.strip()[6:].strip()).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id.strip(), client_secret


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """(client_id, client_secret) from the Basic header, else from the form."""
    basic = _parse_basic(request.headers.get("Authorization", ""))
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def _invalid_client(description: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"error": "invalid_client", "error_description": description},
        headers={"WWW-Authenticate": 'Basic realm="token"'},
    )


def require_client_auth(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """
    Resolve and authenticate the calling client. Public clients only need a known client_id;
    confidential clients must present the right secret. Raises 401 invalid_client otherwise.
    """
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not client_id:
        raise _invalid_client("client_id is required")
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if not client:
        raise _invalid_client("Unknown client")
    if client.is_confidential:
        if not client_secret or not verify_password(client_secret, client.client_secret_hash):
            logger.info("client authentication failed for client_id=%s", client_id)
            raise _invalid_client("Invalid client credentials")
    return client
