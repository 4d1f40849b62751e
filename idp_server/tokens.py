"""
JWT access and ID tokens, signed RS256 with the current key; verified by kid so tokens signed
with the previous (rotated) key stay valid.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone

import jwt

from idp_server.config import ACCESS_TOKEN_TTL, ID_TOKEN_TTL, ISSUER
from idp_server.keys import SIGNING_ALG, get_public_key_for_kid, get_signing_key

logger = logging.getLogger(__name__)


def _sign(payload: dict) -> str:
    private_key, kid = get_signing_key()
    token = jwt.encode(payload, private_key, algorithm=SIGNING_ALG, headers={"kid": kid, "typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def issue_access_token(sub: str, client_id: str, scope: str, ttl: int = ACCESS_TOKEN_TTL) -> str:
    now = datetime.now(timezone.utc)
    return _sign(
        {
            "iss": ISSUER,
            "sub": sub,
            "aud": client_id,
            "client_id": client_id,
            "jti": secrets.token_urlsafe(16),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
            "scope": scope,
        }
    )


def issue_id_token(sub: str, client_id: str, nonce: str | None, extra_claims: dict | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "sub": sub,
        "aud": client_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ID_TOKEN_TTL)).timestamp()),
    }
    if nonce:
        payload["nonce"] = nonce
    if extra_claims:
        for k, v in extra_claims.items():
            payload.setdefault(k, v)
    return _sign(payload)


def decode_token(token: str, audience: str | None = None) -> dict | None:
    """Verify signature (key by kid), issuer and expiry. Returns claims, or None if invalid."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
        public_key = get_public_key_for_kid(kid)
        if public_key is None:
            return None
        return jwt.decode(
            token,
            public_key,
            algorithms=[SIGNING_ALG],
            issuer=ISSUER,
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except jwt.InvalidTokenError as e:
        logger.debug("token rejected: %s", e)
        return None
