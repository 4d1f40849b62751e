"""
OIDC UserInfo endpoint (GET /userinfo). Bearer access token required; claims come from the
account resolver, filtered by the token's scope.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from idp_server.accounts import AccountResolver, claims_for_scope
from idp_server.dependencies import get_resolver
from idp_server.tokens import decode_token

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=True)


def _invalid_token(description: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"error": "invalid_token", "error_description": description},
        headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
    )


@router.get("/userinfo")
async def userinfo(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    resolver: AccountResolver = Depends(get_resolver),
):
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _invalid_token("Invalid or expired token")
    scope = (payload.get("scope") or "").split()
    if "openid" not in scope:
        raise HTTPException(
            status_code=403,
            detail={"error": "insufficient_scope", "error_description": "openid scope required"},
        )
    identity = await resolver.resolve(payload.get("sub") or "")
    if identity is None:
        raise _invalid_token("Account not found")
    return claims_for_scope(identity, scope)
