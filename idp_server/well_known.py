"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter

from idp_server.config import ALLOWED_SCOPES, CLAIMS_BY_SCOPE, ISSUER, PKCE_METHODS, REGISTRATION_INITIAL_TOKEN
from idp_server.keys import SIGNING_ALG, get_jwks

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json():
    """JSON Web Key Set for token signature verification."""
    return get_jwks()


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    """OpenID Connect discovery document."""
    doc = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "introspection_endpoint": f"{ISSUER}/introspect",
        "revocation_endpoint": f"{ISSUER}/revoke",
        "end_session_endpoint": f"{ISSUER}/logout",
        "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token", "client_credentials"],
        "scopes_supported": sorted(ALLOWED_SCOPES),
        "claims_supported": sorted({c for claims in CLAIMS_BY_SCOPE.values() for c in claims}),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALG],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "code_challenge_methods_supported": PKCE_METHODS,
        "prompt_values_supported": ["none", "login", "consent", "select_account"],
    }
    if REGISTRATION_INITIAL_TOKEN:
        doc["registration_endpoint"] = f"{ISSUER}/reg"
    return doc
