"""
Identity provider configuration. Values come from the environment; defaults suit local development.
No secrets in this file except the documented dev-only defaults.
"""
import os

# Issuer URL (public identifier)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:8888").rstrip("/")
PORT = int(os.environ.get("AUTH_PORT", "8888"))

# SQLite DB for engine state (interactions, sessions, grants, codes) and the "sql" account store
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./idp_server.db")

# Which account store backs login and claims: memory | sql | redis | mongodb. Read once at startup.
ACCOUNT_STORE = os.environ.get("IDP_ACCOUNT_STORE", "memory").strip().lower()

REDIS_URL = os.environ.get("IDP_REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX = os.environ.get("IDP_REDIS_PREFIX", "idp:account")

MONGO_URL = os.environ.get("IDP_MONGO_URL", "mongodb://localhost:27017")
MONGO_DB = os.environ.get("IDP_MONGO_DB", "idp")
MONGO_COLLECTION = os.environ.get("IDP_MONGO_COLLECTION", "users")

# Lifetimes (seconds)
ACCESS_TOKEN_TTL = int(os.environ.get("OAUTH_ACCESS_TOKEN_TTL", "3600"))
CLIENT_CREDENTIALS_TTL = int(os.environ.get("OAUTH_CLIENT_CREDENTIALS_TTL", "600"))
AUTHORIZATION_CODE_TTL = int(os.environ.get("OAUTH_AUTHORIZATION_CODE_TTL", "600"))
ID_TOKEN_TTL = int(os.environ.get("OAUTH_ID_TOKEN_TTL", "3600"))
INTERACTION_TTL = int(os.environ.get("OAUTH_INTERACTION_TTL", "3600"))
SESSION_TTL = int(os.environ.get("OAUTH_SESSION_TTL", "3600"))
GRANT_TTL = int(os.environ.get("OAUTH_GRANT_TTL", "1209600"))
REFRESH_TOKEN_TTL = int(os.environ.get("OAUTH_REFRESH_TOKEN_TTL", "1209600"))

# Cookie names used by the engine
SESSION_COOKIE = "_custom_auth_session"
INTERACTION_COOKIE = "_interaction"
RESUME_COOKIE = "_interaction_resume"
# Secure cookies allow SameSite=None on the session cookie (cross-site RP flows over https)
COOKIE_SECURE = os.environ.get("OAUTH_COOKIE_SECURE", "false").lower() == "true"

# Claims released per scope
CLAIMS_BY_SCOPE: dict[str, list[str]] = {
    "openid": ["sub"],
    "profile": ["loginId"],
}
ALLOWED_SCOPES = set(CLAIMS_BY_SCOPE)

# PKCE: only S256, required for authorization_code
PKCE_METHODS = ["S256"]
PKCE_REQUIRED = True

# Dynamic client registration. Unset token disables the endpoint.
REGISTRATION_INITIAL_TOKEN = os.environ.get("OAUTH_REGISTRATION_INITIAL_TOKEN", "").strip() or None

# RSA signing key (generated and persisted on first start if missing)
SIGNING_KEY_PATH = os.environ.get("OAUTH_SIGNING_KEY_PATH", ".idp_signing_key.pem")
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("OAUTH_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# Per-IP limits, per minute
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))

LOG_LEVEL = os.environ.get("IDP_LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.environ.get("IDP_CORS_ORIGINS", "*").split(",") if o.strip()]
