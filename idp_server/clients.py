"""
Statically configured clients, seeded into the clients table at startup.
Secrets here are development defaults; override or remove for real deployments.
"""

DEFAULT_CLIENTS = [
    # Authorization code flow with PKCE
    {
        "client_id": "auth_test",
        "client_secret": "123",
        "application_type": "web",
        "redirect_uris": ["http://localhost:3001/auth"],
        "response_types": ["code"],
        "grant_types": ["refresh_token", "authorization_code"],
        "post_logout_redirect_uris": ["http://localhost:3001/"],
        "scope": "openid profile",
        "token_endpoint_auth_method": "client_secret_basic",
    },
    # Client credentials flow
    {
        "client_id": "test",
        "client_secret": "test",
        "application_type": "web",
        "redirect_uris": [],
        "response_types": [],
        "grant_types": ["client_credentials"],
        "post_logout_redirect_uris": [],
        "token_endpoint_auth_method": "client_secret_basic",
    },
]
