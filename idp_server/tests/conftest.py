"""
Pytest configuration for idp_server. In-memory SQLite and the memory account store,
so tests don't touch the filesystem or any network service.
"""
import os
import tempfile

# Must be set before idp_server.config is imported; database.py uses StaticPool for :memory:
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["IDP_ACCOUNT_STORE"] = "memory"
os.environ.setdefault("OAUTH_SIGNING_KEY_PATH", os.path.join(tempfile.gettempdir(), "idp_server_test_signing_key.pem"))
# Seed env would replace the dev account and registration would be switched on
for name in ("OAUTH_SEED_USER", "OAUTH_SEED_PASSWORD", "OAUTH_SEED_ACCOUNT_ID", "OAUTH_REGISTRATION_INITIAL_TOKEN"):
    os.environ.pop(name, None)
