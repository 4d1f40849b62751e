"""
Tests for POST /token (authorization_code, refresh_token, client_credentials), /introspect and /revoke.
Authorization codes are inserted directly so these tests don't depend on the interaction screens.
"""
import hashlib
import secrets
import uuid
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from idp_server.account_store import AccountRecord, AccountStore, MemoryAccountStore
from idp_server.config import ACCESS_TOKEN_TTL, CLIENT_CREDENTIALS_TTL
from idp_server.database import SessionLocal
from idp_server.errors import StoreIOError
from idp_server.main import create_app
from idp_server.models import AuthorizationCode, RefreshToken
from idp_server.tokens import decode_token

REDIRECT_URI = "http://localhost:3001/auth"
AUTH_TEST = ("auth_test", "123")
CC_CLIENT = ("test", "test")


def _pkce_pair():
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _error(r) -> str:
    return (r.json().get("detail") or r.json()).get("error")


@pytest.fixture
def account():
    account_id = str(uuid.uuid4())
    return AccountRecord(id=account_id, login_id=f"tok-{account_id[:8]}", credential_secret="unused")


@pytest.fixture
def client(account):
    app = create_app(account_store=MemoryAccountStore([account]))
    with TestClient(app) as c:
        yield c


def _make_code(account_id, challenge, scope="openid profile", client_id="auth_test", expires_in=600, nonce="n-1"):
    code = secrets.token_urlsafe(32)
    db = SessionLocal()
    try:
        db.add(
            AuthorizationCode(
                code=code,
                client_id=client_id,
                redirect_uri=REDIRECT_URI,
                account_id=account_id,
                scope=scope,
                code_challenge=challenge,
                code_challenge_method="S256",
                nonce=nonce,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            )
        )
        db.commit()
    finally:
        db.close()
    return code


def _exchange(client, code, verifier, auth=AUTH_TEST, redirect_uri=REDIRECT_URI):
    return client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
        },
        auth=auth,
    )


def _tokens(client, account):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code(account.id, challenge), verifier)
    assert r.status_code == 200, r.text
    return r.json()


# --- authorization_code ---


def test_code_exchange(client, account):
    body = _tokens(client, account)
    assert body["expires_in"] == ACCESS_TOKEN_TTL
    access = decode_token(body["access_token"], audience="auth_test")
    assert access["sub"] == account.id
    assert access["client_id"] == "auth_test"
    id_claims = decode_token(body["id_token"], audience="auth_test")
    assert id_claims["nonce"] == "n-1"
    assert id_claims["loginId"] == account.login_id


def test_code_exchange_with_client_secret_post(client, account):
    verifier, challenge = _pkce_pair()
    r = client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": _make_code(account.id, challenge),
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
            "client_id": "auth_test",
            "client_secret": "123",
        },
    )
    assert r.status_code == 200, r.text


def test_openid_only_scope_has_no_login_id(client, account):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code(account.id, challenge, scope="openid"), verifier)
    id_claims = decode_token(r.json()["id_token"], audience="auth_test")
    assert "loginId" not in id_claims


def test_code_cannot_be_reused(client, account):
    verifier, challenge = _pkce_pair()
    code = _make_code(account.id, challenge)
    assert _exchange(client, code, verifier).status_code == 200
    r = _exchange(client, code, verifier)
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_expired_code(client, account):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code(account.id, challenge, expires_in=-1), verifier)
    assert _error(r) == "invalid_grant"


def test_redirect_uri_mismatch(client, account):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code(account.id, challenge), verifier, redirect_uri="http://localhost:3001/other")
    assert _error(r) == "invalid_grant"


def test_verifier_outside_pkce_charset_is_invalid_grant(client, account):
    _, challenge = _pkce_pair()
    code = _make_code(account.id, challenge)
    for verifier in ("\u00e9" * 43, "short", "a b" + "c" * 41):
        r = _exchange(client, code, verifier)
        assert r.status_code == 400
        assert _error(r) == "invalid_grant"


def test_missing_code_verifier(client, account):
    _, challenge = _pkce_pair()
    r = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": _make_code(account.id, challenge), "redirect_uri": REDIRECT_URI},
        auth=AUTH_TEST,
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_wrong_client_secret(client, account):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code(account.id, challenge), verifier, auth=("auth_test", "wrong"))
    assert r.status_code == 401
    assert _error(r) == "invalid_client"
    assert "WWW-Authenticate" in r.headers


def test_deleted_account_cannot_redeem(client):
    verifier, challenge = _pkce_pair()
    r = _exchange(client, _make_code("no-such-account", challenge), verifier)
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_store_failure_is_503(account):
    class DownStore(AccountStore):
        name = "down"

        async def lookup_by_login_id(self, login_id):
            raise StoreIOError(self.name, "timeout")

        async def lookup_by_id(self, account_id):
            raise StoreIOError(self.name, "timeout")

    with TestClient(create_app(account_store=DownStore())) as c:
        verifier, challenge = _pkce_pair()
        r = _exchange(c, _make_code(account.id, challenge), verifier)
    assert r.status_code == 503
    assert r.json()["error"] == "temporarily_unavailable"


def test_unsupported_grant_type(client):
    r = client.post("/token", data={"grant_type": "password"}, auth=AUTH_TEST)
    assert r.status_code == 400
    assert _error(r) == "unsupported_grant_type"


# --- refresh_token ---


def test_refresh_rotates_token(client, account):
    first = _tokens(client, account)
    r = client.post(
        "/token",
        data={"grant_type": "refresh_token", "refresh_token": first["refresh_token"]},
        auth=AUTH_TEST,
    )
    assert r.status_code == 200, r.text
    second = r.json()
    assert second["refresh_token"] != first["refresh_token"]
    assert decode_token(second["access_token"], audience="auth_test")["sub"] == account.id

    r = client.post(
        "/token",
        data={"grant_type": "refresh_token", "refresh_token": first["refresh_token"]},
        auth=AUTH_TEST,
    )
    assert _error(r) == "invalid_grant"


def test_refresh_can_narrow_scope(client, account):
    first = _tokens(client, account)
    r = client.post(
        "/token",
        data={"grant_type": "refresh_token", "refresh_token": first["refresh_token"], "scope": "openid"},
        auth=AUTH_TEST,
    )
    assert r.status_code == 200
    assert r.json()["scope"] == "openid"


def test_refresh_cannot_widen_scope(client, account):
    verifier, challenge = _pkce_pair()
    first = _exchange(client, _make_code(account.id, challenge, scope="openid"), verifier).json()
    r = client.post(
        "/token",
        data={"grant_type": "refresh_token", "refresh_token": first["refresh_token"], "scope": "openid profile"},
        auth=AUTH_TEST,
    )
    assert _error(r) == "invalid_scope"


# --- client_credentials ---


def test_client_credentials(client):
    r = client.post("/token", data={"grant_type": "client_credentials"}, auth=CC_CLIENT)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["expires_in"] == CLIENT_CREDENTIALS_TTL
    assert "id_token" not in body
    assert "refresh_token" not in body
    assert decode_token(body["access_token"], audience="test")["sub"] == "test"


def test_client_credentials_rejects_openid(client):
    r = client.post("/token", data={"grant_type": "client_credentials", "scope": "openid"}, auth=CC_CLIENT)
    assert _error(r) == "invalid_scope"


def test_grant_type_not_allowed_for_client(client):
    r = client.post("/token", data={"grant_type": "client_credentials"}, auth=AUTH_TEST)
    assert r.status_code == 400
    assert _error(r) == "unauthorized_client"


# --- introspection and revocation ---


def test_introspect_own_access_token(client):
    token = client.post("/token", data={"grant_type": "client_credentials"}, auth=CC_CLIENT).json()["access_token"]
    r = client.post("/introspect", data={"token": token}, auth=CC_CLIENT)
    assert r.status_code == 200
    assert r.json()["active"] is True
    assert r.json()["client_id"] == "test"


def test_introspect_other_clients_token_is_inactive(client):
    token = client.post("/token", data={"grant_type": "client_credentials"}, auth=CC_CLIENT).json()["access_token"]
    r = client.post("/introspect", data={"token": token}, auth=AUTH_TEST)
    assert r.json() == {"active": False}


def test_introspect_garbage_is_inactive(client):
    r = client.post("/introspect", data={"token": "not-a-token"}, auth=AUTH_TEST)
    assert r.json() == {"active": False}


def test_introspect_requires_client_auth(client):
    r = client.post("/introspect", data={"token": "x"})
    assert r.status_code == 401


def test_revoke_refresh_token(client, account):
    tokens = _tokens(client, account)
    r = client.post("/introspect", data={"token": tokens["refresh_token"], "token_type_hint": "refresh_token"}, auth=AUTH_TEST)
    assert r.json()["active"] is True

    r = client.post("/revoke", data={"token": tokens["refresh_token"]}, auth=AUTH_TEST)
    assert r.status_code == 200
    assert r.json() == {}

    db = SessionLocal()
    try:
        rt = db.query(RefreshToken).filter(RefreshToken.token == tokens["refresh_token"]).first()
        assert rt.revoked is True
    finally:
        db.close()
    r = client.post(
        "/token",
        data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        auth=AUTH_TEST,
    )
    assert _error(r) == "invalid_grant"


def test_revoke_unknown_token_is_ok(client):
    r = client.post("/revoke", data={"token": "unknown"}, auth=AUTH_TEST)
    assert r.status_code == 200


# --- userinfo ---


def test_userinfo_requires_openid_scope(client):
    token = client.post("/token", data={"grant_type": "client_credentials", "scope": "profile"}, auth=CC_CLIENT).json()[
        "access_token"
    ]
    r = client.get("/userinfo", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 403
    assert _error(r) == "insufficient_scope"


def test_userinfo_invalid_token(client):
    r = client.get("/userinfo", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401
