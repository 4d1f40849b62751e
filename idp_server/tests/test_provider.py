"""
Tests for the in-process engine: prompt ordering, finishing interactions (merge, once only),
grants, and the wire shape of resume results.
"""
import asyncio
import json
import uuid

import pytest
from starlette.requests import Request

from idp_server.config import INTERACTION_COOKIE, RESUME_COOKIE
from idp_server.database import SessionLocal, init_db
from idp_server.errors import SessionStateError
from idp_server.interaction_types import (
    ACCESS_DENIED,
    ConsentResult,
    LoginResult,
    PriorSession,
    Prompt,
    PromptName,
    SelectAccountResult,
    result_to_payload,
)
from idp_server.models import Client, Interaction
from idp_server.provider import Provider
from idp_server.seed import seed_clients

PARAMS = {
    "client_id": "auth_test",
    "redirect_uri": "http://localhost:3001/auth",
    "response_type": "code",
    "scope": "openid profile",
}


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    seed_clients(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    return Provider(SessionLocal)


@pytest.fixture
def client_row(db):
    return db.query(Client).filter(Client.client_id == "auth_test").first()


@pytest.fixture
def session():
    return PriorSession(uid=f"s-{uuid.uuid4().hex}", account_id=str(uuid.uuid4()))


def _request(uid, cookie_uid=None):
    cookie = f"{INTERACTION_COOKIE}={cookie_uid or uid}".encode()
    return Request({"type": "http", "path_params": {"uid": uid}, "headers": [(b"cookie", cookie)]})


def _resume_request(uid):
    cookie = f"{RESUME_COOKIE}={uid}".encode()
    return Request({"type": "http", "path_params": {"uid": uid}, "headers": [(b"cookie", cookie)]})


# --- next_prompt ---


def test_no_session_needs_login(provider, db, client_row):
    prompt = provider.next_prompt(db, client_row, PARAMS, None, {})
    assert prompt.name == "login"


def test_session_without_grant_needs_consent(provider, db, client_row, session):
    prompt = provider.next_prompt(db, client_row, PARAMS, session, {})
    assert prompt.name == "consent"
    assert prompt.details == {"missingOIDCScope": ["openid", "profile"]}


def test_partial_grant_lists_missing_scopes(provider, db, client_row, session):
    provider.add_grant(db, session.account_id, "auth_test", {"openid"})
    prompt = provider.next_prompt(db, client_row, PARAMS, session, {})
    assert prompt.details == {"missingOIDCScope": ["profile"]}


def test_session_with_grant_needs_nothing(provider, db, client_row, session):
    provider.add_grant(db, session.account_id, "auth_test", {"openid", "profile"})
    assert provider.next_prompt(db, client_row, PARAMS, session, {}) is None


def test_select_account_comes_first(provider, db, client_row, session):
    params = {**PARAMS, "prompt": "select_account"}
    assert provider.next_prompt(db, client_row, params, session, {}).name == "select_account"
    assert provider.next_prompt(db, client_row, params, None, {}).name == "select_account"
    # Answered by either a selection or a fresh login
    assert provider.next_prompt(db, client_row, params, None, {"select_account": {}}).name == "login"
    assert provider.next_prompt(db, client_row, params, session, {"login": {"account": "x"}}).name == "consent"


def test_prompt_login_with_session(provider, db, client_row, session):
    provider.add_grant(db, session.account_id, "auth_test", {"openid", "profile"})
    params = {**PARAMS, "prompt": "login"}
    assert provider.next_prompt(db, client_row, params, session, {}).name == "login"
    assert provider.next_prompt(db, client_row, params, session, {"login": {"account": session.account_id}}) is None


def test_prompt_consent_with_grant(provider, db, client_row, session):
    provider.add_grant(db, session.account_id, "auth_test", {"openid", "profile"})
    params = {**PARAMS, "prompt": "consent"}
    assert provider.next_prompt(db, client_row, params, session, {}).name == "consent"
    assert provider.next_prompt(db, client_row, params, session, {"consent": {}}) is None


def test_grants_accumulate(provider, db, session):
    assert provider.add_grant(db, session.account_id, "auth_test", {"openid"}) == {"openid"}
    assert provider.add_grant(db, session.account_id, "auth_test", {"profile"}) == {"openid", "profile"}
    assert provider.granted_scopes(db, session.account_id, "auth_test") == {"openid", "profile"}
    assert provider.granted_scopes(db, session.account_id, "other") == set()


# --- interaction lifecycle ---


def test_interaction_details_round_trip(provider, db, session):
    uid = provider.create_interaction(
        db, "auth_test", PARAMS, Prompt(name="consent", reasons=["op_scopes_missing"]), session,
        last_submission={"login": {"account": session.account_id}},
    )
    details = asyncio.run(provider.interaction_details(_request(uid)))
    assert details.uid == uid
    assert details.prompt.kind is PromptName.CONSENT
    assert details.prompt.reasons == ["op_scopes_missing"]
    assert details.client_id == "auth_test"
    assert details.scopes == ["openid", "profile"]
    assert details.session == session
    assert details.last_submission == {"login": {"account": session.account_id}}


def test_interaction_details_rejects_foreign_cookie(provider, db):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name="login"), None)
    with pytest.raises(SessionStateError):
        asyncio.run(provider.interaction_details(_request(uid, cookie_uid="someone-else")))


def test_finish_with_merge_keeps_earlier_submission(provider, db, session):
    uid = provider.create_interaction(
        db, "auth_test", PARAMS, Prompt(name="consent"), session,
        last_submission={"login": {"account": session.account_id}},
    )
    response = asyncio.run(provider.interaction_finished(_request(uid), ConsentResult(), merge_with_last_submission=True))
    assert response.status_code == 303
    assert response.headers["location"] == f"/authorize/resume/{uid}"
    db.expire_all()
    row = db.query(Interaction).filter(Interaction.uid == uid).first()
    assert json.loads(row.result) == {"login": {"account": session.account_id}, "consent": {}}


def test_finish_without_merge_replaces_submission(provider, db, session):
    uid = provider.create_interaction(
        db, "auth_test", PARAMS, Prompt(name="login"), session,
        last_submission={"consent": {}},
    )
    asyncio.run(provider.interaction_finished(_request(uid), LoginResult(account="u9"), merge_with_last_submission=False))
    db.expire_all()
    row = db.query(Interaction).filter(Interaction.uid == uid).first()
    assert json.loads(row.result) == {"login": {"account": "u9"}}


def test_finish_only_once(provider, db):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name="login"), None)
    asyncio.run(provider.interaction_finished(_request(uid), ACCESS_DENIED, merge_with_last_submission=False))
    with pytest.raises(SessionStateError):
        asyncio.run(provider.interaction_finished(_request(uid), LoginResult(account="u1"), merge_with_last_submission=False))
    with pytest.raises(SessionStateError):
        asyncio.run(provider.interaction_details(_request(uid)))


def test_find_client(provider, db):
    assert asyncio.run(provider.find_client("auth_test")).client_id == "auth_test"
    assert asyncio.run(provider.find_client("missing")) is None
    assert asyncio.run(provider.find_client(None)) is None


# --- results and prompt names ---


def test_result_payloads_have_one_key():
    assert result_to_payload(LoginResult(account="u1")) == {"login": {"account": "u1"}}
    assert result_to_payload(ConsentResult()) == {"consent": {}}
    assert result_to_payload(SelectAccountResult()) == {"select_account": {}}
    assert result_to_payload(ACCESS_DENIED) == {
        "error": "access_denied",
        "error_description": "End-User aborted interaction",
    }
    with pytest.raises(TypeError):
        result_to_payload({"login": {}})


def test_unknown_prompt_name_maps_to_other():
    assert PromptName.parse("login") is PromptName.LOGIN
    assert PromptName.parse("select_account") is PromptName.SELECT_ACCOUNT
    assert PromptName.parse("mfa") is PromptName.OTHER
    assert Prompt(name="mfa").kind is PromptName.OTHER


# --- results must answer the current prompt ---


@pytest.mark.parametrize(
    "prompt_name,result",
    [
        ("login", ConsentResult()),
        ("login", SelectAccountResult()),
        ("consent", LoginResult(account="u1")),
        ("consent", SelectAccountResult()),
        ("select_account", ConsentResult()),
        ("mfa", LoginResult(account="u1")),
        ("mfa", ConsentResult()),
    ],
)
def test_finish_rejects_result_for_other_prompt(provider, db, session, prompt_name, result):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name=prompt_name), session)
    with pytest.raises(SessionStateError):
        asyncio.run(provider.interaction_finished(_request(uid), result, merge_with_last_submission=False))
    # Still open: the right answer is accepted afterwards
    asyncio.run(provider.interaction_finished(_request(uid), ACCESS_DENIED, merge_with_last_submission=False))


@pytest.mark.parametrize(
    "prompt_name,result",
    [
        ("login", LoginResult(account="u1")),
        ("select_account", SelectAccountResult()),
        ("select_account", LoginResult(account="u1")),
        ("consent", ConsentResult()),
        ("mfa", ACCESS_DENIED),
    ],
)
def test_finish_accepts_result_for_prompt(provider, db, session, prompt_name, result):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name=prompt_name), session)
    response = asyncio.run(provider.interaction_finished(_request(uid), result, merge_with_last_submission=False))
    assert response.status_code == 303


# --- consuming on resume ---


def _finished_interaction(provider, db):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name="login"), None)
    asyncio.run(provider.interaction_finished(_request(uid), LoginResult(account="u1"), merge_with_last_submission=False))
    return uid


def test_consume_returns_result_once(provider, db):
    uid = _finished_interaction(provider, db)
    finished = provider.consume_interaction(db, _resume_request(uid), uid)
    assert finished.result == {"login": {"account": "u1"}}
    assert finished.params == PARAMS
    with pytest.raises(SessionStateError):
        provider.consume_interaction(db, _resume_request(uid), uid)


def test_consume_loses_race_to_concurrent_resume(provider, db, monkeypatch):
    uid = _finished_interaction(provider, db)
    original_get_result = Interaction.get_result

    def consumed_meanwhile(row):
        # Another resume deletes the row between this one's read and its delete
        other = SessionLocal()
        try:
            other.query(Interaction).filter(Interaction.uid == uid).delete(synchronize_session=False)
            other.commit()
        finally:
            other.close()
        return original_get_result(row)

    monkeypatch.setattr(Interaction, "get_result", consumed_meanwhile)
    with pytest.raises(SessionStateError):
        provider.consume_interaction(db, _resume_request(uid), uid)


def test_consume_requires_finished_interaction(provider, db):
    uid = provider.create_interaction(db, "auth_test", PARAMS, Prompt(name="login"), None)
    with pytest.raises(SessionStateError):
        provider.consume_interaction(db, _resume_request(uid), uid)
