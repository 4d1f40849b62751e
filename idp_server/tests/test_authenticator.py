"""
Tests for the Authenticator: success, uniform failure, and the dummy hash check for unknown login ids.
"""
import asyncio
import logging

import pytest

from idp_server import authenticator as authenticator_module
from idp_server.account_store import AccountRecord, AccountStore, MemoryAccountStore
from idp_server.authenticator import Authenticator
from idp_server.errors import StoreIOError
from idp_server.seed import hash_password


class FailingStore(AccountStore):
    name = "failing"

    async def lookup_by_login_id(self, login_id):
        raise StoreIOError(self.name, "unreachable")

    async def lookup_by_id(self, account_id):
        raise StoreIOError(self.name, "unreachable")


@pytest.fixture(scope="module")
def store():
    return MemoryAccountStore([AccountRecord(id="u1", login_id="alice", credential_secret=hash_password("s3cret"))])


def _authenticate(store, login_id, secret):
    return asyncio.run(Authenticator(store).authenticate(login_id, secret))


def test_valid_credentials_return_account_id(store):
    assert _authenticate(store, "alice", "s3cret") == "u1"


def test_wrong_secret_is_none(store):
    assert _authenticate(store, "alice", "wrong") is None


def test_unknown_login_id_is_none(store):
    assert _authenticate(store, "mallory", "s3cret") is None


def test_login_id_match_is_case_sensitive(store):
    assert _authenticate(store, "ALICE", "s3cret") is None


def test_empty_inputs_are_none(store):
    assert _authenticate(store, "", "") is None


def test_store_failure_is_none():
    assert _authenticate(FailingStore(), "alice", "s3cret") is None


def test_non_string_input_is_type_error(store):
    with pytest.raises(TypeError):
        _authenticate(store, None, "s3cret")
    with pytest.raises(TypeError):
        _authenticate(store, "alice", 123)


def test_unknown_login_id_still_runs_one_hash_check(store, monkeypatch):
    calls = []
    real_verify = authenticator_module.verify_password

    def counting_verify(plain, hashed):
        calls.append(hashed)
        return real_verify(plain, hashed)

    monkeypatch.setattr(authenticator_module, "verify_password", counting_verify)
    assert _authenticate(store, "mallory", "whatever") is None
    assert _authenticate(store, "alice", "wrong") is None
    assert len(calls) == 2
    assert calls[0] == authenticator_module._DUMMY_HASH


def test_secret_never_logged(store, caplog):
    caplog.set_level(logging.DEBUG)
    _authenticate(store, "alice", "do-not-log-me")
    _authenticate(FailingStore(), "alice", "do-not-log-me")
    assert "do-not-log-me" not in caplog.text
    assert "alice" in caplog.text
