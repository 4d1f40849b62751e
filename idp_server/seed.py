"""
Password hashing and startup seeding: static clients into the DB, and the initial accounts
for the memory and sql account stores.
Optional: OAUTH_SEED_USER + OAUTH_SEED_PASSWORD (+ OAUTH_SEED_ACCOUNT_ID) replace the dev account.
"""
import json
import logging
import os

import bcrypt
from sqlalchemy.orm import Session

from idp_server.account_store import AccountRecord
from idp_server.clients import DEFAULT_CLIENTS
from idp_server.models import Account, Client

logger = logging.getLogger(__name__)

# Development account (memory store default when no seed user is configured)
DEV_ACCOUNT_ID = "23121d3c-84df-44ac-b458-3d63a9a05497"
DEV_LOGIN_ID = "test"
DEV_PASSWORD = "test"


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


def _seed_credentials() -> tuple[str, str, str]:
    """(account_id, login_id, password) from env, or the dev account."""
    seed_user = os.environ.get("OAUTH_SEED_USER")
    seed_password = os.environ.get("OAUTH_SEED_PASSWORD")
    if seed_user and seed_password:
        account_id = os.environ.get("OAUTH_SEED_ACCOUNT_ID") or DEV_ACCOUNT_ID
        return account_id, seed_user, seed_password
    logger.warning("No OAUTH_SEED_USER/OAUTH_SEED_PASSWORD set; using development account %r", DEV_LOGIN_ID)
    return DEV_ACCOUNT_ID, DEV_LOGIN_ID, DEV_PASSWORD


def default_memory_records() -> list[AccountRecord]:
    account_id, login_id, password = _seed_credentials()
    return [AccountRecord(id=account_id, login_id=login_id, credential_secret=hash_password(password))]


def seed_sql_account(db: Session) -> None:
    """Create the seed account in the accounts table if its login id is free."""
    account_id, login_id, password = _seed_credentials()
    if db.query(Account).filter(Account.login_id == login_id).first() is None:
        db.add(Account(id=account_id, login_id=login_id, password_hash=hash_password(password)))
        db.commit()
        logger.info("Seeded account: %s", login_id)
    else:
        logger.debug("Account already exists: %s", login_id)


def seed_clients(db: Session, clients: list[dict] | None = None) -> None:
    """Insert statically configured clients that are not in the table yet."""
    for spec in DEFAULT_CLIENTS if clients is None else clients:
        client_id = spec["client_id"]
        if db.query(Client).filter(Client.client_id == client_id).first() is not None:
            logger.debug("Client already exists: %s", client_id)
            continue
        secret = spec.get("client_secret")
        db.add(
            Client(
                client_id=client_id,
                client_secret_hash=hash_password(secret) if secret else None,
                application_type=spec.get("application_type", "web"),
                redirect_uris=json.dumps(spec.get("redirect_uris", [])),
                post_logout_redirect_uris=json.dumps(spec.get("post_logout_redirect_uris", [])),
                response_types=json.dumps(spec.get("response_types", ["code"])),
                grant_types=json.dumps(spec.get("grant_types", ["authorization_code"])),
                scope=spec.get("scope"),
                token_endpoint_auth_method=spec.get("token_endpoint_auth_method", "client_secret_basic"),
            )
        )
        db.commit()
        logger.info("Seeded client: %s (confidential=%s)", client_id, bool(secret))
