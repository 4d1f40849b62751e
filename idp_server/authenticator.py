"""
Credential check against the account store.
Unknown login id, wrong secret and store failures all look the same to the caller (None),
and take comparable time: an unknown login id still runs one bcrypt check against a dummy hash.
"""
import logging

from starlette.concurrency import run_in_threadpool

from idp_server.account_store import AccountStore
from idp_server.errors import StoreIOError
from idp_server.seed import hash_password, verify_password

logger = logging.getLogger(__name__)

# Same cost factor as real hashes, so the dummy check takes as long as a real one
_DUMMY_HASH = hash_password("not-a-real-password")


class Authenticator:
    def __init__(self, store: AccountStore):
        self.store = store

    async def authenticate(self, login_id: str, presented_secret: str) -> str | None:
        """Return the account id on success, None on any failure. Never logs the secret."""
        if not isinstance(login_id, str) or not isinstance(presented_secret, str):
            raise TypeError("login_id and presented_secret must be strings")

        try:
            record = await self.store.lookup_by_login_id(login_id)
        except StoreIOError as e:
            logger.warning("authenticate: account store unavailable (%s)", e)
            record = None

        # bcrypt is CPU-bound; keep it off the event loop
        hashed = record.credential_secret if record is not None else _DUMMY_HASH
        ok = await run_in_threadpool(verify_password, presented_secret, hashed)
        if record is None or not ok:
            logger.info("authenticate: failed for loginId=%s", login_id)
            return None
        return record.id
