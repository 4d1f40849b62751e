"""
Account resolution: store record -> Identity (subject id + full claims), and the pure scope filter
the engine uses whenever it materializes claims for a token, userinfo or an account-selection screen.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from idp_server.account_store import AccountRecord, AccountStore
from idp_server.config import CLAIMS_BY_SCOPE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    subject_id: str
    claims: dict[str, Any] = field(default_factory=dict)


def identity_from_record(record: AccountRecord) -> Identity:
    return Identity(
        subject_id=record.id,
        claims={"sub": record.id, "loginId": record.login_id},
    )


def _scope_names(scope: str | list[str] | set[str] | None) -> set[str]:
    if not scope:
        return set()
    if isinstance(scope, str):
        return {s for s in scope.split() if s}
    return {s for s in scope if s}


def claims_for_scope(
    identity: Identity,
    scope: str | list[str] | set[str] | None,
    claims_by_scope: dict[str, list[str]] | None = None,
) -> dict[str, Any]:
    """
    Claims of identity visible under the requested scope. "sub" is always included.
    Pure: same identity and scope give the same dict.
    """
    mapping = CLAIMS_BY_SCOPE if claims_by_scope is None else claims_by_scope
    visible = {"sub"}
    for name in _scope_names(scope):
        visible.update(mapping.get(name, []))
    claims = {k: v for k, v in identity.claims.items() if k in visible}
    claims["sub"] = identity.subject_id
    return claims


class AccountResolver:
    def __init__(self, store: AccountStore):
        self.store = store

    async def resolve(self, subject_id: str) -> Identity | None:
        """Identity for subject_id, or None when the account no longer exists. StoreIOError propagates."""
        record = await self.store.lookup_by_id(subject_id)
        if record is None:
            logger.debug("resolve: no account for subject %s", subject_id)
            return None
        return identity_from_record(record)
