"""
Account stores: one lookup interface over several backends (memory, SQL, Redis, MongoDB).
Lookups are exact, case-sensitive matches. A missing account is None; a failing backend raises StoreIOError.
The active store is chosen once at startup (IDP_ACCOUNT_STORE) and handed to the app as an explicit handle.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable

from redis.exceptions import RedisError
from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from idp_server import config
from idp_server.errors import StoreIOError
from idp_server.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountRecord:
    id: str
    login_id: str
    # Verifier material (bcrypt hash); never the plain secret
    credential_secret: str


class AccountStore(ABC):
    name = "abstract"

    @abstractmethod
    async def lookup_by_login_id(self, login_id: str) -> AccountRecord | None:
        ...

    @abstractmethod
    async def lookup_by_id(self, account_id: str) -> AccountRecord | None:
        ...

    async def close(self) -> None:
        """Release backend connections. No-op for stores without any."""


class MemoryAccountStore(AccountStore):
    """In-process table, filled once at construction."""
    name = "memory"

    def __init__(self, records: Iterable[AccountRecord] = ()):
        self._by_id: dict[str, AccountRecord] = {}
        self._by_login_id: dict[str, AccountRecord] = {}
        for record in records:
            if record.id in self._by_id:
                raise ValueError(f"Duplicate account id: {record.id}")
            if record.login_id in self._by_login_id:
                raise ValueError(f"Duplicate loginId: {record.login_id}")
            self._by_id[record.id] = record
            self._by_login_id[record.login_id] = record

    async def lookup_by_login_id(self, login_id: str) -> AccountRecord | None:
        return self._by_login_id.get(login_id)

    async def lookup_by_id(self, account_id: str) -> AccountRecord | None:
        return self._by_id.get(account_id)

    def __len__(self) -> int:
        return len(self._by_id)


class SqlAccountStore(AccountStore):
    """Accounts table via SQLAlchemy; queries run in the threadpool."""
    name = "sql"

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _query(self, column, value: str) -> AccountRecord | None:
        db = self._session_factory()
        try:
            row = db.query(Account).filter(column == value).first()
            if row is None:
                return None
            return AccountRecord(id=row.id, login_id=row.login_id, credential_secret=row.password_hash)
        except SQLAlchemyError as e:
            raise StoreIOError(self.name, str(e)) from e
        finally:
            db.close()

    async def lookup_by_login_id(self, login_id: str) -> AccountRecord | None:
        return await run_in_threadpool(self._query, Account.login_id, login_id)

    async def lookup_by_id(self, account_id: str) -> AccountRecord | None:
        return await run_in_threadpool(self._query, Account.id, account_id)


def _record_from_document(backend: str, doc: dict[str, Any]) -> AccountRecord:
    """Build a record from the {id, loginId, loginPassword} document shape shared by remote stores."""
    try:
        return AccountRecord(
            id=str(doc["id"]),
            login_id=str(doc["loginId"]),
            credential_secret=str(doc["loginPassword"]),
        )
    except KeyError as e:
        raise StoreIOError(backend, f"malformed account document, missing {e.args[0]}") from e


class RedisAccountStore(AccountStore):
    """
    Accounts in Redis:
      {prefix}:id:{id}            hash with id, loginId, loginPassword
      {prefix}:login:{loginId}    string holding the account id
    The client must be created with decode_responses=True.
    """
    name = "redis"

    def __init__(self, client, prefix: str = "idp:account"):
        self._client = client
        self._prefix = prefix

    def _id_key(self, account_id: str) -> str:
        return f"{self._prefix}:id:{account_id}"

    def _login_key(self, login_id: str) -> str:
        return f"{self._prefix}:login:{login_id}"

    async def lookup_by_id(self, account_id: str) -> AccountRecord | None:
        try:
            doc = await self._client.hgetall(self._id_key(account_id))
        except RedisError as e:
            raise StoreIOError(self.name, str(e)) from e
        if not doc:
            return None
        return _record_from_document(self.name, doc)

    async def lookup_by_login_id(self, login_id: str) -> AccountRecord | None:
        try:
            account_id = await self._client.get(self._login_key(login_id))
        except RedisError as e:
            raise StoreIOError(self.name, str(e)) from e
        if account_id is None:
            return None
        record = await self.lookup_by_id(account_id)
        # Stale index entry pointing at another login id is treated as absent
        if record is None or record.login_id != login_id:
            return None
        return record

    async def close(self) -> None:
        await self._client.aclose()


class MongoAccountStore(AccountStore):
    """Accounts as documents {id, loginId, loginPassword} in a MongoDB collection (motor)."""
    name = "mongodb"

    def __init__(self, collection, client=None):
        self._collection = collection
        self._client = client

    async def _find_one(self, query: dict) -> AccountRecord | None:
        try:
            doc = await self._collection.find_one(query)
        except PyMongoError as e:
            raise StoreIOError(self.name, str(e)) from e
        if doc is None:
            return None
        return _record_from_document(self.name, doc)

    async def lookup_by_login_id(self, login_id: str) -> AccountRecord | None:
        return await self._find_one({"loginId": login_id})

    async def lookup_by_id(self, account_id: str) -> AccountRecord | None:
        return await self._find_one({"id": account_id})

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()


def create_account_store(kind: str, session_factory=None) -> AccountStore:
    """
    Build the configured store. Called once at startup.
    Unknown kinds are a configuration error.
    """
    kind = (kind or "").strip().lower()
    if kind == "memory":
        from idp_server.seed import default_memory_records

        store: AccountStore = MemoryAccountStore(default_memory_records())
    elif kind == "sql":
        if session_factory is None:
            from idp_server.database import SessionLocal

            session_factory = SessionLocal
        store = SqlAccountStore(session_factory)
    elif kind == "redis":
        import redis.asyncio as aioredis

        store = RedisAccountStore(
            aioredis.from_url(config.REDIS_URL, decode_responses=True),
            prefix=config.REDIS_PREFIX,
        )
    elif kind == "mongodb":
        from motor.motor_asyncio import AsyncIOMotorClient

        client = AsyncIOMotorClient(config.MONGO_URL)
        store = MongoAccountStore(client[config.MONGO_DB][config.MONGO_COLLECTION], client=client)
    else:
        raise ValueError(f"Unknown account store: {kind!r} (expected memory, sql, redis or mongodb)")
    logger.info("Account store: %s", store.name)
    return store
