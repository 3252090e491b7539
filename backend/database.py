from __future__ import annotations
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

from config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None
_store: Optional["Store"] = None


class DuplicateKeyError(Exception):
    """A write collided with a unique key (e.g. a second live payment for one target)."""


@dataclass
class PageResult:
    items: list[dict[str, Any]] = field(default_factory=list)
    total_items: int = 0
    total_pages: int = 0
    current_page: int = 1
    page_size: int = 10


def total_pages(total_items: int, page_size: int) -> int:
    return math.ceil(total_items / page_size) if page_size > 0 else 0


class Store:
    """Persistence capability used by the services.

    Documents are plain dicts keyed by "id". Filters are equality dicts,
    a value may also be {"$in": [...]}.
    """

    name = "abstract"

    async def find_one(self, collection: str, filter_dict: dict[str, Any]) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    async def find(self, collection: str, filter_dict: dict[str, Any] | None = None,
                   sort: tuple[str, bool] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, set_fields: dict[str, Any] | None = None,
                     unset: Iterable[str] = ()) -> bool:
        raise NotImplementedError

    async def page(self, collection: str, filter_dict: dict[str, Any], page: int, page_size: int,
                   sort_key: str, ascending: bool) -> PageResult:
        raise NotImplementedError

    def transaction(self):
        """Async context manager yielding a store whose writes commit or roll back together."""
        raise NotImplementedError

    async def ensure_indexes(self) -> None:
        return None

    async def collections(self) -> list[str]:
        return []


def to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    return value


def _to_mongo_filter(filter_dict: dict[str, Any] | None) -> dict[str, Any]:
    out = {}
    for key, value in (filter_dict or {}).items():
        out["_id" if key == "id" else key] = to_bson(value)
    return out


def _from_mongo(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return doc
    doc = {**doc}
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class MongoStore(Store):
    name = "mongo"

    def __init__(self, db: AsyncIOMotorDatabase, session=None):
        self.db = db
        self.session = session

    async def find_one(self, collection, filter_dict):
        doc = await self.db[collection].find_one(_to_mongo_filter(filter_dict), session=self.session)
        return _from_mongo(doc)

    async def find(self, collection, filter_dict=None, sort=None):
        cursor = self.db[collection].find(_to_mongo_filter(filter_dict), session=self.session)
        if sort:
            key, ascending = sort
            cursor = cursor.sort(key, ASCENDING if ascending else DESCENDING)
        return [_from_mongo(d) async for d in cursor]

    async def insert(self, collection, doc):
        data = to_bson({**doc})
        data["_id"] = data.pop("id")
        try:
            await self.db[collection].insert_one(data, session=self.session)
        except MongoDuplicateKeyError as exc:
            raise DuplicateKeyError(str(exc)) from exc
        return _from_mongo(data)

    async def update(self, collection, doc_id, set_fields=None, unset=()):
        change: dict[str, Any] = {}
        if set_fields:
            change["$set"] = to_bson(set_fields)
        unset = list(unset)
        if unset:
            change["$unset"] = {k: "" for k in unset}
        if not change:
            return await self.find_one(collection, {"id": doc_id}) is not None
        try:
            result = await self.db[collection].update_one({"_id": doc_id}, change, session=self.session)
        except MongoDuplicateKeyError as exc:
            raise DuplicateKeyError(str(exc)) from exc
        return result.matched_count > 0

    async def page(self, collection, filter_dict, page, page_size, sort_key, ascending):
        query = _to_mongo_filter(filter_dict)
        total = await self.db[collection].count_documents(query, session=self.session)
        cursor = (
            self.db[collection]
            .find(query, session=self.session)
            .sort(sort_key, ASCENDING if ascending else DESCENDING)
            .skip((page - 1) * page_size)
            .limit(page_size)
        )
        items = [_from_mongo(d) async for d in cursor]
        return PageResult(items=items, total_items=total, total_pages=total_pages(total, page_size),
                          current_page=page, page_size=page_size)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MongoStore"]:
        if self.session is not None:
            yield self
            return
        # multi-document transactions need a replica set or sharded cluster
        async with await self.db.client.start_session() as session:
            async with session.start_transaction():
                yield MongoStore(self.db, session=session)

    async def ensure_indexes(self):
        # one live payment per order/preorder: the lock key exists only while a
        # payment is pending, processing, completed or refunded
        await self.db["payment"].create_index("target_lock", unique=True, sparse=True)
        await self.db["payment"].create_index("order_id")
        await self.db["payment"].create_index("preorder_id")
        await self.db["payment"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await self.db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await self.db["preorder"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    async def collections(self):
        return await self.db.list_collection_names()


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.DATABASE_URL, tz_aware=True)
        _db = _client[settings.DATABASE_NAME]
    return _db


async def get_store() -> Store:
    global _store
    if _store is None:
        settings = get_settings()
        if settings.STORE_BACKEND.lower() == "memory":
            from memory import MemoryStore
            _store = MemoryStore()
        else:
            _store = MongoStore(await get_db())
        logger.info(f"Using {_store.name} store")
    return _store
