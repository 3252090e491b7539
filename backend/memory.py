"""
In-process store for local development (STORE_BACKEND=memory) and tests.

Mirrors MongoStore semantics: equality/$in filters, sparse unique keys,
all-or-nothing transactions.
"""
from __future__ import annotations
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from database import DuplicateKeyError, PageResult, Store, to_bson, total_pages

# collection -> fields that must be unique when present
UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {"payment": ("target_lock",)}


def _matches(doc: dict[str, Any], filter_dict: dict[str, Any]) -> bool:
    for key, expected in filter_dict.items():
        actual = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if actual not in expected["$in"]:
                return False
        elif actual != expected:
            return False
    return True


def _sort_value(value: Any):
    # None sorts first, like MongoDB
    if value is None:
        return (0, datetime.min.replace(tzinfo=timezone.utc))
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (1, value)


class MemoryStore(Store):
    name = "memory"

    def __init__(self, initial: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._data: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._in_transaction = False
        for collection, docs in (initial or {}).items():
            for doc in docs:
                self._data[collection][doc["id"]] = to_bson(copy.deepcopy(doc))

    def _check_unique(self, collection: str, doc: dict[str, Any]) -> None:
        for name in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(name)
            if value is None:
                continue
            for other in self._data[collection].values():
                if other["id"] != doc["id"] and other.get(name) == value:
                    raise DuplicateKeyError(f"duplicate key {collection}.{name}: {value}")

    async def find_one(self, collection, filter_dict):
        for doc in self._data[collection].values():
            if _matches(doc, to_bson(filter_dict)):
                return copy.deepcopy(doc)
        return None

    async def find(self, collection, filter_dict=None, sort=None):
        wanted = to_bson(filter_dict or {})
        docs = [copy.deepcopy(d) for d in self._data[collection].values() if _matches(d, wanted)]
        if sort:
            key, ascending = sort
            docs.sort(key=lambda d: _sort_value(d.get(key)), reverse=not ascending)
        return docs

    async def insert(self, collection, doc):
        data = to_bson(copy.deepcopy(doc))
        if data["id"] in self._data[collection]:
            raise DuplicateKeyError(f"duplicate key {collection}.id: {data['id']}")
        self._check_unique(collection, data)
        self._data[collection][data["id"]] = data
        return copy.deepcopy(data)

    async def update(self, collection, doc_id, set_fields=None, unset=()):
        current = self._data[collection].get(doc_id)
        if current is None:
            return False
        updated = {**current, **to_bson(copy.deepcopy(set_fields or {}))}
        for name in unset:
            updated.pop(name, None)
        self._check_unique(collection, updated)
        self._data[collection][doc_id] = updated
        return True

    async def page(self, collection, filter_dict, page, page_size, sort_key, ascending):
        docs = await self.find(collection, filter_dict, sort=(sort_key, ascending))
        start = (page - 1) * page_size
        return PageResult(items=docs[start:start + page_size], total_items=len(docs),
                          total_pages=total_pages(len(docs), page_size),
                          current_page=page, page_size=page_size)

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return
        snapshot = copy.deepcopy(self._data)
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._data = snapshot
            raise
        finally:
            self._in_transaction = False

    async def collections(self):
        return sorted(name for name, docs in self._data.items() if docs)
