import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from core.errors import InvalidDataError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Collections
TODOS = "todos"
COMMON_TASKS = "common_tasks"
DAILY_TASKS = "daily_tasks"
PUSH_SUBSCRIPTIONS = "push_subscriptions"
NOTIFICATION_LOG = "notification_log"
CALENDAR_CONNECTIONS = "calendar_connections"

# (collection, keys, rows the index applies to). Generated instances and slot
# claims rely on these for exactly-once writes under overlapping jobs.
UNIQUE_INDEXES = [
    (TODOS, ("common_task_id", "scheduled_for", "deadline.recurring"), {"common_task_id": {"$type": "string"}}),
    (TODOS, ("daily_task_id", "scheduled_for"), {"daily_task_id": {"$type": "string"}}),
    (NOTIFICATION_LOG, ("user_id", "category", "slot", "slot_date"), {"slot_date": {"$type": "string"}}),
]


class Store(ABC):
    """
    Persistent record store used by every job.

    Queries are Mongo-style filter documents. conditional_update is the only
    concurrency primitive the engine relies on and must be a single atomic
    compare-and-set in every backend.
    """

    @abstractmethod
    async def find(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    async def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.find(collection, query)
        return rows[0] if rows else None

    @abstractmethod
    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def upsert(self, collection: str, record: Dict[str, Any], conflict_keys: Sequence[str]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def insert_unique(self, collection: str, record: Dict[str, Any], unique_keys: Sequence[str]) -> Optional[Dict[str, Any]]:
        """
        Insert `record` unless a row with the same values for `unique_keys` exists.
        Returns the inserted row, or None when another writer got there first.
        """

    @abstractmethod
    async def update(self, collection: str, query: Dict[str, Any], fields: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def conditional_update(self, collection: str, record_id: str, field: str, value: Any) -> bool:
        """Set `field` to `value` only if it is currently unset. True iff this call wrote it."""

    @abstractmethod
    async def delete(self, collection: str, query: Dict[str, Any]) -> int:
        ...

    async def ensure_indexes(self) -> None:
        pass

    def close(self) -> None:
        pass


def load_records(model, docs: List[Dict[str, Any]]) -> list:
    """
    Validate raw store rows into models. Rows that cannot be validated are
    logged and skipped so one bad record never crashes a batch.
    """
    records = []
    for doc in docs:
        try:
            records.append(model.model_validate(doc))
        except ValidationError as e:
            error = InvalidDataError(f"Skipping malformed {model.__name__} {doc.get('_id')}: {e.error_count()} error(s)")
            logger.warning(str(error))
    return records


def _connectivity_guard(func):
    """Translate driver connectivity failures into StoreUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, collection, *args, **kwargs):
        try:
            return await func(self, collection, *args, **kwargs)
        except ConnectionFailure as e:
            logger.error(f"Store unavailable during {func.__name__} on {collection}: {e}")
            raise StoreUnavailableError(f"{func.__name__} on {collection} failed: {e}") from e

    return wrapper


def _object_id(value: Any) -> Any:
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


class MongoStore(Store):
    def __init__(self, db, client: Optional[AsyncIOMotorClient] = None):
        self._db = db
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "MongoStore":
        client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)
        return cls(client[settings.DB_NAME], client)

    async def ensure_indexes(self) -> None:
        try:
            for collection, keys, partial in UNIQUE_INDEXES:
                await self._db[collection].create_index(
                    [(key, 1) for key in keys],
                    unique=True,
                    partialFilterExpression=partial,
                )
        except ConnectionFailure as e:
            raise StoreUnavailableError(f"create_index failed: {e}") from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    @staticmethod
    def _prepare(query: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query = dict(query or {})
        if "_id" in query:
            target = query["_id"]
            if isinstance(target, dict) and "$in" in target:
                query["_id"] = {**target, "$in": [_object_id(v) for v in target["$in"]]}
            else:
                query["_id"] = _object_id(target)
        return query

    @_connectivity_guard
    async def find(self, collection, query=None):
        cursor = self._db[collection].find(self._prepare(query))
        return await cursor.to_list(length=None)

    @_connectivity_guard
    async def insert(self, collection, record):
        doc = {k: v for k, v in record.items() if k != "_id"}
        result = await self._db[collection].insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    @_connectivity_guard
    async def upsert(self, collection, record, conflict_keys):
        key = {k: record.get(k) for k in conflict_keys}
        fields = {k: v for k, v in record.items() if k != "_id"}
        await self._db[collection].update_one(key, {"$set": fields}, upsert=True)
        return await self._db[collection].find_one(key)

    @_connectivity_guard
    async def insert_unique(self, collection, record, unique_keys):
        # Uniqueness is enforced by the matching entry in UNIQUE_INDEXES
        doc = {k: v for k, v in record.items() if k != "_id"}
        try:
            result = await self._db[collection].insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Duplicate {collection} row for {[doc.get(k) for k in unique_keys]} skipped")
            return None
        doc["_id"] = str(result.inserted_id)
        return doc

    @_connectivity_guard
    async def update(self, collection, query, fields):
        result = await self._db[collection].update_many(self._prepare(query), {"$set": fields})
        return result.modified_count

    @_connectivity_guard
    async def conditional_update(self, collection, record_id, field, value):
        # {field: None} matches both null and missing
        result = await self._db[collection].update_one(
            {"_id": _object_id(record_id), field: None},
            {"$set": {field: value}},
        )
        return result.modified_count == 1

    @_connectivity_guard
    async def delete(self, collection, query):
        result = await self._db[collection].delete_many(self._prepare(query))
        return result.deleted_count
