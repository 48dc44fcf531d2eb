import copy
import threading
import uuid
from typing import Any, Callable, Dict, List

from core.database import Store


def _lookup(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value, arg):
        if value is None or arg is None:
            return False
        try:
            return op(value, arg)
        except TypeError:
            return False
    return check


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$ne": lambda value, arg: value != arg,
    "$in": lambda value, arg: value in arg,
    "$nin": lambda value, arg: value not in arg,
    "$exists": lambda value, arg: (value is not None) == bool(arg),
    "$gt": _compare(lambda value, arg: value > arg),
    "$gte": _compare(lambda value, arg: value >= arg),
    "$lt": _compare(lambda value, arg: value < arg),
    "$lte": _compare(lambda value, arg: value <= arg),
}


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = _lookup(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if not _OPERATORS[op](value, arg):
                    return False
        elif value != condition:
            return False
    return True


class InMemoryStore(Store):
    """
    Single-process store with the same compare-and-set guarantee as MongoStore.
    Every operation runs under one lock and never awaits while holding it.
    """

    def __init__(self):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _rows(self, collection: str) -> List[Dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    async def find(self, collection, query=None):
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._rows(collection) if matches(doc, query or {})]

    async def insert(self, collection, record):
        doc = copy.deepcopy(record)
        if doc.get("_id") is None:
            doc["_id"] = uuid.uuid4().hex
        with self._lock:
            self._rows(collection).append(doc)
        return copy.deepcopy(doc)

    async def upsert(self, collection, record, conflict_keys):
        key = {k: record.get(k) for k in conflict_keys}
        with self._lock:
            for doc in self._rows(collection):
                if matches(doc, key):
                    doc.update({k: copy.deepcopy(v) for k, v in record.items() if k != "_id"})
                    return copy.deepcopy(doc)
            doc = copy.deepcopy(record)
            if doc.get("_id") is None:
                doc["_id"] = uuid.uuid4().hex
            self._rows(collection).append(doc)
            return copy.deepcopy(doc)

    async def insert_unique(self, collection, record, unique_keys):
        key = {k: record.get(k) for k in unique_keys}
        with self._lock:
            if any(matches(doc, key) for doc in self._rows(collection)):
                return None
            doc = copy.deepcopy(record)
            if doc.get("_id") is None:
                doc["_id"] = uuid.uuid4().hex
            self._rows(collection).append(doc)
            return copy.deepcopy(doc)

    async def update(self, collection, query, fields):
        count = 0
        with self._lock:
            for doc in self._rows(collection):
                if matches(doc, query):
                    doc.update(copy.deepcopy(fields))
                    count += 1
        return count

    async def conditional_update(self, collection, record_id, field, value):
        with self._lock:
            for doc in self._rows(collection):
                if doc.get("_id") == record_id:
                    if doc.get(field) is not None:
                        return False
                    doc[field] = copy.deepcopy(value)
                    return True
        return False

    async def delete(self, collection, query):
        with self._lock:
            rows = self._rows(collection)
            kept = [doc for doc in rows if not matches(doc, query)]
            removed = len(rows) - len(kept)
            self._collections[collection] = kept
        return removed
