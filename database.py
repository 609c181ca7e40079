"""
MongoDB access for the Event Workspace service.

`db` is the module-level pymongo handle (None when DATABASE_URL/DATABASE_NAME
are not configured). `DocumentStore` wraps a database handle with the small
document-store interface the workspace core is written against: point reads
and partial writes, predicate queries, snapshot subscriptions, array-union
updates and deletes.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, DATABASE_URL
from errors import DocumentMissing, StoreError
from schemas import utcnow

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]

# (field, op, value); op is one of "==", ">=", "<=", "array-contains"
Predicate = Tuple[str, str, Any]
OPERATORS = {"==", ">=", "<=", "array-contains"}


def oid(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def to_filter(predicates: Iterable[Predicate]) -> Dict[str, Any]:
    flt: Dict[str, Any] = {}
    for field, op, value in predicates:
        if op not in OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        if field == "id":
            field, value = "_id", oid(value)
        if op in ("==", "array-contains"):
            flt[field] = value
            continue
        cond = {"$gte": value} if op == ">=" else {"$lte": value}
        existing = flt.get(field)
        if isinstance(existing, dict):
            existing.update(cond)
        else:
            flt[field] = cond
    return flt


@contextmanager
def _driver_errors(action: str):
    try:
        yield
    except PyMongoError as e:
        logger.error("Store error during %s: %s", action, e)
        raise StoreError(f"Could not {action}", [str(e)]) from e


class Subscription:
    """A live query. Calls `on_change(docs)` with the full result whenever it changes."""

    def __init__(self, store: "DocumentStore", collection: str, predicates: Sequence[Predicate],
                 on_change: Callable[[List[Dict[str, Any]]], None]):
        self.store = store
        self.collection = collection
        self.predicates = list(predicates)
        self.on_change = on_change
        self.active = True
        self._last: Optional[List[Dict[str, Any]]] = None

    def refresh(self) -> None:
        if not self.active:
            return
        try:
            docs = self.store.query(self.collection, self.predicates)
        except StoreError:
            logger.exception("Subscription on %s could not refresh", self.collection)
            return
        if docs == self._last:
            return
        self._last = docs
        try:
            self.on_change(docs)
        except Exception:
            logger.exception("Subscription callback on %s failed", self.collection)

    def could_match(self, doc: Dict[str, Any]) -> bool:
        """False when an equality predicate rules out an inserted or deleted `doc`."""
        return all(doc.get(field) == value for field, op, value in self.predicates
                   if op == "==" and field in doc)

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self.store._remove_listener(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False


class DocumentStore:
    def __init__(self, database):
        self.database = database
        self._listeners: Dict[str, List[Subscription]] = defaultdict(list)
        self._lock = threading.RLock()

    # Reads
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = oid(doc_id)
        if key is None:
            return None
        with _driver_errors(f"read {collection}"):
            return serialize(self.database[collection].find_one({"_id": key}))

    def query(self, collection: str, predicates: Sequence[Predicate] = (), limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with _driver_errors(f"query {collection}"):
            cursor = self.database[collection].find(to_filter(predicates)).sort("_id", 1)
            if limit:
                cursor = cursor.limit(limit)
            return [serialize(d) for d in cursor]

    def query_any(self, collection: str, alternatives: Sequence[Sequence[Predicate]]) -> List[Dict[str, Any]]:
        """Documents matching any of the predicate lists."""
        with _driver_errors(f"query {collection}"):
            cursor = self.database[collection].find({"$or": [to_filter(p) for p in alternatives]}).sort("_id", 1)
            return [serialize(d) for d in cursor]

    # Writes
    def add_document(self, collection: str, fields: Dict[str, Any]) -> str:
        doc = {**fields}
        if doc.get("createdAt") is None:
            doc["createdAt"] = utcnow()
        with _driver_errors(f"create {collection}"):
            res = self.database[collection].insert_one(doc)
        self._notify(collection, doc)
        return str(res.inserted_id)

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        key = oid(doc_id)
        if key is None:
            raise DocumentMissing(collection, doc_id)
        with _driver_errors(f"update {collection}"):
            res = self.database[collection].update_one({"_id": key}, {"$set": fields})
        if res.matched_count == 0:
            raise DocumentMissing(collection, doc_id)
        self._notify(collection)

    def compare_and_set(self, collection: str, doc_id: str, fields: Dict[str, Any],
                        version_field: str, expected: int) -> bool:
        """Apply `fields` only if `version_field` still equals `expected`, bumping it."""
        key = oid(doc_id)
        if key is None:
            raise DocumentMissing(collection, doc_id)
        with _driver_errors(f"update {collection}"):
            res = self.database[collection].update_one(
                {"_id": key, version_field: expected},
                {"$set": fields, "$inc": {version_field: 1}},
            )
            if res.matched_count == 0:
                if self.database[collection].find_one({"_id": key}) is None:
                    raise DocumentMissing(collection, doc_id)
                return False
        self._notify(collection)
        return True

    def array_union(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        key = oid(doc_id)
        if key is None:
            raise DocumentMissing(collection, doc_id)
        with _driver_errors(f"update {collection}"):
            res = self.database[collection].update_one({"_id": key}, {"$addToSet": {field: value}})
        if res.matched_count == 0:
            raise DocumentMissing(collection, doc_id)
        self._notify(collection)

    def delete(self, collection: str, doc_id: str) -> bool:
        key = oid(doc_id)
        if key is None:
            return False
        with _driver_errors(f"delete {collection}"):
            removed = self.database[collection].find_one_and_delete({"_id": key})
        if removed is None:
            return False
        self._notify(collection, removed)
        return True

    # Live queries
    def subscribe(self, collection: str, predicates: Sequence[Predicate],
                  on_change: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
        sub = Subscription(self, collection, predicates, on_change)
        with self._lock:
            self._listeners[collection].append(sub)
        sub.refresh()
        return sub

    def _remove_listener(self, sub: Subscription) -> None:
        with self._lock:
            listeners = self._listeners.get(sub.collection, [])
            if sub in listeners:
                listeners.remove(sub)

    def _notify(self, collection: str, doc: Optional[Dict[str, Any]] = None) -> None:
        """Refresh listeners on `collection`; with `doc` given, only those whose query it can affect."""
        with self._lock:
            listeners = list(self._listeners.get(collection, []))
        for sub in listeners:
            if doc is None or sub.could_match(doc):
                sub.refresh()


_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    global _store
    if db is None:
        raise StoreError("Database not available")
    if _store is None:
        _store = DocumentStore(db)
    return _store
