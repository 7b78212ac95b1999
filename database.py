"""
Persistence collaborators for E2Recycle.

Each collection mirrors a model in ``schemas.py``; the collection name is the
lowercase snake_case of the model name (RecyclingRequest ->
"recycling_request"). Documents leave the store as plain dicts with the
ObjectId rendered as a string under ``id``.

Both stores expose the same surface:

    get(collection, id)                               -> dict | None
    create(collection, data)                          -> dict
    update_if_status(collection, id, expected, patch) -> dict | None
    query(collection, filter, sort=None)              -> list[dict]
    bump(collection, key)                             -> int
    atomic()                                          -> context manager

``update_if_status`` is the compare-and-swap primitive: it applies ``patch``
only while the stored ``status`` still equals ``expected`` and returns None
otherwise. ``atomic()`` groups several calls into one all-or-nothing unit.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from datetime import timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConcurrencyError

logger = logging.getLogger(__name__)

USERS = "user"
REQUESTS = "recycling_request"
TRANSACTIONS = "transaction"
GATES = "recycler_gate"

# collection -> fields that must be unique across the collection
UNIQUE_FIELDS = {
    USERS: ("email",),
    REQUESTS: ("uniqueCode",),
    TRANSACTIONS: ("request",),
}

Sort = Optional[Sequence[Tuple[str, int]]]


def _out(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def _oid(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


# ----------------------
# MongoDB
# ----------------------

class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


CODEC_OPTIONS = CodecOptions(
    tz_aware=True,
    tzinfo=timezone.utc,
    type_registry=TypeRegistry([DecimalCodec()]),
)


class MongoStore:
    """pymongo-backed store. ``atomic()`` needs a replica set or mongos."""

    def __init__(self, database):
        self.db = database
        self.client = database.client
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings):
        client = MongoClient(settings.database_url)
        return cls(client.get_database(settings.database_name, codec_options=CODEC_OPTIONS))

    def ensure_indexes(self):
        for collection, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self.db[collection].create_index([(field, ASCENDING)], unique=True)
        self.db[TRANSACTIONS].create_index([("recycler", ASCENDING), ("status", ASCENDING)])
        self.db[REQUESTS].create_index([("status", ASCENDING), ("createdAt", DESCENDING)])

    def _session(self):
        return getattr(self._local, "session", None)

    @contextmanager
    def atomic(self):
        if self._session() is not None:
            # Already inside a transaction on this thread
            yield
            return
        try:
            with self.client.start_session() as session:
                with session.start_transaction():
                    self._local.session = session
                    try:
                        yield
                    finally:
                        self._local.session = None
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError") or exc.has_error_label(
                "UnknownTransactionCommitResult"
            ):
                logger.warning("Transaction aborted by write conflict: %s", exc)
                raise ConcurrencyError("The record was modified concurrently; retry the operation") from exc
            raise

    def get(self, collection: str, id: str) -> Optional[dict]:
        oid = _oid(id)
        if oid is None:
            return None
        return _out(self.db[collection].find_one({"_id": oid}, session=self._session()))

    def create(self, collection: str, data: Dict[str, Any]) -> dict:
        doc = dict(data)
        doc.pop("id", None)
        self.db[collection].insert_one(doc, session=self._session())
        return _out(doc)

    def update_if_status(self, collection: str, id: str, expected: str, patch: Dict[str, Any]) -> Optional[dict]:
        oid = _oid(id)
        if oid is None:
            return None
        doc = self.db[collection].find_one_and_update(
            {"_id": oid, "status": expected},
            {"$set": patch},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return _out(doc)

    def query(self, collection: str, filter: Dict[str, Any], sort: Sort = None) -> List[dict]:
        cursor = self.db[collection].find(filter, session=self._session())
        if sort:
            cursor = cursor.sort(list(sort))
        return [_out(doc) for doc in cursor]

    def bump(self, collection: str, key: str) -> int:
        doc = self.db[collection].find_one_and_update(
            {"_id": key},
            {"$inc": {"version": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return doc["version"]


# ----------------------
# In-process
# ----------------------

def _matches(doc: dict, filter: Dict[str, Any]) -> bool:
    for field, condition in filter.items():
        value = doc.get(field)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in":
                    if value not in operand:
                        return False
                elif op == "$nin":
                    if value in operand:
                        return False
                elif op == "$ne":
                    if value == operand:
                        return False
                else:
                    raise ValueError(f"Unsupported query operator: {op}")
        elif value != condition:
            return False
    return True


def _sort_key(field: str):
    def key(doc):
        value = doc.get(field)
        return (value is not None, value)
    return key


class MemoryStore:
    """Process-local store with the same contract as MongoStore.

    Every call runs under one re-entrant lock. ``atomic()`` holds the lock for
    the whole block and restores a snapshot taken on entry if the block
    raises.
    """

    def __init__(self, unique_fields: Optional[Dict[str, Sequence[str]]] = None):
        self.unique_fields = UNIQUE_FIELDS if unique_fields is None else unique_fields
        self._collections: Dict[str, Dict[Any, dict]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def ensure_indexes(self):
        pass

    def _collection(self, name: str) -> Dict[Any, dict]:
        return self._collections.setdefault(name, {})

    @contextmanager
    def atomic(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._collections) if outermost else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    self._collections = snapshot
                raise
            finally:
                self._depth -= 1

    def _check_unique(self, collection: str, doc: dict):
        docs = self._collection(collection)
        for field in self.unique_fields.get(collection, ()):
            if field not in doc:
                continue
            for other in docs.values():
                if other["_id"] != doc["_id"] and other.get(field) == doc[field]:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {collection} index: {field}_1",
                        11000,
                    )

    def get(self, collection: str, id: str) -> Optional[dict]:
        oid = _oid(id)
        with self._lock:
            doc = self._collection(collection).get(oid)
            return _out(copy.deepcopy(doc))

    def create(self, collection: str, data: Dict[str, Any]) -> dict:
        doc = copy.deepcopy(dict(data))
        doc.pop("id", None)
        doc["_id"] = ObjectId()
        with self._lock:
            self._check_unique(collection, doc)
            self._collection(collection)[doc["_id"]] = doc
            return _out(copy.deepcopy(doc))

    def update_if_status(self, collection: str, id: str, expected: str, patch: Dict[str, Any]) -> Optional[dict]:
        oid = _oid(id)
        with self._lock:
            doc = self._collection(collection).get(oid)
            if doc is None or doc.get("status") != expected:
                return None
            updated = dict(doc)
            updated.update(copy.deepcopy(patch))
            self._check_unique(collection, updated)
            self._collection(collection)[oid] = updated
            return _out(copy.deepcopy(updated))

    def query(self, collection: str, filter: Dict[str, Any], sort: Sort = None) -> List[dict]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collection(collection).values() if _matches(d, filter)]
        for field, direction in reversed(list(sort or ())):
            docs.sort(key=_sort_key(field), reverse=direction == DESCENDING)
        return [_out(d) for d in docs]

    def bump(self, collection: str, key: str) -> int:
        with self._lock:
            docs = self._collection(collection)
            doc = docs.setdefault(key, {"_id": key, "version": 0})
            doc["version"] += 1
            return doc["version"]


def build_store(settings):
    if settings.store_backend == "memory":
        logger.info("Using in-process store")
        return MemoryStore()
    logger.info("Using MongoDB store %s/%s", settings.database_url.split("@")[-1], settings.database_name)
    return MongoStore.from_settings(settings)
