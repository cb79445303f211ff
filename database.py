"""
MongoDB access for the FoodONtracks API.

Each Pydantic model in schemas.py maps to a collection named after the
lowercased class name (Order -> "order", MenuItem -> "menuitem").

Multi-document writes go through `Database.unit_of_work()`:
- transaction mode (replica set): one client session transaction, bounded
  commit time, aborted on any exception;
- compensation mode (standalone server, tests): every write records an undo
  action that is replayed in reverse on any exception.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
    WTimeoutError,
)

from config import get_settings
from errors import ERROR_CODES, ConflictError, NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("foodontracks.alerts")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id format", code=ERROR_CODES["INVALID_ID"], details={"id": str(id_str)})


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a stored document with `_id` exposed as a string `id`."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    for key, value in out.items():
        if isinstance(value, ObjectId):
            out[key] = str(value)
    return out


def is_retriable(exc: PyMongoError) -> bool:
    if isinstance(exc, (AutoReconnect, ExecutionTimeout, WTimeoutError)):
        return True
    return exc.has_error_label("TransientTransactionError") or exc.has_error_label(
        "UnknownTransactionCommitResult"
    )


@contextmanager
def translate_errors(operation: str, **context: Any) -> Iterator[None]:
    """Map pymongo failures onto the API error taxonomy, logging full context."""
    try:
        yield
    except DuplicateKeyError as exc:
        logger.info("duplicate_key operation=%s context=%s", operation, context)
        raise ConflictError("Duplicate entry", details={"operation": operation}) from exc
    except PyMongoError as exc:
        retriable = is_retriable(exc)
        logger.error(
            "persistence_error operation=%s retriable=%s context=%s",
            operation,
            retriable,
            context,
            exc_info=True,
        )
        raise PersistenceError(f"Database operation failed: {operation}", retriable=retriable) from exc


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


class UnitOfWork:
    """Atomic scope handed out by `Database.unit_of_work()`."""

    def __init__(self, database: "Database", session: Any = None):
        self.database = database
        self.session = session
        self._undo: List[Callable[[], Any]] = []

    @property
    def _kw(self) -> Dict[str, Any]:
        return {"session": self.session} if self.session is not None else {}

    @property
    def compensating(self) -> bool:
        return self.session is None

    def _record(self, action: Callable[[], Any]) -> None:
        if self.compensating:
            self._undo.append(action)

    def insert(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        doc = _as_dict(data)
        now = utcnow()
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        collection = self.database[collection_name]
        with translate_errors("insert", collection=collection_name):
            result = collection.insert_one(doc, **self._kw)
        inserted_id = result.inserted_id
        self._record(lambda: collection.delete_one({"_id": inserted_id}))
        return str(inserted_id)

    def find_one(self, collection_name: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with translate_errors("find_one", collection=collection_name):
            return self.database[collection_name].find_one(filter_dict, **self._kw)

    def find(self, collection_name: str, filter_dict: Dict[str, Any]) -> List[Dict[str, Any]]:
        with translate_errors("find", collection=collection_name):
            return list(self.database[collection_name].find(filter_dict, **self._kw))

    def increment(self, collection_name: str, filter_dict: Dict[str, Any], field: str, amount: int) -> bool:
        """Conditional `$inc` on the single document matched by `filter_dict`.

        The filter must pin `_id`. Returns False when nothing matched, which lets
        callers express guards such as "stock >= quantity" in the filter.
        """
        doc_id = filter_dict["_id"]
        collection = self.database[collection_name]
        with translate_errors("increment", collection=collection_name, field=field):
            result = collection.update_one(
                filter_dict, {"$inc": {field: amount}, "$set": {"updated_at": utcnow()}}, **self._kw
            )
        if result.matched_count == 0:
            return False
        self._record(lambda: collection.update_one({"_id": doc_id}, {"$inc": {field: -amount}}))
        return True

    def update(
        self, collection_name: str, filter_dict: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Apply `update` to the first match and return the document after the change."""
        collection = self.database[collection_name]
        update = dict(update)
        update.setdefault("$set", {})
        update["$set"] = {**update["$set"], "updated_at": utcnow()}
        with translate_errors("update", collection=collection_name):
            before = collection.find_one_and_update(
                filter_dict, update, return_document=ReturnDocument.BEFORE, **self._kw
            )
        if before is None:
            return None
        self._record(lambda: collection.replace_one({"_id": before["_id"]}, before))
        with translate_errors("find_one", collection=collection_name):
            return collection.find_one({"_id": before["_id"]}, **self._kw)

    def rollback(self) -> None:
        while self._undo:
            action = self._undo.pop()
            try:
                action()
            except PyMongoError:
                alert_logger.error("compensation_failed", exc_info=True)


class Database:
    def __init__(self, client: Any, name: str, use_transactions: bool = True, timeout_ms: int = 5000):
        self.client = client
        self.name = name
        self.db = client[name]
        self.use_transactions = use_transactions
        self.timeout_ms = timeout_ms

    def __getitem__(self, collection_name: str):
        return self.db[collection_name]

    def ping(self) -> bool:
        with translate_errors("ping"):
            self.client.admin.command("ping")
        return True

    def ensure_indexes(self) -> None:
        with translate_errors("ensure_indexes"):
            self.db["user"].create_index("email", unique=True)
            self.db["order"].create_index("batch_number", unique=True)
            self.db["order"].create_index("user_id")
            self.db["order"].create_index("restaurant_id")
            self.db["order"].create_index("delivery_person_id")
            self.db["order"].create_index([("created_at", DESCENDING)])
            self.db["menuitem"].create_index("restaurant_id")
            self.db["review"].create_index("order_id", unique=True)
            self.db["review"].create_index("restaurant_id")
            self.db["batch"].create_index("batch_number", unique=True)
            self.db["address"].create_index("user_id")

    def create_document(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        data_dict = _as_dict(data)
        now = utcnow()
        data_dict["created_at"] = now
        data_dict["updated_at"] = now
        with translate_errors("create_document", collection=collection_name):
            result = self.db[collection_name].insert_one(data_dict)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[List] = None,
    ) -> List[Dict[str, Any]]:
        with translate_errors("get_documents", collection=collection_name):
            cursor = self.db[collection_name].find(filter_dict or {})
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [serialize(doc) for doc in cursor]

    def get_document(self, collection_name: str, doc_id: Any, label: str = "Document") -> Dict[str, Any]:
        _id = to_object_id(doc_id)
        with translate_errors("get_document", collection=collection_name, id=str(_id)):
            doc = self.db[collection_name].find_one({"_id": _id})
        if doc is None:
            raise NotFoundError(f"{label} not found", details={"id": str(_id)})
        return serialize(doc)

    def find_one(self, collection_name: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with translate_errors("find_one", collection=collection_name):
            return serialize(self.db[collection_name].find_one(filter_dict))

    def compare_and_set(
        self, collection_name: str, filter_dict: Dict[str, Any], fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Single atomic conditional `$set`; returns the updated document or None when the guard failed."""
        with translate_errors("compare_and_set", collection=collection_name):
            doc = self.db[collection_name].find_one_and_update(
                filter_dict,
                {"$set": {**fields, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return serialize(doc)

    def count(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        with translate_errors("count", collection=collection_name):
            return self.db[collection_name].count_documents(filter_dict or {})

    def update_fields(self, collection_name: str, doc_id: Any, fields: Dict[str, Any]) -> bool:
        _id = to_object_id(doc_id)
        with translate_errors("update_fields", collection=collection_name, id=str(_id)):
            result = self.db[collection_name].update_one(
                {"_id": _id}, {"$set": {**fields, "updated_at": utcnow()}}
            )
        return result.matched_count > 0

    def delete_document(self, collection_name: str, doc_id: Any) -> bool:
        _id = to_object_id(doc_id)
        with translate_errors("delete_document", collection=collection_name, id=str(_id)):
            result = self.db[collection_name].delete_one({"_id": _id})
        return result.deleted_count > 0

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        if self.use_transactions:
            with translate_errors("transaction"):
                with self.client.start_session() as session:
                    with session.start_transaction(max_commit_time_ms=self.timeout_ms):
                        yield UnitOfWork(self, session)
            return

        uow = UnitOfWork(self, None)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise


_database: Optional[Database] = None


def get_db() -> Database:
    """Process-wide Database built from the environment (FastAPI dependency)."""
    global _database
    if _database is None:
        settings = get_settings()
        if not settings.database_url or not settings.database_name:
            raise PersistenceError("Database not configured")
        client = MongoClient(
            settings.database_url,
            serverSelectionTimeoutMS=settings.database_timeout_ms,
            connectTimeoutMS=settings.database_timeout_ms,
            socketTimeoutMS=settings.database_timeout_ms,
            tz_aware=True,
        )
        _database = Database(
            client,
            settings.database_name,
            use_transactions=settings.database_transactions,
            timeout_ms=settings.database_timeout_ms,
        )
    return _database
