"""
MongoDB access layer.

`EntityStore` is the only thing that talks to pymongo. It is built once at
startup (see `connect_store`) and passed to the services that need it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from errors import NotFound
from settings import Settings

logger = logging.getLogger("flamecrumble.database")

Sort = Sequence[Tuple[str, int]]

INDEXES: Dict[str, List[Dict[str, Any]]] = {
    "user": [{"keys": [("email", ASCENDING)], "unique": True}],
    "address": [{"keys": [("user_id", ASCENDING), ("is_default", DESCENDING)]}],
    "cart": [
        {"keys": [("user_id", ASCENDING)], "unique": True},
        {"keys": [("items.product_id", ASCENDING)]},
    ],
    "wishlist": [
        {"keys": [("user_id", ASCENDING)], "unique": True},
        {"keys": [("items.product_id", ASCENDING)]},
    ],
    "order": [
        {"keys": [("user_id", ASCENDING), ("status", ASCENDING)]},
        {"keys": [("created_at", DESCENDING)]},
    ],
    "product": [{"keys": [("category", ASCENDING), ("is_featured", ASCENDING)]}],
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Union[str, ObjectId], what: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Turn a stored document into a JSON-ready dict with `id` in place of `_id`."""
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return _plain(doc)


class EntityStore:
    def __init__(self, db: Database, client: Optional[MongoClient] = None):
        self.db = db
        self.client = client

    def collection(self, name: str) -> Collection:
        return self.db[name]

    def ensure_indexes(self) -> None:
        for name, indexes in INDEXES.items():
            for index in indexes:
                self.db[name].create_index(index["keys"], unique=index.get("unique", False))
        logger.info("Indexes ensured for %d collections", len(INDEXES))

    def create_document(self, collection_name: str, data: Any) -> str:
        if hasattr(data, "model_dump"):
            data = data.model_dump()
        doc = dict(data)
        now = utcnow()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection_name].insert_one(doc)
        return str(result.inserted_id)

    def find(self, collection_name: str, filter_dict: Dict[str, Any], sort: Optional[Sort] = None,
             limit: Optional[int] = None, projection: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        cursor = self.db[collection_name].find(filter_dict, projection)
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_one(self, collection_name: str, filter_dict: Dict[str, Any],
                 sort: Optional[Sort] = None) -> Optional[Dict[str, Any]]:
        if sort:
            return self.db[collection_name].find_one(filter_dict, sort=list(sort))
        return self.db[collection_name].find_one(filter_dict)

    def find_by_id(self, collection_name: str, doc_id: Union[str, ObjectId],
                   what: str = "Resource") -> Optional[Dict[str, Any]]:
        return self.db[collection_name].find_one({"_id": to_object_id(doc_id, what)})

    def update_by_id(self, collection_name: str, doc_id: Union[str, ObjectId], changes: Dict[str, Any],
                     what: str = "Resource") -> Optional[Dict[str, Any]]:
        """Apply `$set` changes and return the updated document, or None if absent."""
        return self.db[collection_name].find_one_and_update(
            {"_id": to_object_id(doc_id, what)},
            {"$set": changes | {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def delete_by_id(self, collection_name: str, doc_id: Union[str, ObjectId],
                     what: str = "Resource") -> Optional[Dict[str, Any]]:
        return self.db[collection_name].find_one_and_delete({"_id": to_object_id(doc_id, what)})

    def delete_many(self, collection_name: str, filter_dict: Dict[str, Any]) -> int:
        return self.db[collection_name].delete_many(filter_dict).deleted_count

    def count_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection_name].count_documents(filter_dict or {})

    def next_sequence(self, name: str) -> int:
        counter = self.db["counter"].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def connect_store(settings: Settings) -> EntityStore:
    client = MongoClient(
        settings.mongodb_uri,
        tz_aware=True,
        serverSelectionTimeoutMS=settings.store_timeout_ms,
        connectTimeoutMS=settings.store_timeout_ms,
        socketTimeoutMS=settings.store_timeout_ms,
        maxPoolSize=10,
    )
    db = client.get_default_database(default=settings.database_name)
    logger.info("MongoDB client created for database %s", db.name)
    return EntityStore(db, client)
