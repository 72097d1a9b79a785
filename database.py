"""
Database Helper Functions

MongoDB helpers shared by the auth, cart and order workflows.
Collections are named after the lowercase schema class (User -> "user").
"""

from pymongo import MongoClient, ASCENDING, DESCENDING, ReturnDocument
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
import logging
from typing import Union, Optional, Dict, Any, List
from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def set_database(database):
    """Swap the active database handle (used by tests and scripts)."""
    global db
    db = database


def _ensure_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands datetimes back naive unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def collection(name: str):
    _ensure_db()
    return db[name]


def ensure_indexes():
    _ensure_db()
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    db["notification"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", db.name)


# CRUD helpers

def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    _ensure_db()
    payload = _to_dict(data)
    now = utcnow()
    payload['created_at'] = now
    payload['updated_at'] = now
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None, projection: Optional[dict] = None) -> List[dict]:
    _ensure_db()
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(int(limit))
    return [serialize_doc(doc) for doc in cursor]


def find_document(collection_name: str, filter_dict: dict, projection: Optional[dict] = None) -> Optional[dict]:
    _ensure_db()
    doc = db[collection_name].find_one(filter_dict, projection)
    return serialize_doc(doc) if doc else None


def get_document_by_id(collection_name: str, _id: str, projection: Optional[dict] = None) -> Optional[dict]:
    oid = to_object_id(_id)
    if oid is None:
        return None
    return find_document(collection_name, {"_id": oid}, projection)


def update_document(collection_name: str, _id: str, update_data: Union[BaseModel, Dict[str, Any]], unset: Optional[List[str]] = None) -> bool:
    _ensure_db()
    oid = to_object_id(_id)
    if oid is None:
        return False
    update = {"$set": _to_dict(update_data)}
    update["$set"]["updated_at"] = utcnow()
    if unset:
        update["$unset"] = {field: "" for field in unset}
    result = db[collection_name].update_one({"_id": oid}, update)
    return result.matched_count > 0


def delete_document(collection_name: str, _id: str) -> bool:
    _ensure_db()
    oid = to_object_id(_id)
    if oid is None:
        return False
    result = db[collection_name].delete_one({"_id": oid})
    return result.deleted_count > 0


# Stock primitives

def reserve_stock(product_id: str, quantity: int) -> Optional[dict]:
    """Take `quantity` units only if that many are on hand.

    Returns the updated product, or None when the product is gone or the
    stock check lost against a concurrent writer.
    """
    oid = to_object_id(product_id)
    if oid is None:
        return None
    doc = collection("product").find_one_and_update(
        {"_id": oid, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(doc)


def release_stock(product_id: str, quantity: int) -> bool:
    oid = to_object_id(product_id)
    if oid is None:
        return False
    result = collection("product").update_one(
        {"_id": oid},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
    )
    return result.matched_count > 0


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])  # convert ObjectId to string
    return d
