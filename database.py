"""
MongoDB access for the bookstore.

The connection is configured from DATABASE_URL and DATABASE_NAME. When either
is missing ``db`` stays ``None`` and routes that need storage answer 500.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import DatabaseNotConfiguredError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DatabaseNotConfiguredError()
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a hex id; ``None`` when the string is not a valid ObjectId."""
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    return str(database[collection_name].insert_one(doc).inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    database["profile"].create_index([("email", ASCENDING)], unique=True)
    database["book"].create_index([("stock", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order_item"].create_index([("order_id", ASCENDING)])
