"""
Database access

Thin helpers over a pymongo database handle. Each record type lives in its own
collection named after the lowercase schema class (Product -> "product").
"""

import logging
import os
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    # stored naive so values read back compare cleanly
    return datetime.now(timezone.utc).replace(tzinfo=None)


def require_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created/updated times and return its id."""
    database = require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    database = require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, doc_id: Union[str, ObjectId], changes: dict):
    database = require_db()
    changes = dict(changes)
    changes["updated_at"] = utcnow()
    return database[collection_name].update_one({"_id": _as_oid(doc_id)}, {"$set": changes})


def oid(id_str: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def _as_oid(value):
    return value if isinstance(value, ObjectId) else ObjectId(value)


def find_by_id(collection_name: str, id_str: str) -> Optional[dict]:
    """Look a document up by string id; malformed ids simply find nothing."""
    database = require_db()
    if not ObjectId.is_valid(id_str):
        return None
    return database[collection_name].find_one({"_id": ObjectId(id_str)})


def serialize(value: Any) -> Any:
    """Make a document JSON safe: ObjectId -> str, datetimes -> ISO, _id -> id."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize(v)
            elif k == "password_hash":
                continue
            else:
                out[k] = serialize(v)
        return out
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def next_sequence(name: str) -> int:
    database = require_db()
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


def get_store_settings(keys=None) -> dict:
    """Key/value store settings as a plain dict; missing keys are absent."""
    database = require_db()
    query = {"key": {"$in": list(keys)}} if keys else {}
    return {row["key"]: row.get("value") or "" for row in database["storesetting"].find(query)}


def paginate(cursor, page: int, per_page: int):
    return cursor.skip((page - 1) * per_page).limit(per_page)


def ensure_indexes():
    if db is None:
        logger.warning("Database not configured; skipping index creation")
        return
    db["customer"].create_index([("email", ASCENDING)], unique=True)
    db["adminuser"].create_index([("email", ASCENDING)], unique=True)
    db["product"].create_index([("sku", ASCENDING)], unique=True)
    db["cartitem"].create_index(
        [("customer_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    db["orderitem"].create_index([("order_id", ASCENDING)])
    db["stockmovement"].create_index([("product_id", ASCENDING)])
