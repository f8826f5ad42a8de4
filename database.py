"""
MongoDB access for the Farm Market API.

Collections are named after the lowercased schema class (User -> "user").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger("farmmarket.database")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL is not set; the API will not be able to reach MongoDB")


def utcnow() -> datetime:
    # Stored as naive UTC, which is what pymongo hands back on reads.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail="Invalid id format")
    return ObjectId(value)


def serialize_doc(doc: Any) -> Any:
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    if db is None:
        return
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["product"].create_index([("product_id", ASCENDING)], unique=True)
    db["product"].create_index([("owner", ASCENDING)])
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["order"].create_index([("order_id", ASCENDING)], unique=True)
    db["order"].create_index([("email", ASCENDING)])
    db["orderassignment"].create_index([("order_id", ASCENDING)], unique=True)
    db["orderassignment"].create_index([("delivery_agent_id", ASCENDING), ("status", ASCENDING)])
    db["deliveryagent"].create_index([("agent_id", ASCENDING)], unique=True)
    db["deliveryagent"].create_index([("email", ASCENDING)], unique=True)
    db["cartorder"].create_index([("payhere_order_id", ASCENDING)], unique=True)
    db["foodsubscription"].create_index([("payhere_order_id", ASCENDING)], unique=True, sparse=True)
    db["foodsubscriptionlog"].create_index([("subscription_id", ASCENDING), ("action", ASCENDING)])
    logger.info("MongoDB indexes ensured on %s", db.name)
