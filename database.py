"""
MongoDB access for the storefront.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; routes reach the
database through `get_db` so tests can swap in another handle.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import InvalidRequestError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info("Connected to MongoDB database %s", DATABASE_NAME)


def now_utc() -> datetime:
    # Mongo hands datetimes back as naive UTC; keep ours comparable with them.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(id_str: Union[str, ObjectId], what: str = "ID") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidRequestError(f"Invalid {what}", "invalid_id")


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: ObjectIds become strings and
    every document with an ``_id`` also gets an ``id``."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {k: serialize(v) for k, v in value.items()}
        if "_id" in out:
            out["id"] = out["_id"]
        return out
    return value


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    database = database if database is not None else db
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("created_at", now_utc())
    doc["updated_at"] = now_utc()
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database: Optional[Database] = None) -> List[Dict[str, Any]]:
    database = database if database is not None else db
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    cur = database[collection_name].find(filter_dict or {})
    if limit:
        cur = cur.limit(limit)
    return list(cur)


def ensure_indexes(database: Database) -> None:
    database["product"].create_index("sku", unique=True)
    database["product"].create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    database["cart"].create_index("user_id", unique=True)
    database["cart"].create_index("expires_at")
    database["promo_code"].create_index("code", unique=True)
    database["promo_code"].create_index([("is_active", ASCENDING), ("valid_until", ASCENDING)])
    database["promo_redemption"].create_index(
        [("promo_code_id", ASCENDING), ("user_id", ASCENDING), ("slot", ASCENDING)], unique=True
    )
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("status")
    database["order"].create_index([("delivery.method", ASCENDING), ("delivery.pickup_code", ASCENDING)])
    database["low_stock_alert"].create_index([("product_id", ASCENDING), ("status", ASCENDING)])
    database["low_stock_alert"].create_index([("status", ASCENDING), ("priority", ASCENDING)])


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db
