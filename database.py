"""
MongoDB access for the marketplace API.

The client is created once from DATABASE_URL / DATABASE_NAME. Routes receive the
database through the ``get_db`` dependency so tests can swap in another one.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise InternalError("Database not configured")
    return db


def close_client() -> None:
    if _client is not None:
        _client.close()


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, so everything stored and compared stays naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid id")


def is_valid_id(id_str: Any) -> bool:
    return isinstance(id_str, str) and ObjectId.is_valid(id_str)


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def page_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[list] = None,
    page: int = 1,
    limit: Optional[int] = None,
):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.skip((page - 1) * limit).limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["users"].create_index("phone", unique=True)
    database["users"].create_index("email", unique=True)

    # Expired OTP sessions are swept by Mongo itself
    database["otp_sessions"].create_index("expires_at", expireAfterSeconds=0)
    database["otp_sessions"].create_index([("contact", ASCENDING), ("purpose", ASCENDING)])

    database["events"].create_index([("organizer_id", ASCENDING), ("event_date", ASCENDING)])
    database["events"].create_index("status")
    database["events"].create_index([("created_at", DESCENDING)])

    database["bookings"].create_index([("event_id", ASCENDING), ("supplier_id", ASCENDING)], unique=True)
    database["bookings"].create_index("organizer_id")
    database["bookings"].create_index("supplier_id")
    logger.info("MongoDB indexes ensured")
