"""
MongoDB access for GBConnect.

A single client is created per process from DATABASE_URL / DATABASE_NAME.
Handlers import ``db`` directly and use the two small helpers below for the
common insert/list cases.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def _collection(collection_name: str):
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db[collection_name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with timestamps and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = _collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[str] = "created_at") -> List[Dict[str, Any]]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if sort:
        # _id breaks ties between documents written in the same millisecond
        cursor = cursor.sort([(sort, DESCENDING), ("_id", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def prepare_database() -> None:
    """Create indexes and repair provider ids stored as ObjectId."""
    if db is None:
        logger.warning("Database not configured; skipping index setup")
        return
    db["users"].create_index([("email", ASCENDING)], unique=True)
    db["services"].create_index([("provider_id", ASCENDING)])
    db["bookings"].create_index([("user_id", ASCENDING)])
    db["bookings"].create_index([("provider_id", ASCENDING)])
    db["reviews"].create_index([("service_id", ASCENDING)])
    db["emailOtps"].create_index([("email", ASCENDING), ("purpose", ASCENDING)])
    db["notifications"].create_index([("user_id", ASCENDING)])

    repaired = 0
    for svc in db["services"].find({}, {"provider_id": 1}):
        if isinstance(svc.get("provider_id"), ObjectId):
            db["services"].update_one({"_id": svc["_id"]}, {"$set": {"provider_id": str(svc["provider_id"])}})
            repaired += 1
    if repaired:
        logger.info("Converted provider_id to string on %d services", repaired)
