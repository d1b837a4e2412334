"""
Database helpers

A single pymongo client is created at import time from DATABASE_URL /
DATABASE_NAME. Route handlers receive the database through the `get_db`
dependency so tests can swap in another database.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from constants import DATABASE_NAME, DATABASE_URL
from logging_config import get_logger

logger = get_logger(__name__)

db: Optional[Database] = None

if DATABASE_URL:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
        logger.info(f"MongoDB client configured for database {DATABASE_NAME}")
    except Exception as e:
        logger.error(f"Failed to configure MongoDB client: {e}", exc_info=True)
        db = None
else:
    logger.warning("DATABASE_URL is not set, database is unavailable")


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    database = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.utcnow()
    if not doc.get("created_at"):
        doc["created_at"] = now
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database: Optional[Database] = None):
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database):
    """Create the indexes the handlers rely on. Safe to call repeatedly."""
    database["user"].create_index("email", unique=True)
    database["user"].create_index("phone", unique=True)
    database["meeting"].create_index([("student", ASCENDING), ("status", ASCENDING)])
    database["meeting"].create_index([("owner", ASCENDING), ("status", ASCENDING)])
    database["roomsharing"].create_index([("status", ASCENDING), ("updated_at", ASCENDING)])
    database["booking"].create_index([("student", ASCENDING), ("status", ASCENDING)])
    database["otp"].create_index([("identifier", ASCENDING), ("type", ASCENDING), ("created_at", DESCENDING)])
    # expired codes are removed by the server
    database["otp"].create_index("expires_at", expireAfterSeconds=0)
    logger.info("Database indexes ensured")
