"""
Database helpers

Connects to MongoDB from DATABASE_URL / DATABASE_NAME. When the variables are
missing `db` stays None and endpoints report the database as unavailable.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception as e:
        logger.error("Could not connect to MongoDB: %s", e)
        db = None


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document with timestamps and return its id as a string"""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)
    data_dict.pop("id", None)

    now = datetime.now(timezone.utc)
    if not data_dict.get("created_at"):
        data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    """Unique keys the lifecycle relies on"""
    database["profile"].create_index([("email", ASCENDING)], unique=True)
    database["bill"].create_index([("request_id", ASCENDING)], unique=True)
    database["vendor_waste_type"].create_index(
        [("vendor_id", ASCENDING), ("waste_type", ASCENDING)], unique=True
    )
    database["pickup_request"].create_index([("status", ASCENDING), ("created_at", ASCENDING)])
    database["revoked_token"].create_index([("jti", ASCENDING)], unique=True)
