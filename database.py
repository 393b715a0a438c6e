"""
MongoDB access

``db`` is None when DATABASE_URL / DATABASE_NAME are not configured; routes get
the handle through ``get_db`` so tests can swap in another database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import InvalidRequestError, StoreUnavailableError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise StoreUnavailableError()
    return db


def ensure_indexes(database):
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    # One order per authorization; orders without one store null.
    database["order"].create_index(
        [("payment_intent_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"payment_intent_id": {"$type": "string"}},
    )
    database["order_item"].create_index([("order_id", ASCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("token", ASCENDING)])
    database["review"].create_index([("product_id", ASCENDING)])
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", database.name)


# ---------------------- Helpers ----------------------

def now_utc():
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidRequestError("Invalid ID")


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now_utc()
    data_dict["updated_at"] = now_utc()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[list] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_str_id(d) for d in cursor]
