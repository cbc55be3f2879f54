"""
MongoDB access helpers.

The connection is opened once per process by ``connect`` and handed to the
app factory; request handlers receive it through ``get_db``.
"""

from typing import Any, Dict, Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound
from money import cents_to_number
from schemas import utcnow
from settings import Settings

logger = structlog.get_logger(__name__)

SENSITIVE_FIELDS = {"password_hash"}


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.mongodb_uri)
    logger.info("MongoDB client created", database=settings.database_name)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("username", ASCENDING)], unique=True, sparse=True)
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db["notification"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("user_id", ASCENDING)])


def get_db(request: Request) -> Database:
    return request.app.state.db


def create_document(db: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created/updated timestamps, return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    return str(db[collection].insert_one(doc).inserted_id)


def to_object_id(value: Any, what: str = "Document") -> ObjectId:
    """Parse an id coming from a URL or body; malformed ids are simply not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def _public_key(key: str) -> str:
    if key == "_id":
        return "id"
    return to_camel(key) if "_" in key else key


def _public_value(value: Any) -> Any:
    if isinstance(value, dict):
        return doc_to_public(value)
    if isinstance(value, list):
        return [_public_value(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Render a stored document for the API.

    ``_id`` becomes ``id``, keys become camelCase, ``*_cents`` amounts are
    rendered as plain numbers under the unsuffixed name and sensitive
    fields are dropped.
    """
    if not doc:
        return doc
    public: Dict[str, Any] = {}
    for key, value in doc.items():
        if key in SENSITIVE_FIELDS:
            continue
        if key.endswith("_cents") and isinstance(value, int):
            public[_public_key(key[: -len("_cents")])] = cents_to_number(value)
            continue
        public[_public_key(key)] = _public_value(value)
    return public


def touch(update: Dict[str, Any]) -> Dict[str, Any]:
    """Add ``updated_at`` to a ``$set`` payload."""
    update = dict(update)
    update["updated_at"] = utcnow()
    return update
