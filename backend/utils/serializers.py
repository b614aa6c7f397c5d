from bson import ObjectId
from datetime import datetime

from pydantic import BaseModel


def serialize_object_id(value):
    return str(value) if isinstance(value, ObjectId) else value


def serialize_doc(value):
    """Make a Mongo document (or pydantic model) JSON-safe: ObjectId -> str, datetime -> ISO."""
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True)
    if isinstance(value, dict):
        return {
            ("id" if k == "_id" else k): serialize_doc(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [serialize_doc(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return serialize_object_id(value)


def serialize_wallet(wallet, limit: int = 50) -> dict:
    doc = serialize_doc(wallet)
    # newest first
    doc["transactions"] = list(reversed(doc.get("transactions") or []))[:limit]
    return doc
