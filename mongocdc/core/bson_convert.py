"""
BSON to JSON-serializable converter utility.

Renders MongoDB BSON values as plain Python types for the simplified JSON
record format.
"""

from bson import ObjectId, Decimal128, Timestamp, Int64, Regex
from bson.dbref import DBRef
from bson.max_key import MaxKey
from bson.min_key import MinKey
from datetime import datetime
import base64
from typing import Any


def simplify(value: Any) -> Any:
    """
    Recursively convert BSON types to JSON-serializable Python types.

    Handles:
    - ObjectId -> hex str
    - datetime -> ISO-8601 string
    - Decimal128 -> str
    - bytes / Binary -> base64 string
    - Timestamp -> {"t": seconds, "i": increment}
    - Int64 -> int
    - Nested dicts and lists

    Example:
        >>> from bson import ObjectId
        >>> doc = {"_id": ObjectId(), "name": "test"}
        >>> isinstance(simplify(doc)["_id"], str)
        True
    """
    if value is None:
        return None

    if isinstance(value, ObjectId):
        return str(value)

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, Decimal128):
        return str(value)

    # Binary subclasses bytes
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode('ascii')

    if isinstance(value, Timestamp):
        return {"t": value.time, "i": value.inc}

    if isinstance(value, Int64):
        return int(value)

    if isinstance(value, Regex):
        return value.pattern

    if isinstance(value, DBRef):
        return {"$ref": value.collection, "$id": simplify(value.id)}

    if isinstance(value, (MinKey, MaxKey)):
        return str(value)

    if isinstance(value, dict):
        return {k: simplify(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [simplify(v) for v in value]

    return value
