"""
Write-side CDC handlers.

Translate CDC records back into pymongo write models so a sink can replay a
change feed into another MongoDB collection with ``bulk_write``. Both
handlers dispatch through a lookup table keyed by operation, and return
None for records that need no write.
"""

from typing import Any, Callable, Dict, List, Optional, Union
import logging

from bson import json_util
from pymongo import DeleteOne, ReplaceOne, UpdateOne

from ..connectors.cdc.errors import StructuralError

logger = logging.getLogger(__name__)

WriteModel = Union[ReplaceOne, UpdateOne, DeleteOne]

ID_FIELD = "_id"
JSON_ID_FIELD = "id"


def _document(value: Any, what: str) -> Dict[str, Any]:
    """Accept a document or its Extended JSON text."""
    if isinstance(value, (str, bytes)):
        try:
            value = json_util.loads(value)
        except ValueError as e:
            raise StructuralError(f"{what} is not valid Extended JSON: {e}") from e
    if not isinstance(value, dict):
        raise StructuralError(f"{what} must be a document, got {type(value).__name__}")
    return value


class ChangeStreamHandler:
    """
    Change event envelopes -> write models.

    Example:
        >>> handler = ChangeStreamHandler()
        >>> model = handler.handle({"operationType": "delete", "documentKey": {"_id": 1}})
        >>> collection.bulk_write([model])
    """

    def __init__(self):
        self.operations: Dict[str, Callable[[Dict[str, Any]], Optional[WriteModel]]] = {
            "insert": self._replace,
            "replace": self._replace,
            "update": self._update,
            "delete": self._delete,
            "drop": self._no_write,
            "rename": self._no_write,
            "dropDatabase": self._no_write,
            "invalidate": self._no_write,
        }

    def handle(self, value: Union[str, Dict[str, Any]]) -> Optional[WriteModel]:
        """
        Raises:
            StructuralError: Unknown operation type or missing payload
        """
        event = _document(value, "change event")
        op_type = event.get("operationType")
        operation = self.operations.get(op_type)
        if operation is None:
            raise StructuralError(f"Unsupported change event operation type: {op_type!r}")
        return operation(event)

    def handle_batch(self, values: List[Union[str, Dict[str, Any]]]) -> List[WriteModel]:
        models = (self.handle(v) for v in values)
        return [m for m in models if m is not None]

    def _key(self, event: Dict[str, Any]) -> Dict[str, Any]:
        key = event.get("documentKey")
        if not isinstance(key, dict) or ID_FIELD not in key:
            raise StructuralError(f"{event.get('operationType')} event without documentKey._id")
        return {ID_FIELD: key[ID_FIELD]}

    def _replace(self, event: Dict[str, Any]) -> ReplaceOne:
        document = event.get("fullDocument")
        if not isinstance(document, dict):
            raise StructuralError(f"{event.get('operationType')} event without fullDocument")
        return ReplaceOne(self._key(event), document, upsert=True)

    def _update(self, event: Dict[str, Any]) -> WriteModel:
        if isinstance(event.get("fullDocument"), dict):
            return self._replace(event)

        description = event.get("updateDescription") or {}
        update: Dict[str, Any] = {}
        if description.get("updatedFields"):
            update["$set"] = description["updatedFields"]
        if description.get("removedFields"):
            update["$unset"] = {name: "" for name in description["removedFields"]}
        if not update:
            raise StructuralError("update event without fullDocument or updateDescription")
        return UpdateOne(self._key(event), update)

    def _delete(self, event: Dict[str, Any]) -> DeleteOne:
        return DeleteOne(self._key(event))

    def _no_write(self, event: Dict[str, Any]) -> None:
        logger.debug(f"No write for {event.get('operationType')} event")
        return None


class DebeziumMongoHandler:
    """
    Debezium MongoDB connector records -> write models.

    Record layout: key ``{"id": "<_id as Extended JSON>"}``; value with
    ``op`` (c, r, u, d) and ``after`` (c, r) or ``patch``/``filter`` (u) as
    Extended JSON strings.
    """

    def __init__(self):
        self.operations: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], WriteModel]] = {
            "c": self._insert,
            "r": self._insert,
            "u": self._update,
            "d": self._delete,
        }

    def handle(
        self,
        key: Optional[Union[str, Dict[str, Any]]],
        value: Optional[Union[str, Dict[str, Any]]]
    ) -> Optional[WriteModel]:
        """
        Raises:
            StructuralError: Missing key document or unknown op
        """
        if key is None:
            raise StructuralError("Key document must not be missing for CDC mode")
        key_doc = _document(key, "key document")
        value_doc = _document(value, "value document") if value is not None else {}

        if JSON_ID_FIELD in key_doc and not value_doc:
            logger.debug("Skipping debezium tombstone event for topic compaction")
            return None

        op = value_doc.get("op")
        operation = self.operations.get(op)
        if operation is None:
            raise StructuralError(f"Unsupported debezium operation: {op!r}")
        return operation(key_doc, value_doc)

    def _id_filter(self, key_doc: Dict[str, Any]) -> Dict[str, Any]:
        if JSON_ID_FIELD not in key_doc:
            raise StructuralError(f"Key document must contain '{JSON_ID_FIELD}'")
        raw_id = key_doc[JSON_ID_FIELD]
        if isinstance(raw_id, str):
            try:
                raw_id = json_util.loads(raw_id)
            except ValueError:
                # plain string ids are not JSON encoded
                pass
        return {ID_FIELD: raw_id}

    def _insert(self, key_doc: Dict[str, Any], value_doc: Dict[str, Any]) -> ReplaceOne:
        if "after" not in value_doc:
            raise StructuralError("Insert record without 'after'")
        document = _document(value_doc["after"], "after")
        if ID_FIELD not in document:
            raise StructuralError("Inserted document without _id")
        return ReplaceOne({ID_FIELD: document[ID_FIELD]}, document, upsert=True)

    def _update(self, key_doc: Dict[str, Any], value_doc: Dict[str, Any]) -> WriteModel:
        if "patch" not in value_doc:
            raise StructuralError("Update record without 'patch'")
        patch = _document(value_doc["patch"], "patch")
        if value_doc.get("filter"):
            id_filter = _document(value_doc["filter"], "filter")
        else:
            id_filter = self._id_filter(key_doc)

        # a patch carrying _id is a whole-document replacement
        if ID_FIELD in patch:
            return ReplaceOne(id_filter, patch, upsert=True)
        if not any(k.startswith("$") for k in patch):
            raise StructuralError("Update patch must use update operators or carry _id")
        return UpdateOne(id_filter, patch)

    def _delete(self, key_doc: Dict[str, Any], value_doc: Dict[str, Any]) -> DeleteOne:
        return DeleteOne(self._id_filter(key_doc))
