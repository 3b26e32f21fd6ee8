"""
Operation model for captured change events.

Translates native change stream documents into Operations: a closed set of
seven operation kinds, each carrying its namespace, its stream position and
the native event (after the server-side pipeline) used as the record envelope.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Union, Pattern
import logging
import re

from .cursor import Position
from .errors import StructuralError

logger = logging.getLogger(__name__)


class Scope(str, Enum):
    """Capture scope of a namespace."""
    DEPLOYMENT = "deployment"
    DATABASE = "database"
    COLLECTION = "collection"


@dataclass(frozen=True)
class Namespace:
    """A database, a collection, or (both unset) the whole deployment."""
    database: Optional[str] = None
    collection: Optional[str] = None

    def __post_init__(self):
        if self.collection and not self.database:
            raise ValueError("A collection namespace requires a database")

    @classmethod
    def from_event(cls, ns: Optional[Dict[str, Any]]) -> "Namespace":
        if not ns:
            return cls()
        return cls(database=ns.get("db") or None, collection=ns.get("coll") or None)

    @classmethod
    def parse(cls, full_name: str) -> "Namespace":
        """Parse ``db`` or ``db.coll`` (collection names may contain dots)."""
        if not full_name:
            return cls()
        database, _, collection = full_name.partition(".")
        return cls(database=database, collection=collection or None)

    @property
    def scope(self) -> Scope:
        if self.collection:
            return Scope.COLLECTION
        if self.database:
            return Scope.DATABASE
        return Scope.DEPLOYMENT

    @property
    def full_name(self) -> str:
        if self.collection:
            return f"{self.database}.{self.collection}"
        return self.database or ""

    @property
    def key(self) -> str:
        """Storage key for checkpoints."""
        return self.full_name or "*"

    def parent(self) -> "Namespace":
        if self.collection:
            return Namespace(database=self.database)
        return Namespace()

    def contains(self, other: "Namespace") -> bool:
        """Whether ``other`` falls inside this capture scope."""
        if self.scope is Scope.DEPLOYMENT:
            return True
        if self.scope is Scope.DATABASE:
            return other.database == self.database
        return other == self

    def matches(self, pattern: Union[str, Pattern]) -> bool:
        return re.search(pattern, self.full_name) is not None

    def __str__(self) -> str:
        return self.full_name or "<deployment>"


class OperationType(str, Enum):
    """The seven capturable operation kinds."""
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    DROP_COLLECTION = "drop"
    DROP_DATABASE = "dropDatabase"
    INVALIDATE = "invalidate"


# Native operationType -> OperationType. A rename ends the source namespace.
NATIVE_TYPES: Dict[str, OperationType] = {
    "insert": OperationType.INSERT,
    "update": OperationType.UPDATE,
    "replace": OperationType.REPLACE,
    "delete": OperationType.DELETE,
    "drop": OperationType.DROP_COLLECTION,
    "rename": OperationType.DROP_COLLECTION,
    "dropDatabase": OperationType.DROP_DATABASE,
    "invalidate": OperationType.INVALIDATE,
}

# Envelope fields each kind carries.
PAYLOAD_FIELDS: Dict[OperationType, Tuple[str, ...]] = {
    OperationType.INSERT: ("documentKey", "fullDocument"),
    OperationType.UPDATE: ("documentKey", "updateDescription", "fullDocument"),
    OperationType.REPLACE: ("documentKey", "fullDocument"),
    OperationType.DELETE: ("documentKey",),
    OperationType.DROP_COLLECTION: (),
    OperationType.DROP_DATABASE: (),
    OperationType.INVALIDATE: (),
}

if set(PAYLOAD_FIELDS) != set(OperationType):
    raise RuntimeError("PAYLOAD_FIELDS must cover every OperationType")


@dataclass(frozen=True)
class Operation:
    """
    A single captured event.

    Attributes:
        op_type: Operation kind
        namespace: Originating namespace
        position: Stream position of the native event
        event: Event as delivered after the server-side pipeline (record envelope)
        document_key: ``{"_id": ...}`` for document operations
        full_document: Document payload, when the event carries one
        update_description: Changed/removed fields for updates
    """
    op_type: OperationType
    namespace: Namespace
    position: Position
    event: Dict[str, Any]
    document_key: Optional[Dict[str, Any]] = None
    full_document: Optional[Dict[str, Any]] = None
    update_description: Optional[Dict[str, Any]] = None

    @property
    def has_full_document(self) -> bool:
        return self.full_document is not None

    @property
    def is_terminal(self) -> bool:
        """Drops and invalidates end the life of a namespace or stream."""
        return self.op_type in (
            OperationType.DROP_COLLECTION,
            OperationType.DROP_DATABASE,
            OperationType.INVALIDATE,
        )

    @classmethod
    def for_snapshot(
        cls,
        event: Dict[str, Any],
        namespace: Namespace,
        boundary: Position
    ) -> "Operation":
        """
        Wrap a copied document's envelope as an Insert at the snapshot boundary.

        Args:
            event: Envelope produced by ``snapshot_envelope_stage`` (after any pipeline)
            namespace: Collection the document was copied from
            boundary: Consistent start position of the snapshot
        """
        return cls(
            op_type=OperationType.INSERT,
            namespace=namespace,
            position=boundary.as_copying(),
            event=event,
            document_key=event.get("documentKey"),
            full_document=event.get("fullDocument"),
        )


def snapshot_envelope_stage(namespace: Namespace) -> Dict[str, Any]:
    """
    Aggregation stage that wraps each scanned document in an insert envelope.

    The envelope mirrors a native insert event; its ``_id`` marks the record
    as copied data since a copied document has no resume token of its own.
    """
    return {"$replaceRoot": {"newRoot": {
        "_id": {"_id": "$_id", "copyingData": {"$literal": True}},
        "operationType": {"$literal": "insert"},
        "ns": {"db": {"$literal": namespace.database}, "coll": {"$literal": namespace.collection}},
        "documentKey": {"_id": "$_id"},
        "fullDocument": "$$ROOT",
    }}}


def from_native_event(raw: Dict[str, Any]) -> Optional[Operation]:
    """
    Convert a native change event into an Operation.

    The event has already been through the server-side pipeline, so its
    payload may be reshaped. The server rejects pipelines that change
    ``_id``, so the position is always the native one.

    Args:
        raw: Change stream document as returned by the server

    Returns:
        Operation, or None for kinds that are not captured
        (create, createIndexes, modify, ...)

    Raises:
        StructuralError: If the event carries no resume token
    """
    token = raw.get("_id")
    if not isinstance(token, dict) or not token:
        raise StructuralError(f"Change event without resume token: {raw.get('operationType')}")

    op_type = NATIVE_TYPES.get(raw.get("operationType"))
    if op_type is None:
        logger.debug(f"Skipping uncaptured event type {raw.get('operationType')}")
        return None

    fields = PAYLOAD_FIELDS[op_type]
    return Operation(
        op_type=op_type,
        namespace=Namespace.from_event(raw.get("ns")),
        position=Position.from_token(token),
        event=raw,
        document_key=raw.get("documentKey") if "documentKey" in fields else None,
        full_document=raw.get("fullDocument") if "fullDocument" in fields else None,
        update_description=raw.get("updateDescription") if "updateDescription" in fields else None,
    )
