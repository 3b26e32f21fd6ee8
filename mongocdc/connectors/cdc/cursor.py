"""
Resume cursor for change stream consumption.

A Position is the opaque resume token handed out by the server (plus an
operation-time fallback when no token exists yet). The ResumeCursor is the
single-writer, monotonically advancing view of how far the caller has taken
operations, persisted through a CheckpointStore.
"""

from dataclasses import dataclass, replace
from typing import Optional, Dict, Any
import json
import logging

from bson import Timestamp, json_util

from .errors import CDCError, CursorOrderError, InvalidCheckpointError

logger = logging.getLogger(__name__)


def _token_key(token: Dict[str, Any]) -> str:
    data = token.get("_data")
    if isinstance(data, str):
        return data
    if isinstance(data, (bytes, bytearray)):
        # 3.6-era BinData tokens
        return bytes(data).hex()
    return json_util.dumps(token, sort_keys=True)


@dataclass(frozen=True)
class Position:
    """
    A point in the change stream.

    Attributes:
        token: Server resume token (``{"_data": ...}``)
        operation_time: Cluster time used when no token is available
        copying: True while a snapshot taken at this boundary is in progress
    """
    token: Optional[Dict[str, Any]] = None
    operation_time: Optional[Timestamp] = None
    copying: bool = False

    def __post_init__(self):
        if self.token is None and self.operation_time is None:
            raise ValueError("Position needs a resume token or an operation time")

    @classmethod
    def from_token(cls, token: Dict[str, Any]) -> "Position":
        return cls(token=dict(token))

    def is_after(self, other: Optional["Position"]) -> bool:
        """Whether this position is strictly later in the stream than ``other``."""
        if other is None:
            return True
        if self.token is not None and other.token is not None:
            return _token_key(self.token) > _token_key(other.token)
        if self.token is not None:
            # Any event token lies beyond an operation-time boundary
            return True
        if other.token is not None:
            return False
        return self.operation_time > other.operation_time

    def as_copying(self) -> "Position":
        return replace(self, copying=True)

    def as_tailing(self) -> "Position":
        return replace(self, copying=False)

    def to_document(self) -> Dict[str, Any]:
        """JSON-safe representation for the checkpoint store."""
        doc: Dict[str, Any] = {"copying": self.copying}
        if self.token is not None:
            doc["token"] = json.loads(json_util.dumps(self.token))
        if self.operation_time is not None:
            doc["operation_time"] = {
                "t": self.operation_time.time,
                "i": self.operation_time.inc,
            }
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Position":
        token = None
        if doc.get("token") is not None:
            token = json_util.loads(json.dumps(doc["token"]))
        operation_time = None
        if doc.get("operation_time") is not None:
            operation_time = Timestamp(doc["operation_time"]["t"], doc["operation_time"]["i"])
        return cls(token=token, operation_time=operation_time, copying=bool(doc.get("copying", False)))

    def __str__(self) -> str:
        if self.token is not None:
            label = _token_key(self.token)
        else:
            label = f"ts({self.operation_time.time}, {self.operation_time.inc})"
        return f"{label}{' [copying]' if self.copying else ''}"


class ResumeCursor:
    """
    Monotonic, persisted stream position for one source task.

    Thread Safety: NOT thread-safe. Exactly one watcher advances a cursor;
    the coordinator guarantees this by owning at most one watcher.

    Example:
        >>> cursor = ResumeCursor(store, job_id="orders", namespace_key="shop.orders")
        >>> position = cursor.load()   # None means start fresh
        >>> cursor.advance(Position.from_token(change["_id"]))
        >>> cursor.save()
    """

    def __init__(
        self,
        store: 'CheckpointStore',
        job_id: str,
        namespace_key: str,
        tolerate_invalid: bool = False
    ):
        if not hasattr(store, 'save_checkpoint'):
            raise TypeError("store must be a CheckpointStore instance")

        self.store = store
        self.job_id = job_id
        self.namespace_key = namespace_key
        self.tolerate_invalid = tolerate_invalid
        self.records_processed: int = 0

        self._current: Optional[Position] = None
        self._boundary: Optional[Position] = None
        self._saved: Optional[Position] = None

    @property
    def current(self) -> Optional[Position]:
        return self._current

    @property
    def dirty(self) -> bool:
        """True when the in-memory position differs from the persisted one."""
        return self._current is not None and self._current != self._saved

    def load(self) -> Optional[Position]:
        """
        Load the persisted position.

        Returns:
            The stored Position, or None when the task has never run (or,
            with ``tolerate_invalid``, when the stored one is unusable)

        Raises:
            InvalidCheckpointError: If the stored position is unusable and
                ``tolerate_invalid`` is not set
        """
        try:
            doc = self.store.load_checkpoint(self.job_id, self.namespace_key)
        except InvalidCheckpointError as e:
            if not self.tolerate_invalid:
                raise
            logger.warning(
                f"Stored cursor is unusable, starting fresh. Changes since the last run are LOST: {e}",
                extra={"job_id": self.job_id, "namespace": self.namespace_key, "data_loss": True}
            )
            return None

        if doc is None:
            logger.info(
                "No stored cursor, starting fresh",
                extra={"job_id": self.job_id, "namespace": self.namespace_key}
            )
            return None

        position = Position.from_document(doc)
        self._current = position
        self._saved = position
        if position.copying:
            self._boundary = position
        logger.info(
            f"Loaded cursor {position}",
            extra={"job_id": self.job_id, "namespace": self.namespace_key}
        )
        return position

    def advance(self, position: Position) -> None:
        """
        Move the cursor to ``position``.

        Raises:
            CursorOrderError: If ``position`` is not strictly after the current one
        """
        if self._current is not None and self._current.copying:
            raise CursorOrderError(
                f"Cannot advance to {position} while snapshot at {self._current} is in progress"
            )
        if not position.is_after(self._current):
            raise CursorOrderError(
                f"Cursor must move forward: current={self._current}, requested={position}"
            )
        self._current = position

    def begin_snapshot(self, boundary: Position) -> None:
        """Record the consistent start position of a new snapshot and persist it."""
        if self._current is not None and not self._current.copying:
            raise CursorOrderError(
                f"Cannot start a snapshot over an established cursor at {self._current}"
            )
        self._boundary = boundary.as_copying()
        self._current = self._boundary
        self.records_processed = 0
        self.save()

    def complete_snapshot(self) -> Position:
        """Switch from the snapshot boundary to tailing from that same point."""
        if self._boundary is None:
            raise CDCError("No snapshot in progress")
        self._current = self._boundary.as_tailing()
        return self._current

    def snapshot_boundary(self) -> Optional[Position]:
        """Consistent start position of the current (or last) snapshot."""
        if self._boundary is not None:
            return self._boundary.as_tailing()
        return self._current

    def save(self) -> None:
        """Persist the current position if it changed since the last save."""
        if not self.dirty:
            return
        self.store.save_checkpoint(
            job_id=self.job_id,
            namespace=self.namespace_key,
            position=self._current.to_document(),
            records_processed=self.records_processed
        )
        self._saved = self._current
