"""
CDC (Change Data Capture) module for MongoDB changestream processing.
"""

from .errors import (
    CDCError,
    ConfigurationError,
    ResumeNotPossibleError,
    CursorOrderError,
    CheckpointError,
    InvalidCheckpointError,
    SnapshotError,
    StructuralError,
)
from .config import CDCConfig, OutputFormat
from .operations import Namespace, Operation, OperationType, from_native_event
from .cursor import Position, ResumeCursor
from .pipeline import validate_pipeline
from .checkpoint_store import CheckpointStore, CDCCheckpoint
from .source import MongoEventSource
from .copier import CopyTask, SnapshotCopier
from .mongo_changestream import ChangeStreamWatcher, WatcherState, WatchBatch
from .encoder import RecordEncoder, SourceRecord
from .coordinator import DispatchCoordinator

__all__ = [
    "CDCError",
    "ConfigurationError",
    "ResumeNotPossibleError",
    "CursorOrderError",
    "CheckpointError",
    "InvalidCheckpointError",
    "SnapshotError",
    "StructuralError",
    "CDCConfig",
    "OutputFormat",
    "Namespace",
    "Operation",
    "OperationType",
    "from_native_event",
    "Position",
    "ResumeCursor",
    "validate_pipeline",
    "CheckpointStore",
    "CDCCheckpoint",
    "MongoEventSource",
    "CopyTask",
    "SnapshotCopier",
    "ChangeStreamWatcher",
    "WatcherState",
    "WatchBatch",
    "RecordEncoder",
    "SourceRecord",
    "DispatchCoordinator",
]
