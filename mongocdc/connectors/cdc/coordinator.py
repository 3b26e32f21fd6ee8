"""
Dispatch coordinator.

Single poll entry point for one source task: runs the optional snapshot,
hands over to the change stream watcher at the snapshot's consistent start
position, encodes operations and keeps the resume cursor in step with what
was handed to the caller.
"""

from typing import List, Optional
import logging
import time

from .config import CDCConfig
from .copier import SnapshotCopier
from .cursor import Position, ResumeCursor
from .encoder import RecordEncoder, SourceRecord
from .errors import CDCError, SnapshotError, StructuralError
from .mongo_changestream import ChangeStreamWatcher
from .operations import Operation

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """
    Pull-based CDC source task.

    Each ``poll()`` first persists the cursor reached by the previous poll
    (the caller coming back acknowledges the records it received), then
    returns the next batch of records. ``poll()`` never blocks longer than
    the configured await time, returns ``[]`` when nothing is available,
    and keeps returning ``[]`` after ``shutdown()``.

    Thread Safety: NOT thread-safe. Drive it from one thread.

    Example:
        >>> coordinator = DispatchCoordinator(source, store, CDCConfig(database="shop", copy_existing=True))
        >>> while running:
        ...     records = coordinator.poll()
        ...     sink(records)
        ...     coordinator.commit()
        >>> coordinator.shutdown()
    """

    def __init__(
        self,
        source: 'MongoEventSource',
        store: 'CheckpointStore',
        config: CDCConfig,
        encoder: Optional[RecordEncoder] = None,
        sleep=time.sleep
    ):
        self.source = source
        self.store = store
        self.config = config
        self.cursor = ResumeCursor(
            store,
            job_id=config.job_id,
            namespace_key=config.namespace.key,
            tolerate_invalid=config.tolerate_resume_failure
        )
        self.encoder = encoder or RecordEncoder(config)
        self._sleep = sleep

        self.copier: Optional[SnapshotCopier] = None
        self.watcher: Optional[ChangeStreamWatcher] = None
        self._started = False
        self._closed = False
        self._failure: Optional[CDCError] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def poll(self) -> List[SourceRecord]:
        """
        Return the next batch of records, possibly empty.

        Raises:
            SnapshotError: A copy worker failed; the snapshot restarts on the next run
            StructuralError: A record could not be encoded; the cursor does not move.
                During a snapshot the failure is final for this task
            InvalidCheckpointError: The stored cursor is unusable
            ResumeNotPossibleError: The stored position is gone from the oplog
            CDCError: Retries exhausted or non-retryable source error
        """
        if self._closed:
            return []
        if self._failure is not None:
            raise self._failure

        self.commit()

        if not self._started:
            self._start()

        if self.copier is not None:
            records = self._poll_snapshot()
            if records is not None:
                return records

        return self._poll_stream()

    def current_cursor(self) -> Optional[Position]:
        """Position reached by the records handed out so far."""
        return self.cursor.current

    def commit(self) -> None:
        """Persist the cursor for every record handed out so far."""
        self.cursor.save()

    def shutdown(self, commit: bool = True) -> None:
        """
        Stop the copier and watcher.

        Args:
            commit: Persist the cursor for the records handed out. Pass False
                when the caller failed to deliver the last batch.
        """
        if self._closed:
            return
        self._closed = True

        if self.copier is not None:
            self.copier.stop()
        if self.watcher is not None:
            self.watcher.close()
        if commit:
            self.cursor.save()

        logger.info(
            "Dispatch coordinator shut down",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.config.namespace.full_name,
                "position": str(self.cursor.current),
                "records_processed": self.cursor.records_processed,
            }
        )

    def _start(self) -> None:
        position = self.cursor.load()
        self._started = True

        if self.config.copy_existing and (position is None or position.copying):
            if position is not None:
                logger.warning(
                    "Previous snapshot did not finish, restarting it",
                    extra={"job_id": self.config.job_id, "namespace": self.config.namespace.full_name}
                )
            self.copier = SnapshotCopier(self.source, self.config)
            try:
                boundary = self.copier.establish_start_position()
                self.cursor.begin_snapshot(boundary)
                self.copier.start()
            except SnapshotError as e:
                self._fail_snapshot(e)
                raise
            return

        if position is not None and position.copying:
            # copy_existing was switched off mid-snapshot
            position = self.cursor.complete_snapshot()
        self.watcher = self._new_watcher(position)

    def _new_watcher(self, position: Optional[Position]) -> ChangeStreamWatcher:
        return ChangeStreamWatcher(
            self.source,
            self.cursor,
            self.config,
            start_position=position,
            sleep=self._sleep,
        )

    def _poll_snapshot(self) -> Optional[List[SourceRecord]]:
        """Records from the copier, or None once the copier has handed over."""
        operations = self.copier.drain(self.config.poll_max_batch_size, self.config.poll_await_time)

        if self.copier.error is not None:
            self._fail_snapshot(self.copier.error)
            raise self.copier.error

        if operations:
            try:
                records = self._encode(operations)
            except StructuralError as e:
                # drained documents cannot be put back
                self._fail_snapshot(e)
                raise
            self.cursor.records_processed += len(records)
            return records

        if not self.copier.finished:
            return []

        self.copier.stop()
        boundary = self.cursor.complete_snapshot()
        logger.info(
            f"Snapshot complete ({self.copier.documents_copied} documents), tailing from {boundary}",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.config.namespace.full_name,
                "documents_copied": self.copier.documents_copied,
            }
        )
        self.copier = None
        self.watcher = self._new_watcher(boundary)
        return None

    def _fail_snapshot(self, error: CDCError) -> None:
        """Stop copying and fail every later poll; the cursor keeps the snapshot boundary."""
        self.copier.stop()
        self._failure = error
        logger.error(
            f"Snapshot aborted, it restarts on the next run: {error}",
            extra={"job_id": self.config.job_id, "namespace": self.config.namespace.full_name}
        )

    def _poll_stream(self) -> List[SourceRecord]:
        batch = self.watcher.next_batch(self.config.poll_max_batch_size, self.config.poll_await_time)
        try:
            records = self._encode(batch.operations)
        except StructuralError:
            self.watcher.rewind()
            raise
        self.watcher.mark_delivered(batch)
        return records

    def _encode(self, operations: List[Operation]) -> List[SourceRecord]:
        return [self.encoder.encode(operation) for operation in operations]
