"""
MongoDB CDC using changestreams with crash recovery.

The watcher:
1. Opens a change stream at the resume cursor (or at "now")
2. Pulls native events in bounded batches and converts them to Operations
3. Survives drops and invalidates by reopening after the terminal event
4. Handles connection failures with exponential backoff
5. Refuses to silently skip history that the oplog no longer holds
6. Metrics instrumentation (records, lag, errors, reopens)
"""

from pymongo.errors import PyMongoError, OperationFailure, ConnectionFailure, ServerSelectionTimeoutError
from typing import Callable, Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
import time
import logging

from bson import Timestamp
from prometheus_client import Counter, Gauge, Histogram

from .config import CDCConfig
from .cursor import Position, ResumeCursor
from .errors import CDCError, ResumeNotPossibleError
from .operations import Namespace, Operation, from_native_event

logger = logging.getLogger(__name__)

cdc_records_processed = Counter(
    'mongocdc_records_total',
    'Total CDC operations emitted',
    ['namespace', 'operation']
)

cdc_lag_seconds = Gauge(
    'mongocdc_lag_seconds',
    'Lag between cluster time and processing',
    ['namespace']
)

cdc_batch_duration = Histogram(
    'mongocdc_batch_seconds',
    'Time to pull one batch',
    ['namespace']
)

cdc_errors_total = Counter(
    'mongocdc_errors_total',
    'Total CDC errors',
    ['namespace', 'error_type']
)

cdc_reopens_total = Counter(
    'mongocdc_reopens_total',
    'Change stream reopens',
    ['namespace', 'reason']
)

# AuthenticationFailed, Unauthorized
NON_RETRYABLE_CODES = {13, 18}

# InvalidResumeToken, ChangeStreamFatalError, ChangeStreamHistoryLost
RESUME_IMPOSSIBLE_CODES = {260, 280, 286}
RESUME_IMPOSSIBLE_MESSAGES = (
    "resume of change stream was not possible",
    "resume point may no longer be in the oplog",
)

# Native types that end the life of the namespace they name
_TERMINAL_NATIVE_TYPES = {"drop", "rename", "dropDatabase"}


def is_resume_impossible(error: PyMongoError) -> bool:
    """Whether ``error`` means the stored position has aged out of the oplog."""
    if isinstance(error, OperationFailure) and error.code in RESUME_IMPOSSIBLE_CODES:
        return True
    message = str(error).lower()
    return any(m in message for m in RESUME_IMPOSSIBLE_MESSAGES)


class WatcherState(str, Enum):
    UNOPENED = "unopened"
    OPENING = "opening"
    TAILING = "tailing"
    REOPENING = "reopening"
    CLOSED = "closed"


@dataclass
class WatchBatch:
    """Operations pulled in one call and the stream position reached."""
    operations: List[Operation] = field(default_factory=list)
    last_position: Optional[Position] = None

    def __len__(self) -> int:
        return len(self.operations)


class ChangeStreamWatcher:
    """
    Pull-based change stream watcher for one source task.

    Features:
    - Resume from the persisted cursor (start_after / start_at_operation_time)
    - Bounded batches (size or await timeout)
    - Exponential backoff on connection failures
    - Drop/invalidate survival: reopens after the terminal event at the same scope
    - Server-side pipeline; the cursor still advances past filtered-out events

    Thread Safety: NOT thread-safe. One watcher per source task, and it is
    the only writer of its cursor.

    Example:
        >>> watcher = ChangeStreamWatcher(source, cursor, CDCConfig(database="shop", collection="orders"))
        >>> batch = watcher.next_batch()
        >>> deliver(batch.operations)
        >>> watcher.mark_delivered(batch)
    """

    def __init__(
        self,
        source: 'MongoEventSource',
        cursor: ResumeCursor,
        config: CDCConfig,
        start_position: Optional[Position] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize changestream watcher.

        Args:
            source: Event source wrapping the MongoDB client
            cursor: Resume cursor this watcher advances
            config: CDC configuration
            start_position: Where to open; None opens at "now"
            sleep: Backoff sleep (injectable for tests)
        """
        if not hasattr(source, 'watch'):
            raise TypeError("source must be a MongoEventSource instance")

        self.source = source
        self.cursor = cursor
        self.config = config
        self.namespace: Namespace = config.namespace
        self._sleep = sleep

        self.state = WatcherState.UNOPENED
        self._stream = None
        self._last_position: Optional[Position] = start_position.as_tailing() if start_position else None
        self._opened_at: Optional[Position] = None
        self.reopen_count: int = 0
        self._tail_failures: int = 0

        logger.info(
            f"Initialized ChangeStreamWatcher for {self.namespace}",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.namespace.full_name,
                "start_position": str(self._last_position) if self._last_position else "now",
                "full_document": self.config.full_document,
            }
        )

    @property
    def last_position(self) -> Optional[Position]:
        """Position of the last native event pulled (not necessarily delivered)."""
        return self._last_position

    def next_batch(self, max_items: Optional[int] = None, await_timeout: Optional[float] = None) -> WatchBatch:
        """
        Pull the next batch of operations.

        Opens (or reopens) the stream first when needed. Returns when the
        batch is full, the stream has nothing more within one server await,
        a terminal event was seen, or a transient error interrupted tailing.

        Raises:
            ResumeNotPossibleError: Stored position is no longer in the oplog
            CDCError: Retries exhausted or non-retryable error
        """
        if self.state is WatcherState.CLOSED:
            return WatchBatch()

        max_items = max_items or self.config.poll_max_batch_size
        await_timeout = self.config.poll_await_time if await_timeout is None else await_timeout

        if self.state in (WatcherState.UNOPENED, WatcherState.REOPENING):
            self._open(self._last_position)

        batch_start = time.time()
        deadline = time.monotonic() + await_timeout
        operations: List[Operation] = []
        pulled = 0

        try:
            # Skipped events count toward both bounds
            while pulled < max_items:
                change = self._stream.try_next()
                self._tail_failures = 0
                if change is None:
                    self._take_post_batch_token()
                    if not getattr(self._stream, "alive", True):
                        # closed by an invalidate the pipeline filtered out
                        self._begin_reopen("closed")
                    break

                pulled += 1
                if change.get("operationType") == "invalidate":
                    # never emitted; the stream is unusable past this point
                    self._last_position = Position.from_token(change["_id"])
                    self._begin_reopen("invalidate")
                    break

                operation = from_native_event(change)
                self._last_position = Position.from_token(change["_id"])
                self._observe_lag(change)

                if operation is not None and self._publishable(operation):
                    operations.append(operation)

                if self._ends_watched_namespace(change):
                    self._begin_reopen(change["operationType"])
                    break

                if time.monotonic() >= deadline:
                    break

        except PyMongoError as e:
            if not (self._is_retryable_error(e) or is_resume_impossible(e)):
                cdc_errors_total.labels(namespace=self.namespace.full_name, error_type=type(e).__name__).inc()
                logger.error(
                    f"Non-retryable error while tailing: {e}",
                    extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name, "error": str(e)}
                )
                raise CDCError(f"Non-retryable error: {e}") from e

            self._tail_failures += 1
            if self._tail_failures > self.config.max_retries:
                cdc_errors_total.labels(namespace=self.namespace.full_name, error_type=type(e).__name__).inc()
                logger.error(
                    "Max retries exceeded while tailing change stream",
                    extra={
                        "job_id": self.config.job_id,
                        "namespace": self.namespace.full_name,
                        "attempt": self._tail_failures,
                        "error": str(e)
                    }
                )
                self._close_stream()
                raise CDCError(f"Max retries exceeded while tailing: {e}") from e

            logger.warning(
                f"Change stream interrupted, returning {len(operations)} operations and reopening: {e}",
                extra={
                    "job_id": self.config.job_id,
                    "namespace": self.namespace.full_name,
                    "error_type": type(e).__name__,
                }
            )
            self._handle_error(e, self._tail_failures)
            self._begin_reopen("error")

        for operation in operations:
            cdc_records_processed.labels(
                namespace=operation.namespace.full_name,
                operation=operation.op_type.value
            ).inc()
        cdc_batch_duration.labels(namespace=self.namespace.full_name).observe(time.time() - batch_start)

        if operations:
            logger.debug(
                f"Pulled batch of {len(operations)} operations",
                extra={
                    "job_id": self.config.job_id,
                    "namespace": self.namespace.full_name,
                    "batch_size": len(operations),
                    "last_position": str(self._last_position),
                }
            )
        return WatchBatch(operations=operations, last_position=self._last_position)

    def mark_delivered(self, batch: WatchBatch) -> None:
        """
        Advance the cursor past every operation of ``batch`` and to its end position.

        Raises:
            CursorOrderError: If an operation is not after the cursor
        """
        for operation in batch.operations:
            self.cursor.advance(operation.position)
            self.cursor.records_processed += 1
        if batch.last_position is not None and batch.last_position.is_after(self.cursor.current):
            self.cursor.advance(batch.last_position)

    def rewind(self) -> None:
        """Forget undelivered progress; the next pull resumes from the cursor."""
        self._close_stream()
        self._last_position = self.cursor.current or self._opened_at
        self.state = WatcherState.REOPENING
        logger.info(
            f"Rewound watcher to {self._last_position}",
            extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name}
        )

    def close(self) -> None:
        """Release the stream handle. Later pulls return empty batches."""
        self._close_stream()
        self.state = WatcherState.CLOSED
        logger.info(
            f"Closed change stream watcher for {self.namespace}",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.namespace.full_name,
                "reopens": self.reopen_count,
            }
        )

    def _open(self, position: Optional[Position]) -> None:
        reopening = self.state is WatcherState.REOPENING
        self.state = WatcherState.OPENING

        attempt = 0
        while True:
            try:
                self._stream = self.source.watch(
                    self.namespace,
                    pipeline=self.config.pipeline,
                    full_document=self.config.full_document,
                    batch_size=self.config.batch_size or None,
                    max_await_time_ms=self.config.poll_await_time_ms,
                    **self._start_options(position)
                )
                break

            except PyMongoError as e:
                if position is not None and is_resume_impossible(e):
                    cdc_errors_total.labels(namespace=self.namespace.full_name, error_type="ResumeNotPossible").inc()
                    if not self.config.tolerate_resume_failure:
                        logger.error(
                            f"Cannot resume change stream from {position}: {e}",
                            extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name}
                        )
                        raise ResumeNotPossibleError(
                            f"Resume position {position} is no longer available: {e}"
                        ) from e
                    logger.warning(
                        f"Resume position {position} is gone, restarting from now. "
                        f"Changes in between are LOST.",
                        extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name, "data_loss": True}
                    )
                    position = None
                    continue

                if not self._is_retryable_error(e):
                    logger.error(
                        f"Non-retryable MongoDB error: {e}",
                        extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name, "error": str(e)}
                    )
                    raise CDCError(f"Non-retryable error: {e}") from e

                attempt += 1
                if attempt > self.config.max_retries:
                    logger.error(
                        "Max retries exceeded opening change stream",
                        extra={
                            "job_id": self.config.job_id,
                            "namespace": self.namespace.full_name,
                            "attempt": attempt,
                            "error": str(e)
                        }
                    )
                    raise CDCError(f"Max retries exceeded: {e}") from e

                self._handle_error(e, attempt)

        if position is None:
            # Opened at "now": the stream's initial token anchors the cursor
            self._take_post_batch_token()
        self._opened_at = position or self._last_position
        self.state = WatcherState.TAILING

        logger.info(
            f"{'Reopened' if reopening else 'Opened'} changestream for {self.namespace}",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.namespace.full_name,
                "position": str(position) if position else "now",
            }
        )

    def _start_options(self, position: Optional[Position]) -> Dict[str, Any]:
        if position is None:
            return {}
        if position.token is not None:
            return {"start_after": position.token}
        return {"start_at_operation_time": position.operation_time}

    def _take_post_batch_token(self) -> None:
        token = getattr(self._stream, "resume_token", None)
        if not token:
            return
        position = Position.from_token(token)
        if position.is_after(self._last_position):
            self._last_position = position

    def _begin_reopen(self, reason: str) -> None:
        self._close_stream()
        self.state = WatcherState.REOPENING
        self.reopen_count += 1
        cdc_reopens_total.labels(namespace=self.namespace.full_name, reason=reason).inc()
        logger.info(
            f"Change stream for {self.namespace} will reopen after {reason} at {self._last_position}",
            extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name, "reason": reason}
        )

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(
                f"Error closing change stream: {e}",
                extra={"job_id": self.config.job_id, "namespace": self.namespace.full_name}
            )
        self._stream = None

    def _ends_watched_namespace(self, change: Dict[str, Any]) -> bool:
        if change.get("operationType") not in _TERMINAL_NATIVE_TYPES:
            return False
        if self.namespace.collection is None and self.namespace.database is None:
            return False
        return Namespace.from_event(change.get("ns")) == self.namespace

    def _publishable(self, operation: Operation) -> bool:
        if self.config.publish_full_document_only and not operation.has_full_document:
            logger.debug(
                f"Skipping {operation.op_type.value} without a full document",
                extra={"job_id": self.config.job_id, "namespace": operation.namespace.full_name}
            )
            return False
        return True

    def _handle_error(self, error: Exception, attempt: int) -> None:
        """Sleep with exponential backoff before reconnecting."""
        delay = min(
            self.config.retry_backoff_base ** attempt,
            self.config.max_retry_delay
        )

        logger.warning(
            f"Error occurred, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.namespace.full_name,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )

        cdc_errors_total.labels(
            namespace=self.namespace.full_name,
            error_type=type(error).__name__
        ).inc()

        self._sleep(delay)

    def _is_retryable_error(self, error: PyMongoError) -> bool:
        """Check if error is retryable."""
        if isinstance(error, (ConnectionFailure, ServerSelectionTimeoutError)):
            return True

        if isinstance(error, OperationFailure) and error.code in NON_RETRYABLE_CODES:
            return False

        return error.has_error_label("ResumableChangeStreamError")

    def _observe_lag(self, change: Dict[str, Any]) -> None:
        cluster_time = change.get("clusterTime")
        if isinstance(cluster_time, Timestamp):
            lag = max(0.0, time.time() - cluster_time.time)
            cdc_lag_seconds.labels(namespace=self.namespace.full_name).set(lag)
