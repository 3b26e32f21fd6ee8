"""
Copy-existing snapshot.

Enumerates the documents that exist before tailing starts with a fixed pool
of worker threads. Workers claim Copy Tasks from a shared task queue and push
Insert operations onto one bounded queue drained by the coordinator. A full
queue blocks the workers; nothing is dropped.
"""

from contextlib import closing
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import contextvars
import logging
import queue
import re
import threading
import time

from pymongo.errors import OperationFailure, PyMongoError
from prometheus_client import Counter

from .config import CDCConfig
from .cursor import Position
from .errors import CDCError, SnapshotError
from .operations import Namespace, Operation, snapshot_envelope_stage
from .source import NAMESPACE_GONE_CODES

logger = logging.getLogger(__name__)

snapshot_documents_total = Counter(
    'mongocdc_snapshot_documents_total',
    'Documents copied by copy-existing',
    ['namespace']
)

snapshot_failures_total = Counter(
    'mongocdc_snapshot_failures_total',
    'Aborted snapshots',
    ['error_type']
)

# Suspension granularity for stop checks
_WAIT_SLICE = 0.1


@dataclass(frozen=True)
class CopyTask:
    """One namespace, or one ``_id`` range of it, scanned by a single worker."""
    namespace: Namespace
    id_min: Any = None
    id_max: Any = None
    partitioned: bool = False
    last: bool = True

    def query(self) -> Optional[Dict[str, Any]]:
        if not self.partitioned:
            return None
        upper = "$lte" if self.last else "$lt"
        return {"_id": {"$gte": self.id_min, upper: self.id_max}}

    def __str__(self) -> str:
        if not self.partitioned:
            return self.namespace.full_name
        closing_bracket = "]" if self.last else ")"
        return f"{self.namespace.full_name}[{self.id_min!r}, {self.id_max!r}{closing_bracket}"


class SnapshotCopier:
    """
    Concurrent copy of existing documents.

    Lifecycle: ``establish_start_position()`` -> ``start()`` -> ``drain()``
    until ``finished`` -> ``stop()``. Any worker failure aborts the snapshot
    and is exposed through ``error``.

    Thread Safety: ``drain`` must be called from a single consumer thread.
    """

    def __init__(self, source: 'MongoEventSource', config: CDCConfig):
        self.source = source
        self.config = config
        self.scope = config.namespace

        self.queue: "queue.Queue[Operation]" = queue.Queue(maxsize=config.copy_existing_queue_size)
        self._tasks: "queue.Queue[CopyTask]" = queue.Queue()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._workers: List[threading.Thread] = []

        self.consistent_position: Optional[Position] = None
        self.error: Optional[SnapshotError] = None
        self.documents_copied: int = 0
        self.tasks_total: int = 0

    def establish_start_position(self) -> Position:
        """
        Record the stream position the tail will resume from.

        Raises:
            SnapshotError: If the server cannot be asked for a position
        """
        try:
            self.consistent_position = self.source.current_position(self.scope)
        except PyMongoError as e:
            snapshot_failures_total.labels(error_type=type(e).__name__).inc()
            raise SnapshotError(f"Cannot establish a start position for {self.scope}: {e}") from e
        logger.info(
            f"Snapshot consistent start position {self.consistent_position}",
            extra={"job_id": self.config.job_id, "namespace": self.scope.full_name}
        )
        return self.consistent_position

    def plan_tasks(self) -> List[CopyTask]:
        """Split the scope into copy tasks."""
        namespaces = self.source.list_namespaces(self.scope)
        if self.config.copy_existing_namespace_regex:
            pattern = re.compile(self.config.copy_existing_namespace_regex)
            namespaces = [ns for ns in namespaces if ns.matches(pattern)]

        tasks: List[CopyTask] = []
        for namespace in namespaces:
            tasks.extend(self._partition(namespace))
        return tasks

    def _partition(self, namespace: Namespace) -> List[CopyTask]:
        partitions = self.config.copy_existing_partitions
        if partitions <= 1:
            return [CopyTask(namespace)]

        bounds = self.source.partition_bounds(namespace, partitions)
        bound_types = {type(value) for pair in bounds for value in pair}
        if len(bounds) < 2 or len(bound_types) != 1:
            # ranges over mixed _id types would skip documents
            return [CopyTask(namespace)]

        return [
            CopyTask(namespace, id_min=low, id_max=high, partitioned=True, last=(i == len(bounds) - 1))
            for i, (low, high) in enumerate(bounds)
        ]

    def start(self) -> None:
        """
        Plan the copy tasks and start the worker pool.

        Raises:
            CDCError: If called before ``establish_start_position``
            SnapshotError: If the namespaces to copy cannot be listed
        """
        if self.consistent_position is None:
            raise CDCError("establish_start_position() must run before start()")

        try:
            tasks = self.plan_tasks()
        except PyMongoError as e:
            snapshot_failures_total.labels(error_type=type(e).__name__).inc()
            logger.error(
                f"Cannot plan copy tasks for {self.scope}: {e}",
                extra={"job_id": self.config.job_id, "namespace": self.scope.full_name}
            )
            raise SnapshotError(f"Cannot plan copy tasks for {self.scope}: {e}") from e
        for task in tasks:
            self._tasks.put(task)
        self.tasks_total = len(tasks)

        worker_count = min(self.config.copy_existing_max_threads, max(1, len(tasks)))
        for i in range(worker_count):
            # workers inherit the caller's log context (task id)
            worker = threading.Thread(
                target=contextvars.copy_context().run,
                args=(self._run_worker,),
                name=f"mongocdc-copy-{self.config.job_id}-{i}",
                daemon=True
            )
            self._workers.append(worker)
            worker.start()

        logger.info(
            f"Started copy existing: {len(tasks)} tasks on {worker_count} workers",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.scope.full_name,
                "tasks": [str(t) for t in tasks],
            }
        )

    @property
    def workers_done(self) -> bool:
        return bool(self._workers) and not any(w.is_alive() for w in self._workers)

    @property
    def finished(self) -> bool:
        """All tasks completed without error and the queue is drained."""
        return (
            self.error is None
            and not self._stop_event.is_set()
            and self.workers_done
            and self._tasks.empty()
            and self.queue.empty()
        )

    def drain(self, max_items: int, timeout: float) -> List[Operation]:
        """
        Take up to ``max_items`` operations, waiting at most ``timeout`` for the first.
        """
        items: List[Operation] = []
        deadline = time.monotonic() + timeout
        while not items:
            try:
                items.append(self.queue.get(timeout=_WAIT_SLICE))
            except queue.Empty:
                if self.error or self.workers_done or time.monotonic() >= deadline:
                    break
        while len(items) < max_items:
            try:
                items.append(self.queue.get_nowait())
            except queue.Empty:
                break
        return items

    def stop(self, timeout: float = 5.0) -> None:
        """Ask every worker to stop at its next suspension point."""
        self._stop_event.set()
        for worker in self._workers:
            worker.join(timeout=timeout)
        logger.info(
            "Copy existing stopped",
            extra={
                "job_id": self.config.job_id,
                "namespace": self.scope.full_name,
                "documents_copied": self.documents_copied,
            }
        )

    def _run_worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                task = self._tasks.get_nowait()
            except queue.Empty:
                return
            try:
                self._copy(task)
            except Exception as e:
                self._fail(task, e)
                return

    def _copy(self, task: CopyTask) -> None:
        copied = 0
        try:
            with closing(self.source.scan(
                task.namespace,
                query=task.query(),
                pipeline=self._scan_stages(task.namespace)
            )) as documents:
                for event in documents:
                    if self._stop_event.is_set():
                        return
                    operation = Operation.for_snapshot(event, task.namespace, self.consistent_position)
                    if not self._put(operation):
                        return
                    copied += 1
        except OperationFailure as e:
            if e.code not in NAMESPACE_GONE_CODES:
                raise
            logger.info(
                f"Namespace {task.namespace} disappeared during copy, treating remainder as empty",
                extra={"job_id": self.config.job_id, "namespace": task.namespace.full_name}
            )
        finally:
            with self._lock:
                self.documents_copied += copied
            snapshot_documents_total.labels(namespace=task.namespace.full_name).inc(copied)

        logger.debug(
            f"Copied {copied} documents from {task}",
            extra={"job_id": self.config.job_id, "namespace": task.namespace.full_name}
        )

    def _scan_stages(self, namespace: Namespace) -> List[Dict[str, Any]]:
        """Copy pipeline, then the insert envelope, then the change stream pipeline."""
        return (
            list(self.config.copy_existing_pipeline or [])
            + [snapshot_envelope_stage(namespace)]
            + list(self.config.pipeline or [])
        )

    def _put(self, operation: Operation) -> bool:
        while not self._stop_event.is_set():
            try:
                self.queue.put(operation, timeout=_WAIT_SLICE)
                return True
            except queue.Full:
                continue
        return False

    def _fail(self, task: CopyTask, error: Exception) -> None:
        with self._lock:
            if self.error is None:
                self.error = SnapshotError(f"Copying {task} failed: {error}")
                self.error.__cause__ = error
        self._stop_event.set()
        snapshot_failures_total.labels(error_type=type(error).__name__).inc()
        logger.error(
            f"Copy task {task} failed, aborting snapshot: {error}",
            extra={
                "job_id": self.config.job_id,
                "namespace": task.namespace.full_name,
                "error_type": type(error).__name__,
            }
        )
