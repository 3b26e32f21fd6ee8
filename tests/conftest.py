"""Shared fixtures: an in-memory change event source and a SQLite checkpoint store.

Aggregation pipelines (change stream and copy) are evaluated by mongomock.
"""

import copy
import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import mongomock
import pytest
from bson import Timestamp
from pymongo.errors import ConnectionFailure, OperationFailure

from mongocdc.connectors.cdc.checkpoint_store import CheckpointStore
from mongocdc.connectors.cdc.config import CDCConfig
from mongocdc.connectors.cdc.cursor import Position
from mongocdc.connectors.cdc.operations import Namespace, Scope


def token(n: int, suffix: str = "") -> Dict[str, str]:
    return {"_data": "%08d%s" % (n, suffix)}


def run_pipeline(documents: List[Dict[str, Any]], stages: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Run aggregation ``stages`` over ``documents`` on a throwaway mongomock collection."""
    documents = [copy.deepcopy(d) for d in documents]
    if not stages:
        return documents
    collection = mongomock.MongoClient()["fake"]["pipeline"]
    if documents:
        collection.insert_many(documents)
    return list(collection.aggregate(list(stages)))


class FakeChangeStream:
    """Behaves like a pymongo ChangeStream over the FakeEventSource log."""

    def __init__(self, source: "FakeEventSource", namespace: Namespace, index: int,
                 resume_token: Dict[str, Any], full_document: Optional[str],
                 pipeline: Optional[List[Dict[str, Any]]] = None):
        self.source = source
        self.namespace = namespace
        self.pipeline = list(pipeline or [])
        self.resume_token = resume_token
        self.full_document = full_document
        self.closed = False
        self._index = index
        self._pending_invalidate: Optional[Dict[str, Any]] = None
        self._invalidated = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed = True

    @property
    def alive(self) -> bool:
        return not (self.closed or self._invalidated)

    def in_scope(self, event: Dict[str, Any]) -> bool:
        return self.namespace.contains(Namespace.from_event(event.get("ns")))

    def ends_scope(self, event: Dict[str, Any]) -> bool:
        ns = Namespace.from_event(event.get("ns"))
        if self.namespace.scope is Scope.COLLECTION:
            return event["operationType"] in ("drop", "rename") and ns == self.namespace
        if self.namespace.scope is Scope.DATABASE:
            return event["operationType"] == "dropDatabase" and ns == self.namespace
        return False

    def queue_invalidate(self, after: Dict[str, Any]) -> None:
        self._pending_invalidate = {
            "_id": {"_data": after["_id"]["_data"] + ".1"},
            "operationType": "invalidate",
            "clusterTime": after["clusterTime"],
        }

    def try_next(self) -> Optional[Dict[str, Any]]:
        if self.source.fail_next_pulls > 0:
            self.source.fail_next_pulls -= 1
            raise ConnectionFailure("connection reset while tailing")
        # events the pipeline drops still move the resume token
        while True:
            event = self._next_native()
            if event is None:
                return None
            survivors = run_pipeline([self._render(event)], self.pipeline)
            if survivors:
                return survivors[0]

    def _next_native(self) -> Optional[Dict[str, Any]]:
        if self._invalidated:
            return None
        if self._pending_invalidate is not None:
            event, self._pending_invalidate = self._pending_invalidate, None
            self._invalidated = True
            self.resume_token = event["_id"]
            return event

        with self.source.lock:
            log = list(self.source.log)
        while self._index < len(log):
            event = log[self._index]
            self._index += 1
            if not self.in_scope(event):
                continue
            if self.ends_scope(event):
                self.queue_invalidate(event)
            self.resume_token = event["_id"]
            return event

        # post-batch resume token follows the cluster, in scope or not
        if log and log[-1]["_id"]["_data"] > self.resume_token["_data"]:
            self.resume_token = log[-1]["_id"]
        return None

    def _render(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event = copy.deepcopy(event)
        if event["operationType"] == "update" and self.full_document in ("updateLookup", "whenAvailable", "required"):
            ns = Namespace.from_event(event["ns"])
            current = self.source.collections.get(ns.full_name, {}).get(event["documentKey"]["_id"])
            event["fullDocument"] = copy.deepcopy(current)
        return event


class FakeEventSource:
    """
    In-memory stand-in for MongoEventSource.

    Every mutation appends a native change event with token ``%08d`` to a
    global log; collection-scoped streams synthesize the invalidate that
    follows a drop of their collection.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.log: List[Dict[str, Any]] = []
        self.collections: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.watch_calls: List[Dict[str, Any]] = []
        self.streams: List[FakeChangeStream] = []
        self.fail_next_opens = 0
        self.fail_next_pulls = 0
        self.history_start: Optional[str] = None
        self.scan_hook: Optional[Callable[[], None]] = None
        self.scan_error: Optional[Exception] = None

    # mutations

    def _append(self, op_type: str, ns: Dict[str, Any], **fields) -> Dict[str, Any]:
        with self.lock:
            n = len(self.log) + 1
            event = {
                "_id": token(n),
                "operationType": op_type,
                "clusterTime": Timestamp(int(time.time()), n),
                "ns": ns,
            }
            event.update(fields)
            self.log.append(event)
            return event

    def insert(self, db: str, coll: str, document: Dict[str, Any]) -> Dict[str, Any]:
        with self.lock:
            self.collections.setdefault(f"{db}.{coll}", {})[document["_id"]] = copy.deepcopy(document)
            return self._append(
                "insert", {"db": db, "coll": coll},
                documentKey={"_id": document["_id"]},
                fullDocument=copy.deepcopy(document),
            )

    def update(self, db: str, coll: str, _id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self.lock:
            self.collections[f"{db}.{coll}"][_id].update(fields)
            return self._append(
                "update", {"db": db, "coll": coll},
                documentKey={"_id": _id},
                updateDescription={"updatedFields": dict(fields), "removedFields": []},
            )

    def delete(self, db: str, coll: str, _id: Any) -> Dict[str, Any]:
        with self.lock:
            self.collections[f"{db}.{coll}"].pop(_id, None)
            return self._append("delete", {"db": db, "coll": coll}, documentKey={"_id": _id})

    def drop(self, db: str, coll: str) -> Dict[str, Any]:
        with self.lock:
            self.collections.pop(f"{db}.{coll}", None)
            return self._append("drop", {"db": db, "coll": coll})

    def create_index(self, db: str, coll: str) -> Dict[str, Any]:
        return self._append("createIndexes", {"db": db, "coll": coll})

    # MongoEventSource surface

    def watch(self, namespace, pipeline=None, full_document=None, start_after=None,
              start_at_operation_time=None, batch_size=None, max_await_time_ms=None):
        self.watch_calls.append({
            "namespace": namespace,
            "pipeline": pipeline,
            "full_document": full_document,
            "start_after": start_after,
            "start_at_operation_time": start_at_operation_time,
        })
        if self.fail_next_opens > 0:
            self.fail_next_opens -= 1
            raise ConnectionFailure("connection refused")

        with self.lock:
            log = list(self.log)

        if start_after is not None:
            key = start_after["_data"]
            if self.history_start is not None and key < self.history_start:
                raise OperationFailure(
                    "Resume of change stream was not possible, as the resume point may no longer be in the oplog.",
                    code=286,
                )
            index = sum(1 for e in log if e["_id"]["_data"] <= key)
            stream = FakeChangeStream(self, namespace, index, dict(start_after), full_document, pipeline)
            resumed_on = [e for e in log if e["_id"]["_data"] == key]
            if resumed_on and stream.ends_scope(resumed_on[0]):
                stream.queue_invalidate(resumed_on[0])
        elif start_at_operation_time is not None:
            index = next((i for i, e in enumerate(log) if e["clusterTime"] >= start_at_operation_time), len(log))
            stream = FakeChangeStream(
                self, namespace, index, log[index - 1]["_id"] if index else token(0), full_document, pipeline
            )
        else:
            stream = FakeChangeStream(
                self, namespace, len(log), log[-1]["_id"] if log else token(0), full_document, pipeline
            )

        self.streams.append(stream)
        return stream

    def current_position(self, namespace) -> Position:
        with self.lock:
            return Position.from_token(self.log[-1]["_id"] if self.log else token(0))

    def list_namespaces(self, scope) -> List[Namespace]:
        if scope.scope is Scope.COLLECTION:
            return [scope]
        with self.lock:
            names = sorted(self.collections)
        return [ns for ns in (Namespace.parse(n) for n in names) if scope.contains(ns)]

    def scan(self, namespace, query=None, pipeline=None, batch_size=0):
        if self.scan_error is not None:
            raise self.scan_error
        with self.lock:
            documents = [copy.deepcopy(d) for d in self.collections.get(namespace.full_name, {}).values()]
        stages = ([{"$match": query}] if query else []) + list(pipeline or [])
        for i, document in enumerate(run_pipeline(documents, stages)):
            yield document
            if i == 0 and self.scan_hook is not None:
                hook, self.scan_hook = self.scan_hook, None
                hook()

    def partition_bounds(self, namespace, partitions):
        with self.lock:
            ids = sorted(self.collections.get(namespace.full_name, {}))
        if not ids:
            return []
        size = max(1, -(-len(ids) // partitions))
        starts = ids[::size]
        return [
            (start, starts[i + 1] if i + 1 < len(starts) else ids[-1])
            for i, start in enumerate(starts)
        ]


@pytest.fixture
def fake_source():
    """In-memory change event source."""
    return FakeEventSource()


@pytest.fixture
def store(tmp_path):
    """Checkpoint store backed by a SQLite file."""
    checkpoint_store = CheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}")
    yield checkpoint_store
    checkpoint_store.close()


@pytest.fixture
def make_config():
    """CDCConfig factory watching db.coll with test-friendly timings."""
    def _make(**overrides) -> CDCConfig:
        options = dict(
            job_id="test-job",
            database="db",
            collection="coll",
            poll_await_time_ms=50,
            max_retries=3,
            copy_existing_max_threads=2,
        )
        options.update(overrides)
        return CDCConfig(**options)
    return _make


@pytest.fixture
def record_values():
    """Decode relaxed Extended JSON record values."""
    def _decode(records) -> List[Dict[str, Any]]:
        return [json.loads(r.value) for r in records]
    return _decode


@pytest.fixture
def poll_until():
    """Poll until ``count`` records were returned or ``max_polls`` is reached."""
    def _poll(coordinator, count: int, max_polls: int = 200) -> list:
        records = []
        for _ in range(max_polls):
            records.extend(coordinator.poll())
            if len(records) >= count:
                break
        return records
    return _poll
