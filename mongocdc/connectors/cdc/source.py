"""
MongoDB event source.

Thin adapter over a pymongo client exposing the four things the connector
needs from the server: open a change stream at a position or at "now",
report a consistent start position, enumerate namespaces, and scan
existing documents.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging

from bson import Timestamp
from pymongo.errors import PyMongoError

from .cursor import Position
from .errors import CDCError
from .operations import Namespace, Scope

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = {"admin", "config", "local"}

# NamespaceNotFound, QueryPlanKilled (collection dropped while the scan yielded)
NAMESPACE_GONE_CODES = {26, 175}


class MongoEventSource:
    """
    Change stream and snapshot access to one MongoDB deployment.

    Thread Safety: YES (pymongo clients are thread-safe)

    Example:
        >>> source = MongoEventSource(MongoClient("mongodb://localhost:27017/?replicaSet=rs0"))
        >>> boundary = source.current_position(Namespace("shop", "orders"))
        >>> with source.watch(Namespace("shop", "orders"), start_after=boundary.token) as stream:
        ...     change = stream.try_next()
    """

    def __init__(self, client):
        if not hasattr(client, "list_database_names"):
            raise TypeError("client must be a MongoClient instance")
        self.client = client

    def _target(self, namespace: Namespace):
        if namespace.scope is Scope.COLLECTION:
            return self.client[namespace.database][namespace.collection]
        if namespace.scope is Scope.DATABASE:
            return self.client[namespace.database]
        return self.client

    def watch(
        self,
        namespace: Namespace,
        pipeline: Optional[List[Dict[str, Any]]] = None,
        full_document: Optional[str] = None,
        start_after: Optional[Dict[str, Any]] = None,
        start_at_operation_time: Optional[Timestamp] = None,
        batch_size: Optional[int] = None,
        max_await_time_ms: Optional[int] = None
    ):
        """
        Open a change stream on ``namespace``.

        With neither ``start_after`` nor ``start_at_operation_time`` the
        stream starts at "now".

        Returns:
            pymongo ChangeStream (context manager with ``try_next`` and ``resume_token``)
        """
        options = {
            "full_document": full_document,
            "start_after": start_after,
            "start_at_operation_time": start_at_operation_time,
            "batch_size": batch_size,
            "max_await_time_ms": max_await_time_ms,
        }
        options = {k: v for k, v in options.items() if v is not None}
        return self._target(namespace).watch(pipeline=pipeline or [], **options)

    def current_position(self, namespace: Namespace) -> Position:
        """
        Position valid at or before this call, used as a snapshot boundary.

        Prefers the post-batch resume token of a freshly opened stream and
        falls back to the cluster's operation time.

        Raises:
            CDCError: If the server reports neither
        """
        with self.watch(namespace, max_await_time_ms=1) as stream:
            token = stream.resume_token
        if token:
            return Position.from_token(token)

        reply = self.client.admin.command("ping")
        operation_time = reply.get("operationTime")
        if isinstance(operation_time, Timestamp):
            return Position(operation_time=operation_time)
        raise CDCError(f"Server returned no resume token or operation time for {namespace}")

    def list_namespaces(self, scope: Namespace) -> List[Namespace]:
        """Collections inside ``scope``, skipping views, system databases and system collections."""
        if scope.scope is Scope.COLLECTION:
            return [scope]

        if scope.scope is Scope.DATABASE:
            databases = [scope.database]
        else:
            databases = sorted(d for d in self.client.list_database_names() if d not in SYSTEM_DATABASES)

        namespaces = []
        for database in databases:
            # excludes views
            names = self.client[database].list_collection_names(filter={"type": "collection"})
            for name in sorted(names):
                if not name.startswith("system."):
                    namespaces.append(Namespace(database, name))
        return namespaces

    def scan(
        self,
        namespace: Namespace,
        query: Optional[Dict[str, Any]] = None,
        pipeline: Optional[List[Dict[str, Any]]] = None,
        batch_size: int = 0
    ) -> Iterator[Dict[str, Any]]:
        """Iterate the documents of a collection, optionally through a copy pipeline."""
        collection = self.client[namespace.database][namespace.collection]
        if pipeline:
            stages = ([{"$match": query}] if query else []) + list(pipeline)
            cursor = collection.aggregate(stages)
        else:
            cursor = collection.find(query or {}, batch_size=batch_size)
        try:
            for document in cursor:
                yield document
        finally:
            cursor.close()

    def partition_bounds(self, namespace: Namespace, partitions: int) -> List[Tuple[Any, Any]]:
        """
        Split a collection's ``_id`` space into roughly equal ranges.

        Returns:
            (min, max) pairs in ascending order; empty when partitioning is not possible
        """
        collection = self.client[namespace.database][namespace.collection]
        try:
            buckets = list(collection.aggregate([
                {"$bucketAuto": {"groupBy": "$_id", "buckets": partitions}}
            ]))
        except PyMongoError as e:
            logger.warning(
                f"Cannot partition {namespace}, copying it as one task: {e}",
                extra={"namespace": namespace.full_name}
            )
            return []
        return [(b["_id"]["min"], b["_id"]["max"]) for b in buckets]
