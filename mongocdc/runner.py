"""
Source task runner.

Drives a DispatchCoordinator: poll, hand the records to the sink, commit the
cursor once the sink returned. Stops gracefully on SIGTERM/SIGINT.
"""

from typing import Callable, List, Optional
import logging
import signal
import threading

from pymongo import MongoClient

from .config.settings import Settings, get_settings
from .connectors.cdc.checkpoint_store import CheckpointStore
from .connectors.cdc.coordinator import DispatchCoordinator
from .connectors.cdc.encoder import SourceRecord
from .connectors.cdc.source import MongoEventSource
from .utils.logging import TaskContext, configure_logging

logger = logging.getLogger(__name__)

Sink = Callable[[List[SourceRecord]], None]


class SourceRunner:
    """
    Blocking poll loop for one source task.

    The sink must be idempotent: records handed out after the last commit
    are redelivered after a crash.

    Example:
        >>> runner = SourceRunner.from_settings(get_settings(), sink=producer.send_batch)
        >>> runner.run()
    """

    def __init__(self, coordinator: DispatchCoordinator, sink: Sink, resources: Optional[List] = None):
        self.coordinator = coordinator
        self.sink = sink
        self.stop_event = threading.Event()
        self.records_delivered: int = 0
        self._resources = resources or []

        self._original_sigterm = None
        self._original_sigint = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings], sink: Sink) -> "SourceRunner":
        """Build client, checkpoint store, source and coordinator from settings."""
        settings = settings or get_settings()
        config = settings.cdc.to_cdc_config()

        client = MongoClient(settings.mongo.connection_uri, **settings.mongo.client_options())
        store = CheckpointStore(
            settings.database.connection_url,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow
        )
        coordinator = DispatchCoordinator(MongoEventSource(client), store, config)
        return cls(coordinator, sink, resources=[store, client])

    def run(self) -> None:
        """
        Poll until ``stop()`` or a signal (blocking call).

        Raises:
            CDCError: On unrecoverable errors (after shutting the task down)
        """
        job_id = self.coordinator.config.job_id
        self._setup_signal_handlers()
        delivered = True
        try:
            with TaskContext(job_id):
                logger.info("Source task started", extra={"job_id": job_id})
                while not self.stop_event.is_set():
                    records = self.coordinator.poll()
                    if records:
                        delivered = False
                        self.sink(records)
                        delivered = True
                        self.records_delivered += len(records)
                    self.coordinator.commit()
        except Exception as e:
            logger.error(
                f"Source task failed: {e}",
                extra={"job_id": job_id, "error_type": type(e).__name__}
            )
            raise
        finally:
            # records the sink did not accept must be redelivered
            self.coordinator.shutdown(commit=delivered)
            for resource in self._resources:
                resource.close()
            self._restore_signal_handlers()
            logger.info(
                "Source task stopped",
                extra={"job_id": job_id, "records_delivered": self.records_delivered}
            )

    def stop(self) -> None:
        """Request a graceful stop; observed after the current poll."""
        logger.info("Stop requested", extra={"job_id": self.coordinator.config.job_id})
        self.stop_event.set()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(
                f"Received shutdown signal {signum}",
                extra={"job_id": self.coordinator.config.job_id}
            )
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)


def main() -> None:
    """Console entry point: print records to stdout."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.json_logs)

    def print_records(records: List[SourceRecord]) -> None:
        for record in records:
            print(record.topic, record.key, record.value, flush=True)

    SourceRunner.from_settings(settings, sink=print_records).run()


if __name__ == "__main__":
    main()
