"""Tests for the dispatch coordinator against an in-memory event source."""

from collections import Counter

import pytest

from mongocdc.connectors.cdc.checkpoint_store import CDCCheckpoint
from mongocdc.connectors.cdc.coordinator import DispatchCoordinator
from mongocdc.connectors.cdc.cursor import Position
from mongocdc.connectors.cdc.errors import (
    CDCError, InvalidCheckpointError, ResumeNotPossibleError, SnapshotError, StructuralError
)
from mongocdc.connectors.cdc.mongo_changestream import WatcherState


def _summary(values):
    return [(v["operationType"], (v.get("fullDocument") or {}).get("_id")) for v in values]


class TestDispatchCoordinator:
    """Test DispatchCoordinator."""

    def test_first_poll_opens_at_now(self, fake_source, store, make_config):
        """Test a fresh task without snapshot skips existing history."""
        fake_source.insert("db", "coll", {"_id": 0})
        coordinator = DispatchCoordinator(fake_source, store, make_config())

        assert coordinator.poll() == []
        assert fake_source.watch_calls[0]["start_after"] is None
        assert coordinator.current_cursor().token == {"_data": "00000001"}

    def test_drop_and_recreate(self, fake_source, store, make_config, poll_until, record_values):
        """Test the stream survives a drop of the watched collection."""
        coordinator = DispatchCoordinator(fake_source, store, make_config())
        assert coordinator.poll() == []

        for i in range(1, 51):
            fake_source.insert("db", "coll", {"_id": i})
        fake_source.drop("db", "coll")
        for i in range(51, 61):
            fake_source.insert("db", "coll", {"_id": i})

        records = poll_until(coordinator, 61)

        expected = [("insert", i) for i in range(1, 51)] + [("drop", None)] + [("insert", i) for i in range(51, 61)]
        assert _summary(record_values(records)) == expected
        assert coordinator.watcher.reopen_count >= 1

    def test_filtered_stream_survives_drop(self, fake_source, store, make_config, poll_until, record_values):
        """Test a pipeline dropping the drop event still resumes after it."""
        config = make_config(pipeline=[{"$match": {"operationType": "insert"}}])
        coordinator = DispatchCoordinator(fake_source, store, config)
        assert coordinator.poll() == []

        for i in range(1, 51):
            fake_source.insert("db", "coll", {"_id": i})
        fake_source.drop("db", "coll")
        for i in range(51, 61):
            fake_source.insert("db", "coll", {"_id": i})

        records = poll_until(coordinator, 60)

        assert _summary(record_values(records)) == [("insert", i) for i in range(1, 61)]

    def test_copy_existing_with_concurrent_inserts(self, fake_source, store, make_config, poll_until, record_values):
        """Test no document is lost between the snapshot and the tail."""
        for i in range(1, 51):
            fake_source.insert("db", "coll", {"_id": i})

        def insert_more():
            for i in range(51, 61):
                fake_source.insert("db", "coll", {"_id": i})
        fake_source.scan_hook = insert_more

        coordinator = DispatchCoordinator(fake_source, store, make_config(copy_existing=True))
        records = poll_until(coordinator, 60, max_polls=400)

        counts = Counter(v["fullDocument"]["_id"] for v in record_values(records))
        assert set(counts) == set(range(1, 61))
        assert max(counts.values()) <= 2
        assert coordinator.copier is None
        assert coordinator.current_cursor().copying is False

    def test_snapshot_records_use_copy_envelope(self, fake_source, store, make_config, poll_until, record_values):
        """Test copied documents are marked as such in their envelope."""
        fake_source.insert("db", "coll", {"_id": 1})
        coordinator = DispatchCoordinator(fake_source, store, make_config(copy_existing=True))

        values = record_values(poll_until(coordinator, 1))

        assert values[0]["_id"] == {"_id": 1, "copyingData": True}
        assert values[0]["operationType"] == "insert"

    def test_restart_resumes_after_committed_records(self, fake_source, store, make_config, poll_until, record_values):
        """Test a restarted task continues exactly after what was handed out."""
        config = make_config(poll_max_batch_size=50, poll_await_time_ms=5000)
        coordinator = DispatchCoordinator(fake_source, store, config)
        assert coordinator.poll() == []

        for i in range(1, 101):
            fake_source.insert("db", "coll", {"_id": i})
        first = coordinator.poll()
        coordinator.shutdown()

        restarted = DispatchCoordinator(fake_source, store, config)
        rest = poll_until(restarted, 50)

        assert [v["fullDocument"]["_id"] for v in record_values(first)] == list(range(1, 51))
        assert [v["fullDocument"]["_id"] for v in record_values(rest)] == list(range(51, 101))

    def test_undelivered_batch_is_redelivered(self, fake_source, store, make_config, poll_until, record_values):
        """Test shutdown without commit hands the last batch out again."""
        config = make_config(poll_max_batch_size=50, poll_await_time_ms=5000)
        coordinator = DispatchCoordinator(fake_source, store, config)
        assert coordinator.poll() == []

        for i in range(1, 101):
            fake_source.insert("db", "coll", {"_id": i})
        coordinator.poll()
        coordinator.shutdown(commit=False)

        restarted = DispatchCoordinator(fake_source, store, config)
        again = poll_until(restarted, 50)

        assert [v["fullDocument"]["_id"] for v in record_values(again)][:50] == list(range(1, 51))

    def test_interrupted_snapshot_restarts(self, fake_source, store, make_config, poll_until, record_values):
        """Test a crash mid-snapshot triggers a fresh snapshot on restart."""
        for i in range(1, 31):
            fake_source.insert("db", "coll", {"_id": i})
        config = make_config(copy_existing=True, copy_existing_queue_size=5)

        crashed = DispatchCoordinator(fake_source, store, config)
        poll_until(crashed, 1)
        crashed.shutdown(commit=False)
        assert store.load_checkpoint("test-job", "db.coll")["copying"] is True

        restarted = DispatchCoordinator(fake_source, store, config)
        records = poll_until(restarted, 30, max_polls=400)

        assert {v["fullDocument"]["_id"] for v in record_values(records)} == set(range(1, 31))

    def test_existing_cursor_skips_snapshot(self, fake_source, store, make_config):
        """Test copy_existing only runs when no tailing cursor exists."""
        fake_source.insert("db", "coll", {"_id": 1})
        store.save_checkpoint("test-job", "db.coll", Position.from_token({"_data": "00000001"}).to_document())

        coordinator = DispatchCoordinator(fake_source, store, make_config(copy_existing=True))

        assert coordinator.poll() == []
        assert coordinator.copier is None
        assert fake_source.watch_calls[0]["start_after"] == {"_data": "00000001"}

    def test_snapshot_worker_failure(self, fake_source, store, make_config):
        """Test a failed copy worker fails the task and keeps the snapshot marker."""
        fake_source.insert("db", "coll", {"_id": 1})
        fake_source.scan_error = RuntimeError("cursor killed")
        coordinator = DispatchCoordinator(fake_source, store, make_config(copy_existing=True))

        with pytest.raises(SnapshotError):
            for _ in range(100):
                coordinator.poll()

        assert store.load_checkpoint("test-job", "db.coll")["copying"] is True

    def test_schema_mismatch_does_not_advance_cursor(self, fake_source, store, make_config, poll_until):
        """Test a record that fails schema validation is not skipped."""
        schema = {
            "type": "record",
            "name": "Change",
            "fields": [
                {"name": "operationType", "type": "string"},
                {"name": "fullDocument", "type": {
                    "type": "record",
                    "name": "Order",
                    "fields": [{"name": "total", "type": "long"}],
                }},
            ],
        }
        coordinator = DispatchCoordinator(
            fake_source, store, make_config(output_format_value="schema", output_schema_value=schema)
        )
        assert coordinator.poll() == []

        fake_source.insert("db", "coll", {"_id": 1, "total": 10})
        good = poll_until(coordinator, 1)
        assert good[0].value == {"operationType": "insert", "fullDocument": {"total": 10}}
        delivered = coordinator.current_cursor()

        fake_source.insert("db", "coll", {"_id": 2, "total": "ten"})
        fake_source.insert("db", "coll", {"_id": 3, "total": 30})
        for _ in range(2):
            with pytest.raises(StructuralError):
                coordinator.poll()
            assert coordinator.current_cursor() == delivered

    def test_resume_not_possible(self, fake_source, store, make_config):
        """Test a stored position older than the oplog fails the task."""
        store.save_checkpoint("test-job", "db.coll", Position.from_token({"_data": "00000001"}).to_document())
        fake_source.history_start = "00000005"

        coordinator = DispatchCoordinator(fake_source, store, make_config())

        with pytest.raises(ResumeNotPossibleError):
            coordinator.poll()

    def test_resume_failure_tolerated(self, fake_source, store, make_config):
        """Test tolerate_resume_failure restarts at now."""
        for i in range(1, 8):
            fake_source.insert("db", "coll", {"_id": i})
        store.save_checkpoint("test-job", "db.coll", Position.from_token({"_data": "00000001"}).to_document())
        fake_source.history_start = "00000005"

        coordinator = DispatchCoordinator(fake_source, store, make_config(tolerate_resume_failure=True))

        assert coordinator.poll() == []
        assert coordinator.current_cursor().token == {"_data": "00000007"}

    def test_connection_failures_back_off(self, fake_source, store, make_config):
        """Test open retries go through the injected sleep."""
        delays = []
        fake_source.fail_next_opens = 2
        coordinator = DispatchCoordinator(fake_source, store, make_config(), sleep=delays.append)

        coordinator.poll()

        assert delays == [2, 4]
        assert len(fake_source.watch_calls) == 3

    def test_deployment_scope_topics(self, fake_source, store, make_config, poll_until):
        """Test records are routed to one topic per namespace."""
        coordinator = DispatchCoordinator(
            fake_source, store, make_config(database=None, collection=None, topic_prefix="cdc")
        )
        assert coordinator.poll() == []

        fake_source.insert("shop", "orders", {"_id": 1})
        fake_source.insert("crm", "users", {"_id": 1})
        records = poll_until(coordinator, 2)

        assert [r.topic for r in records] == ["cdc.shop.orders", "cdc.crm.users"]

    def test_shutdown(self, fake_source, store, make_config):
        """Test shutdown persists the cursor and later polls return nothing."""
        coordinator = DispatchCoordinator(fake_source, store, make_config())
        coordinator.poll()
        fake_source.insert("db", "coll", {"_id": 1})

        coordinator.shutdown()

        assert coordinator.closed
        assert coordinator.watcher.state is WatcherState.CLOSED
        assert coordinator.poll() == []
        assert store.load_checkpoint("test-job", "db.coll")["token"] == {"_data": "00000000"}

    def test_tailing_failures_exhaust_retries(self, fake_source, store, make_config):
        """Test a stream that keeps failing while tailing ends the task after max_retries."""
        delays = []
        coordinator = DispatchCoordinator(fake_source, store, make_config(max_retries=3), sleep=delays.append)
        assert coordinator.poll() == []

        fake_source.fail_next_pulls = 10
        with pytest.raises(CDCError, match="Max retries exceeded while tailing"):
            for _ in range(10):
                coordinator.poll()

        assert delays == [2, 4, 8]

    def test_snapshot_schema_failure_is_final(self, fake_source, store, make_config):
        """Test a copied document failing the schema fails every later poll and keeps the snapshot marker."""
        schema = {
            "type": "record",
            "name": "Change",
            "fields": [
                {"name": "operationType", "type": "string"},
                {"name": "fullDocument", "type": {
                    "type": "record",
                    "name": "Order",
                    "fields": [{"name": "total", "type": "long"}],
                }},
            ],
        }
        for i in range(1, 4):
            fake_source.insert("db", "coll", {"_id": i, "total": i * 10})
        fake_source.insert("db", "coll", {"_id": 4, "total": "four"})
        coordinator = DispatchCoordinator(fake_source, store, make_config(
            copy_existing=True,
            output_format_value="schema",
            output_schema_value=schema
        ))

        with pytest.raises(StructuralError):
            for _ in range(100):
                coordinator.poll()
        with pytest.raises(StructuralError):
            coordinator.poll()

        assert coordinator.copier.workers_done
        assert coordinator.watcher is None
        assert store.load_checkpoint("test-job", "db.coll")["copying"] is True

    def _store_corrupt_checkpoint(self, store):
        session = store.SessionLocal()
        try:
            with session.begin():
                session.add(CDCCheckpoint(job_id="test-job", namespace="db.coll", position={"copying": False}))
        finally:
            session.close()

    def test_corrupt_checkpoint_fails_task(self, fake_source, store, make_config):
        """Test an unusable stored cursor is reported instead of silently starting at now."""
        self._store_corrupt_checkpoint(store)
        coordinator = DispatchCoordinator(fake_source, store, make_config())

        with pytest.raises(InvalidCheckpointError):
            coordinator.poll()
        assert fake_source.watch_calls == []

    def test_corrupt_checkpoint_tolerated(self, fake_source, store, make_config):
        """Test tolerate_resume_failure starts fresh over an unusable stored cursor."""
        self._store_corrupt_checkpoint(store)
        coordinator = DispatchCoordinator(fake_source, store, make_config(tolerate_resume_failure=True))

        assert coordinator.poll() == []
        assert fake_source.watch_calls[0]["start_after"] is None
