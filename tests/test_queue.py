"""Tests for offline queue."""

import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from globalleaderboards.errors import QueueFullError
from globalleaderboards.sync.queue import (
    METHOD_SUBMIT,
    METHOD_SUBMIT_BULK,
    QUEUE_ADDED,
    QUEUE_FAILED,
    OfflineQueue,
    QueuedOperation,
    QueueFailedEvent,
)
from globalleaderboards.sync.storage import MemoryStorage, SQLiteStorage

HOUR_MS = 60 * 60 * 1000


def score_params(leaderboard_id="lb-1", user_id="u1", score=100):
    return {
        "userId": user_id,
        "score": score,
        "leaderboardId": leaderboard_id,
        "userName": user_id,
        "metadata": None,
    }


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


class TestOfflineQueue:
    """Tests for OfflineQueue."""

    def setup_method(self):
        self.storage = MemoryStorage()
        self.clock = FakeClock()
        self.queue = OfflineQueue("test-key", storage=self.storage, clock=self.clock)

    def test_enqueue_single_operation(self):
        params = score_params()

        response = self.queue.enqueue(METHOD_SUBMIT, params)

        assert self.queue.size() == 1
        assert self.queue.has_items()
        assert response.queued is True
        assert response.queue_position == 1
        assert response.operation == "insert"
        assert response.rank == -1
        op = self.queue.get_queue()[0]
        assert op.queue_id == response.queue_id
        assert op.params == params
        assert op.timestamp == self.clock.now
        assert op.retry_count == 0

    def test_enqueue_grows_size_by_one(self):
        for i in range(5):
            response = self.queue.enqueue(METHOD_SUBMIT, score_params(user_id=f"u{i}"))
            assert self.queue.size() == i + 1
            assert response.queue_position == i + 1

    def test_ids_are_monotonic(self):
        ids = [self.queue.enqueue(METHOD_SUBMIT, score_params()).queue_id for _ in range(50)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 50

    def test_enqueue_persists(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())

        stored = self.storage.get(self.queue.storage_key)

        assert len(stored) == 1
        assert stored[0]["method"] == "submit"
        assert stored[0]["retryCount"] == 0

    def test_queue_full(self):
        queue = OfflineQueue("k", storage=self.storage, max_size=2, clock=self.clock)
        queue.enqueue(METHOD_SUBMIT, score_params())
        queue.enqueue(METHOD_SUBMIT, score_params())

        with pytest.raises(QueueFullError) as exc_info:
            queue.enqueue(METHOD_SUBMIT, score_params())

        assert exc_info.value.code == "QUEUE_FULL"
        assert queue.size() == 2
        assert len(self.storage.get(queue.storage_key)) == 2

    def test_storage_key_is_scoped_by_api_key(self):
        other = OfflineQueue("other-key", storage=self.storage, clock=self.clock)
        self.queue.enqueue(METHOD_SUBMIT, score_params())

        assert other.storage_key != self.queue.storage_key
        assert self.queue.storage_key.startswith("gl_queue_")
        assert "test-key" not in self.queue.storage_key
        assert OfflineQueue("other-key", storage=self.storage).size() == 0

    def test_reload_from_storage(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params(user_id="a"))
        self.queue.enqueue(METHOD_SUBMIT, score_params(user_id="b"))

        reloaded = OfflineQueue("test-key", storage=self.storage, clock=self.clock)

        assert [op.params["userId"] for op in reloaded.get_queue()] == ["a", "b"]
        new_id = reloaded.enqueue(METHOD_SUBMIT, score_params()).queue_id
        assert new_id > self.queue.get_queue()[-1].queue_id

    def test_get_queue_returns_copy(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())

        self.queue.get_queue().clear()

        assert self.queue.size() == 1

    def test_batches_group_by_leaderboard_in_first_seen_order(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params("lb-b", "u1"))
        self.queue.enqueue(METHOD_SUBMIT, score_params("lb-a", "u2"))
        self.queue.enqueue(METHOD_SUBMIT, score_params("lb-b", "u3"))

        batches = self.queue.batch_operations()

        assert [key for key, _ in batches] == ["lb-b", "lb-a"]
        assert [op.params["userId"] for op in batches[0][1]] == ["u1", "u3"]
        assert [op.params["userId"] for op in batches[1][1]] == ["u2"]

    def test_bulk_operations_are_singleton_batches(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())
        bulk_id = self.queue.enqueue(METHOD_SUBMIT_BULK, {"scores": [{"user_id": "x"}]}).queue_id
        self.queue.enqueue(METHOD_SUBMIT_BULK, {"scores": []})

        batches = self.queue.batch_operations()

        assert len(batches) == 3
        assert batches[1][0] == f"bulk_{bulk_id}"
        assert len(batches[1][1]) == 1

    @pytest.mark.parametrize("count,expected_sizes", [(100, [100]), (101, [100, 1]), (250, [100, 100, 50])])
    def test_large_groups_are_split_in_order(self, count, expected_sizes):
        queue = OfflineQueue("k", storage=MemoryStorage(), clock=self.clock)
        for i in range(count):
            queue.enqueue(METHOD_SUBMIT, score_params(score=i))

        batches = queue.batch_operations()

        assert [len(ops) for _, ops in batches] == expected_sizes
        scores = [op.params["score"] for _, ops in batches for op in ops]
        assert scores == list(range(count))
        if count > 100:
            assert [key for key, _ in batches] == [f"lb-1_{i * 100}" for i in range(len(expected_sizes))]

    def test_expired_operations_are_purged(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params(user_id="old"))
        self.clock.now += 23 * HOUR_MS
        self.queue.enqueue(METHOD_SUBMIT, score_params(user_id="fresh"))
        self.clock.now += 2 * HOUR_MS

        batches = self.queue.batch_operations()

        assert [op.params["userId"] for _, ops in batches for op in ops] == ["fresh"]
        assert self.queue.size() == 1
        assert len(self.storage.get(self.queue.storage_key)) == 1

    def test_expired_operations_are_purged_on_load(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())
        self.clock.now += 25 * HOUR_MS

        reloaded = OfflineQueue("test-key", storage=self.storage, clock=self.clock)

        assert reloaded.size() == 0
        assert self.storage.get(reloaded.storage_key) == []

    def test_remove_processed(self):
        ids = [self.queue.enqueue(METHOD_SUBMIT, score_params()).queue_id for _ in range(3)]

        removed = self.queue.remove_processed(ids[:2])

        assert removed == 2
        assert [op.queue_id for op in self.queue.get_queue()] == ids[2:]
        assert len(self.storage.get(self.queue.storage_key)) == 1

    def test_mark_failed_transient_increments_retry_count(self):
        queue_id = self.queue.enqueue(METHOD_SUBMIT, score_params()).queue_id
        failed = Mock()
        self.queue.on(QUEUE_FAILED, failed)

        self.queue.mark_failed(queue_id)
        self.queue.mark_failed(queue_id)

        assert self.queue.get_queue()[0].retry_count == 2
        assert self.storage.get(self.queue.storage_key)[0]["retryCount"] == 2
        failed.assert_not_called()

    def test_mark_failed_permanent_removes_and_emits(self):
        queue_id = self.queue.enqueue(METHOD_SUBMIT, score_params()).queue_id
        failed = Mock()
        self.queue.on(QUEUE_FAILED, failed)
        error = RuntimeError("forbidden")

        self.queue.mark_failed(queue_id, permanent=True, error=error)

        assert self.queue.size() == 0
        event, payload = failed.call_args[0]
        assert event == QUEUE_FAILED
        assert isinstance(payload, QueueFailedEvent)
        assert payload.operation.queue_id == queue_id
        assert payload.permanent is True
        assert payload.error is error

    def test_mark_failed_unknown_id_is_ignored(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())

        self.queue.mark_failed("does-not-exist", permanent=True)

        assert self.queue.size() == 1

    def test_added_event(self):
        added = Mock()
        self.queue.on(QUEUE_ADDED, added)

        response = self.queue.enqueue(METHOD_SUBMIT, score_params())

        event, op = added.call_args[0]
        assert event == QUEUE_ADDED
        assert isinstance(op, QueuedOperation)
        assert op.queue_id == response.queue_id

    def test_handler_exceptions_are_not_propagated(self):
        broken = Mock(side_effect=RuntimeError("boom"))
        after = Mock()
        self.queue.on(QUEUE_ADDED, broken)
        self.queue.on(QUEUE_ADDED, after)

        self.queue.enqueue(METHOD_SUBMIT, score_params())

        after.assert_called_once()

    def test_off_removes_handler(self):
        added = Mock()
        self.queue.on(QUEUE_ADDED, added)
        self.queue.off(QUEUE_ADDED, added)

        self.queue.enqueue(METHOD_SUBMIT, score_params())

        added.assert_not_called()

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            self.queue.on("queue:exploded", Mock())

    def test_clear(self):
        self.queue.enqueue(METHOD_SUBMIT, score_params())
        self.queue.enqueue(METHOD_SUBMIT, score_params())

        assert self.queue.clear() == 2
        assert self.queue.size() == 0
        assert self.storage.get(self.queue.storage_key) == []

    def test_processing_flag(self):
        assert not self.queue.is_processing()
        self.queue.set_processing(True)
        assert self.queue.is_processing()


class TestQueueStorageFailures:
    """Storage errors never reach the caller."""

    def test_load_failure_starts_empty(self):
        storage = Mock()
        storage.get.side_effect = RuntimeError("disk on fire")

        queue = OfflineQueue("k", storage=storage)

        assert queue.size() == 0

    def test_corrupt_records_start_empty(self):
        storage = MemoryStorage()
        storage.set(OfflineQueue("k", storage=storage).storage_key, [{"nonsense": True}])

        queue = OfflineQueue("k", storage=storage)

        assert queue.size() == 0

    def test_save_failure_keeps_memory_state(self):
        storage = Mock()
        storage.get.return_value = []
        storage.set.side_effect = RuntimeError("read-only")
        queue = OfflineQueue("k", storage=storage)

        queue.enqueue(METHOD_SUBMIT, score_params())

        assert queue.size() == 1


class TestQueueWithSQLite:
    """The queue survives a restart when backed by SQLite."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "queue.db"

    def test_persists_across_instances(self):
        storage = SQLiteStorage(self.db_path)
        queue = OfflineQueue("k", storage=storage)
        queue_id = queue.enqueue(METHOD_SUBMIT, score_params()).queue_id
        storage.close()

        storage = SQLiteStorage(self.db_path)
        reloaded = OfflineQueue("k", storage=storage)

        assert [op.queue_id for op in reloaded.get_queue()] == [queue_id]
        storage.close()
