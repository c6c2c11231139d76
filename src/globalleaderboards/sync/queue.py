"""Offline queue for score submissions made while the API is unreachable."""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ulid import ULID

from ..config import MAX_BATCH_SIZE, MAX_QUEUE_SIZE, QUEUE_TTL_HOURS
from ..errors import QueueFullError
from ..events import EventEmitter
from .protocols import StorageProtocol
from .storage import open_default_storage

__all__ = [
    "OfflineQueue",
    "QueuedOperation",
    "QueuedSubmitResponse",
    "QueueFailedEvent",
    "QueueProcessedEvent",
    "QueueProgressEvent",
    "METHOD_SUBMIT",
    "METHOD_SUBMIT_BULK",
    "QUEUE_ADDED",
    "QUEUE_PROCESSED",
    "QUEUE_FAILED",
    "QUEUE_PROGRESS",
]

logger = logging.getLogger(__name__)

METHOD_SUBMIT = "submit"
METHOD_SUBMIT_BULK = "submitBulk"

QUEUE_ADDED = "queue:added"
QUEUE_PROCESSED = "queue:processed"
QUEUE_FAILED = "queue:failed"
QUEUE_PROGRESS = "queue:progress"
QUEUE_EVENTS = (QUEUE_ADDED, QUEUE_PROCESSED, QUEUE_FAILED, QUEUE_PROGRESS)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueuedOperation:
    """An operation stored in the offline queue."""

    queue_id: str
    method: str
    params: dict
    timestamp: int  # creation time, ms since epoch
    retry_count: int = 0

    @property
    def leaderboard_id(self) -> Optional[str]:
        return self.params.get("leaderboardId")

    def to_dict(self) -> dict:
        return {
            "queueId": self.queue_id,
            "method": self.method,
            "params": self.params,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedOperation":
        """Create from a persisted record."""
        return cls(
            queue_id=data["queueId"],
            method=data["method"],
            params=data.get("params") or {},
            timestamp=int(data["timestamp"]),
            retry_count=int(data.get("retryCount") or 0),
        )


@dataclass
class QueuedSubmitResponse:
    """Acknowledgement that a submission was queued, not yet applied."""

    queue_id: str
    queue_position: int
    queued: bool = True
    operation: str = "insert"
    rank: int = -1


@dataclass
class QueueFailedEvent:
    """Payload of ``queue:failed``."""

    operation: QueuedOperation
    permanent: bool
    error: Optional[Exception] = None


@dataclass
class QueueProcessedEvent:
    """Payload of ``queue:processed``, one per successfully sent batch."""

    batch_key: str
    operations: list[QueuedOperation]
    response: Any = None


@dataclass
class QueueProgressEvent:
    """Payload of ``queue:progress``."""

    completed_batches: int
    total_batches: int
    processed: int
    failed: int
    remaining: int
    stopped: bool = False


@dataclass
class _Batch:
    key: str
    operations: list[QueuedOperation] = field(default_factory=list)


class OfflineQueue:
    """Persistent FIFO of pending score submissions.

    The queue only stores and groups operations; sending them is up to the
    caller (see ``GlobalLeaderboards.process_queue``).
    """

    def __init__(
        self,
        api_key: str,
        storage: Optional[StorageProtocol] = None,
        max_size: int = MAX_QUEUE_SIZE,
        ttl_ms: int = QUEUE_TTL_HOURS * 60 * 60 * 1000,
        batch_size: int = MAX_BATCH_SIZE,
        clock: Callable[[], int] = _now_ms,
    ):
        """Initialize the offline queue.

        Args:
            api_key: API key; its hash scopes the storage key
            storage: Key-value store (defaults to SQLite in the user data dir)
            max_size: Maximum number of queued operations
            ttl_ms: Age after which queued operations are dropped
            batch_size: Maximum operations per batch
            clock: Returns the current time in milliseconds
        """
        self.storage_key = f"gl_queue_{self.hash_api_key(api_key)}"
        self.storage = storage if storage is not None else open_default_storage()
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self.batch_size = batch_size
        self._clock = clock
        self._queue: list[QueuedOperation] = []
        self._processing = False
        self._last_id: Optional[ULID] = None
        self._lock = threading.RLock()
        self._events = EventEmitter()
        self._load()

    @staticmethod
    def hash_api_key(api_key: str) -> str:
        """Short stable digest so queues of different credentials never mix."""
        return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]

    def enqueue(self, method: str, params: dict) -> QueuedSubmitResponse:
        """Add an operation to the queue.

        Args:
            method: ``submit`` or ``submitBulk``
            params: Operation parameters

        Returns:
            QueuedSubmitResponse with the new id and 1-based position

        Raises:
            QueueFullError: If the queue already holds ``max_size`` items
        """
        with self._lock:
            if len(self._queue) >= self.max_size:
                raise QueueFullError(self.max_size)

            operation = QueuedOperation(
                queue_id=self._next_id(),
                method=method,
                params=dict(params),
                timestamp=self._clock(),
            )
            self._queue.append(operation)
            position = len(self._queue)
            self._persist()

        logger.debug(f"Queued {method} {operation.queue_id} (position {position})")
        self.emit(QUEUE_ADDED, operation)
        return QueuedSubmitResponse(queue_id=operation.queue_id, queue_position=position)

    def _next_id(self) -> str:
        """Generate a ULID strictly greater than the previous one."""
        new_id = ULID()
        if self._last_id is not None and int(new_id) <= int(self._last_id):
            new_id = ULID.from_int(int(self._last_id) + 1)
        self._last_id = new_id
        return str(new_id)

    def has_items(self) -> bool:
        return len(self._queue) > 0

    def size(self) -> int:
        """Get the current queue size."""
        return len(self._queue)

    def is_processing(self) -> bool:
        return self._processing

    def set_processing(self, processing: bool) -> None:
        self._processing = processing

    def get_queue(self) -> list[QueuedOperation]:
        """Get a snapshot of all queued operations, oldest first."""
        with self._lock:
            return list(self._queue)

    def batch_operations(self) -> list[tuple[str, list[QueuedOperation]]]:
        """Group queued operations into bulk-submittable batches.

        Expired operations are purged first. ``submit`` operations are grouped
        by leaderboard; each ``submitBulk`` operation is its own batch. Groups
        larger than ``batch_size`` are split into contiguous chunks.

        Returns:
            Ordered list of (batch key, operations)
        """
        with self._lock:
            self._clean_expired()

            groups: dict[str, _Batch] = {}
            for op in self._queue:
                if op.method == METHOD_SUBMIT and op.leaderboard_id:
                    key = op.leaderboard_id
                elif op.method == METHOD_SUBMIT_BULK:
                    key = f"bulk_{op.queue_id}"
                else:
                    logger.warning(f"Skipping unbatchable queued operation {op.queue_id}")
                    continue
                groups.setdefault(key, _Batch(key)).operations.append(op)

        batches: list[tuple[str, list[QueuedOperation]]] = []
        for group in groups.values():
            ops = group.operations
            if len(ops) <= self.batch_size:
                batches.append((group.key, ops))
                continue
            for offset in range(0, len(ops), self.batch_size):
                batches.append((f"{group.key}_{offset}", ops[offset : offset + self.batch_size]))
        return batches

    def remove_processed(self, queue_ids: list[str]) -> int:
        """Remove operations that were sent successfully.

        Returns:
            Number of operations removed
        """
        if not queue_ids:
            return 0

        id_set = set(queue_ids)
        with self._lock:
            before = len(self._queue)
            self._queue = [op for op in self._queue if op.queue_id not in id_set]
            removed = before - len(self._queue)
            self._persist()
        return removed

    def mark_failed(
        self, queue_id: str, permanent: bool = False, error: Optional[Exception] = None
    ) -> None:
        """Record a failed send attempt.

        Args:
            queue_id: Operation id
            permanent: Drop the operation instead of keeping it for retry
            error: The error that caused the failure, passed to listeners
        """
        with self._lock:
            op = next((o for o in self._queue if o.queue_id == queue_id), None)
            if op is None:
                return
            if permanent:
                self._queue = [o for o in self._queue if o.queue_id != queue_id]
            else:
                op.retry_count += 1
            self._persist()

        if permanent:
            logger.warning(f"Dropping queued operation {queue_id}: {error}")
            self.emit(QUEUE_FAILED, QueueFailedEvent(operation=op, permanent=True, error=error))

    def clear(self) -> int:
        """Clear all operations from the queue."""
        with self._lock:
            count = len(self._queue)
            self._queue = []
            try:
                self.storage.clear(self.storage_key)
            except Exception as e:
                logger.error(f"Failed to clear offline queue storage: {e}")
        return count

    # Events

    def on(self, event: str, handler: Callable[[str, Any], None]) -> None:
        """Register a handler called as ``handler(event, payload)``."""
        if event not in QUEUE_EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._events.on(event, handler)

    def off(self, event: str, handler: Callable[[str, Any], None]) -> None:
        self._events.off(event, handler)

    def emit(self, event: str, payload: Any) -> None:
        self._events.emit(event, event, payload)

    # Persistence

    def _load(self) -> None:
        """Load persisted operations; any failure leaves the queue empty."""
        try:
            records = self.storage.get(self.storage_key)
            self._queue = [QueuedOperation.from_dict(r) for r in records]
            if self._queue:
                self._last_id = max((ULID.from_str(op.queue_id) for op in self._queue), key=int)
        except Exception as e:
            logger.error(f"Failed to load offline queue: {e}")
            self._queue = []
            return

        if self._queue:
            logger.info(f"Loaded {len(self._queue)} queued operations")
        self._clean_expired()

    def _persist(self) -> None:
        """Write the queue out; failures keep the in-memory state."""
        try:
            self.storage.set(self.storage_key, [op.to_dict() for op in self._queue])
        except Exception as e:
            logger.error(f"Failed to persist offline queue: {e}")

    def _clean_expired(self) -> None:
        now = self._clock()
        original_size = len(self._queue)
        self._queue = [op for op in self._queue if now - op.timestamp < self.ttl_ms]

        expired = original_size - len(self._queue)
        if expired:
            logger.warning(f"Removed {expired} expired queued operations")
            self._persist()
