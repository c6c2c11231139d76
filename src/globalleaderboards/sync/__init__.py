"""Sync module - API calls, retry and the offline submission queue."""

from .http_client import ApiClient
from .queue import OfflineQueue, QueuedOperation, QueuedSubmitResponse
from .retry import Backoff, RetryConfig, RetryExhausted, retry_with_backoff
from .storage import MemoryStorage, SQLiteStorage
from .protocols import ApiClientProtocol, ConnectivityProtocol, StorageProtocol

__all__ = [
    "ApiClient",
    "OfflineQueue",
    "QueuedOperation",
    "QueuedSubmitResponse",
    "Backoff",
    "RetryConfig",
    "RetryExhausted",
    "retry_with_backoff",
    "MemoryStorage",
    "SQLiteStorage",
    "ApiClientProtocol",
    "ConnectivityProtocol",
    "StorageProtocol",
]
