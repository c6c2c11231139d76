"""Protocol types for the client's collaborators.

Defines the interfaces the facade and offline queue require, so tests can
substitute fakes for storage, connectivity and the HTTP layer.
"""

from typing import Callable, Optional, Protocol, runtime_checkable


@runtime_checkable
class StorageProtocol(Protocol):
    """Durable key-value surface for the offline queue."""

    def get(self, key: str) -> list: ...

    def set(self, key: str, value: list) -> None: ...

    def clear(self, key: str) -> None: ...


@runtime_checkable
class ConnectivityProtocol(Protocol):
    """Environment network signal with ``online``/``offline`` events."""

    def is_online(self) -> bool: ...

    def on(self, event: str, handler: Callable[[], None]) -> None: ...

    def off(self, event: str, handler: Callable[[], None]) -> None: ...


@runtime_checkable
class ApiClientProtocol(Protocol):
    """Authenticated request capability used by the facade."""

    def request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> dict: ...

    def request_public(self, path: str, error_code: str, label: str) -> dict: ...

    def close(self) -> None: ...
