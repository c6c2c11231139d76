"""Exception types raised by the GlobalLeaderboards SDK."""

from typing import Optional

__all__ = [
    "GlobalLeaderboardsError",
    "ValidationError",
    "AuthError",
    "QueueFullError",
    "PERMANENT_HTTP_STATUSES",
    "PERMANENT_ERROR_CODES",
    "is_permanent_error",
]

# REST responses that will not succeed on retry
PERMANENT_HTTP_STATUSES = frozenset({401, 403, 404})

# Error codes the realtime server sends for conditions retrying cannot fix
PERMANENT_ERROR_CODES = frozenset(
    {
        "LEADERBOARD_NOT_FOUND",
        "INVALID_API_KEY",
        "INSUFFICIENT_PERMISSIONS",
        "INVALID_LEADERBOARD_ID",
    }
)


class GlobalLeaderboardsError(Exception):
    """Base SDK error carrying a machine-readable code."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class ValidationError(GlobalLeaderboardsError):
    """Input rejected before anything was sent."""

    pass


class AuthError(GlobalLeaderboardsError):
    """Authentication or authorization failure (401/403)."""

    pass


class QueueFullError(GlobalLeaderboardsError):
    """Offline queue is at capacity."""

    def __init__(self, max_size: int):
        super().__init__(f"Queue is full (max {max_size} items)", "QUEUE_FULL")
        self.max_size = max_size


def is_permanent_error(error: BaseException) -> bool:
    """Check whether an error should never be retried.

    Args:
        error: Error raised by an API call or reported by the realtime server

    Returns:
        True for auth/permission/not-found statuses and permanent server codes
    """
    if not isinstance(error, GlobalLeaderboardsError):
        return False
    if error.status_code in PERMANENT_HTTP_STATUSES:
        return True
    return error.code in PERMANENT_ERROR_CODES
