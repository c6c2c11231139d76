"""GlobalLeaderboards - score submission, offline queueing and live leaderboard updates."""

__version__ = "0.4.0"

from .client import GlobalLeaderboards
from .config import Config, QueueSettings, RealtimeSettings, setup_logging
from .errors import (
    AuthError,
    GlobalLeaderboardsError,
    QueueFullError,
    ValidationError,
    is_permanent_error,
)
from .models import SubmitOptions, ScoreSubmission, SubmitScoreResponse
from .realtime import (
    LeaderboardSSE,
    LeaderboardUpdate,
    LeaderboardWebSocket,
    SequenceTracker,
    SSEConnectionOptions,
    SSEHandlers,
    WebSocketHandlers,
)
from .sync.queue import QueuedSubmitResponse

__all__ = [
    "__version__",
    "GlobalLeaderboards",
    "Config",
    "QueueSettings",
    "RealtimeSettings",
    "setup_logging",
    "AuthError",
    "GlobalLeaderboardsError",
    "QueueFullError",
    "ValidationError",
    "is_permanent_error",
    "SubmitOptions",
    "ScoreSubmission",
    "SubmitScoreResponse",
    "LeaderboardSSE",
    "LeaderboardUpdate",
    "LeaderboardWebSocket",
    "SequenceTracker",
    "SSEConnectionOptions",
    "SSEHandlers",
    "WebSocketHandlers",
    "QueuedSubmitResponse",
]
