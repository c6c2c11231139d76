"""Realtime module - WebSocket and SSE leaderboard updates."""

from .messages import (
    LeaderboardEntry,
    LeaderboardUpdate,
    SequenceTracker,
    UserRankUpdate,
)
from .sse import LeaderboardSSE, SSEConnectionOptions, SSEHandlers, SSESubscription
from .websocket import ConnectionState, LeaderboardWebSocket, WebSocketHandlers

__all__ = [
    "LeaderboardEntry",
    "LeaderboardUpdate",
    "SequenceTracker",
    "UserRankUpdate",
    "LeaderboardSSE",
    "SSEConnectionOptions",
    "SSEHandlers",
    "SSESubscription",
    "ConnectionState",
    "LeaderboardWebSocket",
    "WebSocketHandlers",
]
