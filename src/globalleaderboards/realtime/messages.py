"""Realtime wire messages.

Inbound frames are parsed into one dataclass per message type. Unknown
types become ``UnknownMessage`` rather than raising, so a newer server can
add message kinds without breaking older clients.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

# Message types
LEADERBOARD_UPDATE = "leaderboard_update"
USER_RANK_UPDATE = "user_rank_update"
ERROR = "error"
PING = "ping"
PONG = "pong"
CONNECTION_INFO = "connection_info"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
# Only surfaced through on_message
PASSTHROUGH_TYPES = ("update", "score_submission")


@dataclass
class LeaderboardEntry:
    """One ranked row of a leaderboard."""

    user_id: str
    user_name: str
    score: float
    rank: int
    timestamp: Optional[str] = None
    metadata: Optional[dict] = None

    @classmethod
    def from_dict(cls, data: dict) -> "LeaderboardEntry":
        """Create from either the REST (snake_case) or realtime (camelCase) shape."""
        return cls(
            user_id=data.get("user_id", data.get("userId", "")),
            user_name=data.get("user_name", data.get("userName", "")),
            score=data.get("score", 0),
            rank=data.get("rank", 0),
            timestamp=data.get("timestamp"),
            metadata=data.get("metadata"),
        )


# Mutations


@dataclass
class NewEntryMutation:
    user_id: str
    new_rank: int
    score: float
    user_name: str
    type: str = "new_entry"


@dataclass
class RankChangeMutation:
    user_id: str
    previous_rank: int
    new_rank: int
    score: float
    type: str = "rank_change"


@dataclass
class ScoreUpdateMutation:
    user_id: str
    previous_score: float
    new_score: float
    previous_rank: int
    new_rank: int
    type: str = "score_update"


@dataclass
class UsernameChangeMutation:
    user_id: str
    previous_username: str
    new_username: str
    rank: int
    type: str = "username_change"


@dataclass
class RemovedMutation:
    user_id: str
    previous_rank: int
    score: float
    type: str = "removed"


Mutation = Union[
    NewEntryMutation,
    RankChangeMutation,
    ScoreUpdateMutation,
    UsernameChangeMutation,
    RemovedMutation,
]


def parse_mutation(data: dict) -> Optional[Mutation]:
    """Parse one mutation, returning None for unknown or malformed ones."""
    kind = data.get("type")
    user_id = data.get("userId", "")
    try:
        if kind == "new_entry":
            return NewEntryMutation(user_id, data["newRank"], data["score"], data.get("userName", ""))
        if kind == "rank_change":
            return RankChangeMutation(user_id, data["previousRank"], data["newRank"], data["score"])
        if kind == "score_update":
            return ScoreUpdateMutation(
                user_id,
                data["previousScore"],
                data["newScore"],
                data["previousRank"],
                data["newRank"],
            )
        if kind == "username_change":
            return UsernameChangeMutation(
                user_id, data["previousUsername"], data["newUsername"], data["rank"]
            )
        if kind == "removed":
            return RemovedMutation(user_id, data["previousRank"], data["score"])
    except KeyError as e:
        logger.warning(f"Malformed {kind} mutation, missing {e}")
        return None

    logger.warning(f"Unknown mutation type: {kind}")
    return None


@dataclass
class UpdateTrigger:
    """What caused a leaderboard update."""

    type: str
    submissions: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "UpdateTrigger":
        data = data or {}
        return cls(type=data.get("type", "unknown"), submissions=data.get("submissions") or [])


# Inbound messages


@dataclass
class LeaderboardUpdate:
    """Full top-N snapshot plus the mutations that produced it.

    ``sequence`` increases monotonically per leaderboard; see
    ``SequenceTracker`` for discarding stale or duplicate updates.
    """

    leaderboard_id: str
    update_type: str
    entries: list[LeaderboardEntry]
    total_entries: int
    displayed_entries: int
    mutations: list[Mutation]
    trigger: UpdateTrigger
    sequence: int
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> "LeaderboardUpdate":
        board = payload.get("leaderboard") or {}
        entries = [LeaderboardEntry.from_dict(e) for e in board.get("entries") or []]
        mutations = [parse_mutation(m) for m in payload.get("mutations") or []]
        return cls(
            leaderboard_id=payload.get("leaderboardId", ""),
            update_type=payload.get("updateType", "score_update"),
            entries=entries,
            total_entries=board.get("totalEntries", len(entries)),
            displayed_entries=board.get("displayedEntries", len(entries)),
            mutations=[m for m in mutations if m is not None],
            trigger=UpdateTrigger.from_dict(payload.get("trigger")),
            sequence=int(payload.get("sequence", 0)),
            raw=payload,
        )


@dataclass
class UserRankUpdate:
    leaderboard_id: str
    user_id: str
    old_rank: int
    new_rank: int
    score: float

    @classmethod
    def from_dict(cls, data: dict) -> "UserRankUpdate":
        return cls(
            leaderboard_id=data.get("leaderboard_id", ""),
            user_id=data.get("user_id", ""),
            old_rank=data.get("old_rank", 0),
            new_rank=data.get("new_rank", 0),
            score=data.get("score", 0),
        )


@dataclass
class ErrorMessage:
    """Server-reported error. ``valid`` is False when the frame had no error object."""

    code: str
    message: str
    details: Optional[dict] = None
    valid: bool = True


@dataclass
class PingMessage:
    pass


@dataclass
class PongMessage:
    pass


@dataclass
class ConnectionInfo:
    payload: dict = field(default_factory=dict)


@dataclass
class PassthroughMessage:
    type: str


@dataclass
class UnknownMessage:
    type: Any


InboundMessage = Union[
    LeaderboardUpdate,
    UserRankUpdate,
    ErrorMessage,
    PingMessage,
    PongMessage,
    ConnectionInfo,
    PassthroughMessage,
    UnknownMessage,
]


def _parse_error(raw: dict) -> ErrorMessage:
    error = raw.get("error")
    if not isinstance(error, dict) or "message" not in error:
        # Some servers put the error object in payload
        error = raw.get("payload")
    if isinstance(error, dict) and "message" in error:
        return ErrorMessage(
            code=error.get("code") or "UNKNOWN_ERROR",
            message=error["message"],
            details=error.get("details"),
        )
    return ErrorMessage(
        code="INVALID_MESSAGE_FORMAT", message="Invalid error message format", valid=False
    )


def parse_message(raw: dict) -> InboundMessage:
    """Map a decoded JSON frame to its message variant."""
    kind = raw.get("type")
    if kind == LEADERBOARD_UPDATE:
        return LeaderboardUpdate.from_payload(raw.get("payload") or {})
    if kind == USER_RANK_UPDATE:
        return UserRankUpdate.from_dict(raw.get("data") or raw.get("payload") or {})
    if kind == ERROR:
        return _parse_error(raw)
    if kind == PING:
        return PingMessage()
    if kind == PONG:
        return PongMessage()
    if kind == CONNECTION_INFO:
        return ConnectionInfo(payload=raw.get("payload") or {})
    if kind in PASSTHROUGH_TYPES:
        return PassthroughMessage(type=kind)
    return UnknownMessage(type=kind)


# Outbound messages


def build_control_message(message_type: str, payload: Optional[dict] = None) -> dict:
    """Build a client->server frame with id and timestamp."""
    message = {
        "id": f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
        "type": message_type,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    if payload is not None:
        message["payload"] = payload
    return message


def subscribe_message(leaderboard_id: str, user_id: Optional[str] = None) -> dict:
    payload = {"leaderboardId": leaderboard_id}
    if user_id:
        payload["userId"] = user_id
    return build_control_message(SUBSCRIBE, payload)


def unsubscribe_message(leaderboard_id: str) -> dict:
    return build_control_message(UNSUBSCRIBE, {"leaderboardId": leaderboard_id})


class SequenceTracker:
    """Remembers the last sequence seen per leaderboard.

    The connection managers deliver updates as they arrive; consumers that
    care about ordering pass each update through ``accept``.
    """

    def __init__(self) -> None:
        self._last: dict[str, int] = {}
        self._lock = threading.Lock()

    def accept(self, update: LeaderboardUpdate) -> bool:
        """Return True if the update is newer than anything seen for its board."""
        with self._lock:
            last = self._last.get(update.leaderboard_id)
            if last is not None and update.sequence <= last:
                logger.debug(
                    f"Discarding stale update {update.sequence} for "
                    f"{update.leaderboard_id} (last {last})"
                )
                return False
            self._last[update.leaderboard_id] = update.sequence
            return True

    def reset(self, leaderboard_id: Optional[str] = None) -> None:
        with self._lock:
            if leaderboard_id is None:
                self._last.clear()
            else:
                self._last.pop(leaderboard_id, None)
