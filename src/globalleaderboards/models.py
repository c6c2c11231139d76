"""Request and response types for the REST API."""

from dataclasses import dataclass, field
from typing import Any, Optional

from .realtime.messages import LeaderboardEntry

__all__ = [
    "SubmitOptions",
    "ScoreSubmission",
    "SubmitScoreResponse",
    "BulkScoreResult",
    "BulkSubmitScoreResponse",
    "LeaderboardEntriesResponse",
    "UserScoresResponse",
]


@dataclass
class SubmitOptions:
    """Per-call options for ``GlobalLeaderboards.submit``."""

    leaderboard_id: Optional[str] = None
    user_name: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class ScoreSubmission:
    """One score as sent to ``/v1/scores`` and ``/v1/scores/bulk``."""

    leaderboard_id: str
    user_id: str
    user_name: str
    score: float
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        data = {
            "leaderboard_id": self.leaderboard_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "score": self.score,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ScoreSubmission":
        """Accepts the wire shape or the camelCase shape stored in the offline queue."""
        user_id = data.get("user_id", data.get("userId", ""))
        return cls(
            leaderboard_id=data.get("leaderboard_id", data.get("leaderboardId", "")),
            user_id=user_id,
            user_name=data.get("user_name") or data.get("userName") or user_id,
            score=data.get("score", 0),
            metadata=data.get("metadata"),
        )


@dataclass
class SubmitScoreResponse:
    """Result of a direct score submission."""

    operation: str  # insert, update or no_change
    rank: int
    previous_score: Optional[float] = None
    improvement: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SubmitScoreResponse":
        return cls(
            operation=data.get("operation", "insert"),
            rank=data.get("rank", 0),
            previous_score=data.get("previous_score"),
            improvement=data.get("improvement"),
        )


@dataclass
class BulkScoreResult(SubmitScoreResponse):
    leaderboard_id: str = ""
    user_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "BulkScoreResult":
        return cls(
            operation=data.get("operation", "insert"),
            rank=data.get("rank", 0),
            previous_score=data.get("previous_score"),
            improvement=data.get("improvement"),
            leaderboard_id=data.get("leaderboard_id", ""),
            user_id=data.get("user_id", ""),
        )


@dataclass
class BulkSubmitScoreResponse:
    results: list[BulkScoreResult] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "BulkSubmitScoreResponse":
        return cls(
            results=[BulkScoreResult.from_dict(r) for r in data.get("results") or []],
            summary=data.get("summary") or {},
        )


@dataclass
class LeaderboardEntriesResponse:
    """A page of leaderboard entries."""

    data: list[LeaderboardEntry]
    pagination: dict = field(default_factory=dict)
    leaderboard: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "LeaderboardEntriesResponse":
        return cls(
            data=[LeaderboardEntry.from_dict(e) for e in data.get("data") or []],
            pagination=data.get("pagination") or {},
            leaderboard=data.get("leaderboard") or {},
        )


@dataclass
class UserScoresResponse:
    """A user's scores across leaderboards.

    Entries keep the API's shape (``leaderboard_id``, ``leaderboard_name``,
    ``score``, ``rank``, ...).
    """

    data: list[dict[str, Any]]
    pagination: dict = field(default_factory=dict)
    user: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "UserScoresResponse":
        return cls(
            data=list(data.get("data") or []),
            pagination=data.get("pagination") or {},
            user=data.get("user") or {},
        )
