"""Tests for realtime message parsing."""

import pytest

from globalleaderboards.realtime.messages import (
    ConnectionInfo,
    ErrorMessage,
    LeaderboardEntry,
    LeaderboardUpdate,
    NewEntryMutation,
    PassthroughMessage,
    PingMessage,
    PongMessage,
    RankChangeMutation,
    RemovedMutation,
    ScoreUpdateMutation,
    SequenceTracker,
    UnknownMessage,
    UsernameChangeMutation,
    UserRankUpdate,
    build_control_message,
    parse_message,
    parse_mutation,
    subscribe_message,
    unsubscribe_message,
)


class TestParseMessage:
    """Tests for parse_message."""

    def test_leaderboard_update(self):
        raw = {
            "type": "leaderboard_update",
            "payload": {
                "leaderboardId": "lb-1",
                "updateType": "batch_update",
                "leaderboard": {
                    "entries": [
                        {"userId": "u1", "userName": "One", "score": 300, "rank": 1},
                        {"userId": "u2", "userName": "Two", "score": 200, "rank": 2},
                    ],
                    "totalEntries": 57,
                    "displayedEntries": 2,
                },
                "mutations": [
                    {"type": "rank_change", "userId": "u2", "previousRank": 1, "newRank": 2, "score": 200},
                ],
                "trigger": {"type": "bulk_submission", "submissions": [{"userId": "u1"}]},
                "sequence": 42,
            },
        }

        message = parse_message(raw)

        assert isinstance(message, LeaderboardUpdate)
        assert message.leaderboard_id == "lb-1"
        assert message.update_type == "batch_update"
        assert [e.user_id for e in message.entries] == ["u1", "u2"]
        assert message.total_entries == 57
        assert message.displayed_entries == 2
        assert message.mutations == [RankChangeMutation("u2", 1, 2, 200)]
        assert message.trigger.type == "bulk_submission"
        assert message.trigger.submissions == [{"userId": "u1"}]
        assert message.sequence == 42

    def test_leaderboard_update_defaults(self):
        message = parse_message({"type": "leaderboard_update", "payload": {"leaderboardId": "lb-1"}})

        assert message.entries == []
        assert message.total_entries == 0
        assert message.mutations == []
        assert message.trigger.type == "unknown"
        assert message.sequence == 0

    def test_user_rank_update(self):
        message = parse_message(
            {
                "type": "user_rank_update",
                "data": {"leaderboard_id": "lb-1", "user_id": "u1", "old_rank": 3, "new_rank": 1, "score": 9},
            }
        )

        assert message == UserRankUpdate("lb-1", "u1", 3, 1, 9)

    def test_error(self):
        message = parse_message(
            {"type": "error", "error": {"code": "INVALID_API_KEY", "message": "nope", "details": {"a": 1}}}
        )

        assert message == ErrorMessage("INVALID_API_KEY", "nope", {"a": 1})

    def test_error_in_payload(self):
        message = parse_message({"type": "error", "payload": {"code": "X", "message": "y"}})

        assert message.code == "X"
        assert message.valid

    def test_error_without_error_object(self):
        message = parse_message({"type": "error", "message": "loose"})

        assert message.code == "INVALID_MESSAGE_FORMAT"
        assert not message.valid

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ({"type": "ping"}, PingMessage()),
            ({"type": "pong"}, PongMessage()),
            ({"type": "connection_info", "payload": {"id": "c"}}, ConnectionInfo({"id": "c"})),
            ({"type": "update"}, PassthroughMessage("update")),
            ({"type": "score_submission"}, PassthroughMessage("score_submission")),
            ({"type": "brand_new"}, UnknownMessage("brand_new")),
            ({}, UnknownMessage(None)),
        ],
    )
    def test_simple_types(self, raw, expected):
        assert parse_message(raw) == expected


class TestMutations:
    """Tests for parse_mutation."""

    def test_all_variants(self):
        assert parse_mutation(
            {"type": "new_entry", "userId": "u", "newRank": 4, "score": 10, "userName": "U"}
        ) == NewEntryMutation("u", 4, 10, "U")
        assert parse_mutation(
            {
                "type": "score_update",
                "userId": "u",
                "previousScore": 5,
                "newScore": 10,
                "previousRank": 9,
                "newRank": 4,
            }
        ) == ScoreUpdateMutation("u", 5, 10, 9, 4)
        assert parse_mutation(
            {"type": "username_change", "userId": "u", "previousUsername": "a", "newUsername": "b", "rank": 2}
        ) == UsernameChangeMutation("u", "a", "b", 2)
        assert parse_mutation(
            {"type": "removed", "userId": "u", "previousRank": 7, "score": 1}
        ) == RemovedMutation("u", 7, 1)

    def test_unknown_or_malformed(self):
        assert parse_mutation({"type": "teleport", "userId": "u"}) is None
        assert parse_mutation({"type": "rank_change", "userId": "u"}) is None


class TestLeaderboardEntry:
    def test_accepts_both_key_styles(self):
        snake = LeaderboardEntry.from_dict({"user_id": "u", "user_name": "U", "score": 1, "rank": 2})
        camel = LeaderboardEntry.from_dict({"userId": "u", "userName": "U", "score": 1, "rank": 2})

        assert snake == camel


class TestOutboundMessages:
    def test_control_message_shape(self):
        message = build_control_message("ping")

        assert set(message) == {"id", "type", "timestamp"}
        assert message["type"] == "ping"
        prefix, millis, suffix = message["id"].split("_")
        assert prefix == "msg"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert message["timestamp"].endswith("Z")

    def test_subscribe_and_unsubscribe(self):
        assert subscribe_message("lb-1")["payload"] == {"leaderboardId": "lb-1"}
        assert subscribe_message("lb-1", "u1")["payload"] == {"leaderboardId": "lb-1", "userId": "u1"}
        assert unsubscribe_message("lb-1")["type"] == "unsubscribe"


class TestSequenceTracker:
    def make_update(self, leaderboard_id, sequence):
        return parse_message(
            {"type": "leaderboard_update", "payload": {"leaderboardId": leaderboard_id, "sequence": sequence}}
        )

    def test_drops_stale_and_duplicate_updates(self):
        tracker = SequenceTracker()

        assert tracker.accept(self.make_update("lb-1", 1))
        assert tracker.accept(self.make_update("lb-1", 3))
        assert not tracker.accept(self.make_update("lb-1", 3))
        assert not tracker.accept(self.make_update("lb-1", 2))
        assert tracker.accept(self.make_update("lb-2", 1))

    def test_reset(self):
        tracker = SequenceTracker()
        tracker.accept(self.make_update("lb-1", 5))

        tracker.reset("lb-1")

        assert tracker.accept(self.make_update("lb-1", 1))
