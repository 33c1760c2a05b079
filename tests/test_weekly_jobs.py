"""
Weekly job tests — monitor sync/nudges and the weekly review batch.
"""

from datetime import timedelta

import pytest

from groupcopilot.integrations.trello_gateway import TrelloApiError
from groupcopilot.models import db
from groupcopilot.models.agent import IDLE, MONITOR, AgentSession
from groupcopilot.models.audit import AuditLog
from groupcopilot.models.room import RoomMessage
from groupcopilot.models.trello import TrelloCardCache
from groupcopilot.services.weekly_jobs import run_weekly_monitor, run_weekly_review


@pytest.fixture()
def monitored(room_factory, now):
    """A room in MONITOR with one card untouched for eight days."""
    room = room_factory(["u1", "u2"], trello_board_id="board-1")
    session = AgentSession(room_id=room.id, iso_year=2026, week_number=43, state=MONITOR,
                           data={"schema_version": 1})
    db.session.add(session)
    db.session.flush()
    db.session.add(TrelloCardCache(room_id=room.id, session_id=session.id, trello_card_id="c1",
                                   title="Login", status="To Do",
                                   status_changed_at=now - timedelta(days=8)))
    db.session.commit()
    return room, session


class TestWeeklyMonitor:
    def test_stalled_card_triggers_nudge(self, dispatcher, trello, monitored, now):
        room, session = monitored
        trello.list_cards.return_value = [{"id": "c1", "title": "Login", "status": "To Do"}]

        result = run_weekly_monitor(dispatcher, {}, now=now)

        assert result == {"sessions": 1, "synced": 1, "nudged": 1, "errors": 0}
        trello.list_cards.assert_called_once_with("board-1")
        message = RoomMessage.query.filter_by(room_id=room.id).one()
        assert message.sender_type == "system"
        assert "**Login**" in message.content
        nudge = AuditLog.query.filter_by(action="monitor_nudge_sent").one()
        assert nudge.payload["titles"] == ["Login"]

    def test_status_change_resets_stall_clock(self, dispatcher, trello, monitored, now):
        room, _ = monitored
        trello.list_cards.return_value = [{"id": "c1", "title": "Login", "status": "Doing"}]

        result = run_weekly_monitor(dispatcher, {}, now=now)

        assert result["nudged"] == 0
        assert TrelloCardCache.query.one().status == "Doing"
        assert RoomMessage.query.filter_by(room_id=room.id).count() == 0

    def test_sync_failure_is_counted_and_cache_still_checked(self, dispatcher, trello, monitored, now):
        trello.list_cards.side_effect = TrelloApiError("down", "NETWORK_ERROR", 0)

        result = run_weekly_monitor(dispatcher, {}, now=now)

        assert result["errors"] == 1
        assert result["synced"] == 0
        assert result["nudged"] == 1

    def test_unconfigured_trello_skips_sync(self, dispatcher, trello, monitored, now):
        trello.is_configured = False
        result = run_weekly_monitor(dispatcher, {}, now=now)
        trello.list_cards.assert_not_called()
        assert result["synced"] == 0


class TestWeeklyReview:
    def test_review_posts_summary_and_resets(self, dispatcher, monitored):
        room, session = monitored

        result = run_weekly_review(dispatcher, {})

        assert result == {"sessions": 1, "reviewed": 1, "errors": 0}
        assert db.session.get(AgentSession, session.id).state == IDLE
        message = RoomMessage.query.filter_by(room_id=room.id).one()
        assert message.content.startswith("**Week 43 Review**")
        assert message.mock_mode is True

    def test_no_sessions_in_monitor(self, dispatcher, room_factory):
        room_factory()
        assert run_weekly_review(dispatcher, {}) == {"sessions": 0, "reviewed": 0, "errors": 0}
