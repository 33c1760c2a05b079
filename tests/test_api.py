"""
HTTP API tests — rooms, chat, approvals, audit feed, cron triggers, health.

The app's own dispatcher runs with no generation key and no Trello
credentials, so every agent reply is a deterministic fallback.
"""

import pytest

from groupcopilot.models import db
from groupcopilot.models.agent import (
    APPROVAL_GATE_1,
    IDLE,
    PLANNING_MEETING,
    SKELETON_DRAFT,
    ApprovalRequest,
    ApprovalVote,
)

CRON_AUTH = {"Authorization": "Bearer test-cron-secret"}


def _as(user_id):
    return {"X-User-Id": user_id}


def _say(client, code, user_id, content):
    return client.post(f"/api/v1/rooms/{code}/messages", json={"content": content}, headers=_as(user_id))


@pytest.fixture()
def room(room_factory):
    return room_factory(["u1", "u2"], code="API001")


@pytest.fixture()
def gate_request_id(client, room):
    res = _say(client, room.code, "u1", "Let's start planning")
    assert res.status_code == 200
    return res.get_json()["approval_request_id"]


# ═════════════════════════════════════════════════════════════════════════
# ROOMS
# ═════════════════════════════════════════════════════════════════════════

class TestRooms:
    def test_create_room(self, client):
        res = client.post("/api/v1/rooms", json={"name": "Capstone", "project_goal": "Ship it",
                                                 "display_name": "Ada"}, headers=_as("u1"))
        assert res.status_code == 201
        data = res.get_json()
        assert len(data["code"]) == 6
        assert data["members"][0]["user_id"] == "u1"
        assert data["members"][0]["display_name"] == "Ada"

    def test_create_room_requires_name(self, client):
        res = client.post("/api/v1/rooms", json={}, headers=_as("u1"))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_room(self, client):
        res = client.get("/api/v1/rooms/NOPE00")
        assert res.status_code == 404

    def test_add_member_and_duplicate(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/members", json={"user_id": "u3"})
        assert res.status_code == 201
        res = client.post(f"/api/v1/rooms/{room.code}/members", json={"user_id": "u3"})
        assert res.status_code == 409

    def test_session_view_starts_idle(self, client, room):
        res = client.get(f"/api/v1/rooms/{room.code}/session")
        assert res.status_code == 200
        data = res.get_json()
        assert data["state"] == IDLE
        assert data["available_transitions"]
        assert data["open_approval"] is None


# ═════════════════════════════════════════════════════════════════════════
# CHAT
# ═════════════════════════════════════════════════════════════════════════

class TestMessages:
    def test_requires_user(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/messages", json={"content": "hi"})
        assert res.status_code == 401

    def test_non_member_rejected(self, client, room):
        res = _say(client, room.code, "stranger", "hi")
        assert res.status_code == 422

    def test_empty_message_rejected(self, client, room):
        res = _say(client, room.code, "u1", "   ")
        assert res.status_code == 422

    def test_small_talk_gets_canned_reply(self, client, room):
        res = _say(client, room.code, "u1", "hi")
        assert res.status_code == 200
        data = res.get_json()
        assert data["intent"] == "SMALL_TALK"
        assert data["state"] == IDLE
        assert data["agent_message"]["content"]
        assert data["agent_message"]["mock_mode"] is False

    def test_kickoff_reaches_gate_1(self, client, room):
        res = _say(client, room.code, "u1", "Let's start planning")
        data = res.get_json()
        assert data["intent"] == "KICKOFF_REQUEST"
        assert data["state"] == APPROVAL_GATE_1
        assert data["approval_request_id"] is not None
        assert data["agent_message"]["mock_mode"] is True

        history = client.get(f"/api/v1/rooms/{room.code}/messages").get_json()["items"]
        assert [m["sender_type"] for m in history] == ["user", "agent"]

    def test_plain_text_body_rejected(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/messages", data="hi",
                          content_type="text/plain", headers=_as("u1"))
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════
# APPROVALS
# ═════════════════════════════════════════════════════════════════════════

class TestApprovals:
    def test_small_talk_during_open_gate_is_a_vote(self, client, room, gate_request_id):
        first = _say(client, room.code, "u1", "yes").get_json()
        assert first["state"] == APPROVAL_GATE_1
        assert first["agent_message"]["content"].startswith("Vote recorded (approve)")
        assert "1/2 approved" in first["agent_message"]["content"]

        second = _say(client, room.code, "u2", "👍").get_json()
        assert second["state"] == PLANNING_MEETING

        votes = ApprovalVote.query.filter_by(request_id=gate_request_id).order_by(ApprovalVote.id).all()
        assert [(v.voter_id, v.vote) for v in votes] == [("u1", "approve"), ("u2", "approve")]
        assert db.session.get(ApprovalRequest, gate_request_id).status == "approved"

    def test_thanks_during_open_gate_requests_changes(self, client, room, gate_request_id):
        data = _say(client, room.code, "u1", "thanks").get_json()
        assert data["state"] == SKELETON_DRAFT
        vote = ApprovalVote.query.filter_by(request_id=gate_request_id).one()
        assert (vote.voter_id, vote.vote, vote.comment) == ("u1", "request_change", "thanks")

    def test_get_shows_tally(self, client, gate_request_id):
        res = client.get(f"/api/v1/approvals/{gate_request_id}", headers=_as("u1"))
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "pending"
        assert data["tally"]["label"] == "0/2 approved"
        assert data["votes"] == []

    def test_unanimous_vote_advances_workflow(self, client, room, gate_request_id):
        url = f"/api/v1/approvals/{gate_request_id}/vote"
        first = client.post(url, json={"vote": "approve"}, headers=_as("u1")).get_json()
        assert first["resolved"] is False
        assert first["tally"]["label"] == "1/2 approved"

        second = client.post(url, json={"vote": "approve"}, headers=_as("u2")).get_json()
        assert second["resolved"] is True
        assert second["status"] == "approved"
        assert second["reply"]["new_state"] == PLANNING_MEETING

        session = client.get(f"/api/v1/rooms/{room.code}/session").get_json()
        assert session["state"] == PLANNING_MEETING

    def test_vote_after_resolution_conflicts(self, client, gate_request_id):
        url = f"/api/v1/approvals/{gate_request_id}/vote"
        client.post(url, json={"vote": "request_change", "comment": "More tests"}, headers=_as("u1"))
        res = client.post(url, json={"vote": "approve"}, headers=_as("u2"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_invalid_vote(self, client, gate_request_id):
        res = client.post(f"/api/v1/approvals/{gate_request_id}/vote", json={"vote": "maybe"},
                          headers=_as("u1"))
        assert res.status_code == 400

    def test_vote_requires_user(self, client, gate_request_id):
        res = client.post(f"/api/v1/approvals/{gate_request_id}/vote", json={"vote": "approve"})
        assert res.status_code == 401

    def test_unknown_approval(self, client):
        assert client.get("/api/v1/approvals/9999").status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# AUDIT FEED
# ═════════════════════════════════════════════════════════════════════════

class TestAudit:
    def test_newest_first_with_cursor(self, client, room, gate_request_id):
        url = f"/api/v1/rooms/{room.code}/audit"
        everything = client.get(url).get_json()
        ids = [e["id"] for e in everything["items"]]
        assert len(ids) > 2
        assert ids == sorted(ids, reverse=True)
        assert everything["next_before_id"] is None

        page = client.get(f"{url}?limit=2").get_json()
        assert [e["id"] for e in page["items"]] == ids[:2]
        assert page["next_before_id"] == ids[1]

        rest = client.get(f"{url}?limit=100&before_id={page['next_before_id']}").get_json()
        assert [e["id"] for e in rest["items"]] == ids[2:]

    def test_action_filter(self, client, room, gate_request_id):
        res = client.get(f"/api/v1/rooms/{room.code}/audit?action=gate_1_opened").get_json()
        assert res["items"]
        assert {e["action"] for e in res["items"]} == {"gate_1_opened"}


# ═════════════════════════════════════════════════════════════════════════
# ASSIGNEE SUGGESTION
# ═════════════════════════════════════════════════════════════════════════

class TestSuggestAssignee:
    def test_member_gets_fairness_suggestion(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/tasks/suggest-assignee",
                          json={"priority": "med"}, headers=_as("u2"))
        assert res.status_code == 200
        data = res.get_json()
        assert data["suggested_user_id"] == "u1"
        assert data["source"] == "fairness"

    def test_non_member_forbidden(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/tasks/suggest-assignee",
                          json={"priority": "med"}, headers=_as("stranger"))
        assert res.status_code == 403

    def test_bad_priority(self, client, room):
        res = client.post(f"/api/v1/rooms/{room.code}/tasks/suggest-assignee",
                          json={"priority": "urgent"}, headers=_as("u1"))
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# CRON + HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestCron:
    def test_requires_secret(self, client):
        assert client.post("/api/v1/cron/weekly-monitor").status_code == 401
        res = client.post("/api/v1/cron/weekly-monitor", headers={"Authorization": "Bearer wrong"})
        assert res.status_code == 401

    def test_monitor_with_no_sessions(self, client):
        res = client.post("/api/v1/cron/weekly-monitor", headers=CRON_AUTH)
        assert res.status_code == 200
        assert res.get_json() == {"sessions": 0, "synced": 0, "nudged": 0, "errors": 0}

    def test_review_with_no_sessions(self, client):
        res = client.post("/api/v1/cron/weekly-review", headers=CRON_AUTH)
        assert res.status_code == 200
        assert res.get_json()["reviewed"] == 0


class TestHealth:
    def test_reports_mock_mode(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "ok"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["generator"]["status"] == "mock_mode"
        assert data["checks"]["trello"]["status"] == "not_configured"
