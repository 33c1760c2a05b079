"""
Agent dispatcher workflow tests.

Drives one room's planning week through the phase handlers with no
generation provider (every reply uses its deterministic fallback) and a
MagicMock Trello gateway.

Coverage
--------
    - IDLE → APPROVAL_GATE_1 in one dispatch, no Trello call
    - open gate: messages become votes; waiting replies show the tally
    - rejection reverts with feedback and waits for the next message
    - planning meeting round-robin → task proposals → Gate 2
    - publish: success, partial failure, duplicate attempt, misconfiguration
    - task JSON repair ladder with a scripted provider
    - monitor stall nudges and the weekly review
    - chain bound
"""

import json
import logging
from datetime import timedelta

import pytest

from groupcopilot.ai.gateway import LLMGateway
from groupcopilot.integrations.trello_gateway import TrelloApiError
from groupcopilot.models import db
from groupcopilot.models.agent import (
    AGENT_STATES,
    APPROVAL_GATE_1,
    APPROVAL_GATE_2,
    APPROVAL_REJECTED,
    GATE_SKELETON,
    GATE_TASK_PLAN,
    IDLE,
    MONITOR,
    PLANNING_MEETING,
    SKELETON_DRAFT,
    SKELETON_QA,
    TASK_PROPOSALS,
    TRELLO_PUBLISH,
    WEEKLY_KICKOFF,
    AgentSession,
)
from groupcopilot.models.audit import AuditLog
from groupcopilot.models.trello import TrelloCardCache
from groupcopilot.services import approval_gate
from groupcopilot.services import state_machine as sm
from groupcopilot.services.dispatcher import (
    ALL_CLEAR_TEXT,
    PUBLISH_FAILURE_TEXT,
    TRIGGER_WEEKLY_REVIEW,
    AgentDispatcher,
)
from groupcopilot.services.membership import load_member_context

MEMBERS = ["u1", "u2", "u3"]


def _actions(session_id):
    return [e.action for e in AuditLog.query.filter_by(session_id=session_id).order_by(AuditLog.id)]


def _session_at(room, state, data=None, week=43):
    session = AgentSession(room_id=room.id, iso_year=2026, week_number=week, state=state,
                           data={"schema_version": 1, **(data or {})})
    db.session.add(session)
    db.session.commit()
    return session


def _proposals(*titles):
    return [
        {"title": t, "description": f"{t} details", "suggested_owner_user_id": "u1",
         "suggested_owner_name": "Member u1", "effort": "M"}
        for t in titles
    ]


@pytest.fixture()
def room(room_factory):
    return room_factory(MEMBERS, trello_list_id="list-1", trello_member_ids={"u1": "trello-u1"})


@pytest.fixture()
def as_user(room):
    def _members(user_id=None):
        return load_member_context(room, user_id)
    return _members


@pytest.fixture()
def gate_1(dispatcher, room, as_user, now):
    """Session waiting at APPROVAL_GATE_1."""
    session = sm.get_or_create_session(room.id, now=now)
    dispatcher.dispatch(session, "Let's start planning", as_user("u1"))
    return sm.get_session(session.id)


# ═════════════════════════════════════════════════════════════════════════
# KICKOFF → GATE 1
# ═════════════════════════════════════════════════════════════════════════

class TestKickoffToGate1:
    def test_handlers_cover_every_state(self, dispatcher):
        assert set(dispatcher._handlers) == set(AGENT_STATES)

    def test_single_message_reaches_gate_1_without_trello(self, dispatcher, trello, room, as_user, now):
        session = sm.get_or_create_session(room.id, now=now)
        result = dispatcher.dispatch(session, "Let's start planning", as_user("u1"))

        assert result.new_state == APPROVAL_GATE_1
        assert result.steps == [IDLE, WEEKLY_KICKOFF, SKELETON_DRAFT, SKELETON_QA]
        assert result.mock_mode is True
        assert result.approval_request_id is not None
        assert "Welcome to week 43" in result.reply_text
        assert "\n\n---\n\n" in result.reply_text
        assert "Complete the project scaffold" in result.reply_text
        assert trello.mock_calls == []

        request = approval_gate.get_open_approval(session.id)
        assert request.type == GATE_SKELETON
        assert len(request.payload["milestones"]) == 2
        assert "gate_1_opened" in _actions(session.id)

    def test_chain_is_bounded(self, trello, room, as_user, now):
        short = AgentDispatcher(LLMGateway(None), trello, max_chain_steps=2, clock=lambda: now)
        session = sm.get_or_create_session(room.id, now=now)
        result = short.dispatch(session, "Let's start planning", as_user("u1"))
        assert result.steps == [IDLE, WEEKLY_KICKOFF]
        assert result.new_state == SKELETON_DRAFT

    def test_qa_question_is_recorded_then_answered(self, trello, room, as_user, make_gateway, now):
        gateway = make_gateway(
            "Welcome!",
            json.dumps({"milestones": [{"outcome": "Auth", "reasoning": "Because login"}]}),
            json.dumps({"done": False, "question": "Which auth provider?"}),
            json.dumps({"done": True}),
        )
        qa = AgentDispatcher(gateway, trello, clock=lambda: now)
        session = sm.get_or_create_session(room.id, now=now)

        first = qa.dispatch(session, "Let's start planning", as_user("u1"))
        assert first.new_state == SKELETON_QA
        assert first.reply_text.endswith("Which auth provider?")
        assert first.mock_mode is False

        second = qa.dispatch(session, "We use GitHub OAuth", as_user("u2"))
        assert second.new_state == APPROVAL_GATE_1
        data = sm.get_session(session.id).session_data
        assert data["qa_answers"] == {"Which auth provider?": "We use GitHub OAuth"}
        assert data["skeleton_draft"] == ["Auth — _Because login_"]


# ═════════════════════════════════════════════════════════════════════════
# GATE 1
# ═════════════════════════════════════════════════════════════════════════

class TestGate1:
    def test_waiting_reply_without_voter(self, dispatcher, gate_1, as_user):
        result = dispatcher.dispatch(gate_1, None, as_user())
        assert result.reply_text == "Waiting for the group's approval. 0/3 approved so far."
        assert result.new_state == APPROVAL_GATE_1

    def test_message_is_a_vote(self, dispatcher, gate_1, as_user):
        result = dispatcher.dispatch(gate_1, "lgtm", as_user("u1"))
        assert result.reply_text.startswith("Vote recorded (approve)")
        assert "1/3 approved" in result.reply_text
        assert result.new_state == APPROVAL_GATE_1

    def test_unanimous_approval_moves_to_planning(self, dispatcher, gate_1, as_user):
        request = approval_gate.get_open_approval(gate_1.id)
        for uid in ("u1", "u2"):
            approval_gate.cast_vote(request.id, uid, "approve", member_ids=MEMBERS)
        result = dispatcher.dispatch(gate_1, "approve", as_user("u3"))

        assert result.new_state == PLANNING_MEETING
        assert result.reply_text.startswith("Skeleton approved! Moving to the planning meeting.")
        assert "Let's hear from Member u1 first" in result.reply_text
        assert sm.get_session(gate_1.id).session_data["contribution_order"] == MEMBERS

    def test_rejection_reverts_with_feedback(self, dispatcher, gate_1, as_user):
        request = approval_gate.get_open_approval(gate_1.id)
        approval_gate.cast_vote(request.id, "u1", "approve", member_ids=MEMBERS)
        approval_gate.cast_vote(request.id, "u2", "request_change", "Add a testing milestone",
                                member_ids=MEMBERS)

        result = dispatcher.apply_gate_resolution(gate_1, as_user("u2"))

        assert result.steps == [APPROVAL_GATE_1]
        assert result.new_state == SKELETON_DRAFT
        assert "revise" in result.reply_text
        session = sm.get_session(gate_1.id)
        assert session.session_data["revision_feedback"] == ["Add a testing milestone"]
        actions = _actions(gate_1.id)
        assert "gate_skeleton_rejected" in actions
        assert actions[-1] == "state_reverted"

    def test_gate_state_without_request_is_logged(self, dispatcher, room, as_user, caplog):
        session = _session_at(room, APPROVAL_GATE_1)

        with caplog.at_level(logging.ERROR, logger="groupcopilot.services.dispatcher"):
            result = dispatcher.dispatch(session, "approve", as_user("u1"))

        assert result.new_state == APPROVAL_GATE_1
        assert result.reply_text == "Waiting for the group's approval. 0/0 approved so far."
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "no SKELETON approval request" in errors[0].getMessage()
        assert errors[0].session_id == session.id

    def test_next_message_redrafts_and_reopens_gate(self, dispatcher, gate_1, as_user):
        first = approval_gate.get_open_approval(gate_1.id)
        approval_gate.cast_vote(first.id, "u2", "request_change", "More detail", member_ids=MEMBERS)
        dispatcher.apply_gate_resolution(gate_1, as_user("u2"))

        result = dispatcher.dispatch(gate_1, "ok try again with more detail please", as_user("u2"))

        assert result.new_state == APPROVAL_GATE_1
        reopened = approval_gate.get_open_approval(gate_1.id)
        assert reopened.id != first.id
        assert approval_gate.get_approval(first.id).status == APPROVAL_REJECTED
        assert sm.get_session(gate_1.id).session_data["revision_feedback"] == []


# ═════════════════════════════════════════════════════════════════════════
# PLANNING MEETING → GATE 2
# ═════════════════════════════════════════════════════════════════════════

class TestPlanningToGate2:
    def test_round_robin_then_gate_2(self, dispatcher, room, as_user):
        session = _session_at(room, PLANNING_MEETING, {"skeleton_draft": ["Auth"]})

        first = dispatcher.dispatch(session, "I will build the login page", as_user("u1"))
        assert first.new_state == PLANNING_MEETING
        assert "Member u2" in first.reply_text

        dispatcher.dispatch(session, "I will write the API tests", as_user("u2"))
        # A second message from someone who already contributed is not recorded twice
        dispatcher.dispatch(session, "Also the docs", as_user("u2"))
        result = dispatcher.dispatch(session, "I will set up CI", as_user("u3"))

        assert result.new_state == APPROVAL_GATE_2
        assert result.steps == [PLANNING_MEETING, TASK_PROPOSALS]
        data = sm.get_session(session.id).session_data
        assert data["contributions"] == {
            "u1": "I will build the login page",
            "u2": "I will write the API tests",
            "u3": "I will set up CI",
        }
        assert [t["suggested_owner_user_id"] for t in data["task_proposals"]] == MEMBERS
        request = approval_gate.get_open_approval(session.id)
        assert request.type == GATE_TASK_PLAN
        assert len(request.payload["tasks"]) == 3
        assert "**task plan**" in result.reply_text

    def test_task_json_repair_failure_surfaces_summary(self, trello, room, as_user, make_gateway, now):
        gateway = make_gateway("not json at all", "still not json")
        agent = AgentDispatcher(gateway, trello, clock=lambda: now)
        session = _session_at(room, TASK_PROPOSALS, {"contributions": {"u1": "Build login"}})

        result = agent.dispatch(session, None, as_user())

        assert result.new_state == TASK_PROPOSALS
        assert result.mock_mode is True
        assert "- **Member u1**: Build login" in result.reply_text
        assert _actions(session.id) == ["task_json_parse_retry", "task_json_parse_failed"]
        assert approval_gate.get_open_approval(session.id) is None

    def test_task_json_repair_success(self, trello, room, as_user, make_gateway, now):
        tasks = json.dumps({"tasks": [{"title": "Login", "description": "Build it"}]})
        agent = AgentDispatcher(make_gateway("oops {", tasks), trello, clock=lambda: now)
        session = _session_at(room, TASK_PROPOSALS, {"contributions": {"u1": "Build login"}})

        result = agent.dispatch(session, None, as_user())

        assert result.new_state == APPROVAL_GATE_2
        assert "task_json_parse_retry" in _actions(session.id)


# ═════════════════════════════════════════════════════════════════════════
# PUBLISH
# ═════════════════════════════════════════════════════════════════════════

class TestPublish:
    def test_gate_2_approval_publishes(self, dispatcher, trello, room, as_user):
        session = _session_at(room, TASK_PROPOSALS,
                              {"contributions": {"u1": "Build login", "u2": "Write tests"}})
        dispatcher.dispatch(session, None, as_user())
        request = approval_gate.get_open_approval(session.id)
        trello.create_card.side_effect = [{"id": "c1"}, {"id": "c2"}]

        for uid in MEMBERS:
            outcome = approval_gate.cast_vote(request.id, uid, "approve", member_ids=MEMBERS)
        assert outcome.resolved
        result = dispatcher.apply_gate_resolution(session, as_user("u3"))

        assert result.steps == [APPROVAL_GATE_2, TRELLO_PUBLISH]
        assert result.new_state == MONITOR
        assert result.reply_text.startswith("Task plan approved! Publishing to Trello now.")
        assert "Published 2/2 cards" in result.reply_text
        assert trello.create_card.call_args_list[0].args[0] == "list-1"
        assert trello.create_card.call_args_list[0].args[3] == ["trello-u1"]
        data = sm.get_session(session.id).session_data
        assert data["published_card_ids"] == ["c1", "c2"]
        assert data["task_proposals"] == []
        assert "trello_cards_published" in _actions(session.id)

    def test_partial_failure_reports_three_of_five(self, dispatcher, trello, room, as_user):
        session = _session_at(room, TRELLO_PUBLISH, {"task_proposals": _proposals("A", "B", "C", "D", "E")})
        trello.create_card.side_effect = [
            {"id": "c1"},
            TrelloApiError("rate limited key=secret", "RATE_LIMITED", 429),
            {"id": "c3"},
            TrelloApiError("server error", "UNKNOWN", 500),
            {"id": "c5"},
        ]

        result = dispatcher.dispatch(session, None, as_user())

        assert result.new_state == MONITOR
        assert result.mock_mode is True
        assert result.reply_text.startswith(PUBLISH_FAILURE_TEXT)
        assert "Published 3/5 card(s)" in result.reply_text
        assert trello.create_card.call_count == 5
        assert sm.get_session(session.id).session_data["published_card_ids"] == ["c1", "c3", "c5"]
        assert TrelloCardCache.query.count() == 3
        failed = AuditLog.query.filter_by(action="trello_publish_failed").one().payload
        assert failed["published_count"] == 3
        assert "secret" not in json.dumps(failed)

    def test_duplicate_publish_makes_no_calls(self, dispatcher, trello, room, as_user):
        session = _session_at(room, TRELLO_PUBLISH, {
            "task_proposals": _proposals("A"),
            "published_card_ids": ["c1"],
        })

        result = dispatcher.dispatch(session, None, as_user())

        assert result.new_state == MONITOR
        assert "already published" in result.reply_text
        trello.create_card.assert_not_called()
        assert "trello_publish_duplicate_attempt" in _actions(session.id)

    def test_unconfigured_trello(self, dispatcher, trello, room, as_user):
        trello.is_configured = False
        session = _session_at(room, TRELLO_PUBLISH, {"task_proposals": _proposals("A")})

        result = dispatcher.dispatch(session, None, as_user())

        assert result.reply_text == PUBLISH_FAILURE_TEXT
        assert result.new_state == MONITOR
        trello.create_card.assert_not_called()
        failed = AuditLog.query.filter_by(action="trello_publish_failed").one()
        assert failed.payload["reason"] == "TRELLO_NOT_CONFIGURED"

    def test_list_resolved_by_name_from_board(self, dispatcher, trello, room_factory, now):
        other = room_factory(["u1"], code="ROOM02", trello_board_id="board-9")
        session = _session_at(other, TRELLO_PUBLISH, {"task_proposals": _proposals("A")})
        trello.find_list_id.return_value = None

        result = dispatcher.dispatch(session, None, load_member_context(other))

        trello.find_list_id.assert_called_once_with("board-9", "To Do")
        assert result.reply_text == PUBLISH_FAILURE_TEXT
        failed = AuditLog.query.filter_by(action="trello_publish_failed").one()
        assert failed.payload["reason"] == "TRELLO_LIST_NOT_FOUND"

    def test_nothing_to_publish_chains_to_monitor(self, dispatcher, trello, room, as_user):
        session = _session_at(room, TRELLO_PUBLISH, {})
        result = dispatcher.dispatch(session, None, as_user())
        assert result.steps == [TRELLO_PUBLISH, MONITOR]
        assert result.reply_text == ALL_CLEAR_TEXT
        trello.create_card.assert_not_called()


# ═════════════════════════════════════════════════════════════════════════
# MONITOR & REVIEW
# ═════════════════════════════════════════════════════════════════════════

class TestMonitorAndReview:
    def test_stalled_cards_are_named(self, dispatcher, room, as_user, now):
        session = _session_at(room, MONITOR)
        db.session.add(TrelloCardCache(room_id=room.id, session_id=session.id, trello_card_id="c1",
                                       title="Login", status="To Do",
                                       status_changed_at=now - timedelta(days=8)))
        db.session.add(TrelloCardCache(room_id=room.id, session_id=session.id, trello_card_id="c2",
                                       title="Old but done", status="Done",
                                       status_changed_at=now - timedelta(days=20)))
        db.session.add(TrelloCardCache(room_id=room.id, session_id=session.id, trello_card_id="c3",
                                       title="Fresh", status="Doing",
                                       status_changed_at=now - timedelta(days=2)))
        db.session.commit()

        result = dispatcher.dispatch(session, "how are the tasks going?", as_user("u1"))

        assert "1 task(s)" in result.reply_text
        assert "**Login**" in result.reply_text
        assert "Old but done" not in result.reply_text
        assert result.new_state == MONITOR

    def test_all_clear(self, dispatcher, room, as_user):
        session = _session_at(room, MONITOR)
        assert dispatcher.dispatch(session, "status?", as_user("u1")).reply_text == ALL_CLEAR_TEXT

    def test_weekly_review_returns_to_idle(self, dispatcher, room, as_user):
        session = _session_at(room, MONITOR)
        db.session.add(TrelloCardCache(room_id=room.id, session_id=session.id, trello_card_id="c1",
                                       title="Login", status="Done"))
        db.session.commit()

        result = dispatcher.dispatch(session, None, as_user(), trigger=TRIGGER_WEEKLY_REVIEW)

        assert result.new_state == IDLE
        assert "progress on 1 tasks" in result.reply_text
        data = sm.get_session(session.id).session_data
        assert data["review_summary"] == result.reply_text
        assert "weekly_review_completed" in _actions(session.id)

    def test_next_kickoff_uses_prior_review(self, trello, room, as_user, make_gateway, now):
        _session_at(room, IDLE, {"review_summary": "Last week we shipped auth."}, week=42)
        gateway = make_gateway("Welcome back!")
        agent = AgentDispatcher(gateway, trello, clock=lambda: now)
        session = sm.get_or_create_session(room.id, now=now)

        agent.dispatch(session, "Let's start planning", as_user("u1"))

        kickoff_prompt = json.dumps(gateway.provider.calls[0]["messages"])
        assert "Last week we shipped auth." in kickoff_prompt
