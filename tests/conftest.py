"""
Shared pytest fixtures for the GroupCopilot test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - room_factory: creates a room with members directly in the DB
    - trello: MagicMock standing in for the Trello gateway
    - dispatcher: AgentDispatcher in mock mode with a fixed clock
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from groupcopilot import create_app
from groupcopilot.ai.gateway import EMPTY_RESPONSE, GenerationError, LLMGateway, LLMProvider
from groupcopilot.integrations.trello_gateway import TrelloGateway
from groupcopilot.models import db as _db
from groupcopilot.models.room import Room, RoomMember
from groupcopilot.services.dispatcher import AgentDispatcher

# Monday of ISO week 43, 2026
NOW = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)


class ScriptedProvider(LLMProvider):
    """Provider that replays canned replies in order; an Exception entry is raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def chat(self, messages, model, **kwargs):
        self.calls.append({"messages": messages, "model": model})
        if not self.replies:
            raise GenerationError(EMPTY_RESPONSE)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return {"content": reply, "prompt_tokens": 0, "completion_tokens": 0, "model": model}


def scripted_gateway(*replies, **kwargs) -> LLMGateway:
    kwargs.setdefault("max_retries", 1)
    kwargs.setdefault("backoff_seconds", 0)
    return LLMGateway(ScriptedProvider(*replies), **kwargs)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def room_factory():
    """Return a callable that creates a room with the given member ids."""

    def _make(member_ids=("u1", "u2", "u3"), *, code="ROOM01", project_goal="Ship the MVP",
              trello_board_id=None, trello_list_id=None, trello_member_ids=None):
        room = Room(
            code=code,
            name=f"Room {code}",
            project_goal=project_goal,
            trello_board_id=trello_board_id,
            trello_list_id=trello_list_id,
        )
        _db.session.add(room)
        _db.session.flush()
        for uid in member_ids:
            _db.session.add(RoomMember(
                room_id=room.id,
                user_id=uid,
                display_name=f"Member {uid}",
                trello_member_id=(trello_member_ids or {}).get(uid),
            ))
        _db.session.commit()
        return room

    return _make


@pytest.fixture()
def trello():
    """Trello gateway double: configured, every call recorded."""
    gateway = MagicMock(spec=TrelloGateway)
    gateway.is_configured = True
    return gateway


@pytest.fixture()
def dispatcher(trello):
    """Dispatcher with no generation provider (mock mode) and a fixed clock."""
    return AgentDispatcher(LLMGateway(None), trello, clock=lambda: NOW)


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def make_gateway():
    """Return a factory for gateways backed by a ScriptedProvider."""
    return scripted_gateway
