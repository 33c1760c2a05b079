"""
Room chat entry point.

    handle_room_message()
      1. persist the user's message
      2. load (or lazily create) this week's session
      3. an open gate takes the message as a vote (straight to dispatch)
      4. otherwise classify intent: SMALL_TALK gets a canned reply, no dispatch
      5. everything else is dispatched; the agent reply is persisted
"""

import logging

from groupcopilot.core.exceptions import ValidationError
from groupcopilot.models import db
from groupcopilot.models.room import Room, RoomMessage
from groupcopilot.services import approval_gate
from groupcopilot.services import state_machine as sm
from groupcopilot.services.dispatcher import AgentDispatcher
from groupcopilot.services.intent_router import (
    SMALL_TALK,
    build_small_talk_reply,
    classify_intent,
    next_action_hint,
)
from groupcopilot.services.membership import load_member_context

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 4000
AGENT_NAME = "GroupCopilot"


def post_message(room_id: int, content: str, *, sender_type: str = "agent",
                 sender_user_id: str | None = None, sender_name: str | None = None,
                 mock_mode: bool = False) -> RoomMessage:
    """Append a message to the room conversation and commit."""
    message = RoomMessage(
        room_id=room_id,
        sender_type=sender_type,
        sender_user_id=sender_user_id,
        sender_name=sender_name or (AGENT_NAME if sender_type == "agent" else None),
        content=content,
        mock_mode=mock_mode,
    )
    db.session.add(message)
    db.session.commit()
    return message


def list_messages(room_id: int, limit: int = 50) -> list[RoomMessage]:
    rows = (
        RoomMessage.query.filter_by(room_id=room_id)
        .order_by(RoomMessage.created_at.desc(), RoomMessage.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def handle_room_message(dispatcher: AgentDispatcher, room: Room, user_id: str,
                        content: str, config=None) -> dict:
    """
    Process one chat message from *user_id* in *room*.

    Returns:
        {"intent", "user_message", "agent_message", "state", "approval_request_id"}

    Raises:
        ValidationError: empty/oversized message or non-member sender.
    """
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required", details={"content": "empty"})
    if len(content) > MAX_MESSAGE_CHARS:
        raise ValidationError(
            f"Message exceeds {MAX_MESSAGE_CHARS} characters",
            details={"content": "too_long"},
        )

    members = load_member_context(room, user_id, config)
    if not members.is_member(user_id):
        raise ValidationError("Only room members can post messages", details={"user_id": user_id})

    user_message = post_message(
        room.id, content, sender_type="user",
        sender_user_id=user_id, sender_name=members.name_of(user_id),
    )

    session = sm.get_or_create_session(room.id, now=dispatcher.clock())
    intent = classify_intent(content)

    # An open gate reads every message as a vote, small talk included
    gate_open = approval_gate.get_open_approval(session.id) is not None

    if intent == SMALL_TALK and not gate_open:
        reply = build_small_talk_reply(content, False, next_action_hint(session.state))
        mock_mode = False
        state = session.state
        approval_request_id = None
    else:
        result = dispatcher.dispatch(session, content, members)
        reply = result.reply_text
        mock_mode = result.mock_mode
        state = result.new_state
        approval_request_id = result.approval_request_id

    agent_message = post_message(room.id, reply, mock_mode=mock_mode) if reply else None
    logger.info("Handled message in room=%s intent=%s state=%s", room.code, intent, state,
                extra={"room_id": room.id, "session_id": session.id, "state": state})
    return {
        "intent": intent,
        "user_message": user_message.to_dict(),
        "agent_message": agent_message.to_dict() if agent_message else None,
        "state": state,
        "approval_request_id": approval_request_id,
    }
