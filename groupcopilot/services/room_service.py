"""
Room service — rooms, membership and the current-week session view.

Service layer owns validation and commits; blueprints only shape HTTP.
"""

import logging
import secrets
import string

from sqlalchemy.exc import IntegrityError

from groupcopilot.core.exceptions import ConflictError, ValidationError
from groupcopilot.models import db
from groupcopilot.models.room import Room, RoomMember
from groupcopilot.services import approval_gate
from groupcopilot.services import state_machine as sm

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 6


def _new_code() -> str:
    for _ in range(10):
        code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))
        if not Room.query.filter_by(code=code).first():
            return code
    raise ConflictError("Room", "code", "exhausted")


def create_room(data: dict, creator_id: str | None = None) -> Room:
    """
    Create a room; the creator (if given) becomes its first member.

    Body fields: name (required), project_goal, trello_board_id,
    trello_list_id, display_name (creator's).
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if len(name) > 200:
        raise ValidationError("name must be ≤ 200 characters", details={"name": "too_long"})

    room = Room(
        code=_new_code(),
        name=name,
        project_goal=(data.get("project_goal") or "").strip() or None,
        trello_board_id=(data.get("trello_board_id") or "").strip() or None,
        trello_list_id=(data.get("trello_list_id") or "").strip() or None,
    )
    db.session.add(room)
    db.session.flush()

    if creator_id:
        db.session.add(RoomMember(
            room_id=room.id,
            user_id=creator_id,
            display_name=(data.get("display_name") or creator_id).strip(),
        ))
    db.session.commit()
    logger.info("Created room %s", room.code, extra={"room_id": room.id})
    return room


def add_member(room: Room, data: dict) -> RoomMember:
    user_id = str(data.get("user_id") or "").strip()
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    display_name = (data.get("display_name") or user_id).strip()

    member = RoomMember(
        room_id=room.id,
        user_id=user_id,
        display_name=display_name[:150],
        trello_member_id=(data.get("trello_member_id") or "").strip() or None,
    )
    db.session.add(member)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("RoomMember", "user_id", user_id)
    logger.info("Added member %s to room %s", user_id, room.code, extra={"room_id": room.id})
    return member


def current_session_view(room: Room, now=None) -> dict:
    """Current-week session plus its open approval (creates the session lazily)."""
    session = sm.get_or_create_session(room.id, now=now)
    open_request = approval_gate.get_open_approval(session.id)
    result = session.to_dict()
    result["available_transitions"] = sm.get_available_transitions(session.state)
    result["open_approval"] = open_request.to_dict() if open_request else None
    return result
