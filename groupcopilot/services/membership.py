"""
Room membership provider.

Reads a room and its members into a MemberContext, the read-only snapshot
every dispatch and vote works from. The member set is the approval quorum
and the planning-meeting roster.
"""

from dataclasses import dataclass, field

from groupcopilot.core.exceptions import NotFoundError
from groupcopilot.models import db
from groupcopilot.models.room import Room, RoomMember


@dataclass
class MemberContext:
    room_id: int
    room_code: str
    project_goal: str | None
    member_ids: list[str]
    member_names: dict[str, str]
    trello_member_ids: dict[str, str] = field(default_factory=dict)
    user_id: str | None = None
    board_id: str | None = None
    list_id: str | None = None

    def name_of(self, user_id: str | None) -> str:
        if not user_id:
            return "Unknown"
        return self.member_names.get(user_id, user_id)

    def is_member(self, user_id: str | None) -> bool:
        return user_id in self.member_names


def get_room_by_code(code: str) -> Room:
    room = Room.query.filter_by(code=(code or "").strip().upper()).first()
    if room is None:
        raise NotFoundError(resource="Room", resource_id=code)
    return room


def load_member_context(room: Room, user_id: str | None = None, config=None) -> MemberContext:
    """
    Snapshot *room* membership for one request.

    Board and list fall back to ``TRELLO_BOARD_ID`` / ``TRELLO_PUBLISH_LIST_ID``
    from *config* when the room has none of its own.
    """
    config = config or {}
    members = (
        RoomMember.query.filter_by(room_id=room.id)
        .order_by(RoomMember.joined_at, RoomMember.id)
        .all()
    )
    return MemberContext(
        room_id=room.id,
        room_code=room.code,
        project_goal=room.project_goal,
        member_ids=[m.user_id for m in members],
        member_names={m.user_id: m.display_name for m in members},
        trello_member_ids={m.user_id: m.trello_member_id for m in members if m.trello_member_id},
        user_id=user_id,
        board_id=room.trello_board_id or config.get("TRELLO_BOARD_ID") or None,
        list_id=room.trello_list_id or config.get("TRELLO_PUBLISH_LIST_ID") or None,
    )


def load_member_context_by_id(room_id: int, user_id: str | None = None, config=None) -> MemberContext:
    room = db.session.get(Room, room_id)
    if room is None:
        raise NotFoundError(resource="Room", resource_id=room_id)
    return load_member_context(room, user_id, config)
