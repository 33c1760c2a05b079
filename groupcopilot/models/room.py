"""
Room domain models.

Models:
    - Room: a project team; owns planning sessions, cards and audit trail.
    - RoomMember: one row per (room, user) with display name and optional
      task-board account mapping.
    - RoomMessage: the room conversation (users, agent and system notices).
"""

from datetime import UTC, datetime

from groupcopilot.models import db

MESSAGE_SENDER_TYPES = frozenset({"user", "agent", "system"})


class Room(db.Model):
    __tablename__ = "rooms"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False, unique=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    project_goal = db.Column(db.Text, nullable=True)

    # Task-board targets; fall back to app config when empty
    trello_board_id = db.Column(db.String(64), nullable=True)
    trello_list_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    members = db.relationship(
        "RoomMember", backref="room", lazy="select",
        cascade="all, delete-orphan", order_by="RoomMember.id",
    )

    def to_dict(self, include_members: bool = False) -> dict:
        result = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "project_goal": self.project_goal,
            "trello_board_id": self.trello_board_id,
            "trello_list_id": self.trello_list_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_members:
            result["members"] = [m.to_dict() for m in self.members]
        return result

    def __repr__(self):
        return f"<Room {self.code}>"


class RoomMember(db.Model):
    __tablename__ = "room_members"
    __table_args__ = (
        db.UniqueConstraint("room_id", "user_id", name="uq_room_member_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(
        db.Integer, db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    display_name = db.Column(db.String(150), nullable=False)
    trello_member_id = db.Column(
        db.String(64), nullable=True,
        comment="External task-board account id used as card assignee",
    )
    joined_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "trello_member_id": self.trello_member_id,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }

    def __repr__(self):
        return f"<RoomMember {self.user_id} in room={self.room_id}>"


class RoomMessage(db.Model):
    __tablename__ = "room_messages"
    __table_args__ = (
        db.Index("idx_room_message_room_ts", "room_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(
        db.Integer, db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type = db.Column(
        db.String(10), nullable=False, default="user",
        comment="user | agent | system",
    )
    sender_user_id = db.Column(db.String(64), nullable=True)
    sender_name = db.Column(db.String(150), nullable=True)
    content = db.Column(db.Text, nullable=False)
    mock_mode = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "sender_type": self.sender_type,
            "sender_user_id": self.sender_user_id,
            "sender_name": self.sender_name,
            "content": self.content,
            "mock_mode": self.mock_mode,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
