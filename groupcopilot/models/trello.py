"""
Task-board card cache.

Local mirror of cards the agent published, refreshed by the weekly monitor.
``status_changed_at`` only moves when the card's list changes, which is what
stall detection measures.
"""

from datetime import UTC, datetime

from groupcopilot.models import db

DONE_STATUSES = frozenset({"Done", "Complete", "Completed", "Closed"})


class TrelloCardCache(db.Model):
    __tablename__ = "trello_card_cache"
    __table_args__ = (
        db.Index("idx_card_cache_session_proposal", "session_id", "proposal_index"),
    )

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(
        db.Integer, db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    session_id = db.Column(
        db.Integer, db.ForeignKey("agent_sessions.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    trello_card_id = db.Column(db.String(64), nullable=False, unique=True)
    title = db.Column(db.String(300), nullable=False)
    proposal_index = db.Column(
        db.Integer, nullable=True,
        comment="Position in the published task plan; null for cards not published by the agent",
    )
    status = db.Column(db.String(100), nullable=False, comment="Name of the list the card sits in")
    owner_user_id = db.Column(db.String(64), nullable=True)
    effort = db.Column(db.String(1), nullable=True, comment="S | M | L")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    status_changed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    last_synced_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "session_id": self.session_id,
            "trello_card_id": self.trello_card_id,
            "title": self.title,
            "proposal_index": self.proposal_index,
            "status": self.status,
            "owner_user_id": self.owner_user_id,
            "effort": self.effort,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status_changed_at": self.status_changed_at.isoformat() if self.status_changed_at else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
