"""
GroupCopilot
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of workflow events per room.
"""

import json
from datetime import UTC, datetime

from groupcopilot.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Transitions
    "state_advanced",
    "state_reverted",
    # Gates
    "gate_1_opened",
    "gate_2_opened",
    "gate_skeleton_approved",
    "gate_skeleton_rejected",
    "gate_task_plan_approved",
    "gate_task_plan_rejected",
    "vote_cast",
    # Task normalization
    "task_json_parse_retry",
    "task_json_parse_failed",
    # Publishing
    "trello_cards_published",
    "trello_publish_failed",
    "trello_publish_duplicate_attempt",
    # Monitoring / review
    "monitor_nudge_sent",
    "weekly_review_completed",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every workflow event.

    One row per event. ``payload_json`` carries event-specific detail
    (request ids, counts, sanitized failure info).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_room_id", "room_id", "id"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(
        db.Integer, db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False,
    )
    session_id = db.Column(db.Integer, nullable=True, comment="AgentSession id when applicable")
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(
        db.String(64), nullable=False, default="system",
        comment="user id or 'system'",
    )
    payload_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def payload(self) -> dict:
        """Deserialise *payload_json* to a Python dict."""
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "session_id": self.session_id,
            "action": self.action,
            "actor": self.actor,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} room={self.room_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    room_id: int,
    action: str,
    actor: str | None = None,
    session_id: int | None = None,
    payload: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.

    Raises:
        ValueError: *action* is not one of AUDIT_ACTIONS.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        room_id=room_id,
        session_id=session_id,
        action=action,
        actor=actor or "system",
        payload_json=json.dumps(payload or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
