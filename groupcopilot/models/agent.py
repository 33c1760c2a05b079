"""
Agent workflow domain models.

Models:
    - AgentSession: one planning week per room; current phase + accumulated data.
    - ApprovalRequest: one consensus gate opened over an artifact.
    - ApprovalVote: one vote per (request, voter), upserted until resolution.

Plain types:
    - TaskProposal: a normalized task awaiting Gate 2 / publication.

Both AgentSession and ApprovalRequest carry an integer ``version`` mapped as
SQLAlchemy's ``version_id_col``: every UPDATE is issued as
``... WHERE id = :id AND version = :seen`` so two writers that read the same
row cannot both commit.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from groupcopilot.models import db

# ── States & transition table ────────────────────────────────────────────────

IDLE = "IDLE"
WEEKLY_KICKOFF = "WEEKLY_KICKOFF"
SKELETON_DRAFT = "SKELETON_DRAFT"
SKELETON_QA = "SKELETON_QA"
APPROVAL_GATE_1 = "APPROVAL_GATE_1"
PLANNING_MEETING = "PLANNING_MEETING"
TASK_PROPOSALS = "TASK_PROPOSALS"
APPROVAL_GATE_2 = "APPROVAL_GATE_2"
TRELLO_PUBLISH = "TRELLO_PUBLISH"
MONITOR = "MONITOR"
WEEKLY_REVIEW = "WEEKLY_REVIEW"

AGENT_STATES = (
    IDLE, WEEKLY_KICKOFF, SKELETON_DRAFT, SKELETON_QA, APPROVAL_GATE_1,
    PLANNING_MEETING, TASK_PROPOSALS, APPROVAL_GATE_2, TRELLO_PUBLISH,
    MONITOR, WEEKLY_REVIEW,
)

# state → allowed successor states
AGENT_TRANSITIONS = {
    IDLE: (WEEKLY_KICKOFF,),
    WEEKLY_KICKOFF: (SKELETON_DRAFT,),
    SKELETON_DRAFT: (SKELETON_QA,),
    SKELETON_QA: (APPROVAL_GATE_1,),
    APPROVAL_GATE_1: (PLANNING_MEETING, SKELETON_DRAFT),
    PLANNING_MEETING: (TASK_PROPOSALS,),
    TASK_PROPOSALS: (APPROVAL_GATE_2,),
    APPROVAL_GATE_2: (TRELLO_PUBLISH, TASK_PROPOSALS),
    TRELLO_PUBLISH: (MONITOR,),
    MONITOR: (WEEKLY_REVIEW,),
    WEEKLY_REVIEW: (IDLE,),
}

# ── Gates ────────────────────────────────────────────────────────────────────

GATE_SKELETON = "SKELETON"
GATE_TASK_PLAN = "TASK_PLAN"
GATE_TYPES = frozenset({GATE_SKELETON, GATE_TASK_PLAN})

# Gate type → (gate state, state on approval, state on rejection)
GATE_ROUTES = {
    GATE_SKELETON: (APPROVAL_GATE_1, PLANNING_MEETING, SKELETON_DRAFT),
    GATE_TASK_PLAN: (APPROVAL_GATE_2, TRELLO_PUBLISH, TASK_PROPOSALS),
}

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_STATUSES = frozenset({APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED})

VOTE_APPROVE = "approve"
VOTE_REQUEST_CHANGE = "request_change"
VOTE_CHOICES = frozenset({VOTE_APPROVE, VOTE_REQUEST_CHANGE})

# ── Session data shape ───────────────────────────────────────────────────────

SESSION_DATA_SCHEMA_VERSION = 1

# Data key → phases that write it. Patches may only carry known keys.
SESSION_DATA_PHASES = {
    "skeleton_draft": (SKELETON_DRAFT,),
    "revision_feedback": (SKELETON_DRAFT, TASK_PROPOSALS),
    "skeleton_questions": (SKELETON_QA,),
    "qa_answers": (SKELETON_QA,),
    "contribution_order": (PLANNING_MEETING,),
    "contributions": (PLANNING_MEETING,),
    "task_proposals": (TASK_PROPOSALS,),
    "published_card_ids": (TRELLO_PUBLISH,),
    "review_summary": (WEEKLY_REVIEW,),
}
SESSION_DATA_KEYS = frozenset(SESSION_DATA_PHASES) | {"schema_version"}

# Keys written by schema version 0 (camelCase documents)
_LEGACY_KEY_MAP = {
    "skeletonDraft": "skeleton_draft",
    "skeletonQuestions": "skeleton_questions",
    "qaAnswers": "qa_answers",
    "contributionOrder": "contribution_order",
    "contributions": "contributions",
    "taskProposals": "task_proposals",
    "publishedCardIds": "published_card_ids",
    "reviewSummary": "review_summary",
}


def upgrade_session_data(data: dict | None) -> dict:
    """Return *data* migrated to the current schema version (never mutates input)."""
    data = dict(data or {})
    version = data.get("schema_version", 0)
    if version < 1:
        upgraded = {}
        for key, value in data.items():
            new_key = _LEGACY_KEY_MAP.get(key, key)
            if new_key == "task_proposals" and isinstance(value, list):
                value = [TaskProposal.from_dict(t).to_dict() for t in value if isinstance(t, dict)]
            upgraded[new_key] = value
        data = upgraded
    data["schema_version"] = SESSION_DATA_SCHEMA_VERSION
    return data


# ── Task proposal (ephemeral) ────────────────────────────────────────────────

EFFORT_TIERS = ("S", "M", "L")


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _opt_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "null":
        return None
    return text


@dataclass
class TaskProposal:
    """A normalized task. Lives in session data and the Gate 2 payload until published."""

    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    suggested_owner_user_id: str | None = None
    suggested_owner_name: str | None = None
    due: str | None = None
    effort: str | None = None

    @classmethod
    def from_dict(cls, raw: dict) -> "TaskProposal":
        """Build from generator output (camelCase) or stored data (snake_case)."""
        def pick(snake, camel):
            return raw.get(snake, raw.get(camel))

        effort = _opt_str(raw.get("effort"))
        effort = effort.upper() if effort else None
        return cls(
            title=str(raw.get("title") or "").strip(),
            description=str(raw.get("description") or "").strip(),
            acceptance_criteria=_str_list(pick("acceptance_criteria", "acceptanceCriteria")),
            dependencies=_str_list(raw.get("dependencies")),
            suggested_owner_user_id=_opt_str(pick("suggested_owner_user_id", "suggestedOwnerUserId")),
            suggested_owner_name=_opt_str(pick("suggested_owner_name", "suggestedOwnerName")),
            due=_opt_str(raw.get("due")),
            effort=effort if effort in EFFORT_TIERS else None,
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "suggested_owner_user_id": self.suggested_owner_user_id,
            "suggested_owner_name": self.suggested_owner_name,
            "due": self.due,
            "effort": self.effort,
        }


# ── ORM models ───────────────────────────────────────────────────────────────

class AgentSession(db.Model):
    """
    One planning week for a room.

    Invariants:
    - At most one row per (room, iso_year, week_number).
    - ``state`` only changes through the state-machine service.
    - Never deleted; it is the durable record of that week's planning.
    """

    __tablename__ = "agent_sessions"
    __table_args__ = (
        db.UniqueConstraint("room_id", "iso_year", "week_number", name="uq_agent_session_room_week"),
    )

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(
        db.Integer, db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    iso_year = db.Column(db.Integer, nullable=False)
    week_number = db.Column(db.Integer, nullable=False)
    state = db.Column(db.String(30), nullable=False, default=IDLE)
    data = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __mapper_args__ = {"version_id_col": version}

    room = db.relationship("Room", lazy="select")

    @property
    def session_data(self) -> dict:
        """Data document upgraded to the current schema."""
        return upgrade_session_data(self.data)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "iso_year": self.iso_year,
            "week_number": self.week_number,
            "state": self.state,
            "data": self.session_data,
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<AgentSession {self.id}: room={self.room_id} w{self.week_number} {self.state}>"


class ApprovalRequest(db.Model):
    """
    A consensus gate over one artifact (milestone list or task list).

    Invariants:
    - At most one ``pending`` request per session.
    - Once resolved it is never re-opened; a rejection leads to a fresh request.
    """

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index("idx_approval_session_status", "session_id", "status"),
        db.Index(
            "uq_approval_one_pending", "session_id", unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("agent_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    type = db.Column(db.String(20), nullable=False, comment="SKELETON | TASK_PLAN")
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default=APPROVAL_PENDING)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_vote_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __mapper_args__ = {"version_id_col": version}

    session = db.relationship("AgentSession", backref=db.backref("approval_requests", lazy="dynamic"))
    votes = db.relationship(
        "ApprovalVote", backref="request", lazy="select",
        cascade="all, delete-orphan", order_by="ApprovalVote.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApprovalRequest {self.id}: {self.type} {self.status}>"


class ApprovalVote(db.Model):
    __tablename__ = "approval_votes"
    __table_args__ = (
        db.UniqueConstraint("request_id", "voter_id", name="uq_approval_vote_voter"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    voter_id = db.Column(db.String(64), nullable=False)
    vote = db.Column(db.String(20), nullable=False, comment="approve | request_change")
    comment = db.Column(db.Text, nullable=True)
    cast_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "voter_id": self.voter_id,
            "vote": self.vote,
            "comment": self.comment,
            "cast_at": self.cast_at.isoformat() if self.cast_at else None,
        }
