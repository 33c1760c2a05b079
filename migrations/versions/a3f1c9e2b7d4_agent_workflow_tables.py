"""agent_workflow_tables

Creates the room planning-agent schema:
  - rooms, room_members, room_messages   — group rooms and their chat
  - agent_sessions                       — one planning week per room (versioned)
  - approval_requests, approval_votes    — consensus gates (one pending per session)
  - trello_card_cache                    — published cards and their last known status
  - audit_logs                           — append-only workflow history

Tables created conditionally (IF NOT EXISTS semantics) so the revision is
safe against databases that already received them via db.create_all().

Revision ID: a3f1c9e2b7d4
Revises:
Create Date: 2026-10-19 09:12:44.501873
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a3f1c9e2b7d4'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Rooms ─────────────────────────────────────────────────────────────
    if "rooms" not in existing:
        op.create_table(
            "rooms",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=16), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("project_goal", sa.Text(), nullable=True),
            sa.Column("trello_board_id", sa.String(length=64), nullable=True),
            sa.Column("trello_list_id", sa.String(length=64), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rooms_code", "rooms", ["code"], unique=True)

    if "room_members" not in existing:
        op.create_table(
            "room_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("room_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("display_name", sa.String(length=150), nullable=False),
            sa.Column(
                "trello_member_id", sa.String(length=64), nullable=True,
                comment="External task-board account id used as card assignee",
            ),
            _ts("joined_at"),
            sa.ForeignKeyConstraint(["room_id"], ["rooms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("room_id", "user_id", name="uq_room_member_user"),
        )
        op.create_index("ix_room_members_room_id", "room_members", ["room_id"])

    if "room_messages" not in existing:
        op.create_table(
            "room_messages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("room_id", sa.Integer(), nullable=False),
            sa.Column(
                "sender_type", sa.String(length=10), nullable=False,
                server_default="user", comment="user | agent | system",
            ),
            sa.Column("sender_user_id", sa.String(length=64), nullable=True),
            sa.Column("sender_name", sa.String(length=150), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("mock_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["room_id"], ["rooms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_room_message_room_ts", "room_messages", ["room_id", "created_at"])

    # ── Agent sessions ────────────────────────────────────────────────────
    if "agent_sessions" not in existing:
        op.create_table(
            "agent_sessions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("room_id", sa.Integer(), nullable=False),
            sa.Column("iso_year", sa.Integer(), nullable=False),
            sa.Column("week_number", sa.Integer(), nullable=False),
            sa.Column("state", sa.String(length=30), nullable=False, server_default="IDLE"),
            sa.Column("data", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["room_id"], ["rooms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("room_id", "iso_year", "week_number", name="uq_agent_session_room_week"),
        )
        op.create_index("ix_agent_sessions_room_id", "agent_sessions", ["room_id"])

    # ── Approval gates ────────────────────────────────────────────────────
    if "approval_requests" not in existing:
        op.create_table(
            "approval_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("session_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False, comment="SKELETON | TASK_PLAN"),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            _ts("resolved_at", nullable=True),
            _ts("last_vote_at", nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["session_id"], ["agent_sessions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_approval_session_status", "approval_requests", ["session_id", "status"])
        op.create_index(
            "uq_approval_one_pending", "approval_requests", ["session_id"], unique=True,
            sqlite_where=sa.text("status = 'pending'"),
            postgresql_where=sa.text("status = 'pending'"),
        )

    if "approval_votes" not in existing:
        op.create_table(
            "approval_votes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("voter_id", sa.String(length=64), nullable=False),
            sa.Column("vote", sa.String(length=20), nullable=False, comment="approve | request_change"),
            sa.Column("comment", sa.Text(), nullable=True),
            _ts("cast_at"),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "voter_id", name="uq_approval_vote_voter"),
        )
        op.create_index("ix_approval_votes_request_id", "approval_votes", ["request_id"])

    # ── Trello card cache ─────────────────────────────────────────────────
    if "trello_card_cache" not in existing:
        op.create_table(
            "trello_card_cache",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("room_id", sa.Integer(), nullable=False),
            sa.Column("session_id", sa.Integer(), nullable=True),
            sa.Column("trello_card_id", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("proposal_index", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=100), nullable=False,
                      comment="Name of the list the card sits in"),
            sa.Column("owner_user_id", sa.String(length=64), nullable=True),
            sa.Column("effort", sa.String(length=1), nullable=True, comment="S | M | L"),
            _ts("due_date", nullable=True),
            _ts("status_changed_at"),
            _ts("last_synced_at"),
            sa.ForeignKeyConstraint(["room_id"], ["rooms.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["session_id"], ["agent_sessions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("trello_card_id"),
        )
        op.create_index("ix_trello_card_cache_room_id", "trello_card_cache", ["room_id"])
        op.create_index("ix_trello_card_cache_session_id", "trello_card_cache", ["session_id"])
        op.create_index("idx_card_cache_session_proposal", "trello_card_cache",
                        ["session_id", "proposal_index"])

    # ── Audit log ─────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("room_id", sa.Integer(), nullable=False),
            sa.Column("session_id", sa.Integer(), nullable=True,
                      comment="AgentSession id when applicable"),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False, server_default="system",
                      comment="user id or 'system'"),
            sa.Column("payload_json", sa.Text(), nullable=True),
            _ts("timestamp"),
            sa.ForeignKeyConstraint(["room_id"], ["rooms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_room_id", "audit_logs", ["room_id", "id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])


def downgrade():
    for table in (
        "audit_logs",
        "trello_card_cache",
        "approval_votes",
        "approval_requests",
        "agent_sessions",
        "room_messages",
        "room_members",
        "rooms",
    ):
        op.drop_table(table)
