"""
Agent session store and transition authority.

All writes to ``AgentSession.state`` and ``AgentSession.data`` go through
``advance_session`` / ``patch_session_data``. Both:
    1. Reload the row with SELECT ... FOR UPDATE (where the backend supports it)
       and ``populate_existing`` so the caller sees the committed state.
    2. Optionally compare-and-swap on the state the caller believes is current.
    3. Validate before writing anything.
    4. Commit; the ``version`` column turns a lost race into
       ConcurrencyConflictError instead of a silent overwrite.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from groupcopilot.core.exceptions import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from groupcopilot.models import db
from groupcopilot.models.agent import (
    AGENT_STATES,
    AGENT_TRANSITIONS,
    IDLE,
    SESSION_DATA_KEYS,
    SESSION_DATA_SCHEMA_VERSION,
    AgentSession,
    upgrade_session_data,
)
from groupcopilot.models.audit import write_audit

logger = logging.getLogger(__name__)


def current_week(now: datetime | None = None) -> tuple[int, int]:
    """Return the ISO ``(year, week)`` for *now* (UTC)."""
    iso = (now or datetime.now(UTC)).isocalendar()
    return iso[0], iso[1]


def validate_transition(current: str, target: str) -> dict:
    """
    Check *target* against the transition table.

    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None}
    """
    if target not in AGENT_STATES:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Unknown state: {target}"}
    allowed = AGENT_TRANSITIONS.get(current, ())
    if target not in allowed:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Cannot move from '{current}' to '{target}'"}
    return {"valid": True, "from": current, "to": target, "reason": None}


def get_available_transitions(state: str) -> list[str]:
    return list(AGENT_TRANSITIONS.get(state, ()))


# ── Loading ──────────────────────────────────────────────────────────────────

def get_session(session_id: int) -> AgentSession:
    session = db.session.get(AgentSession, session_id)
    if session is None:
        raise NotFoundError(resource="AgentSession", resource_id=session_id)
    return session


def _load_for_update(session_id: int) -> AgentSession:
    session = (
        AgentSession.query
        .filter_by(id=session_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if session is None:
        raise NotFoundError(resource="AgentSession", resource_id=session_id)
    return session


def get_or_create_session(room_id: int, *, now: datetime | None = None) -> AgentSession:
    """
    Return the room's session for the current ISO week, creating it in IDLE.

    Two first messages racing to create the same week both end up with the
    single row guarded by the (room, year, week) unique constraint.
    """
    iso_year, week = current_week(now)
    session = AgentSession.query.filter_by(room_id=room_id, iso_year=iso_year, week_number=week).first()
    if session is not None:
        return session

    session = AgentSession(
        room_id=room_id,
        iso_year=iso_year,
        week_number=week,
        state=IDLE,
        data={"schema_version": SESSION_DATA_SCHEMA_VERSION},
    )
    db.session.add(session)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        session = AgentSession.query.filter_by(
            room_id=room_id, iso_year=iso_year, week_number=week,
        ).first()
        if session is None:
            raise
        return session

    logger.info("Created agent session id=%s room=%s week=%s-%s",
                session.id, room_id, iso_year, week, extra={"room_id": room_id})
    return session


def get_prior_review(session: AgentSession) -> str | None:
    """Most recent review summary from an earlier week of the same room."""
    earlier = (
        AgentSession.query
        .filter(AgentSession.room_id == session.room_id, AgentSession.id != session.id)
        .filter(
            (AgentSession.iso_year < session.iso_year)
            | ((AgentSession.iso_year == session.iso_year)
               & (AgentSession.week_number < session.week_number))
        )
        .order_by(AgentSession.iso_year.desc(), AgentSession.week_number.desc())
        .all()
    )
    for prior in earlier:
        summary = prior.session_data.get("review_summary")
        if summary:
            return summary
    return None


# ── Mutation ─────────────────────────────────────────────────────────────────

def _check_patch(patch: dict | None) -> dict:
    patch = dict(patch or {})
    unknown = sorted(set(patch) - SESSION_DATA_KEYS)
    if unknown:
        raise ValidationError(
            f"Unknown session data keys: {', '.join(unknown)}",
            details={"unknown_keys": unknown},
        )
    return patch


def _version_conflict(session_id: int) -> ConcurrencyConflictError:
    db.session.rollback()
    logger.warning("Version conflict on agent session id=%s", session_id,
                   extra={"session_id": session_id})
    return ConcurrencyConflictError("AgentSession", session_id)


def _commit(session_id: int) -> None:
    try:
        db.session.commit()
    except StaleDataError:
        raise _version_conflict(session_id)


def advance_session(
    session_id: int,
    target: str,
    data_patch: dict | None = None,
    *,
    expected_state: str | None = None,
    actor: str | None = None,
    audit_action: str = "state_advanced",
) -> AgentSession:
    """
    Move a session to *target*, merging *data_patch* into its data.

    Args:
        session_id: AgentSession id.
        target: Desired next state; must be a successor of the current state.
        data_patch: Keys to merge into session data in the same write.
        expected_state: Compare-and-swap guard; if the stored state differs,
            another request got there first.
        actor: User id recorded in the audit entry.
        audit_action: Audit action name (``state_reverted`` for gate rejections).

    Raises:
        InvalidTransitionError: *target* is not allowed; nothing is written.
        ConcurrencyConflictError: state changed underneath the caller.
    """
    # 1. Lock + reload
    session = _load_for_update(session_id)

    # 2. Compare-and-swap
    if expected_state is not None and session.state != expected_state:
        db.session.rollback()
        raise ConcurrencyConflictError("AgentSession", session_id)

    # 3. Validate
    validation = validate_transition(session.state, target)
    if not validation["valid"]:
        db.session.rollback()
        raise InvalidTransitionError(session.state, target, get_available_transitions(session.state))
    patch = _check_patch(data_patch)

    # 4. Apply
    previous = session.state
    session.data = {**upgrade_session_data(session.data), **patch}
    session.state = target

    # 5. Audit + commit; write_audit flushes, so a stale version can surface there too
    try:
        write_audit(
            room_id=session.room_id,
            session_id=session.id,
            action=audit_action,
            actor=actor,
            payload={"from": previous, "to": target},
        )
        db.session.commit()
    except StaleDataError:
        raise _version_conflict(session_id)
    logger.info("Session %s: %s → %s", session_id, previous, target,
                extra={"room_id": session.room_id, "session_id": session_id, "state": target})
    return session


def patch_session_data(
    session_id: int,
    patch: dict,
    *,
    expected_state: str | None = None,
) -> AgentSession:
    """Merge *patch* into session data without changing state."""
    session = _load_for_update(session_id)
    if expected_state is not None and session.state != expected_state:
        db.session.rollback()
        raise ConcurrencyConflictError("AgentSession", session_id)
    patch = _check_patch(patch)
    session.data = {**upgrade_session_data(session.data), **patch}
    _commit(session_id)
    return session
