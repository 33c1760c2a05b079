"""
Approval gate service — consensus votes over agent artifacts.

Resolution rule, evaluated after every vote upsert:
    - any ``request_change`` vote          → rejected (first dissent wins)
    - every current member voted approve   → approved
    - otherwise                            → still pending

Votes on one request are serialized: the request row is locked, and every
vote bumps the request's ``version`` so a concurrent vote computed from a
stale snapshot fails with ConcurrencyConflictError instead of racing past.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from groupcopilot.core.exceptions import (
    ConcurrencyConflictError,
    GateAlreadyOpenError,
    GateResolvedError,
    NotFoundError,
    ValidationError,
)
from groupcopilot.models import db
from groupcopilot.models.agent import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    GATE_SKELETON,
    GATE_TASK_PLAN,
    GATE_TYPES,
    VOTE_APPROVE,
    VOTE_CHOICES,
    VOTE_REQUEST_CHANGE,
    AgentSession,
    ApprovalRequest,
    ApprovalVote,
)
from groupcopilot.models.audit import write_audit

logger = logging.getLogger(__name__)

_GATE_NUMBER = {GATE_SKELETON: 1, GATE_TASK_PLAN: 2}


@dataclass
class VoteOutcome:
    resolved: bool
    status: str
    tally: dict

    def to_dict(self) -> dict:
        return {"resolved": self.resolved, "status": self.status, "tally": self.tally}


# ── Pure helpers ─────────────────────────────────────────────────────────────

def resolve_votes(votes: dict[str, str], member_ids: list[str]) -> str:
    """
    Apply the resolution rule.

    Args:
        votes: voter id → vote choice.
        member_ids: current room members (the approval quorum).

    Returns:
        APPROVAL_REJECTED, APPROVAL_APPROVED or APPROVAL_PENDING.
    """
    if any(v == VOTE_REQUEST_CHANGE for v in votes.values()):
        return APPROVAL_REJECTED
    if member_ids and all(votes.get(uid) == VOTE_APPROVE for uid in member_ids):
        return APPROVAL_APPROVED
    return APPROVAL_PENDING


def compute_tally(request: ApprovalRequest, member_ids: list[str], user_id: str | None = None) -> dict:
    """Vote counts for display: approvals only count current members."""
    votes = {v.voter_id: v.vote for v in request.votes}
    members = set(member_ids)
    approve_count = sum(1 for uid, v in votes.items() if v == VOTE_APPROVE and uid in members)
    change_count = sum(1 for v in votes.values() if v == VOTE_REQUEST_CHANGE)
    return {
        "approve_count": approve_count,
        "change_count": change_count,
        "member_count": len(member_ids),
        "label": f"{approve_count}/{len(member_ids)} approved",
        "user_vote": votes.get(user_id) if user_id else None,
    }


# ── Queries ──────────────────────────────────────────────────────────────────

def get_open_approval(session_id: int) -> ApprovalRequest | None:
    return ApprovalRequest.query.filter_by(session_id=session_id, status=APPROVAL_PENDING).first()


def get_latest_approval(session_id: int, gate_type: str) -> ApprovalRequest | None:
    return (
        ApprovalRequest.query
        .filter_by(session_id=session_id, type=gate_type)
        .order_by(ApprovalRequest.id.desc())
        .first()
    )


def get_approval(request_id: int) -> ApprovalRequest:
    request = db.session.get(ApprovalRequest, request_id)
    if request is None:
        raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
    return request


# ── Commands ─────────────────────────────────────────────────────────────────

def open_gate(session_id: int, gate_type: str, payload: dict, *, actor: str | None = None) -> ApprovalRequest:
    """
    Open a new pending approval request for the session.

    Flushes only; the caller commits together with the matching state
    advance so the gate and the gate state appear atomically.

    Raises:
        ValidationError: unknown gate type.
        GateAlreadyOpenError: the session already has a pending request.
    """
    if gate_type not in GATE_TYPES:
        raise ValidationError(f"Unknown gate type: {gate_type}", details={"type": gate_type})

    session = (
        AgentSession.query.filter_by(id=session_id)
        .with_for_update()
        .first()
    )
    if session is None:
        raise NotFoundError(resource="AgentSession", resource_id=session_id)

    existing = get_open_approval(session_id)
    if existing is not None:
        raise GateAlreadyOpenError(session_id, existing.id)

    request = ApprovalRequest(
        session_id=session_id,
        type=gate_type,
        payload=payload,
        status=APPROVAL_PENDING,
    )
    db.session.add(request)
    db.session.flush()

    write_audit(
        room_id=session.room_id,
        session_id=session_id,
        action=f"gate_{_GATE_NUMBER[gate_type]}_opened",
        actor=actor,
        payload={"request_id": request.id, "type": gate_type},
    )
    logger.info("Opened %s gate request=%s session=%s", gate_type, request.id, session_id,
                extra={"room_id": session.room_id, "session_id": session_id})
    return request


def cast_vote(
    request_id: int,
    voter_id: str,
    choice: str,
    comment: str | None = None,
    *,
    member_ids: list[str],
) -> VoteOutcome:
    """
    Upsert *voter_id*'s vote and re-evaluate the resolution rule.

    Args:
        request_id: ApprovalRequest id.
        voter_id: Must be a current room member.
        choice: ``approve`` or ``request_change``.
        comment: Optional note; used as revision feedback on rejection.
        member_ids: Current room members (the approval quorum).

    Returns:
        VoteOutcome(resolved, status, tally)

    Raises:
        NotFoundError, ValidationError, GateResolvedError, ConcurrencyConflictError
    """
    # 1. Lock the request and read its committed state
    request = (
        ApprovalRequest.query.filter_by(id=request_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if request is None:
        raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
    db.session.expire(request, ["votes"])

    # 2. Validate
    if request.status != APPROVAL_PENDING:
        status = request.status
        db.session.rollback()
        raise GateResolvedError(request_id, status)
    if choice not in VOTE_CHOICES:
        raise ValidationError(f"vote must be one of {sorted(VOTE_CHOICES)}", details={"vote": choice})
    if voter_id not in member_ids:
        raise ValidationError("Only room members can vote", details={"voter_id": voter_id})

    # 3. Upsert the vote
    now = datetime.now(UTC)
    vote = next((v for v in request.votes if v.voter_id == voter_id), None)
    if vote is None:
        vote = ApprovalVote(voter_id=voter_id)
        request.votes.append(vote)
    vote.vote = choice
    vote.comment = (comment or "").strip() or None
    vote.cast_at = now

    # 4. Resolve, audit and commit. Every flush in here can hit a stale
    #    version, which means another vote landed first
    try:
        db.session.flush()
        room_id = request.session.room_id
        status = resolve_votes({v.voter_id: v.vote for v in request.votes}, member_ids)

        # Always touch the row so its version moves with every vote
        request.status = status
        request.last_vote_at = now
        if status != APPROVAL_PENDING:
            request.resolved_by = voter_id
            request.resolved_at = now
        else:
            request.resolved_at = None

        write_audit(
            room_id=room_id, session_id=request.session_id,
            action="vote_cast", actor=voter_id,
            payload={"request_id": request_id, "vote": choice},
        )
        if status != APPROVAL_PENDING:
            write_audit(
                room_id=room_id, session_id=request.session_id,
                action=f"gate_{request.type.lower()}_{status}", actor=voter_id,
                payload={"request_id": request_id},
            )
        db.session.commit()
    except (StaleDataError, IntegrityError):
        db.session.rollback()
        logger.warning("Concurrent vote on approval request=%s", request_id)
        raise ConcurrencyConflictError("ApprovalRequest", request_id)

    tally = compute_tally(request, member_ids, voter_id)
    logger.info("Vote %s by %s on request=%s → %s (%s)",
                choice, voter_id, request_id, status, tally["label"],
                extra={"room_id": room_id})
    return VoteOutcome(resolved=status != APPROVAL_PENDING, status=status, tally=tally)


def rejection_feedback(request: ApprovalRequest) -> list[str]:
    """Comments from ``request_change`` votes, oldest first."""
    return [v.comment for v in request.votes if v.vote == VOTE_REQUEST_CHANGE and v.comment]
