"""
Agent dispatcher — the planning workflow engine.

Given a session, an inbound message and the room's members, picks the phase
handler for the current state and runs it. Handlers may generate text, patch
session data, open a gate or advance the state; auto-advancing phases
(IDLE, WEEKLY_KICKOFF, SKELETON_DRAFT, an approved gate, ...) ask to be
chained, and the dispatcher runs the successor's handler in the same call.

    dispatch()
      ├─ open gate + message → vote (approve keywords, else request_change)
      └─ chain loop (bounded by MAX_CHAIN_STEPS)
           reload session → handler(ctx) → PhaseResult(chain?)

Only the first handler of a chain sees the inbound message; chained steps
run with ``message=None`` so a vote or answer is never consumed twice.

Every generation call supplies a deterministic fallback, so a missing or
failing generator degrades replies (``mock_mode``) but never stalls a phase.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from groupcopilot.ai.gateway import LLMGateway
from groupcopilot.ai.parse_utils import (
    parse_json_object,
    parse_milestones,
    parse_task_list,
    parse_with_fallback,
)
from groupcopilot.ai.prompts import (
    RoomContext,
    contribution_request_prompt,
    fix_json_prompt,
    gate1_message,
    gate2_message,
    kickoff_prompt,
    skeleton_draft_prompt,
    skeleton_qa_prompt,
    task_normalization_prompt,
    weekly_review_prompt,
)
from groupcopilot.integrations.trello_gateway import TrelloApiError, TrelloGateway
from groupcopilot.models import db
from groupcopilot.models.agent import (
    AGENT_STATES,
    APPROVAL_APPROVED,
    APPROVAL_GATE_1,
    APPROVAL_GATE_2,
    APPROVAL_REJECTED,
    GATE_ROUTES,
    GATE_SKELETON,
    GATE_TASK_PLAN,
    IDLE,
    MONITOR,
    PLANNING_MEETING,
    SKELETON_DRAFT,
    SKELETON_QA,
    TASK_PROPOSALS,
    TRELLO_PUBLISH,
    VOTE_APPROVE,
    VOTE_REQUEST_CHANGE,
    WEEKLY_KICKOFF,
    WEEKLY_REVIEW,
    AgentSession,
    TaskProposal,
)
from groupcopilot.models.audit import write_audit
from groupcopilot.models.room import RoomMessage
from groupcopilot.services import approval_gate, card_cache, publisher
from groupcopilot.services import state_machine as sm
from groupcopilot.services.membership import MemberContext

logger = logging.getLogger(__name__)

TRIGGER_WEEKLY_REVIEW = "weekly_review"

APPROVE_KEYWORDS = ("approve", "looks good", "lgtm", "yes", "✓", "👍")

PUBLISH_FAILURE_TEXT = "Trello publish failed — check the Trello connection in Settings."

_FALLBACK_MILESTONES = json.dumps({
    "milestones": [
        {"outcome": "Complete the project scaffold",
         "reasoning": "Because a working foundation unblocks all other work"},
        {"outcome": "Define the core data model",
         "reasoning": "Because schema decisions affect every other component"},
    ],
})


# ── Result types ─────────────────────────────────────────────────────────────

@dataclass
class PhaseContext:
    session: AgentSession
    members: MemberContext
    message: str | None
    trigger: str | None
    now: datetime

    @property
    def data(self) -> dict:
        return self.session.session_data


@dataclass
class PhaseResult:
    """What one handler produced. ``separator`` joins this text to the next chained reply."""

    text: str = ""
    mock_mode: bool = False
    chain: bool = False
    approval_request_id: int | None = None
    separator: str = "\n\n"


@dataclass
class DispatchResult:
    reply_text: str
    mock_mode: bool
    new_state: str
    approval_request_id: int | None = None
    steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reply_text": self.reply_text,
            "mock_mode": self.mock_mode,
            "new_state": self.new_state,
            "approval_request_id": self.approval_request_id,
        }


ALL_CLEAR_TEXT = "All tasks appear to be moving. No stalled cards detected this week."


def stall_nudge(titles: list[str]) -> str:
    joined = ", ".join(f"**{t}**" for t in titles)
    return (
        f"Heads up — {len(titles)} task(s) haven't moved in over a week: {joined}. "
        "Does anyone want to update their status or reassign them?"
    )


def is_approve_message(message: str) -> bool:
    lower = message.lower()
    return any(keyword in lower for keyword in APPROVE_KEYWORDS)


# ── Dispatcher ───────────────────────────────────────────────────────────────

class AgentDispatcher:
    """
    Orchestrates phase handlers for one room's planning week.

    Collaborators are injected; ``create_app`` builds one from config and
    stores it in ``app.extensions["agent_dispatcher"]``.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        trello: TrelloGateway,
        *,
        max_chain_steps: int = 12,
        recent_message_limit: int = 10,
        stall_threshold_days: int = 7,
        publish_list_name: str = "To Do",
        clock: Callable[[], datetime] | None = None,
    ):
        self.gateway = gateway
        self.trello = trello
        self.max_chain_steps = max_chain_steps
        self.recent_message_limit = recent_message_limit
        self.stall_threshold_days = stall_threshold_days
        self.publish_list_name = publish_list_name
        self.clock = clock or (lambda: datetime.now(UTC))

        self._handlers: dict[str, Callable[[PhaseContext], PhaseResult]] = {
            IDLE: self._handle_idle,
            WEEKLY_KICKOFF: self._handle_kickoff,
            SKELETON_DRAFT: self._handle_skeleton_draft,
            SKELETON_QA: self._handle_skeleton_qa,
            APPROVAL_GATE_1: self._handle_gate,
            PLANNING_MEETING: self._handle_planning_meeting,
            TASK_PROPOSALS: self._handle_task_proposals,
            APPROVAL_GATE_2: self._handle_gate,
            TRELLO_PUBLISH: self._handle_trello_publish,
            MONITOR: self._handle_monitor,
            WEEKLY_REVIEW: self._handle_weekly_review,
        }
        missing = set(AGENT_STATES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No dispatcher handler for states: {sorted(missing)}")

    @classmethod
    def from_config(cls, config, gateway: LLMGateway | None = None,
                    trello: TrelloGateway | None = None) -> "AgentDispatcher":
        return cls(
            gateway or LLMGateway.from_config(config),
            trello or TrelloGateway.from_config(config),
            max_chain_steps=config.get("MAX_CHAIN_STEPS", 12),
            recent_message_limit=config.get("RECENT_MESSAGE_LIMIT", 10),
            stall_threshold_days=config.get("STALL_THRESHOLD_DAYS", 7),
            publish_list_name=config.get("TRELLO_PUBLISH_LIST_NAME", "To Do"),
        )

    # ── Entry points ─────────────────────────────────────────────────────────

    def dispatch(
        self,
        session: AgentSession,
        message: str | None,
        members: MemberContext,
        *,
        trigger: str | None = None,
    ) -> DispatchResult:
        """
        Advance the room's planning week by one inbound event.

        An open gate takes precedence over the phase: any message is read as
        a vote on it.

        Raises:
            ValidationError: a non-member voted.
            GateResolvedError / ConcurrencyConflictError: lost a race; retry.
        """
        session_id = session.id
        open_request = approval_gate.get_open_approval(session_id)
        if open_request is not None:
            if message is not None and members.user_id:
                return self._vote_from_message(session_id, open_request, message, members)
            tally = approval_gate.compute_tally(open_request, members.member_ids)
            return DispatchResult(
                reply_text=f"Waiting for the group's approval. {tally['label']} so far.",
                mock_mode=False,
                new_state=sm.get_session(session_id).state,
                approval_request_id=open_request.id,
            )
        return self._run_chain(session_id, members, message, trigger)

    def apply_gate_resolution(self, session: AgentSession, members: MemberContext) -> DispatchResult:
        """Drive the workflow past a gate whose request has just been resolved."""
        return self._run_chain(session.id, members, None, None)

    # ── Chain loop ───────────────────────────────────────────────────────────

    def _run_chain(self, session_id: int, members: MemberContext,
                   message: str | None, trigger: str | None) -> DispatchResult:
        parts: list[tuple[str, str]] = []
        mock_mode = False
        approval_request_id = None
        steps = []

        for _ in range(self.max_chain_steps):
            session = sm.get_session(session_id)
            handler = self._handlers[session.state]
            steps.append(session.state)
            ctx = PhaseContext(session=session, members=members, message=message,
                               trigger=trigger, now=self.clock())
            result = handler(ctx)
            message = None

            if result.text:
                parts.append((result.text, result.separator))
            mock_mode = mock_mode or result.mock_mode
            approval_request_id = result.approval_request_id or approval_request_id
            if not result.chain:
                break
        else:
            logger.error("Dispatch chain hit %d steps for session=%s: %s",
                         self.max_chain_steps, session_id, " → ".join(steps),
                         extra={"session_id": session_id})

        reply = ""
        separator = ""
        for text, next_separator in parts:
            reply += separator + text
            separator = next_separator

        final_state = sm.get_session(session_id).state
        return DispatchResult(
            reply_text=reply,
            mock_mode=mock_mode,
            new_state=final_state,
            approval_request_id=approval_request_id,
            steps=steps,
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _room_context(self, ctx: PhaseContext) -> RoomContext:
        return RoomContext(
            project_goal=ctx.members.project_goal,
            member_names=[ctx.members.name_of(uid) for uid in ctx.members.member_ids],
            week_number=ctx.session.week_number,
            revision_feedback=list(ctx.data.get("revision_feedback") or []),
        )

    def _recent_messages(self, room_id: int) -> list[str]:
        rows = (
            RoomMessage.query.filter_by(room_id=room_id)
            .order_by(RoomMessage.created_at.desc(), RoomMessage.id.desc())
            .limit(self.recent_message_limit)
            .all()
        )
        return [f"{m.sender_name or m.sender_type}: {m.content}" for m in reversed(rows)]

    def _vote_from_message(self, session_id: int, request, message: str,
                           members: MemberContext) -> DispatchResult:
        choice = VOTE_APPROVE if is_approve_message(message) else VOTE_REQUEST_CHANGE
        outcome = approval_gate.cast_vote(
            request.id, members.user_id, choice, message, member_ids=members.member_ids,
        )
        if not outcome.resolved:
            return DispatchResult(
                reply_text=(
                    f"Vote recorded ({choice.replace('_', ' ')}). Waiting for other members. "
                    f"{outcome.tally['label']} so far."
                ),
                mock_mode=False,
                new_state=sm.get_session(session_id).state,
                approval_request_id=request.id,
            )
        return self._run_chain(session_id, members, None, None)

    # ── Phase handlers ───────────────────────────────────────────────────────

    def _handle_idle(self, ctx: PhaseContext) -> PhaseResult:
        sm.advance_session(ctx.session.id, WEEKLY_KICKOFF, expected_state=IDLE,
                           actor=ctx.members.user_id)
        return PhaseResult(chain=True)

    def _handle_kickoff(self, ctx: PhaseContext) -> PhaseResult:
        room = self._room_context(ctx)
        prior_review = sm.get_prior_review(ctx.session)
        result = self.gateway.generate(
            kickoff_prompt(room, prior_review),
            f"Welcome to week {room.week_number}! Let's plan this week together. "
            "I'll start by drafting a milestone skeleton for your approval.",
            purpose="kickoff",
        )
        sm.advance_session(ctx.session.id, SKELETON_DRAFT, expected_state=WEEKLY_KICKOFF,
                           actor=ctx.members.user_id)
        return PhaseResult(result.text, result.mock_mode, chain=True, separator="\n\n---\n\n")

    def _handle_skeleton_draft(self, ctx: PhaseContext) -> PhaseResult:
        room = self._room_context(ctx)
        result = self.gateway.generate(
            skeleton_draft_prompt(room, self._recent_messages(ctx.members.room_id)),
            _FALLBACK_MILESTONES,
            purpose="skeleton_draft",
        )
        outcome = parse_with_fallback(result.text, parse_milestones, fallback=lambda raw: [raw.strip()])
        milestones = outcome.value
        sm.advance_session(
            ctx.session.id, SKELETON_QA, {"skeleton_draft": milestones},
            expected_state=SKELETON_DRAFT, actor=ctx.members.user_id,
        )
        return PhaseResult(gate1_message(milestones), result.mock_mode, chain=True)

    def _handle_skeleton_qa(self, ctx: PhaseContext) -> PhaseResult:
        data = ctx.data
        skeleton = data.get("skeleton_draft") or []
        questions = list(data.get("skeleton_questions") or [])
        answers = dict(data.get("qa_answers") or {})

        pending = next((q for q in reversed(questions) if q not in answers), None)
        answer = (ctx.message or "").strip()
        if pending and answer:
            answers[pending] = answer
            sm.patch_session_data(ctx.session.id, {"qa_answers": answers}, expected_state=SKELETON_QA)

        result = self.gateway.generate(
            skeleton_qa_prompt(self._room_context(ctx), skeleton, answers),
            json.dumps({"done": True}),
            purpose="skeleton_qa",
        )
        parsed = parse_json_object(result.text)

        if parsed and parsed.get("done"):
            request = approval_gate.open_gate(
                ctx.session.id, GATE_SKELETON, {"milestones": skeleton}, actor=ctx.members.user_id,
            )
            request_id = request.id
            sm.advance_session(
                ctx.session.id, APPROVAL_GATE_1, {"revision_feedback": []},
                expected_state=SKELETON_QA, actor=ctx.members.user_id,
            )
            return PhaseResult(
                "I've gathered enough context. Ready for the group's approval on the skeleton above.",
                result.mock_mode, approval_request_id=request_id,
            )

        question = parsed.get("question") if parsed else None
        if not isinstance(question, str) or not question.strip():
            question = result.text.strip()
        if question not in questions:
            sm.patch_session_data(
                ctx.session.id, {"skeleton_questions": questions + [question]},
                expected_state=SKELETON_QA,
            )
        return PhaseResult(question, result.mock_mode)

    def _handle_gate(self, ctx: PhaseContext) -> PhaseResult:
        gate_type = GATE_SKELETON if ctx.session.state == APPROVAL_GATE_1 else GATE_TASK_PLAN
        gate_state, approve_to, reject_to = GATE_ROUTES[gate_type]
        request = approval_gate.get_latest_approval(ctx.session.id, gate_type)

        if request is None:
            logger.error("Session %s is in %s with no %s approval request", ctx.session.id,
                         gate_state, gate_type,
                         extra={"room_id": ctx.members.room_id, "session_id": ctx.session.id,
                                "state": gate_state})

        if request is None or request.status not in (APPROVAL_APPROVED, APPROVAL_REJECTED):
            label = (
                approval_gate.compute_tally(request, ctx.members.member_ids)["label"]
                if request is not None else "0/0 approved"
            )
            return PhaseResult(f"Waiting for the group's approval. {label} so far.",
                               approval_request_id=request.id if request else None)

        if request.status == APPROVAL_REJECTED:
            feedback = approval_gate.rejection_feedback(request)
            sm.advance_session(
                ctx.session.id, reject_to, {"revision_feedback": feedback},
                expected_state=gate_state, actor=request.resolved_by,
                audit_action="state_reverted",
            )
            return PhaseResult(
                "Got it — I'll revise based on the feedback. "
                "Send a message when you're ready and I'll draft a new version."
            )

        sm.advance_session(ctx.session.id, approve_to, expected_state=gate_state,
                           actor=request.resolved_by)
        text = (
            "Skeleton approved! Moving to the planning meeting."
            if gate_type == GATE_SKELETON
            else "Task plan approved! Publishing to Trello now."
        )
        return PhaseResult(text, chain=True)

    def _handle_planning_meeting(self, ctx: PhaseContext) -> PhaseResult:
        data = ctx.data
        members = ctx.members
        contributions = dict(data.get("contributions") or {})
        order = data.get("contribution_order")
        if order is None:
            order = list(members.member_ids)
            sm.patch_session_data(ctx.session.id, {"contribution_order": order},
                                  expected_state=PLANNING_MEETING)

        def pending_ids() -> list[str]:
            return [uid for uid in order if members.is_member(uid) and uid not in contributions]

        message = (ctx.message or "").strip()
        recorded = False
        if (message and len(message) > 3 and members.user_id
                and members.is_member(members.user_id) and members.user_id not in contributions):
            contributions[members.user_id] = message
            recorded = True

        if not pending_ids():
            sm.advance_session(ctx.session.id, TASK_PROPOSALS, {"contributions": contributions},
                               expected_state=PLANNING_MEETING, actor=members.user_id)
            return PhaseResult(chain=True)

        if recorded:
            sm.patch_session_data(ctx.session.id, {"contributions": contributions},
                                  expected_state=PLANNING_MEETING)

        next_name = members.name_of(pending_ids()[0])
        already = [members.name_of(uid) for uid in order if uid in contributions]
        fallback = (
            f"Thanks! Now, {next_name} — what specific task or subtask do you plan to tackle this week?"
            if recorded
            else f"Let's hear from {next_name} first — what specific task do you plan to tackle this week?"
        )
        result = self.gateway.generate(
            contribution_request_prompt(self._room_context(ctx), data.get("skeleton_draft") or [],
                                        next_name, already),
            fallback,
            purpose="contribution_request",
        )
        return PhaseResult(result.text, result.mock_mode)

    def _handle_task_proposals(self, ctx: PhaseContext) -> PhaseResult:
        data = ctx.data
        members = ctx.members
        contributions = dict(data.get("contributions") or {})
        session_id = ctx.session.id

        fallback_json = json.dumps({
            "tasks": [
                {
                    "title": text[:40],
                    "description": text,
                    "acceptanceCriteria": [],
                    "dependencies": [],
                    "suggestedOwnerUserId": uid,
                    "suggestedOwnerName": members.member_names.get(uid),
                    "due": None,
                    "effort": "M",
                }
                for uid, text in contributions.items()
            ],
        })
        result = self.gateway.generate(
            task_normalization_prompt(self._room_context(ctx), data.get("skeleton_draft") or [],
                                      contributions, members.member_names),
            fallback_json,
            purpose="task_normalization",
        )

        def repair(raw: str) -> str | None:
            if result.mock_mode:
                return None
            logger.warning("Task JSON parse failed; retrying with repair prompt",
                           extra={"session_id": session_id})
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="task_json_parse_retry", payload={"attempt": 2})
            db.session.commit()
            return self.gateway.generate(fix_json_prompt(raw), fallback_json, purpose="fix_json").text

        outcome = parse_with_fallback(result.text, parse_task_list, repair=repair)

        if not outcome.ok:
            logger.error("Task JSON parse failed after repair; surfacing summary",
                         extra={"session_id": session_id})
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="task_json_parse_failed", payload={"raw_text": result.text[:500]})
            db.session.commit()
            summary = "\n".join(
                f"- **{members.name_of(uid)}**: {text}" for uid, text in contributions.items()
            )
            return PhaseResult(
                "I had trouble formatting the task proposals into a structured list. "
                f"Here's a summary of what everyone contributed:\n\n{summary}\n\n"
                "Please review and let me know if you'd like me to try again.",
                mock_mode=True,
            )

        proposals: list[TaskProposal] = outcome.value
        stored = [p.to_dict() for p in proposals]
        request = approval_gate.open_gate(session_id, GATE_TASK_PLAN, {"tasks": stored},
                                          actor=members.user_id)
        request_id = request.id
        sm.advance_session(
            session_id, APPROVAL_GATE_2, {"task_proposals": stored, "revision_feedback": []},
            expected_state=TASK_PROPOSALS, actor=members.user_id,
        )
        return PhaseResult(gate2_message(proposals), result.mock_mode, approval_request_id=request_id)

    def _resolve_publish_list(self, members: MemberContext) -> str | None:
        if members.list_id:
            return members.list_id
        if members.board_id:
            return self.trello.find_list_id(members.board_id, self.publish_list_name)
        return None

    def _handle_trello_publish(self, ctx: PhaseContext) -> PhaseResult:
        data = ctx.data
        members = ctx.members
        session_id = ctx.session.id
        proposals = [TaskProposal.from_dict(t) for t in data.get("task_proposals") or []]
        already_published = [c for c in data.get("published_card_ids") or [] if c]

        if already_published:
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="trello_publish_duplicate_attempt",
                        payload={"card_ids": already_published, "week_number": ctx.session.week_number})
            sm.advance_session(session_id, MONITOR, expected_state=TRELLO_PUBLISH)
            return PhaseResult(
                "Tasks were already published to Trello for this cycle. "
                "Skipping duplicate publish and moving to monitor."
            )

        if not proposals:
            sm.advance_session(session_id, MONITOR, {"published_card_ids": []},
                               expected_state=TRELLO_PUBLISH)
            return PhaseResult(chain=True)

        reason = None
        list_id = None
        if not self.trello.is_configured:
            reason = "TRELLO_NOT_CONFIGURED"
        else:
            try:
                list_id = self._resolve_publish_list(members)
            except TrelloApiError as exc:
                logger.warning("Could not resolve publish list: %s", exc.code,
                               extra={"session_id": session_id, "error_type": exc.code})
            if list_id is None:
                reason = "TRELLO_LIST_NOT_FOUND"

        if reason is not None:
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="trello_publish_failed", payload={"reason": reason})
            sm.advance_session(session_id, MONITOR, {"published_card_ids": []},
                               expected_state=TRELLO_PUBLISH)
            return PhaseResult(PUBLISH_FAILURE_TEXT, mock_mode=True)

        report = publisher.publish_task_plan(
            self.trello, proposals,
            room_id=members.room_id,
            session_id=session_id,
            list_id=list_id,
            list_name=self.publish_list_name,
            trello_member_ids=members.trello_member_ids,
            now=ctx.now,
        )
        lines = "\n".join(report.lines)

        if report.failures:
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="trello_publish_failed",
                        payload={"reason": "CARD_CREATE_FAILED", "list_id": list_id,
                                 "published_count": report.published_count,
                                 "failed": report.failures,
                                 "week_number": ctx.session.week_number})
            text = (
                f"{PUBLISH_FAILURE_TEXT}\n\n"
                f"Published {report.summary} card(s) to **{self.publish_list_name}**.\n\n{lines}"
            )
            mock_mode = True
        else:
            write_audit(room_id=members.room_id, session_id=session_id,
                        action="trello_cards_published",
                        payload={"list_id": list_id, "list_name": self.publish_list_name,
                                 "count": report.published_count,
                                 "card_ids": report.published_card_ids,
                                 "week_number": ctx.session.week_number})
            text = (
                f"Published {report.summary} cards to Trello list **{self.publish_list_name}**:\n\n"
                f"{lines}\n\nI'll check in throughout the week if anything stalls."
            )
            mock_mode = False

        sm.advance_session(
            session_id, MONITOR,
            {"published_card_ids": report.published_card_ids, "task_proposals": []},
            expected_state=TRELLO_PUBLISH,
        )
        return PhaseResult(text, mock_mode)

    def _handle_monitor(self, ctx: PhaseContext) -> PhaseResult:
        if ctx.trigger == TRIGGER_WEEKLY_REVIEW:
            sm.advance_session(ctx.session.id, WEEKLY_REVIEW, expected_state=MONITOR)
            return PhaseResult(chain=True)

        stalled = card_cache.find_stalled_cards(ctx.members.room_id, ctx.now, self.stall_threshold_days)
        if not stalled:
            return PhaseResult(ALL_CLEAR_TEXT)
        return PhaseResult(stall_nudge([c.title for c in stalled]))

    def _handle_weekly_review(self, ctx: PhaseContext) -> PhaseResult:
        cards = card_cache.room_cards(ctx.members.room_id)
        completed = [c.title for c in cards if c.is_done]
        stalled = [c.title for c in cards if card_cache.is_stalled(c, ctx.now, self.stall_threshold_days)]
        published = [c.title for c in cards if c.session_id == ctx.session.id]
        room = self._room_context(ctx)

        result = self.gateway.generate(
            weekly_review_prompt(room, published, stalled, completed),
            f"Week {room.week_number} complete. The team made progress on "
            f"{len(completed)} tasks. See you next week!",
            purpose="weekly_review",
        )
        write_audit(room_id=ctx.members.room_id, session_id=ctx.session.id,
                    action="weekly_review_completed",
                    payload={"week_number": room.week_number, "completed": len(completed),
                             "stalled": len(stalled)})
        sm.advance_session(ctx.session.id, IDLE, {"review_summary": result.text},
                           expected_state=WEEKLY_REVIEW)
        return PhaseResult(result.text, result.mock_mode)
