"""
Task-board publisher.

Turns an approved task plan into Trello cards, one at a time:
    - assignee resolved from the member → Trello account map (omitted if unmapped)
    - due date normalized (invalid dates are dropped, never fatal)
    - structured card description
    - per-card failures are caught, sanitized and reported; the batch continues

Each created card is written to TrelloCardCache and committed before the
next one is attempted, so a re-run after a crash finds the cards that already
exist (matched by session + position in the plan) instead of creating them
twice. Proposals that share a title still get one card each.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from groupcopilot.integrations.trello_gateway import UNKNOWN, TrelloApiError, TrelloGateway
from groupcopilot.models import db
from groupcopilot.models.agent import TaskProposal
from groupcopilot.models.trello import TrelloCardCache

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 220
_CREDENTIAL_RE = re.compile(r"(key|token)=[^&\s\"']+", re.IGNORECASE)


@dataclass
class PublishReport:
    published_card_ids: list[str] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)
    total: int = 0

    @property
    def published_count(self) -> int:
        return len(self.published_card_ids)

    @property
    def summary(self) -> str:
        return f"{self.published_count}/{self.total}"


def normalize_due_date(value: str | None) -> str | None:
    """Return *value* as an ISO-8601 UTC timestamp, or None if absent or unparseable."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat().replace("+00:00", "Z")


def format_card_description(proposal: TaskProposal, approved_at_iso: str) -> str:
    lines = [proposal.description.strip() or "No additional description provided.", ""]

    lines.append("Acceptance criteria:")
    criteria = [c for c in proposal.acceptance_criteria if c]
    if criteria:
        lines.extend(f"- {c}" for c in criteria)
    else:
        lines.append("- None specified")
    lines.append("")

    lines.append("Dependencies:")
    deps = [d for d in proposal.dependencies if d]
    if deps:
        lines.extend(f"- {d}" for d in deps)
    else:
        lines.append("- None")
    lines.append("")

    lines.append(f"Suggested owner: {proposal.suggested_owner_name or 'Unassigned'}")
    lines.append(f"Effort: {proposal.effort or 'Not specified'}")
    lines.append(f"Approved by Gate 2 at: {approved_at_iso}")
    return "\n".join(lines).strip()


def sanitize_publish_error(error: Exception) -> dict:
    """Reduce *error* to ``{code, http_status, message}`` with credentials redacted."""
    message = _CREDENTIAL_RE.sub(lambda m: f"{m.group(1)}=[redacted]", str(error))
    if isinstance(error, TrelloApiError):
        return {"code": error.code, "http_status": error.http_status,
                "message": message[:_MAX_ERROR_CHARS]}
    return {"code": UNKNOWN, "http_status": None, "message": message[:_MAX_ERROR_CHARS]}


def _parse_due(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def publish_task_plan(
    trello: TrelloGateway,
    proposals: list[TaskProposal],
    *,
    room_id: int,
    session_id: int,
    list_id: str,
    list_name: str,
    trello_member_ids: dict[str, str],
    now: datetime | None = None,
) -> PublishReport:
    """
    Create one card per proposal, sequentially.

    Returns:
        PublishReport; ``published_card_ids`` includes cards recovered from an
        earlier interrupted run of the same session.
    """
    approved_at = (now or datetime.now(UTC)).isoformat()
    report = PublishReport(total=len(proposals))

    for index, proposal in enumerate(proposals):
        owner = f" → {proposal.suggested_owner_name}" if proposal.suggested_owner_name else ""

        existing = (
            TrelloCardCache.query
            .filter_by(session_id=session_id, proposal_index=index)
            .first()
        )
        if existing is not None:
            logger.info("Card #%d '%s' already exists (id=%s); not recreating",
                        index, proposal.title, existing.trello_card_id, extra={"session_id": session_id})
            report.published_card_ids.append(existing.trello_card_id)
            report.lines.append(f"✓ **{proposal.title}**{owner}")
            continue

        member_id = trello_member_ids.get(proposal.suggested_owner_user_id or "")
        due = normalize_due_date(proposal.due)
        try:
            card = trello.create_card(
                list_id,
                proposal.title,
                format_card_description(proposal, approved_at),
                [member_id] if member_id else None,
                due,
            )
        except TrelloApiError as exc:
            safe = sanitize_publish_error(exc)
            logger.warning("Failed to create card '%s': %s", proposal.title, safe["message"],
                           extra={"room_id": room_id, "session_id": session_id, "error_type": safe["code"]})
            report.failures.append({"title": proposal.title, "error": safe})
            report.lines.append(f"✗ **{proposal.title}** (failed)")
            continue

        db.session.add(TrelloCardCache(
            room_id=room_id,
            session_id=session_id,
            trello_card_id=card["id"],
            title=proposal.title,
            proposal_index=index,
            status=list_name,
            owner_user_id=proposal.suggested_owner_user_id,
            effort=proposal.effort,
            due_date=_parse_due(card.get("due") or due),
        ))
        db.session.commit()

        report.published_card_ids.append(card["id"])
        report.lines.append(f"✓ **{proposal.title}**{owner}")

    logger.info("Published %s cards", report.summary,
                extra={"room_id": room_id, "session_id": session_id})
    return report
