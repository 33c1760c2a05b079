"""
Weekly jobs triggered from outside (cron endpoint or ``flask`` CLI).

Jobs:
    - weekly_monitor: sync card status for rooms in MONITOR, nudge on stalls
    - weekly_review: move rooms in MONITOR through WEEKLY_REVIEW back to IDLE

Each session is processed independently; a failure in one room is logged
and counted, never aborting the batch.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from groupcopilot.integrations.trello_gateway import TrelloApiError
from groupcopilot.models import db
from groupcopilot.models.agent import MONITOR, AgentSession
from groupcopilot.models.audit import write_audit
from groupcopilot.services import card_cache
from groupcopilot.services.chat_service import post_message
from groupcopilot.services.dispatcher import TRIGGER_WEEKLY_REVIEW, AgentDispatcher, stall_nudge
from groupcopilot.services.membership import load_member_context_by_id

logger = logging.getLogger(__name__)


def _monitor_sessions() -> list[AgentSession]:
    return AgentSession.query.filter_by(state=MONITOR).order_by(AgentSession.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Weekly monitor
# ═══════════════════════════════════════════════════════════════════════════

def run_weekly_monitor(dispatcher: AgentDispatcher, config=None, now: datetime | None = None) -> dict[str, Any]:
    """Sync cards and post a nudge in every MONITOR room with stalled cards."""
    now = now or datetime.now(UTC)
    results = {"sessions": 0, "synced": 0, "nudged": 0, "errors": 0}

    for session in _monitor_sessions():
        results["sessions"] += 1
        room_id = session.room_id
        members = load_member_context_by_id(room_id, None, config)

        if members.board_id and dispatcher.trello.is_configured:
            try:
                card_cache.sync_room_cards(dispatcher.trello, room_id, members.board_id, now)
                results["synced"] += 1
            except TrelloApiError as e:
                db.session.rollback()
                results["errors"] += 1
                logger.warning("Card sync failed for room=%s: %s", room_id, e.code,
                               extra={"room_id": room_id, "error_type": e.code})

        stalled = card_cache.find_stalled_cards(room_id, now, dispatcher.stall_threshold_days)
        if not stalled:
            continue

        titles = [c.title for c in stalled]
        write_audit(room_id=room_id, session_id=session.id, action="monitor_nudge_sent",
                    payload={"stalled_count": len(titles), "titles": titles})
        post_message(room_id, stall_nudge(titles), sender_type="system")
        results["nudged"] += 1

    logger.info("Weekly monitor: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Weekly review
# ═══════════════════════════════════════════════════════════════════════════

def run_weekly_review(dispatcher: AgentDispatcher, config=None, now: datetime | None = None) -> dict[str, Any]:
    """Generate the weekly review for every MONITOR session and post it to the room."""
    results = {"sessions": 0, "reviewed": 0, "errors": 0}

    for session in _monitor_sessions():
        results["sessions"] += 1
        room_id = session.room_id
        members = load_member_context_by_id(room_id, None, config)
        try:
            outcome = dispatcher.dispatch(session, None, members, trigger=TRIGGER_WEEKLY_REVIEW)
        except Exception:
            db.session.rollback()
            results["errors"] += 1
            logger.exception("Weekly review failed for session=%s", session.id,
                             extra={"room_id": room_id, "session_id": session.id})
            continue

        if outcome.reply_text:
            post_message(room_id, f"**Week {session.week_number} Review**\n\n{outcome.reply_text}",
                         mock_mode=outcome.mock_mode)
        results["reviewed"] += 1

    logger.info("Weekly review: %s", results)
    return results
