"""
Queries and sync over the local Trello card cache.

Stall detection, weekly review and workload fairness all read the cache
rather than calling Trello; only ``sync_room_cards`` talks to the board.
"""

import logging
from datetime import UTC, datetime, timedelta

from groupcopilot.integrations.trello_gateway import TrelloGateway
from groupcopilot.models import db
from groupcopilot.models.trello import TrelloCardCache

logger = logging.getLogger(__name__)

EFFORT_POINTS = {"S": 1, "M": 2, "L": 3}


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def room_cards(room_id: int) -> list[TrelloCardCache]:
    return TrelloCardCache.query.filter_by(room_id=room_id).order_by(TrelloCardCache.id).all()


def is_stalled(card: TrelloCardCache, now: datetime, threshold_days: int = 7) -> bool:
    if card.is_done:
        return False
    return as_utc(card.status_changed_at) <= now - timedelta(days=threshold_days)


def find_stalled_cards(room_id: int, now: datetime, threshold_days: int = 7) -> list[TrelloCardCache]:
    return [c for c in room_cards(room_id) if is_stalled(c, now, threshold_days)]


def sync_room_cards(trello: TrelloGateway, room_id: int, board_id: str, now: datetime) -> int:
    """
    Refresh cached cards from the board.

    Only a status change moves ``status_changed_at``; cards that sit still
    keep aging toward a stall. Returns the number of status changes.
    """
    remote = {c["id"]: c for c in trello.list_cards(board_id)}
    changed = 0
    for card in room_cards(room_id):
        info = remote.get(card.trello_card_id)
        if info is None:
            continue
        if info["status"] != card.status:
            card.status = info["status"]
            card.status_changed_at = now
            changed += 1
        card.title = info["title"] or card.title
        card.last_synced_at = now
    db.session.commit()
    logger.info("Synced cards for room=%s (%d status changes)", room_id, changed,
                extra={"room_id": room_id})
    return changed


def workload_points(room_id: int, member_ids: list[str]) -> tuple[dict[str, int], dict[str, int]]:
    """
    Open-card workload per member.

    Returns:
        (points, high_effort_counts), both keyed by every id in *member_ids*.
        Cards without an effort tier count as M.
    """
    points = {uid: 0 for uid in member_ids}
    high = {uid: 0 for uid in member_ids}
    for card in room_cards(room_id):
        if card.is_done or card.owner_user_id not in points:
            continue
        points[card.owner_user_id] += EFFORT_POINTS.get(card.effort or "M", 2)
        if card.effort == "L":
            high[card.owner_user_id] += 1
    return points, high
