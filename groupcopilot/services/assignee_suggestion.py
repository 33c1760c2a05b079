"""
Fair assignee suggestion for a new task.

Workload comes from the local card cache (effort S/M/L → 1/2/3 points on
open cards). The deterministic choice minimizes the spread of workload after
the new task is added; the generator may propose someone else, but only if it
answers within ``ASSIGNEE_SUGGESTION_TIMEOUT_MS`` with a current member.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from groupcopilot.ai.gateway import GenerationError, LLMGateway
from groupcopilot.ai.parse_utils import parse_json_object
from groupcopilot.ai.prompts import assignee_suggestion_prompt
from groupcopilot.core.exceptions import ValidationError
from groupcopilot.services.card_cache import workload_points
from groupcopilot.services.membership import MemberContext

logger = logging.getLogger(__name__)

PRIORITY_WEIGHTS = {"low": 1, "med": 2, "high": 3}

SOURCE_MODEL = "model"
SOURCE_FAIRNESS = "fairness"


@dataclass
class AssigneeSuggestion:
    user_id: str
    name: str
    rationale: str
    source: str
    before: dict[str, int]
    after: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "suggested_user_id": self.user_id,
            "suggested_user_name": self.name,
            "rationale": self.rationale,
            "source": self.source,
            "fairness_preview": {
                "before": self.before,
                "after": self.after,
                "objective": "minimize_range",
            },
        }


def pick_fairest(points: dict[str, int], high_counts: dict[str, int], weight: int) -> str:
    """
    Member whose assignment leaves the smallest max-min workload range.

    Ties: fewest current points, then fewest high-effort cards, then user id.
    """
    def key(uid: str):
        projected = [p + weight if other == uid else p for other, p in points.items()]
        return (max(projected) - min(projected), points[uid], high_counts.get(uid, 0), uid)

    return min(points, key=key)


def _rationale(name: str, points: dict[str, int], selected: str, priority: str, weight: int) -> str:
    average = sum(points.values()) / max(len(points), 1)
    return (
        f"Suggested {name} because they have {points[selected]} points vs team average "
        f"{average:.1f}; assigning this {priority.upper()} task balances workload to "
        f"{points[selected] + weight}."
    )


def _ask_model(gateway: LLMGateway, priority: str, points: dict[str, int],
               names: dict[str, str]) -> dict | None:
    try:
        result = gateway.chat(assignee_suggestion_prompt(priority, points, names),
                              purpose="assignee_suggestion")
    except GenerationError as e:
        logger.info("Assignee suggestion generation unavailable: %s", e.error_type)
        return None
    return parse_json_object(result["content"])


def suggest_assignee(
    members: MemberContext,
    priority: str,
    gateway: LLMGateway | None = None,
    *,
    timeout_ms: int = 350,
) -> AssigneeSuggestion:
    """
    Suggest who should take a new task of *priority* (low | med | high).

    Raises:
        ValidationError: unknown priority or a room with no members.
    """
    priority = (priority or "").strip().lower()
    if priority not in PRIORITY_WEIGHTS:
        raise ValidationError(
            f"priority must be one of {sorted(PRIORITY_WEIGHTS)}", details={"priority": priority},
        )
    if not members.member_ids:
        raise ValidationError("Room has no members", details={"room": members.room_code})

    weight = PRIORITY_WEIGHTS[priority]
    points, high_counts = workload_points(members.room_id, members.member_ids)
    selected = pick_fairest(points, high_counts, weight)
    rationale = _rationale(members.name_of(selected), points, selected, priority, weight)
    source = SOURCE_FAIRNESS

    if gateway is not None and gateway.available and len(points) > 1:
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(_ask_model, gateway, priority, dict(points), dict(members.member_names))
        try:
            answer = future.result(timeout=timeout_ms / 1000)
        except FutureTimeout:
            answer = None
            logger.info("Assignee suggestion timed out after %dms; using fairness choice", timeout_ms)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if answer and answer.get("user_id") in points:
            selected = answer["user_id"]
            model_rationale = answer.get("rationale")
            rationale = (
                model_rationale.strip()
                if isinstance(model_rationale, str) and model_rationale.strip()
                else _rationale(members.name_of(selected), points, selected, priority, weight)
            )
            source = SOURCE_MODEL

    after = {uid: p + weight if uid == selected else p for uid, p in points.items()}
    return AssigneeSuggestion(
        user_id=selected,
        name=members.name_of(selected),
        rationale=rationale,
        source=source,
        before=points,
        after=after,
    )
