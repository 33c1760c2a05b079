"""
Helpers for pulling structured data out of generator replies.

Model output is unreliable: JSON may arrive wrapped in prose or a markdown
fence, truncated, or with the wrong shape. Everything here either returns a
fully valid value or ``None``; nothing returns a partially valid result.

``parse_with_fallback`` is the shared three-tier ladder used by callers:
direct parse → one repair attempt → deterministic fallback.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from groupcopilot.models.agent import TaskProposal

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_JSON_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")

TIER_DIRECT = "direct"
TIER_REPAIRED = "repaired"
TIER_FALLBACK = "fallback"
TIER_FAILED = "failed"


def extract_json(text: str) -> str:
    """
    Return the JSON-looking part of *text*.

    1. Contents of the first fenced code block, if any.
    2. Otherwise the first ``{...}`` or ``[...]`` span.
    3. Otherwise *text* unchanged, so the caller's ``json.loads`` fails cleanly.
    """
    fenced = _FENCE_RE.search(text)
    if fenced:
        return fenced.group(1).strip()
    bare = _BARE_JSON_RE.search(text)
    if bare:
        return bare.group(1)
    return text


def parse_json_object(text: str | None) -> dict | None:
    """Parse *text* into a dict, or None if it isn't one."""
    if not text:
        return None
    try:
        parsed = json.loads(extract_json(text))
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_task_list(text: str | None) -> list[TaskProposal] | None:
    """
    Parse a ``{"tasks": [...]}`` payload into TaskProposals.

    Returns None when the ``tasks`` key is missing, the array is empty, or any
    task lacks a non-empty string ``title`` or ``description``.
    """
    parsed = parse_json_object(text)
    if parsed is None:
        return None
    tasks = parsed.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        return None
    for task in tasks:
        if not isinstance(task, dict):
            return None
        title, description = task.get("title"), task.get("description")
        if not isinstance(title, str) or not title.strip():
            return None
        if not isinstance(description, str) or not description.strip():
            return None
    return [TaskProposal.from_dict(task) for task in tasks]


def parse_milestones(text: str | None) -> list[str] | None:
    """Parse ``{"milestones": [{"outcome", "reasoning"}]}`` into display lines."""
    parsed = parse_json_object(text)
    if parsed is None:
        return None
    items = parsed.get("milestones")
    if not isinstance(items, list) or not items:
        return None
    lines = []
    for item in items:
        if not isinstance(item, dict):
            return None
        outcome = item.get("outcome")
        if not isinstance(outcome, str) or not outcome.strip():
            return None
        reasoning = str(item.get("reasoning") or "").strip()
        lines.append(f"{outcome.strip()} — _{reasoning}_" if reasoning else outcome.strip())
    return lines


@dataclass
class ParseOutcome:
    """Result of ``parse_with_fallback``; ``tier`` says which rung produced ``value``."""

    value: Any
    tier: str

    @property
    def ok(self) -> bool:
        return self.tier != TIER_FAILED


def parse_with_fallback(
    raw: str,
    parse: Callable[[str], Any],
    *,
    repair: Callable[[str], str | None] | None = None,
    fallback: Callable[[str], Any] | None = None,
) -> ParseOutcome:
    """
    Run the resilience ladder over *raw* generator output.

    Args:
        raw: First generator reply.
        parse: Returns the parsed value or None on failure.
        repair: Optional; given the bad text, returns a second reply to parse
            (typically from a JSON-repair prompt), or None to skip.
        fallback: Optional; builds a deterministic value from the bad text.

    Returns:
        ParseOutcome with tier direct / repaired / fallback, or failed with
        value None when every rung came up empty.
    """
    value = parse(raw)
    if value is not None:
        return ParseOutcome(value, TIER_DIRECT)

    if repair is not None:
        repaired_text = repair(raw)
        if repaired_text is not None:
            value = parse(repaired_text)
            if value is not None:
                return ParseOutcome(value, TIER_REPAIRED)
        logger.warning("Parse failed after repair attempt")

    if fallback is not None:
        value = fallback(raw)
        if value is not None:
            return ParseOutcome(value, TIER_FALLBACK)

    return ParseOutcome(None, TIER_FAILED)
