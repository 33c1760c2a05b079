"""
Deterministic intent classifier for incoming chat messages.

Runs before any generation call so small talk never costs a model round-trip.
Regex/keyword heuristics only; no side effects.

Precedence:
    1. KICKOFF_REQUEST  — "let's start planning" must not be swallowed by small talk
    2. SMALL_TALK       — matched against the whole trimmed message
    3. GATE_FEEDBACK    — edit/remove/change phrasing aimed at an artifact
    4. ACTIONABLE       — everything else
"""

import re

SMALL_TALK = "SMALL_TALK"
GATE_FEEDBACK = "GATE_FEEDBACK"
KICKOFF_REQUEST = "KICKOFF_REQUEST"
ACTIONABLE = "ACTIONABLE"

INTENTS = (SMALL_TALK, GATE_FEEDBACK, KICKOFF_REQUEST, ACTIONABLE)

_I = re.IGNORECASE

_SMALL_TALK_PATTERNS = [
    re.compile(r"^(hi|hey|hello|howdy|yo|sup|hiya)[!., ]*$", _I),
    re.compile(r"^how (are|r) (you|u|ya)[?!., ]*$", _I),
    re.compile(r"^what('s| is) up[?!., ]*$", _I),
    re.compile(r"^good (morning|afternoon|evening|night)[!., ]*$", _I),
    re.compile(r"^(thanks|thank you|thx|ty|cheers)[!., ]*$", _I),
    re.compile(r"^(ok|okay|got it|cool|great|nice|awesome|perfect|sounds good)[!., ]*$", _I),
    re.compile(r"^(bye|goodbye|see ya|cya|later)[!., ]*$", _I),
    re.compile(r"^(lol|haha|hehe|😂|😄|👍|🙏)[!., ]*$", _I),
    re.compile(r"^(yes|no|yep|nope|sure|nah)[!., ]*$", _I),
    re.compile(r"^(hmm|hm|uh|uhh|oh|ah|ohh|ahh)[!., ]*$", _I),
]

# The user wants to edit an approval artifact rather than vote on it
_GATE_FEEDBACK_PATTERNS = [
    re.compile(r"\b(change|update|edit|modify|revise|rename|replace|swap)\b.*(milestone|task|outcome|item|number|\d+)", _I),
    re.compile(r"\b(milestone|task|item)\s+\d+\s+(should|needs?)\s+to\s+be\b", _I),
    re.compile(r"\b(remove|delete|drop)\s+(milestone|task|item|number|\d+)\b", _I),
    re.compile(r"\binstead\s+of\b", _I),
    re.compile(r"\bactually[,\s]+\b", _I),
]

_KICKOFF_PATTERNS = [
    re.compile(r"\b(start|begin|kick.?off|launch|open|initiate)\s+(weekly\s+)?(planning|session|week|meeting)\b", _I),
    re.compile(r"\blet'?s?\s+(plan|start|kick)\b", _I),
    re.compile(r"\bnew\s+week\b", _I),
]

_NEXT_ACTION_HINTS = {
    "IDLE": "Want to **start this week's planning**? Just say the word.",
    "WEEKLY_KICKOFF": "We're kicking off this week's session — the skeleton will be ready shortly.",
    "SKELETON_DRAFT": "I'm drafting a milestone skeleton for the group's review.",
    "SKELETON_QA": "I have a clarifying question coming up for the group.",
    "APPROVAL_GATE_1": "The **milestone skeleton** is waiting for everyone's vote.",
    "PLANNING_MEETING": "We're collecting each member's planned contributions.",
    "TASK_PROPOSALS": "I'm normalizing everyone's input into a task list.",
    "APPROVAL_GATE_2": "The **task plan** is waiting for everyone's vote before publishing to Trello.",
    "TRELLO_PUBLISH": "Publishing the approved tasks to Trello now.",
    "MONITOR": "I'll check in if anything stalls. Chat if you need anything.",
    "WEEKLY_REVIEW": "Wrapping up the week — the review is being generated.",
}

PENDING_APPROVAL_NOTE = "There's an **approval pending** — take a moment to vote when you're ready."


def classify_intent(message: str) -> str:
    """Return exactly one of INTENTS for *message*."""
    trimmed = (message or "").strip()
    if any(p.search(trimmed) for p in _KICKOFF_PATTERNS):
        return KICKOFF_REQUEST
    if any(p.search(trimmed) for p in _SMALL_TALK_PATTERNS):
        return SMALL_TALK
    if any(p.search(trimmed) for p in _GATE_FEEDBACK_PATTERNS):
        return GATE_FEEDBACK
    return ACTIONABLE


def next_action_hint(state: str) -> str:
    """Phase-appropriate nudge for *state*; empty for unknown states."""
    return _NEXT_ACTION_HINTS.get(state, "")


def build_small_talk_reply(message: str, has_open_gate: bool, hint: str) -> str:
    """Short canned reply. Mentions the pending approval instead of the hint when a gate is open."""
    lower = (message or "").strip().lower()

    if "thank" in lower:
        reply = "You're welcome! 😊"
    elif re.search(r"bye|goodbye|later", lower):
        reply = "See you! Feel free to come back when you're ready to plan."
    elif re.search(r"good (morning|afternoon|evening)", lower):
        part = "morning" if "morning" in lower else "afternoon" if "afternoon" in lower else "evening"
        reply = f"Good {part}! Ready to plan?"
    elif re.search(r"how (are|r) (you|u)", lower):
        reply = "Doing great, thanks for asking! I'm here to help your group plan effectively."
    else:
        reply = "Hey! 👋 Happy to chat."

    if has_open_gate:
        reply += f" {PENDING_APPROVAL_NOTE}"
    elif hint:
        reply += f" {hint}"
    return reply
