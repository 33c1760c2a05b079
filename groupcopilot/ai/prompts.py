"""
GroupCopilot
Prompt builder for the planning agent.

Each phase has a PromptTemplate with a shared system header and a
phase-specific user message. Variables use ``{{name}}`` placeholders;
list-valued context is pre-rendered into text by the builder functions.

Usage:
    from groupcopilot.ai.prompts import RoomContext, kickoff_prompt
    messages = kickoff_prompt(RoomContext(project_goal=None, member_names=["Ana"], week_number=7))
"""

import re
from dataclasses import dataclass, field

from groupcopilot.models.agent import TaskProposal


@dataclass
class RoomContext:
    project_goal: str | None
    member_names: list[str]
    week_number: int
    revision_feedback: list[str] = field(default_factory=list)


class PromptTemplate:
    """A single prompt template (system + user parts)."""

    def __init__(self, name: str, system: str, user: str):
        self.name = name
        self.system = system
        self.user = user

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values; unknown placeholders are kept."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r"\{\{(\s*\w+\s*)\}\}", replacer, template)


# ── Shared header ────────────────────────────────────────────────────────────

_HEADER = """You are GroupCopilot, a responsible AI facilitator for a student project group.
Project goal: {{project_goal}}.
Team members this week: {{member_names}}.
Current week: {{week_number}}.

Tone rules:
- Be concise, warm, and neutral. Never judge individuals.
- Always explain WHY you are making a suggestion (transparent reasoning).
- Never take any action without explicit group approval."""


TEMPLATES = {
    "kickoff": PromptTemplate("kickoff", _HEADER, """Task: Open the weekly planning session for week {{week_number}}.

{{prior_review}}

Write a short (2–3 sentence) opening message that:
1. Welcomes the group to the new week.
2. Briefly references any unfinished items from last week (if available).
3. Signals that you will now draft a milestone skeleton for their approval.

Output: plain paragraph, no markdown headers."""),

    "skeleton_draft": PromptTemplate("skeleton_draft", _HEADER, """Task: Propose a weekly milestone skeleton (2–4 bullet outcomes) for week {{week_number}}.

Recent conversation context (last {{message_count}} messages):
{{recent_messages}}
{{feedback}}
Rules:
- Each milestone is a concrete, measurable outcome, not a vague activity.
- Prefer outcomes the whole team contributes to over individual assignments.
- Include a brief reasoning line for each.
- Do NOT assign tasks to specific people yet.

Output format (JSON only, no prose):
{ "milestones": [{ "outcome": "...", "reasoning": "..." }] }"""),

    "skeleton_qa": PromptTemplate("skeleton_qa", _HEADER, """Task: Ask ONE clarifying question to help refine the milestone skeleton.

Current skeleton:
{{skeleton}}

{{answered}}

Rules:
- Ask only ONE question at a time, directed at the whole group.
- Focus on the most ambiguous or risky milestone.
- If {{answered_count}} >= 2, output { "done": true } to signal QA is complete.

Output format (JSON only):
{ "question": "..." }  OR  { "done": true }"""),

    "contribution_request": PromptTemplate("contribution_request", _HEADER, """Task: Ask {{target_name}} for their next-step contribution this week.

Approved skeleton:
{{skeleton}}

{{collected}}

Write a one-sentence, direct question to {{target_name}} asking what specific
task or subtask they plan to tackle this week in service of the milestones above.

Output: plain sentence only, no markdown."""),

    "task_normalization": PromptTemplate("task_normalization", _HEADER, """Task: Convert the raw member contributions into a clean, deduplicated task proposal list.

Approved skeleton:
{{skeleton}}

Raw contributions:
{{contributions}}
{{feedback}}
Rules:
- Merge duplicate or overlapping contributions into ONE task.
- Title: ≤8 words, action-oriented (start with a verb).
- Description: 1–2 specific, measurable sentences.
- acceptanceCriteria: 1–3 bullet strings defining "done". Required.
- dependencies: titles of tasks this depends on (empty array if none).
- suggestedOwnerName: contributor's name (null if merged from multiple).
- suggestedOwnerUserId: contributor's userId as given (null if merged).
- effort: "S" (few hours), "M" (half-day), "L" (full day+).
- due: null unless deadline is obvious from context.
- Do NOT invent tasks beyond what was contributed.
- Use neutral, non-judgmental language.

Output: valid JSON ONLY — no prose, no markdown fences, no trailing commas.
{ "tasks": [{ "title": "...", "description": "...", "acceptanceCriteria": ["..."], "dependencies": [], "suggestedOwnerUserId": "...|null", "suggestedOwnerName": "...|null", "due": null, "effort": "S|M|L" }] }"""),

    "fix_json": PromptTemplate("fix_json", "", """The text below should be valid JSON with a "tasks" array but it is malformed or has extra prose.
Return ONLY corrected JSON — no explanation, no markdown, no trailing commas.

{{broken_text}}"""),

    "weekly_review": PromptTemplate("weekly_review", _HEADER, """Task: Write a concise weekly review summary for week {{week_number}}.

Published tasks: {{published}}.
Completed tasks: {{completed}}.
Stalled tasks (no movement): {{stalled}}.

Rules:
- Celebrate progress with specific examples.
- Mention stalled tasks neutrally without blaming individuals.
- End with one forward-looking sentence about next week.
- 3–5 sentences total.

Output: plain paragraphs only, no markdown headers."""),

    "assignee_suggestion": PromptTemplate("assignee_suggestion", "", """Pick the best assignee for a new {{priority}}-priority task so that workload stays fair.

Current workload points per member (effort S=1, M=2, L=3):
{{workload}}

Return JSON only: { "user_id": "<one of the user ids above>", "rationale": "<one sentence>" }"""),
}


# ── Builders ─────────────────────────────────────────────────────────────────

def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def _header_vars(ctx: RoomContext) -> dict:
    return {
        "project_goal": ctx.project_goal or "not yet defined",
        "member_names": ", ".join(ctx.member_names),
        "week_number": ctx.week_number,
    }


def _feedback_block(ctx: RoomContext) -> str:
    if not ctx.revision_feedback:
        return ""
    lines = "\n".join(f"- {c}" for c in ctx.revision_feedback)
    return f"\nThe group asked for changes to the previous version. Address this feedback:\n{lines}\n"


def kickoff_prompt(ctx: RoomContext, prior_review: str | None = None) -> list[dict]:
    prior = (
        f"Last week's review summary:\n{prior_review}"
        if prior_review
        else "This appears to be the first week — no prior review available."
    )
    return TEMPLATES["kickoff"].render(**_header_vars(ctx), prior_review=prior)


def skeleton_draft_prompt(ctx: RoomContext, recent_messages: list[str]) -> list[dict]:
    return TEMPLATES["skeleton_draft"].render(
        **_header_vars(ctx),
        message_count=len(recent_messages),
        recent_messages=_numbered(recent_messages) or "(no messages yet)",
        feedback=_feedback_block(ctx),
    )


def skeleton_qa_prompt(ctx: RoomContext, skeleton: list[str], prior_answers: dict[str, str]) -> list[dict]:
    if prior_answers:
        pairs = "\n\n".join(f"Q: {q}\nA: {a}" for q, a in prior_answers.items())
        answered = f"Questions already asked and answered:\n{pairs}"
    else:
        answered = "No questions asked yet."
    return TEMPLATES["skeleton_qa"].render(
        **_header_vars(ctx),
        skeleton=_numbered(skeleton),
        answered=answered,
        answered_count=len(prior_answers),
    )


def contribution_request_prompt(
    ctx: RoomContext,
    skeleton: list[str],
    target_name: str,
    already_collected: list[str],
) -> list[dict]:
    collected = (
        f"Contributions already collected from: {', '.join(already_collected)}."
        if already_collected
        else f"{target_name} is the first to contribute."
    )
    return TEMPLATES["contribution_request"].render(
        **_header_vars(ctx),
        skeleton=_numbered(skeleton),
        target_name=target_name,
        collected=collected,
    )


def task_normalization_prompt(
    ctx: RoomContext,
    skeleton: list[str],
    contributions: dict[str, str],
    member_names: dict[str, str],
) -> list[dict]:
    lines = "\n".join(
        f'- {member_names.get(uid, uid)} (userId: {uid}): "{text}"'
        for uid, text in contributions.items()
    )
    return TEMPLATES["task_normalization"].render(
        **_header_vars(ctx),
        skeleton=_numbered(skeleton),
        contributions=lines,
        feedback=_feedback_block(ctx),
    )


def fix_json_prompt(broken_text: str) -> list[dict]:
    return TEMPLATES["fix_json"].render(broken_text=broken_text[:3000])


def weekly_review_prompt(
    ctx: RoomContext,
    published: list[str],
    stalled: list[str],
    completed: list[str],
) -> list[dict]:
    return TEMPLATES["weekly_review"].render(
        **_header_vars(ctx),
        published=", ".join(published) or "none",
        completed=", ".join(completed) or "none",
        stalled=", ".join(stalled) or "none",
    )


def assignee_suggestion_prompt(priority: str, workload: dict[str, int], names: dict[str, str] | None = None) -> list[dict]:
    names = names or {}
    table = "\n".join(
        f"- {uid} ({names.get(uid, uid)}): {points}" for uid, points in workload.items()
    )
    return TEMPLATES["assignee_suggestion"].render(priority=priority, workload=table)


# ── Gate messages (no generation) ────────────────────────────────────────────

def gate1_message(skeleton: list[str]) -> str:
    return "\n".join([
        "Here's the **milestone skeleton** I've drafted for this week:",
        "",
        _numbered(skeleton),
        "",
        "Does this look right? If you'd like to edit any milestone, reply with your changes.",
        "When the group is happy, click **Approve** to move to the planning meeting.",
    ])


def gate2_message(proposals: list[TaskProposal]) -> str:
    blocks = []
    for i, task in enumerate(proposals, 1):
        owner = f" _(suggested owner: {task.suggested_owner_name})_" if task.suggested_owner_name else ""
        blocks.append(f"{i}. **{task.title}**{owner}\n   {task.description}")
    return "\n".join([
        "Here's the **task plan** ready to publish to Trello:",
        "",
        "\n\n".join(blocks),
        "",
        "Review the list — you can suggest edits in the chat.",
        "When everyone is satisfied, click **Approve** to publish these cards to Trello.",
    ])
